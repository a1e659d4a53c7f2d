"""Provider 抽象接口。

编排层不直接依赖具体厂商的 HTTP 接口，而是依赖此处的协议：

- RemoteClient: 一个远端生成服务的全部能力（对话、图片、视频、搜索）。
- ChatContext: 由 RemoteClient.open_chat 打开的有状态多轮对话上下文。

测试中可以用任意满足协议的假对象替换真实客户端。
"""

from typing import Iterator, List, Protocol, Sequence

from luna_core.domain.conversation import Attachment, Message
from luna_core.domain.models import ChatResult, GeneratedImage, Part, VideoOperation


class ChatContext(Protocol):
    """多轮对话上下文。

    send_stream 返回惰性的文本增量序列：有限、不可重启，
    需要重发时必须重新调用。
    """

    def send_stream(self, parts: List[Part]) -> Iterator[str]:
        ...


class RemoteClient(Protocol):
    name: str

    def open_chat(self, history: Sequence[Message], system_instruction: str) -> ChatContext:
        """以既有消息为种子打开对话上下文（只回放纯文本消息）。"""
        ...

    def generate_text(self, prompt: str) -> str:
        ...

    def generate_image(self, prompt: str) -> GeneratedImage:
        ...

    def edit_image(self, prompt: str, attachment: Attachment) -> ChatResult:
        ...

    def search(self, query: str) -> ChatResult:
        ...

    def start_video(self, prompt: str) -> VideoOperation:
        ...

    def get_video_operation(self, name: str) -> VideoOperation:
        ...

    def download(self, uri: str) -> bytes:
        ...

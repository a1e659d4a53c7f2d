"""远端调用使用的统一数据模型。

本模块定义了编排层与 Provider 适配层之间共享的标准数据结构：

- Part / Content: 一次对话回合的内容片段（文本或内联二进制）。
- ChatRequest: 发给远端生成服务的完整请求。
- ChatResult / ChatStreamChunk: 解析后的统一响应（非流式 / 流式增量）。
- GeneratedImage / VideoOperation: 图片与视频动作的结果。

Provider 适配器（如 GeminiClient）只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# 会话角色（与 Gemini contents[].role 字段对应）
Role = Literal["user", "model"]


@dataclass(frozen=True)
class GroundingChunk:
    """搜索增强回答附带的一条引用来源。"""

    uri: str
    title: str = ""


@dataclass
class InlineData:
    """内联二进制数据，data 为不带 data URI 前缀的 base64 字符串。"""

    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class Part:
    """内容片段：text 与 inline_data 二选一。"""

    text: Optional[str] = None
    inline_data: Optional[InlineData] = None


@dataclass
class Content:
    role: Role
    parts: List[Part] = field(default_factory=list)


@dataclass
class ChatRequest:
    """一次完整的生成请求。

    model 为逻辑模型名（如 "chat"），由 registry 映射为真实模型 ID。
    tools / response_modalities 仅在搜索与图片编辑动作中使用。
    """

    model: str
    contents: List[Content]
    system_instruction: Optional[str] = None
    temperature: Optional[float] = None
    tools: Optional[List[Dict[str, Any]]] = None
    response_modalities: Optional[List[str]] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次非流式调用的结果（只保留第一个候选）。

    - parts: 候选内容的全部片段，可能同时包含文本与图片。
    - grounding_chunks: 搜索增强时返回的引用列表，按原顺序保留。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    model: str
    parts: List[Part] = field(default_factory=list)
    grounding_chunks: List[GroundingChunk] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text)

    def first_inline_data(self) -> Optional[InlineData]:
        for part in self.parts:
            if part.inline_data is not None:
                return part.inline_data
        return None


@dataclass
class ChatStreamChunk:
    """流式调用的单条增量。text 为本次增量的文本（可能为空字符串）。"""

    model: str
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class GeneratedImage:
    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class VideoOperation:
    """长时间运行的视频生成任务快照。

    done=False 时仅 name 有意义；done=True 时 video_uri 与 error 至多一个非空，
    两者都为空说明远端完成了任务却没有返回视频链接。
    """

    name: str
    done: bool = False
    video_uri: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[dict] = None

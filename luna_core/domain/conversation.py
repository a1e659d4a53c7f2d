"""会话领域模型与持久化协议。

Message / ChatSession / ChatHistory 均为不可变对象：
任何修改都通过构造新对象完成（追加、截断、替换最后一条），
SessionStore 以整体替换 ChatHistory 的方式提交状态。
"""

import base64
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from uuid import uuid4

from .exceptions import ValidationError
from .models import GroundingChunk, InlineData, Role

DEFAULT_TITLE = "New Chat"
# 附件大小上限（解码后字节数），由调用方在交给编排层之前校验
MAX_ATTACHMENT_BYTES = 4 * 1024 * 1024


@dataclass(frozen=True)
class Message:
    """一条会话消息。

    - text: 发给模型的原文；流式过程中可能为空。
    - image_url / video_url: 可直接渲染的 data URI。
    - grounding_chunks: 搜索引用，按远端返回顺序保存。
    - label: 动作或模板化提示的“干净”文本（例如图片提示词本身），
      标题生成优先使用它，而不是从 text 里反解析。
    """

    role: Role
    text: str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    grounding_chunks: Optional[Tuple[GroundingChunk, ...]] = None
    label: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return bool(self.image_url or self.video_url)

    @property
    def is_plain_text(self) -> bool:
        """只有纯文本消息才能回放到远端会话历史中。"""
        return not self.has_media and self.grounding_chunks is None

    @property
    def is_renderable(self) -> bool:
        return bool(self.text) or self.has_media or bool(self.grounding_chunks)


@dataclass(frozen=True)
class ChatSession:
    id: str
    title: str = DEFAULT_TITLE
    messages: Tuple[Message, ...] = ()
    created_at: int = 0  # 毫秒时间戳，用于列表排序

    @property
    def user_turns(self) -> int:
        return sum(1 for m in self.messages if m.role == "user")


@dataclass(frozen=True)
class ChatHistory:
    """某个身份（登录用户或访客）的全部持久化状态。"""

    active_chat_id: Optional[str] = None
    sessions: Mapping[str, ChatSession] = field(default_factory=dict)

    @property
    def active(self) -> Optional[ChatSession]:
        if self.active_chat_id is None:
            return None
        return self.sessions.get(self.active_chat_id)

    def ordered_sessions(self) -> List[ChatSession]:
        """按创建时间倒序返回会话，用于侧边栏展示。"""
        return sorted(self.sessions.values(), key=lambda s: s.created_at, reverse=True)

    def with_session(self, session: ChatSession, activate: bool = False) -> "ChatHistory":
        sessions = dict(self.sessions)
        sessions[session.id] = session
        active_id = session.id if activate else self.active_chat_id
        return ChatHistory(active_chat_id=active_id, sessions=sessions)


@dataclass(frozen=True)
class Attachment:
    """用户上传的图片附件：MIME 类型 + base64 数据（不含前缀）。"""

    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_inline_data(self) -> InlineData:
        return InlineData(mime_type=self.mime_type, data=self.data)

    @classmethod
    def from_data_uri(cls, uri: str) -> "Attachment":
        """把 data:<mime>;base64,<data> 还原为附件，用于重新生成回答。"""
        header, sep, data = uri.partition(",")
        if not sep or not header.startswith("data:"):
            raise ValidationError(code="INVALID_DATA_URI", message="not a data URI")
        mime_type = header[len("data:"):].split(";", 1)[0]
        return cls(mime_type=mime_type, data=data)

    @classmethod
    def from_bytes(cls, mime_type: str, raw: bytes) -> "Attachment":
        if len(raw) > MAX_ATTACHMENT_BYTES:
            raise ValidationError(
                code="ATTACHMENT_TOO_LARGE",
                message=f"attachment exceeds {MAX_ATTACHMENT_BYTES} bytes",
                size=len(raw),
            )
        return cls(mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))


@dataclass(frozen=True)
class Persona:
    """自定义人设（增删改由外部负责，这里只读取其提示词）。"""

    id: str
    name: str
    prompt: str


def now_ms() -> int:
    return int(time.time() * 1000)


def new_chat_session(created_at: Optional[int] = None, title: str = DEFAULT_TITLE) -> ChatSession:
    ts = now_ms() if created_at is None else created_at
    return ChatSession(id=f"chat-{ts}-{uuid4().hex[:8]}", title=title, messages=(), created_at=ts)


def replace_last(messages: Tuple[Message, ...], **changes: Any) -> Tuple[Message, ...]:
    """替换末尾的模型消息；末尾不是模型消息时原样返回。"""
    if not messages or messages[-1].role != "model":
        return messages
    return messages[:-1] + (replace(messages[-1], **changes),)


class HistoryStore(Protocol):
    """按身份键保存完整 ChatHistory 的持久化协议。"""

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, key: str, data: Dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


# ---- 序列化（字段名与原有存储记录保持一致） ----

def message_to_dict(message: Message) -> Dict[str, Any]:
    obj: Dict[str, Any] = {"role": message.role, "text": message.text}
    if message.image_url:
        obj["imageUrl"] = message.image_url
    if message.video_url:
        obj["videoUrl"] = message.video_url
    if message.grounding_chunks is not None:
        obj["groundingChunks"] = [{"uri": c.uri, "title": c.title} for c in message.grounding_chunks]
    if message.label:
        obj["label"] = message.label
    return obj


def message_from_dict(data: Mapping[str, Any]) -> Message:
    chunks = None
    raw_chunks = data.get("groundingChunks")
    if isinstance(raw_chunks, list):
        items = []
        for raw in raw_chunks:
            # 兼容旧记录的 {"web": {"uri", "title"}} 结构
            web = raw.get("web") if isinstance(raw.get("web"), dict) else raw
            items.append(GroundingChunk(uri=str(web.get("uri") or ""), title=str(web.get("title") or "")))
        chunks = tuple(items)
    role = data.get("role")
    if role not in ("user", "model"):
        raise ValueError(f"unknown role: {role!r}")
    return Message(
        role=role,
        text=data.get("text") or "",
        image_url=data.get("imageUrl"),
        video_url=data.get("videoUrl"),
        grounding_chunks=chunks,
        label=data.get("label"),
    )


def history_to_dict(history: ChatHistory) -> Dict[str, Any]:
    return {
        "activeChatId": history.active_chat_id,
        "sessions": {
            sid: {
                "id": s.id,
                "title": s.title,
                "messages": [message_to_dict(m) for m in s.messages],
                "createdAt": s.created_at,
            }
            for sid, s in history.sessions.items()
        },
    }


def history_from_dict(data: Mapping[str, Any]) -> ChatHistory:
    """反序列化；结构不合法时抛出 ValueError / KeyError / TypeError。"""
    raw_sessions = data["sessions"]
    if not isinstance(raw_sessions, dict) or "activeChatId" not in data:
        raise ValueError("malformed chat history record")
    sessions: Dict[str, ChatSession] = {}
    for sid, raw in raw_sessions.items():
        sessions[sid] = ChatSession(
            id=sid,
            title=raw.get("title") or DEFAULT_TITLE,
            messages=tuple(message_from_dict(m) for m in raw.get("messages") or []),
            created_at=int(raw.get("createdAt") or 0),
        )
    return ChatHistory(active_chat_id=data.get("activeChatId"), sessions=sessions)

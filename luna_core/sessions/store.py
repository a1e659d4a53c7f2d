"""会话存储（Session Store）。

SessionStore 独占当前身份下的全部 ChatSession：

- 内存中保存一个不可变的 ChatHistory，每次修改都整体替换；
- 每次提交都把完整 ChatHistory 写入 HistoryStore（按身份键一条记录）；
- mutate_messages 带有“目标会话仍是当前会话”的守卫，
  后台操作完成时若会话已被切走或删除，写入会被静默丢弃。
"""

import threading
from typing import Callable, List, Optional, Tuple

from luna_core.domain.conversation import (
    DEFAULT_TITLE,
    ChatHistory,
    ChatSession,
    HistoryStore,
    Message,
    history_from_dict,
    history_to_dict,
    new_chat_session,
    now_ms,
    replace_last,
)
from luna_core.domain.exceptions import BusinessError
from luna_core.infrastructure.logging.logger import logger

GUEST_KEY = "luna-chat-data-guest"

Listener = Callable[[ChatHistory], None]
MessagesFn = Callable[[Tuple[Message, ...]], Tuple[Message, ...]]


def storage_key(identity: Optional[str]) -> str:
    """登录用户按用户名区分记录，访客共用一条记录。"""
    return f"luna-chat-data-{identity}" if identity else GUEST_KEY


class SessionStore:
    def __init__(
        self,
        backend: HistoryStore,
        identity: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._backend = backend
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._identity: Optional[str] = None
        self._history = ChatHistory()
        self.load(identity)

    # ---- 只读视图 ----

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def key(self) -> str:
        return storage_key(self._identity)

    @property
    def history(self) -> ChatHistory:
        return self._history

    @property
    def active(self) -> Optional[ChatSession]:
        return self._history.active

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册状态变化回调，返回取消注册函数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 身份切换 ----

    def load(self, identity: Optional[str]) -> ChatHistory:
        """登录 / 登出 / 切换账号时重新加载该身份的历史。"""
        with self._lock:
            self._identity = identity
            history = self._read()
            if not history.sessions:
                history = history.with_session(new_chat_session(self._clock()), activate=True)
            elif history.active is None:
                latest = history.ordered_sessions()[0]
                history = ChatHistory(active_chat_id=latest.id, sessions=history.sessions)
            self._commit(history)
        self._notify()
        logger.info(
            "Loaded chat history",
            extra={"extra": {"key": self.key, "sessions": len(history.sessions)}},
        )
        return history

    # ---- 会话操作 ----

    def create_session(self, title: str = DEFAULT_TITLE) -> ChatSession:
        session = new_chat_session(self._clock(), title=title)
        with self._lock:
            self._commit(self._history.with_session(session, activate=True))
        self._notify()
        return session

    def switch_to(self, session_id: str) -> bool:
        with self._lock:
            if session_id not in self._history.sessions:
                return False
            self._commit(ChatHistory(active_chat_id=session_id, sessions=self._history.sessions))
        self._notify()
        return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            if session_id not in self._history.sessions:
                return False
            sessions = dict(self._history.sessions)
            del sessions[session_id]
            active_id = self._history.active_chat_id
            if active_id == session_id:
                remaining = ChatHistory(sessions=sessions).ordered_sessions()
                active_id = remaining[0].id if remaining else None
            if active_id is None:
                fresh = new_chat_session(self._clock())
                sessions[fresh.id] = fresh
                active_id = fresh.id
            self._commit(ChatHistory(active_chat_id=active_id, sessions=sessions))
        self._notify()
        return True

    def mutate_messages(self, session_id: str, fn: MessagesFn) -> bool:
        """对目标会话的消息序列应用纯函数变换。

        目标会话已不是当前会话（被切走或删除）时丢弃本次写入并返回 False。
        """
        with self._lock:
            session = self._history.active
            if session is None or session.id != session_id:
                logger.debug("Dropped stale message update", extra={"extra": {"chat_id": session_id}})
                return False
            updated = ChatSession(
                id=session.id,
                title=session.title,
                messages=tuple(fn(session.messages)),
                created_at=session.created_at,
            )
            self._commit(self._history.with_session(updated))
        self._notify()
        return True

    def append(self, session_id: str, *messages: Message) -> bool:
        return self.mutate_messages(session_id, lambda prev: prev + tuple(messages))

    def replace_last(self, session_id: str, **changes) -> bool:
        """整体替换末尾模型消息的字段（流式写入、动作结果、错误信息）。"""
        return self.mutate_messages(session_id, lambda prev: replace_last(prev, **changes))

    def rename(self, session_id: str, title: str) -> bool:
        """按 id 修改标题；不要求是当前会话，会话已删除时丢弃。"""
        with self._lock:
            session = self._history.sessions.get(session_id)
            if session is None:
                return False
            renamed = ChatSession(
                id=session.id,
                title=title,
                messages=session.messages,
                created_at=session.created_at,
            )
            self._commit(self._history.with_session(renamed))
        self._notify()
        return True

    # ---- 内部 ----

    def _read(self) -> ChatHistory:
        try:
            data = self._backend.load(self.key)
        except BusinessError as e:
            logger.warning("Failed to load history", extra={"extra": {"key": self.key, "error": e.message}})
            return ChatHistory()
        if data is None:
            return ChatHistory()
        try:
            return history_from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignored malformed history", extra={"extra": {"key": self.key, "error": str(e)}})
            return ChatHistory()

    def _commit(self, history: ChatHistory) -> None:
        self._history = history
        try:
            if history.active_chat_id and history.sessions:
                self._backend.save(self.key, history_to_dict(history))
            else:
                self._backend.delete(self.key)
        except BusinessError as e:
            logger.error(
                "Failed to save chat history",
                extra={"extra": {"key": self.key, "code": e.code, "error": e.message}},
            )

    def _notify(self) -> None:
        history = self._history
        for listener in list(self._listeners):
            listener(history)

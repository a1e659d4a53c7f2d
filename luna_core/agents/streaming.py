"""流式回合状态机。

一次流式回合的状态：

    idle -> awaiting-first-byte -> streaming -> settled(succeeded | stopped | failed)

调用方（ChatOrchestrator）负责在开始前追加用户消息与空的占位模型消息；
StreamingTurn 只负责把远端增量写进占位消息：

- 每个增量拼接到 buffer 后整体替换占位消息的 text（幂等）；
- 每个增量到达时检查停止标志，已停止则丢弃该增量并退出，已写入的内容保留；
- 打开上下文或流式过程中的任何异常都会把占位消息改写为失败说明。
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from luna_core.agents.notices import failure_text
from luna_core.domain.exceptions import BusinessError
from luna_core.domain.models import Part
from luna_core.infrastructure.logging.logger import logger
from luna_core.providers.base import ChatContext
from luna_core.sessions.store import SessionStore


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_BYTE = "awaiting-first-byte"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    STOPPED = "stopped"
    FAILED = "failed"


class StreamingTurn:
    """驱动单个流式回合，把结果写回指定会话的末尾模型消息。"""

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        stop_event: threading.Event,
        action: str = "sending message",
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self._store = store
        self._session_id = session_id
        self._stop = stop_event
        self._action = action
        self._log_ctx = dict(log_ctx or {})
        self.state = TurnState.IDLE
        self.text = ""
        self.fragments = 0
        self.error: Optional[Exception] = None

    def run(self, open_chat: Callable[[], ChatContext], parts: List[Part]) -> TurnState:
        self.state = TurnState.AWAITING_FIRST_BYTE
        try:
            chat = open_chat()
            stream = chat.send_stream(parts)
            try:
                for fragment in stream:
                    if self._stop.is_set():
                        self.state = TurnState.STOPPED
                        break
                    self.text += fragment
                    self.fragments += 1
                    self.state = TurnState.STREAMING
                    self._store.replace_last(self._session_id, text=self.text)
            finally:
                close = getattr(stream, "close", None)
                if close is not None:
                    close()
        except BusinessError as e:
            self._fail(e, code=e.code, error=e.message)
            return self.state
        except Exception as e:
            self._fail(e, code="UNEXPECTED", error=repr(e))
            return self.state

        if self.state != TurnState.STOPPED:
            self.state = TurnState.SUCCEEDED
        self._log(logging.INFO, "Stream settled", state=self.state.value, fragments=self.fragments)
        return self.state

    def _fail(self, exc: Exception, **fields: Any) -> None:
        self.state = TurnState.FAILED
        self.error = exc
        self._log(logging.ERROR, "Stream failed", exc_info=exc, **fields)
        self._store.replace_last(self._session_id, text=failure_text(self._action))

    def _log(self, level: int, message: str, exc_info: Optional[Exception] = None, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        payload["chat_id"] = self._session_id
        logger.log(level, message, exc_info=exc_info, extra={"extra": payload})

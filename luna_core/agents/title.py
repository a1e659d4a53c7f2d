"""会话标题生成（后台任务，失败只记日志）。"""

from luna_core.domain.exceptions import BusinessError
from luna_core.infrastructure.logging.logger import logger
from luna_core.prompts import render_template
from luna_core.providers.base import RemoteClient
from luna_core.sessions.store import SessionStore


class TitleGenerator:
    def __init__(self, client: RemoteClient, store: SessionStore):
        self._client = client
        self._store = store

    def generate(self, session_id: str, first_message: str) -> None:
        prompt = render_template("title", message=first_message)
        try:
            raw = self._client.generate_text(prompt)
        except BusinessError as e:
            logger.warning(
                "Failed to generate title",
                extra={"extra": {"chat_id": session_id, "code": e.code, "error": e.message}},
            )
            return
        except Exception as e:
            logger.warning(
                "Failed to generate title",
                exc_info=e,
                extra={"extra": {"chat_id": session_id, "code": "UNEXPECTED", "error": repr(e)}},
            )
            return
        title = clean_title(raw)
        if not title:
            return
        if self._store.rename(session_id, title):
            logger.info("Generated title", extra={"extra": {"chat_id": session_id, "title": title}})


def clean_title(raw: str) -> str:
    return (raw or "").strip().replace('"', "")

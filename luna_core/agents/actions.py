"""非对话动作的统一分发。

每个动作（图片生成、图片编辑、视频生成、联网搜索）只提供一个请求函数，
ActionDispatcher 负责统一的消息簿记：

1. 追加带规范标签的用户消息（label 保存干净的提示词）和空占位模型消息；
2. 调用请求函数（可通过 progress 回调改写占位消息的进度文本）；
3. 成功时用结果整体覆盖占位消息，失败时覆盖为错误说明。

动作一旦发出不可取消；会话被切走或删除后，写入由 SessionStore 的守卫丢弃。
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from luna_core.agents.notices import EDIT_DEFAULT_TEXT, VIDEO_PENDING, VIDEO_READY, failure_text
from luna_core.domain.conversation import Attachment, Message
from luna_core.domain.exceptions import BusinessError, MissingPayloadError
from luna_core.domain.models import GroundingChunk
from luna_core.flows.video import VideoGenerationFlow
from luna_core.infrastructure.logging.logger import logger
from luna_core.providers.base import RemoteClient
from luna_core.sessions.store import SessionStore

Progress = Callable[[str], None]


@dataclass
class ActionResult:
    """动作产出的模型消息字段子集。"""

    text: str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    grounding_chunks: Optional[Tuple[GroundingChunk, ...]] = None


ActionRequest = Callable[[Progress], ActionResult]


class ActionDispatcher:
    def __init__(self, store: SessionStore):
        self._store = store

    def dispatch(
        self,
        session_id: str,
        label: str,
        request: ActionRequest,
        prompt: Optional[str] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """执行一个动作并把结果写回会话，返回是否成功。"""

        ctx = dict(log_ctx or {})
        ctx["chat_id"] = session_id
        self._store.append(
            session_id,
            Message(role="user", text=label, label=prompt),
            Message(role="model", text=""),
        )

        def progress(text: str) -> None:
            self._store.replace_last(session_id, text=text)

        try:
            result = request(progress)
        except BusinessError as e:
            self._log(logging.ERROR, "Action failed", ctx, exc_info=e, code=e.code, error=e.message)
            self._store.replace_last(session_id, text=failure_text(label))
            return False
        except Exception as e:
            self._log(logging.ERROR, "Action failed", ctx, exc_info=e, code="UNEXPECTED", error=repr(e))
            self._store.replace_last(session_id, text=failure_text(label))
            return False

        self._store.replace_last(
            session_id,
            text=result.text or "",
            image_url=result.image_url,
            video_url=result.video_url,
            grounding_chunks=result.grounding_chunks,
        )
        self._log(
            logging.INFO,
            "Action completed",
            ctx,
            has_image=bool(result.image_url),
            has_video=bool(result.video_url),
            citations=len(result.grounding_chunks or ()),
        )
        return True

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], exc_info: Optional[Exception] = None, **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, exc_info=exc_info, extra={"extra": payload})


# ---- 各动作的请求函数 ----

def image_request(client: RemoteClient, prompt: str) -> ActionRequest:
    def run(progress: Progress) -> ActionResult:
        image = client.generate_image(prompt)
        return ActionResult(image_url=image.data_uri)

    return run


def edit_image_request(client: RemoteClient, prompt: str, attachment: Attachment) -> ActionRequest:
    def run(progress: Progress) -> ActionResult:
        result = client.edit_image(prompt, attachment)
        inline = result.first_inline_data()
        if inline is None:
            raise MissingPayloadError(code="MISSING_IMAGE", message="API did not return an image.")
        return ActionResult(text=result.text or EDIT_DEFAULT_TEXT, image_url=inline.data_uri)

    return run


def video_request(
    client: RemoteClient,
    prompt: str,
    *,
    interval: Optional[float] = None,
    max_polls: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ActionRequest:
    def run(progress: Progress) -> ActionResult:
        flow = VideoGenerationFlow(
            client,
            interval=interval,
            max_polls=max_polls,
            sleep=sleep,
            on_submitted=lambda op: progress(VIDEO_PENDING),
        )
        video_url = flow.run(prompt)
        return ActionResult(text=VIDEO_READY.format(prompt=prompt), video_url=video_url)

    return run


def search_request(client: RemoteClient, query: str) -> ActionRequest:
    def run(progress: Progress) -> ActionResult:
        result = client.search(query)
        return ActionResult(text=result.text, grounding_chunks=tuple(result.grounding_chunks))

    return run

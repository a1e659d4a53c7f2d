"""LangGraph flow for long-running video generation.

submit -> poll (loop, fixed interval) -> fetch -> END
poll -> END when the operation fails or the poll budget runs out

Sleep and interval are injectable so tests can finish the loop without delay.
"""

from __future__ import annotations

import base64
import time
from typing import Callable, Dict, Optional

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from luna_core.config.settings import settings
from luna_core.domain.exceptions import ApiError, MissingPayloadError
from luna_core.domain.models import VideoOperation
from luna_core.flows.state import VideoJobState
from luna_core.infrastructure.logging.logger import logger
from luna_core.providers.base import RemoteClient

VIDEO_MIME_TYPE = "video/mp4"


class VideoGenerationFlow:
    def __init__(
        self,
        client: RemoteClient,
        *,
        interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_submitted: Optional[Callable[[VideoOperation], None]] = None,
    ):
        self._client = client
        self._interval = interval if interval is not None else settings.video_poll_interval
        self._max_polls = max_polls if max_polls is not None else settings.video_max_polls
        self._sleep = sleep
        self._on_submitted = on_submitted
        self._graph = build_video_graph(self)

    def run(self, prompt: str) -> str:
        """Run the job to completion and return the video as a data URI."""

        state: VideoJobState = {"prompt": prompt, "polls": 0}
        result = self._graph.invoke(state, config={"recursion_limit": self._max_polls + 10})
        if result.get("status") != "ready" or not result.get("video_url"):
            message = result.get("error") or "Video generation failed to produce a link."
            if result.get("error_code") == "MISSING_VIDEO_LINK":
                raise MissingPayloadError(code="MISSING_VIDEO_LINK", message=message)
            raise ApiError(code=result.get("error_code") or "VIDEO_FAILED", message=message)
        return result["video_url"]

    # ---- nodes ----

    def submit_node(self, state: VideoJobState) -> Dict[str, object]:
        op = self._client.start_video(state["prompt"])
        logger.info("video_flow.submitted", extra={"extra": {"operation": op.name}})
        if self._on_submitted is not None:
            self._on_submitted(op)
        update = self._apply(op)
        update["operation"] = op.name
        if update["status"] == "polling":
            update["status"] = "submitted"
        return update

    def poll_node(self, state: VideoJobState) -> Dict[str, object]:
        polls = state.get("polls", 0)
        if polls >= self._max_polls:
            logger.warning("video_flow.timeout", extra={"extra": {"operation": state.get("operation"), "polls": polls}})
            return {
                "status": "failed",
                "error_code": "VIDEO_TIMEOUT",
                "error": f"Video generation did not finish after {polls} polls.",
            }
        self._sleep(self._interval)
        op = self._client.get_video_operation(state["operation"])
        update = self._apply(op)
        update["polls"] = polls + 1
        return update

    def fetch_node(self, state: VideoJobState) -> Dict[str, object]:
        raw = self._client.download(state["video_uri"])
        logger.info("video_flow.fetched", extra={"extra": {"operation": state.get("operation"), "bytes": len(raw)}})
        encoded = base64.b64encode(raw).decode("ascii")
        return {"status": "ready", "video_url": f"data:{VIDEO_MIME_TYPE};base64,{encoded}"}

    @staticmethod
    def _apply(op: VideoOperation) -> Dict[str, object]:
        if not op.done:
            return {"status": "polling"}
        if op.error:
            return {"status": "failed", "error_code": "VIDEO_FAILED", "error": op.error}
        if not op.video_uri:
            return {
                "status": "failed",
                "error_code": "MISSING_VIDEO_LINK",
                "error": "Video generation failed to produce a link.",
            }
        return {"status": "ready", "video_uri": op.video_uri}


def video_router(state: VideoJobState) -> str:
    status = state.get("status")
    if status == "failed":
        return END
    if status == "ready":
        return "fetch"
    return "poll"


def build_video_graph(flow: VideoGenerationFlow) -> CompiledStateGraph:
    graph = StateGraph(VideoJobState)
    graph.add_node("submit", flow.submit_node)
    graph.add_node("poll", flow.poll_node)
    graph.add_node("fetch", flow.fetch_node)
    graph.set_entry_point("submit")
    graph.add_conditional_edges("submit", video_router, {"poll": "poll", "fetch": "fetch", END: END})
    graph.add_conditional_edges("poll", video_router, {"poll": "poll", "fetch": "fetch", END: END})
    graph.add_edge("fetch", END)
    return graph.compile()

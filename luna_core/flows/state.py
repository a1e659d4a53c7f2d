"""State definition for the LangGraph video generation flow."""

from __future__ import annotations

from typing import Literal, Optional, TypedDict

VideoStatus = Literal["submitted", "polling", "ready", "failed"]


class VideoJobState(TypedDict, total=False):
    """State shared across video flow nodes."""

    prompt: str
    operation: str
    status: VideoStatus
    polls: int
    video_uri: Optional[str]
    video_url: Optional[str]
    error: Optional[str]
    error_code: Optional[str]

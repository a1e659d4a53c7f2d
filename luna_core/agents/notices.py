"""写入会话的固定提示文本（失败说明、进度提示、动作标签）。"""

SETUP_FAILURE = "AI client failed to initialize: {reason}"
REMOTE_FAILURE = "Sorry, something went wrong during {action}. Please check the logs for details."
VIDEO_PENDING = "📹 Generating video... This can take a few minutes. I'll update this message when it's ready."
VIDEO_READY = 'Here is your generated video for: "{prompt}"'
EDIT_DEFAULT_TEXT = "Here is the edited image:"

IMAGE_LABEL = 'Imagine: "{prompt}"'
EDIT_LABEL = 'Edit Image: "{prompt}"'
VIDEO_LABEL = 'Create Video: "{prompt}"'
SEARCH_LABEL = 'Search: "{prompt}"'


def setup_failure_text(reason: str) -> str:
    return SETUP_FAILURE.format(reason=reason)


def failure_text(action: str) -> str:
    return REMOTE_FAILURE.format(action=action)

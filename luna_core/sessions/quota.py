"""访客配额策略：未登录用户在单个会话内的消息数达到上限后锁定输入。"""

from typing import Optional

from luna_core.domain.conversation import ChatSession

GUEST_MESSAGE_LIMIT = 5


def is_guest_locked(authenticated: bool, user_turns: int, limit: int = GUEST_MESSAGE_LIMIT) -> bool:
    if authenticated:
        return False
    return user_turns >= limit


def session_locked(authenticated: bool, session: Optional[ChatSession], limit: int = GUEST_MESSAGE_LIMIT) -> bool:
    # 每次读取时按消息列表重新计数，不维护独立计数器
    if session is None:
        return False
    return is_guest_locked(authenticated, session.user_turns, limit)

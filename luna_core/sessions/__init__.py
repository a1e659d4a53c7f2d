"""会话状态：SessionStore（会话与持久化）与访客配额策略。"""

from .quota import is_guest_locked
from .store import SessionStore, storage_key

__all__ = ["SessionStore", "is_guest_locked", "storage_key"]

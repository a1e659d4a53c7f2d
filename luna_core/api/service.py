"""对外 API 服务模块。

提供构造 ChatOrchestrator 的工厂函数：所有依赖（存储、远端客户端）
都在这里显式创建并注入，不使用进程级单例，测试可以直接替换。
"""

from pathlib import Path
from typing import Optional

from luna_core.agents.chat_agent import ChatOrchestrator
from luna_core.config.settings import Settings, settings as default_settings
from luna_core.domain.conversation import HistoryStore
from luna_core.domain.exceptions import ValidationError
from luna_core.infrastructure.logging.logger import logger
from luna_core.infrastructure.storage.json_store import JsonHistoryStore
from luna_core.providers import create_provider
from luna_core.providers.base import RemoteClient
from luna_core.sessions.store import SessionStore


def create_orchestrator(
    user: Optional[str] = None,
    *,
    cfg: Optional[Settings] = None,
    backend: Optional[HistoryStore] = None,
    client: Optional[RemoteClient] = None,
    storage_root: Optional[str | Path] = None,
) -> ChatOrchestrator:
    """创建编排器。

    Args:
        user: 当前登录用户名（None 表示访客）
        cfg: 配置对象，默认使用全局 settings
        backend: 历史存储，默认按 storage_root 创建 JsonHistoryStore
        client: 远端客户端，默认按配置创建 GeminiClient
        storage_root: 覆盖配置中的存储根目录

    Returns:
        ChatOrchestrator；远端客户端构造失败时进入“初始化失败”模式而不是抛出异常。
    """
    cfg = cfg or default_settings
    backend = backend or JsonHistoryStore(root=storage_root or cfg.storage_root)
    store = SessionStore(backend, identity=user)

    setup_error = None
    if client is None:
        try:
            client = create_provider("gemini", cfg)
        except ValidationError as e:
            setup_error = e.message
            logger.error(
                "Failed to initialize remote client",
                extra={"extra": {"code": e.code, "error": e.message}},
            )

    return ChatOrchestrator(
        store,
        client,
        setup_error=setup_error,
        assistant_version=cfg.default_assistant_version,
        guest_limit=cfg.guest_message_limit,
        video_interval=cfg.video_poll_interval,
        video_max_polls=cfg.video_max_polls,
    )

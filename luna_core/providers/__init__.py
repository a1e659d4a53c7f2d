"""远端生成服务集成层。

该包下的模块负责：
- 定义 RemoteClient / ChatContext 抽象接口 (base)。
- 维护逻辑模型名到厂商模型 ID 的映射 (registry)。
- 提供具体实现 (gemini_client)。
"""

from typing import Optional

from luna_core.config.settings import settings
from luna_core.providers.base import RemoteClient
from luna_core.providers.gemini_client import GeminiClient


def create_provider(name: Optional[str] = None, cfg=None) -> RemoteClient:
    """根据名称创建 Provider 实例；缺少凭据时抛出 ValidationError。"""

    provider_name = (name or "gemini").lower()
    if provider_name != "gemini":
        raise KeyError(f"Unknown provider: {provider_name!r}")
    return GeminiClient(cfg or settings)

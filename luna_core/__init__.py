"""Luna Core 顶层包。

该包提供多会话聊天编排的核心实现，
包括配置加载、领域模型、远端服务适配、会话存储、
流式对话、动作分发（图片/视频/搜索）与持久化存储等能力。
"""

from luna_core.agents.chat_agent import ChatOrchestrator
from luna_core.api.service import create_orchestrator

__all__ = ["ChatOrchestrator", "create_orchestrator"]

"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"、"image"。
- provider_model：厂商实际提供的模型 ID，例如 "gemini-2.5-flash"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    default_temperature: Optional[float] = None


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    models={
        # 多轮对话（流式）
        "chat": ModelConfig(logical_name="chat", provider_model="gemini-2.5-flash", default_temperature=0.7),
        # 会话标题
        "title": ModelConfig(logical_name="title", provider_model="gemini-2.5-flash", default_temperature=0.2),
        # 联网搜索增强
        "search": ModelConfig(logical_name="search", provider_model="gemini-2.5-flash"),
        "image": ModelConfig(logical_name="image", provider_model="imagen-4.0-generate-001"),
        "image-edit": ModelConfig(logical_name="image-edit", provider_model="gemini-2.5-flash-image-preview"),
        "video": ModelConfig(logical_name="video", provider_model="veo-2.0-generate-001"),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "gemini": GEMINI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")

"""两种流式后端的模型映射。

会话只使用逻辑模型名，请求发出前才换成后端的模型 ID：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "default"。
- provider_model：厂商实际提供的模型 ID，例如 "gpt-4o-mini"。

未登记的逻辑名会原样作为厂商模型 ID 透传，方便直接指定模型。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """逻辑名到后端模型 ID 的映射，以及该模型的默认生成参数。"""

    logical_name: str
    provider_model: str
    max_tokens: Optional[int] = None
    default_temperature: Optional[float] = None


@dataclass
class ProviderConfig:
    """一个后端：默认地址与登记的模型。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve_model(self, logical_name: Optional[str]) -> ModelConfig:
        key = logical_name or "default"
        if key in self.models:
            return self.models[key]
        return ModelConfig(logical_name=key, provider_model=key)


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "default": ModelConfig(
            logical_name="default",
            provider_model="gpt-4o-mini",
            max_tokens=8192,
            default_temperature=0.2,
        )
    },
)

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    models={
        "default": ModelConfig(
            logical_name="default",
            provider_model="gemini-2.5-flash",
            max_tokens=8192,
            default_temperature=0.2,
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "gemini": GEMINI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """按名称（不区分大小写）查找后端配置。"""

    try:
        return PROVIDER_REGISTRY[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown provider: {name!r}") from None

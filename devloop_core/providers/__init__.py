"""LLM Provider 集成层。

该包下的模块负责：
- 定义流式内容生成协议 (base)。
- 维护 Provider 与模型配置 (registry)。
- SSE 帧解析与 tool_calls 增量累积 (sse、tool_call_accumulator)。
- 提供两种后端的具体实现 (openai_client、gemini_client)。
"""

from typing import Optional

from devloop_core.config.settings import settings
from devloop_core.domain.exceptions import ValidationError
from devloop_core.providers.base import ContentGenerator
from devloop_core.providers.gemini_client import GeminiClient
from devloop_core.providers.openai_client import OpenAICompatibleClient
from devloop_core.providers.registry import get_provider_config

_CLIENTS = {
    "openai": OpenAICompatibleClient,
    "gemini": GeminiClient,
}


def create_provider(name: Optional[str] = None, cfg=None) -> ContentGenerator:
    """根据名称创建 Provider 实例，默认取配置中的 provider。

    名称先在 registry 中解析，客户端使用 registry 给出的 base_url 与模型表。
    """

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    try:
        provider_config = get_provider_config(provider_name)
        client_cls = _CLIENTS[provider_config.name]
    except KeyError:
        raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider_name}") from None
    return client_cls(cfg, provider_config)

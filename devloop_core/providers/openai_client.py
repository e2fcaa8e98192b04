"""OpenAI 兼容接口（SSE）Provider 适配器。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: stream=true，stream_options.include_usage=true

每一帧独立 JSON 解码，解码失败的帧直接跳过；tool_calls 增量交给
ToolCallAccumulator，在 finish_reason 为 tool_calls / stop 时整体产出。
"""

import json
from typing import Any, Dict, Iterator, List, Optional

import httpx

from devloop_core.config.settings import settings
from devloop_core.domain.exceptions import ApiError, BackendError, NetworkError, RateLimitError, ValidationError
from devloop_core.domain.models import (
    ChatRequest,
    ChatUsage,
    StreamEvent,
    TextPart,
    ToolCallRequest,
    ToolCallResult,
    Turn,
)
from devloop_core.infrastructure.logging.logger import logger
from devloop_core.providers.registry import OPENAI_CONFIG, ModelConfig, ProviderConfig
from devloop_core.providers.sse import iter_data_frames, iter_response_lines
from devloop_core.providers.tool_call_accumulator import ToolCallAccumulator
from devloop_core.runtime.cancellation import CancellationToken
from devloop_core.tools.definitions import ToolDef

FINISH_REASONS = ("tool_calls", "stop")


class OpenAICompatibleClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    name = "openai"

    def __init__(self, cfg=settings, provider_config: ProviderConfig = OPENAI_CONFIG):
        self._settings = cfg
        self._provider_config = provider_config

    def generate_stream(
        self,
        req: ChatRequest,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        if not getattr(self._settings, "openai_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        model_cfg = self._provider_config.resolve_model(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "openai_base_url", None) or self._provider_config.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.openai_api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="OpenAI-compatible rate limit")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    yield from self._parse_frames(iter_response_lines(resp, token), token)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 帧解析 ----

    def _parse_frames(self, lines, token: Optional[CancellationToken]) -> Iterator[StreamEvent]:
        accumulator = ToolCallAccumulator()
        for data in iter_data_frames(lines, token):
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("sse.frame_skipped", extra={"extra": {"provider": self.name, "frame": data[:200]}})
                continue
            if not isinstance(chunk, dict):
                continue
            if chunk.get("error"):
                yield StreamEvent.failure(self._backend_error(chunk["error"]))
                return
            for event in self._events_from_chunk(chunk, accumulator):
                yield event
        if accumulator.pending and not (token is not None and token.is_cancelled):
            logger.warning(
                "sse.unfinished_tool_calls",
                extra={"extra": {"provider": self.name, "pending": accumulator.pending}},
            )

    def _events_from_chunk(self, chunk: Dict[str, Any], accumulator: ToolCallAccumulator) -> Iterator[StreamEvent]:
        choices = chunk.get("choices") or []
        if choices:
            choice = choices[0] or {}
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if isinstance(content, str) and content:
                yield StreamEvent.content(content)
            for pos, raw_call in enumerate(delta.get("tool_calls") or []):
                if isinstance(raw_call, dict):
                    accumulator.add_raw_delta(raw_call, fallback_index=pos)
            if choice.get("finish_reason") in FINISH_REASONS:
                for call in accumulator.finalize():
                    yield StreamEvent.tool_call_request(call)
        usage_raw = chunk.get("usage")
        if isinstance(usage_raw, dict) and usage_raw:
            yield StreamEvent.usage_stats(
                ChatUsage(
                    prompt_tokens=usage_raw.get("prompt_tokens") or 0,
                    completion_tokens=usage_raw.get("completion_tokens") or 0,
                    total_tokens=usage_raw.get("total_tokens") or 0,
                )
            )

    @staticmethod
    def _backend_error(raw: Any) -> BackendError:
        if isinstance(raw, dict):
            return BackendError(
                code=str(raw.get("code") or raw.get("type") or "BACKEND_ERROR"),
                message=str(raw.get("message") or raw),
            )
        return BackendError(code="BACKEND_ERROR", message=str(raw))

    # ---- 请求构建 ----

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        msgs: List[Dict[str, Any]] = []
        if req.system_prompt:
            msgs.append({"role": "system", "content": req.system_prompt})
        for turn in req.conversation.turns:
            msgs.extend(self._turn_to_payload(turn))
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": msgs,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = req.max_tokens or model_cfg.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = "auto"
        return payload

    def _turn_to_payload(self, turn: Turn) -> List[Dict[str, Any]]:
        if turn.role == "assistant":
            message: Dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            calls = turn.tool_calls
            if calls:
                message["tool_calls"] = [self._serialize_call(call) for call in calls]
            return [message]

        messages: List[Dict[str, Any]] = []
        for part in turn.parts:
            if isinstance(part, ToolCallResult):
                # 每个结果携带真实的 tool_call_id，与请求一一对应
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.call_id,
                        "content": json.dumps(part.as_model_payload(), ensure_ascii=False),
                    }
                )
            elif isinstance(part, TextPart):
                messages.append({"role": "user", "content": part.text})
        return messages

    @staticmethod
    def _serialize_call(call: ToolCallRequest) -> Dict[str, Any]:
        return {
            "id": call.id,
            "type": "function",
            "function": {
                "name": call.name,
                "arguments": json.dumps(call.arguments, ensure_ascii=False),
            },
        }

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.to_json_schema(),
            },
        }

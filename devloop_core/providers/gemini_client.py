"""Gemini 原生流式接口 Provider 适配器。

- URL: {base_url}/models/{model}:streamGenerateContent?alt=sse
- 认证: x-goog-api-key: <api_key>

与 SSE 兼容接口不同，原生后端的每一帧都是一个完整的 GenerateContentResponse：
functionCall 片段在单帧内即完整，因此逐帧直接产出，无需累积。
usageMetadata 在每帧中都会刷新，流结束时只产出最后一次统计。
"""

import json
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

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
from devloop_core.providers.registry import GEMINI_CONFIG, ModelConfig, ProviderConfig
from devloop_core.providers.sse import iter_data_frames, iter_response_lines
from devloop_core.runtime.cancellation import CancellationToken
from devloop_core.tools.definitions import ToolDef


class GeminiClient:
    """Gemini 原生 Provider 客户端实现。"""

    name = "gemini"

    def __init__(self, cfg=settings, provider_config: ProviderConfig = GEMINI_CONFIG):
        self._settings = cfg
        self._provider_config = provider_config

    def generate_stream(
        self,
        req: ChatRequest,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        if not getattr(self._settings, "gemini_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")
        model_cfg = self._provider_config.resolve_model(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, "gemini_base_url", None) or self._provider_config.base_url
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{base.rstrip('/')}/models/{model_cfg.provider_model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                    headers={
                        "x-goog-api-key": self._settings.gemini_api_key,
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="Gemini rate limit")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    yield from self._parse_frames(iter_response_lines(resp, token), token)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 帧解析 ----

    def _parse_frames(self, lines, token: Optional[CancellationToken]) -> Iterator[StreamEvent]:
        usage: Optional[ChatUsage] = None
        for data in iter_data_frames(lines, token):
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("sse.frame_skipped", extra={"extra": {"provider": self.name, "frame": data[:200]}})
                continue
            if not isinstance(frame, dict):
                continue
            if frame.get("error"):
                raw = frame["error"]
                if isinstance(raw, dict):
                    err = BackendError(code=str(raw.get("status") or "BACKEND_ERROR"), message=str(raw.get("message") or raw))
                else:
                    err = BackendError(code="BACKEND_ERROR", message=str(raw))
                yield StreamEvent.failure(err)
                return
            for event in self._events_from_frame(frame):
                yield event
            meta = frame.get("usageMetadata")
            if isinstance(meta, dict) and meta:
                usage = ChatUsage(
                    prompt_tokens=meta.get("promptTokenCount") or 0,
                    completion_tokens=meta.get("candidatesTokenCount") or 0,
                    total_tokens=meta.get("totalTokenCount") or 0,
                )
        if token is not None and token.is_cancelled:
            return
        if usage is not None:
            yield StreamEvent.usage_stats(usage)

    def _events_from_frame(self, frame: Dict[str, Any]) -> Iterator[StreamEvent]:
        candidates = frame.get("candidates") or []
        if not candidates:
            return
        content = (candidates[0] or {}).get("content") or {}
        for part in content.get("parts") or []:
            if not isinstance(part, dict) or part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                yield StreamEvent.content(text)
            call = part.get("functionCall")
            if isinstance(call, dict) and call.get("name"):
                args = call.get("args")
                yield StreamEvent.tool_call_request(
                    ToolCallRequest(
                        id=call.get("id") or f"{call['name']}-{uuid4().hex[:12]}",
                        name=call["name"],
                        arguments=args if isinstance(args, dict) else {},
                    )
                )

    # ---- 请求构建 ----

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        payload: Dict[str, Any] = {
            "contents": [self._turn_to_content(turn) for turn in req.conversation.turns],
        }
        if req.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": req.system_prompt}]}
        generation: Dict[str, Any] = {}
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            generation["temperature"] = temperature
        max_tokens = req.max_tokens or model_cfg.max_tokens
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        if generation:
            payload["generationConfig"] = generation
        if req.tools:
            payload["tools"] = [{"functionDeclarations": [self._serialize_tool(tool) for tool in req.tools]}]
        return payload

    @staticmethod
    def _turn_to_content(turn: Turn) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ToolCallRequest):
                parts.append({"functionCall": {"id": part.id, "name": part.name, "args": part.arguments}})
            elif isinstance(part, ToolCallResult):
                parts.append(
                    {
                        "functionResponse": {
                            "id": part.call_id,
                            "name": part.name,
                            "response": part.as_model_payload(),
                        }
                    }
                )
        return {"role": "model" if turn.role == "assistant" else "user", "parts": parts}

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.to_json_schema(),
        }

"""会话驱动核心模块。

实现单个会话的轮次循环：

    AwaitingModel → StreamingResponse → {ToolCallsPending → ExecutingTools → AwaitingModel}
                                      | {NoToolCalls → TurnComplete}

终止状态：COMPLETED（TurnComplete）、ABORTED、STOPPED（工具返回 STOP_EXECUTION）、
MAX_TURNS_EXCEEDED、LOOP_DETECTED。后端的 error 事件不在本地吸收，直接抛给调用方。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

from devloop_core.agents.loop_detection import LoopDetector
from devloop_core.domain.conversation import ConversationState
from devloop_core.domain.exceptions import BackendError, FatalToolExecutionError
from devloop_core.domain.models import ChatRequest, ToolCallRequest, ToolCallResult, ToolErrorKind
from devloop_core.infrastructure.logging.logger import logger
from devloop_core.output.formatters import SessionOutput
from devloop_core.providers.base import ContentGenerator
from devloop_core.runtime.cancellation import CancellationToken
from devloop_core.tools.executor import ToolExecutor

LOOP_DETECTED_MESSAGE = "Loop detected, stopping execution"
MAX_TURNS_MESSAGE = "Maximum session turns exceeded"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    STOPPED = "stopped"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"
    LOOP_DETECTED = "loop_detected"


@dataclass
class DriverConfig:
    provider: str
    model: str
    max_session_turns: int = -1  # -1 表示不限制
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None


@dataclass
class DriverOutcome:
    status: SessionStatus
    message: Optional[str] = None
    turns: int = 0


@dataclass
class _ModelResponse:
    """一次流式响应的累积结果。"""

    pieces: List[str] = field(default_factory=list)
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    aborted: bool = False
    loop_detected: bool = False
    max_turns_exceeded: bool = False

    @property
    def text(self) -> str:
        return "".join(self.pieces)


class ConversationDriver:
    def __init__(
        self,
        provider: ContentGenerator,
        tool_executor: ToolExecutor,
        output: SessionOutput,
        token: CancellationToken,
        config: DriverConfig,
        loop_detector: Optional[LoopDetector] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self._provider = provider
        self._tool_executor = tool_executor
        self._output = output
        self._token = token
        self._config = config
        self._loop_detector = loop_detector or LoopDetector()
        self._log_ctx = dict(log_ctx or {})
        self._state = ConversationState()
        self._turn_count = 0

    @property
    def conversation(self) -> ConversationState:
        return self._state

    @property
    def turn_count(self) -> int:
        return self._turn_count

    def run(self, message: str) -> DriverOutcome:
        """追加一条用户消息并运行到本轮次序列结束。

        轮数计数在整个会话内累计（dev-loop 的重试也计入）。
        """

        self._state.append_user_text(message)
        self._output.user_message(message)

        while True:
            self._turn_count += 1
            limit = self._config.max_session_turns
            if limit >= 0 and self._turn_count > limit:
                self._log(logging.WARNING, "Max session turns exceeded", turn=self._turn_count, limit=limit)
                self._output.warning(MAX_TURNS_MESSAGE)
                return self._outcome(SessionStatus.MAX_TURNS_EXCEEDED, MAX_TURNS_MESSAGE)
            if self._token.is_cancelled:
                return self._outcome(SessionStatus.ABORTED)

            response = self._stream_response()
            if response.aborted:
                return self._outcome(SessionStatus.ABORTED)
            if response.loop_detected:
                self._output.warning(LOOP_DETECTED_MESSAGE)
                return self._outcome(SessionStatus.LOOP_DETECTED, LOOP_DETECTED_MESSAGE)
            if response.max_turns_exceeded:
                self._output.warning(MAX_TURNS_MESSAGE)
                return self._outcome(SessionStatus.MAX_TURNS_EXCEEDED, MAX_TURNS_MESSAGE)

            self._state.append_assistant(response.text, response.tool_calls)
            if not response.tool_calls:
                self._log(logging.INFO, "Turn complete", turn=self._turn_count)
                return self._outcome(SessionStatus.COMPLETED)

            results, stop = self._execute_tools(response.tool_calls)
            if stop is not None:
                return stop
            self._state.append_tool_results(results)

    # ---- 流式响应 ----

    def _stream_response(self) -> _ModelResponse:
        req = ChatRequest(
            provider=self._config.provider,
            model=self._config.model,
            conversation=self._state,
            system_prompt=self._config.system_prompt,
            temperature=self._config.temperature,
            tools=self._tool_executor.tool_defs or None,
        )
        self._log(
            logging.INFO,
            "Calling provider (stream)",
            provider=self._config.provider,
            model=self._config.model,
            turn=self._turn_count,
            turn_count=len(self._state.turns),
        )
        response = _ModelResponse()
        stream = self._provider.generate_stream(req, self._token)
        try:
            for event in stream:
                if self._token.is_cancelled:
                    response.aborted = True
                    break
                if self._loop_detector.observe(event):
                    self._log(logging.WARNING, "Loop detected", event_kind=event.kind)
                    response.loop_detected = True
                    break
                if event.kind == "content" and event.text:
                    response.pieces.append(event.text)
                    self._output.content(event.text)
                elif event.kind == "tool_call_request" and event.tool_call is not None:
                    response.tool_calls.append(event.tool_call)
                    self._output.tool_use(event.tool_call)
                elif event.kind == "usage" and event.usage is not None:
                    self._output.usage(event.usage)
                    self._log(logging.INFO, "Token usage", total_tokens=event.usage.total_tokens)
                elif event.kind == "error":
                    if isinstance(event.error, Exception):
                        raise event.error
                    raise BackendError(code="BACKEND_ERROR", message=str(event.error))
                elif event.kind == "loop_detected":
                    response.loop_detected = True
                    break
                elif event.kind == "max_turns_exceeded":
                    response.max_turns_exceeded = True
                    break
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
        if self._token.is_cancelled:
            response.aborted = True
        return response

    # ---- 工具执行 ----

    def _execute_tools(
        self, calls: List[ToolCallRequest]
    ) -> Tuple[List[ToolCallResult], Optional[DriverOutcome]]:
        """严格按请求顺序逐个执行工具。"""

        self._log(logging.INFO, "Executing tool calls", call_count=len(calls))
        results: List[ToolCallResult] = []
        for call in calls:
            if self._token.is_cancelled:
                return results, self._outcome(SessionStatus.ABORTED)
            self._log(
                logging.INFO,
                "Tool call received",
                tool_name=call.name,
                tool_call_id=call.id,
                tool_args=call.arguments,
            )
            result = self._tool_executor.execute(call, self._token)
            self._output.tool_result(call, result)
            self._log(
                logging.INFO if result.ok else logging.WARNING,
                "Tool execution finished",
                tool_call_id=call.id,
                error_kind=result.error_kind,
                result_preview=(result.output or result.error or "")[:200],
            )
            if result.error_kind == ToolErrorKind.CANCELLED and self._token.is_cancelled:
                return results, self._outcome(SessionStatus.ABORTED)
            if result.error_kind in ToolErrorKind.FATAL:
                raise FatalToolExecutionError(code=result.error_kind, message=result.error or "Tool failed")
            if result.error_kind == ToolErrorKind.STOP_EXECUTION:
                message = f"Agent execution stopped: {result.error}"
                self._output.info(message)
                return results, self._outcome(SessionStatus.STOPPED, message)
            results.append(result)
        return results, None

    def _outcome(self, status: SessionStatus, message: Optional[str] = None) -> DriverOutcome:
        return DriverOutcome(status=status, message=message, turns=self._turn_count)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

"""会话输出格式。

每个会话只启用一种格式：
- text: 内容增量直接写 stdout，诊断信息写 stderr。
- json: 会话结束时输出一个 JSON 对象 {session_id, response, stats}。
- stream-json: 每行一个 JSON 事件（init / message / tool_use / tool_result / error / result）。
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TextIO

from devloop_core.domain.models import ChatUsage, ToolCallRequest, ToolCallResult


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SessionStats:
    """整个会话的累计统计（跨轮次、跨 dev-loop 迭代）。"""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def add_usage(self, usage: ChatUsage) -> None:
        self.input_tokens += usage.prompt_tokens
        self.output_tokens += usage.completion_tokens
        self.total_tokens += usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "duration_ms": int((time.monotonic() - self.started_at) * 1000),
            "tool_calls": self.tool_calls,
            "tool_errors": self.tool_errors,
        }


class SessionOutput:
    """输出格式基类：默认实现即 text 模式的行为。"""

    format_name = "text"

    def __init__(self, stdout: TextIO, stderr: TextIO, session_id: str, model: str = ""):
        self.stdout = stdout
        self.stderr = stderr
        self.session_id = session_id
        self.model = model
        self.stats = SessionStats()
        self._last_char = "\n"

    # ---- 会话生命周期 ----

    def start(self) -> None:
        pass

    def user_message(self, text: str) -> None:
        pass

    def content(self, text: str) -> None:
        self._write_stdout(text)

    def tool_use(self, call: ToolCallRequest) -> None:
        self.stats.tool_calls += 1

    def tool_result(self, call: ToolCallRequest, result: ToolCallResult) -> None:
        if not result.ok:
            self.stats.tool_errors += 1
            self.stderr.write(f"Error executing tool {call.name}: {result.error}\n")

    def usage(self, usage: ChatUsage) -> None:
        self.stats.add_usage(usage)

    def notice(self, text: str) -> None:
        """dev-loop 进度等面向用户的说明文本。"""

        self._write_stdout(text)

    def info(self, message: str) -> None:
        self.stderr.write(f"{message}\n")

    def warning(self, message: str) -> None:
        self.stderr.write(f"{message}\n")

    def error(self, error_type: str, message: str, code: Optional[int] = None) -> None:
        self.stderr.write(f"{message}\n")

    def finish(self) -> None:
        if self._last_char != "\n":
            self._write_stdout("\n")
        self.stdout.flush()

    def _write_stdout(self, text: str) -> None:
        if not text:
            return
        self.stdout.write(text)
        self.stdout.flush()
        self._last_char = text[-1]


class TextOutput(SessionOutput):
    format_name = "text"


class JsonOutput(SessionOutput):
    """会话结束时一次性输出完整结果。"""

    format_name = "json"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._pieces: List[str] = []
        self._failed = False

    def content(self, text: str) -> None:
        self._pieces.append(text)

    def notice(self, text: str) -> None:
        self.stderr.write(text)

    @property
    def response_text(self) -> str:
        return "".join(self._pieces)

    def error(self, error_type: str, message: str, code: Optional[int] = None) -> None:
        self._failed = True
        payload: Dict[str, Any] = {
            "session_id": self.session_id,
            "error": {"type": error_type, "message": message},
        }
        if code is not None:
            payload["error"]["code"] = code
        self.stderr.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

    def finish(self) -> None:
        if self._failed:
            return
        payload = {
            "session_id": self.session_id,
            "response": self.response_text,
            "stats": self.stats.to_dict(),
        }
        self.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
        self.stdout.flush()


class StreamJsonOutput(SessionOutput):
    """逐行输出结构化事件。"""

    format_name = "stream-json"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._failed = False

    def emit(self, event_type: str, **fields: Any) -> None:
        payload = {"type": event_type, "timestamp": _utcnow()}
        payload.update(fields)
        self.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self.stdout.flush()

    def start(self) -> None:
        self.emit("init", session_id=self.session_id, model=self.model)

    def user_message(self, text: str) -> None:
        self.emit("message", role="user", content=text)

    def content(self, text: str) -> None:
        self.emit("message", role="assistant", content=text, delta=True)

    def tool_use(self, call: ToolCallRequest) -> None:
        super().tool_use(call)
        self.emit("tool_use", tool_name=call.name, tool_id=call.id, parameters=call.arguments)

    def tool_result(self, call: ToolCallRequest, result: ToolCallResult) -> None:
        if result.ok:
            self.emit("tool_result", tool_id=call.id, status="success", output=result.output or "")
            return
        self.stats.tool_errors += 1
        self.emit(
            "tool_result",
            tool_id=call.id,
            status="error",
            output=result.error,
            error={"type": result.error_kind, "message": result.error},
        )

    def notice(self, text: str) -> None:
        self.stderr.write(text)

    def warning(self, message: str) -> None:
        self.emit("error", severity="warning", message=message)

    def error(self, error_type: str, message: str, code: Optional[int] = None) -> None:
        self._failed = True
        self.emit("error", severity="error", message=message)
        error: Dict[str, Any] = {"type": error_type, "message": message}
        if code is not None:
            error["code"] = code
        self.emit("result", status="error", error=error, stats=self.stats.to_dict())

    def finish(self) -> None:
        if not self._failed:
            self.emit("result", status="success", stats=self.stats.to_dict())


OUTPUT_CLASSES = {
    "text": TextOutput,
    "json": JsonOutput,
    "stream-json": StreamJsonOutput,
}


def create_output(
    output_format: str,
    stdout: TextIO,
    stderr: TextIO,
    session_id: str,
    model: str = "",
) -> SessionOutput:
    try:
        cls = OUTPUT_CLASSES[output_format]
    except KeyError:
        raise ValueError(f"Unknown output format: {output_format!r}") from None
    return cls(stdout, stderr, session_id, model)

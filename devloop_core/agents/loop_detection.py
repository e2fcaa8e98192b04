"""模型输出循环检测。

两种信号：
- 同一个工具调用（名称 + 规范化参数）连续出现 TOOL_CALL_LOOP_THRESHOLD 次；
- 同一段内容增量连续出现 CONTENT_LOOP_THRESHOLD 次。

检测器跨轮次保留状态，只在会话开始时新建。
"""

import hashlib
import json
from typing import Optional

from devloop_core.domain.models import StreamEvent, ToolCallRequest

TOOL_CALL_LOOP_THRESHOLD = 5
CONTENT_LOOP_THRESHOLD = 10
MIN_CONTENT_CHUNK = 8


class LoopDetector:
    def __init__(
        self,
        tool_call_threshold: int = TOOL_CALL_LOOP_THRESHOLD,
        content_threshold: int = CONTENT_LOOP_THRESHOLD,
    ):
        self._tool_call_threshold = tool_call_threshold
        self._content_threshold = content_threshold
        self._last_call_key: Optional[str] = None
        self._call_repeats = 0
        self._last_chunk: Optional[str] = None
        self._chunk_repeats = 0

    def observe(self, event: StreamEvent) -> bool:
        """返回 True 表示检测到循环。"""

        if event.kind == "tool_call_request" and event.tool_call is not None:
            return self._observe_call(event.tool_call)
        if event.kind == "content" and event.text:
            return self._observe_content(event.text)
        return False

    def reset(self) -> None:
        self._last_call_key = None
        self._call_repeats = 0
        self._last_chunk = None
        self._chunk_repeats = 0

    def _observe_call(self, call: ToolCallRequest) -> bool:
        key = _call_key(call)
        if key == self._last_call_key:
            self._call_repeats += 1
        else:
            self._last_call_key = key
            self._call_repeats = 1
        return self._call_repeats >= self._tool_call_threshold

    def _observe_content(self, text: str) -> bool:
        chunk = text.strip()
        if len(chunk) < MIN_CONTENT_CHUNK:
            return False
        if chunk == self._last_chunk:
            self._chunk_repeats += 1
        else:
            self._last_chunk = chunk
            self._chunk_repeats = 1
        return self._chunk_repeats >= self._content_threshold


def _call_key(call: ToolCallRequest) -> str:
    raw = json.dumps({"name": call.name, "args": call.arguments}, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()

"""流式 tool_calls 增量的累积器。

OpenAI 兼容接口把一次工具调用拆成多个 delta，通过 index 定位：
name 增量覆盖，arguments 增量拼接（从不替换）。只有在轮次结束信号
（finish_reason 为 tool_calls / stop）到来时才整体解析 JSON。
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from devloop_core.domain.models import ToolCallRequest
from devloop_core.infrastructure.logging.logger import logger


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    def __init__(self) -> None:
        self._calls: Dict[int, _PendingCall] = {}

    @property
    def pending(self) -> int:
        return len(self._calls)

    def add_delta(
        self,
        index: int,
        *,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> None:
        slot = self._calls.setdefault(index, _PendingCall())
        if call_id and not slot.id:
            slot.id = call_id
        if name:
            slot.name = name
        if arguments:
            slot.arguments += arguments

    def add_raw_delta(self, raw: Dict[str, Any], fallback_index: int = 0) -> None:
        """接受 wire 格式的单个 tool_calls 元素。"""

        func = raw.get("function") or {}
        index = raw.get("index")
        if not isinstance(index, int):
            index = fallback_index
        self.add_delta(
            index,
            call_id=raw.get("id"),
            name=func.get("name"),
            arguments=func.get("arguments") if isinstance(func.get("arguments"), str) else None,
        )

    def finalize(self) -> List[ToolCallRequest]:
        """按 index 顺序产出完整调用，并清空状态。

        name 为空的条目以及 arguments 不是合法 JSON 对象的条目被丢弃。
        """

        requests: List[ToolCallRequest] = []
        for index in sorted(self._calls):
            slot = self._calls[index]
            if not slot.name:
                continue
            if slot.arguments.strip():
                try:
                    args = json.loads(slot.arguments)
                except json.JSONDecodeError:
                    logger.debug(
                        "tool_call.malformed_arguments",
                        extra={"extra": {"index": index, "tool_name": slot.name}},
                    )
                    continue
                if not isinstance(args, dict):
                    continue
            else:
                args = {}
            requests.append(
                ToolCallRequest(
                    id=slot.id or f"call_{index}_{uuid4().hex[:8]}",
                    name=slot.name,
                    arguments=args,
                )
            )
        self._calls.clear()
        return requests

    def clear(self) -> None:
        self._calls.clear()

"""单个会话的对话状态。

ConversationState 只由 ConversationDriver 修改，不在并发会话之间共享。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .exceptions import ConversationOrderError
from .models import TextPart, ToolCallRequest, ToolCallResult, Turn


@dataclass
class ConversationState:
    turns: List[Turn] = field(default_factory=list)

    def append_user_text(self, text: str) -> Turn:
        turn = Turn(role="user", parts=[TextPart(text=text)])
        self.turns.append(turn)
        return turn

    def append_assistant(self, text: str, tool_calls: Sequence[ToolCallRequest]) -> Turn:
        parts: list = []
        if text:
            parts.append(TextPart(text=text))
        parts.extend(tool_calls)
        turn = Turn(role="assistant", parts=parts)
        self.turns.append(turn)
        return turn

    def append_tool_results(self, results: Sequence[ToolCallResult]) -> Turn:
        """把工具结果折叠成一条新的 user 轮次。

        结果必须一一对应上一条 assistant 轮次中的调用请求，且顺序相同。
        """

        last = self.last_turn
        if last is None or last.role != "assistant":
            raise ConversationOrderError(
                code="CONVERSATION_ORDER",
                message="Tool results must follow an assistant turn",
            )
        expected = [call.id for call in last.tool_calls]
        actual = [result.call_id for result in results]
        if expected != actual:
            raise ConversationOrderError(
                code="CONVERSATION_ORDER",
                message=f"Tool results {actual} do not match requests {expected}",
            )
        turn = Turn(role="user", parts=list(results))
        self.turns.append(turn)
        return turn

    @property
    def last_turn(self) -> Optional[Turn]:
        return self.turns[-1] if self.turns else None

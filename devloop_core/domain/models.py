"""统一的会话与流式事件数据模型。

本模块定义了驱动层与各 Provider 适配器之间共享的标准数据结构：

- Turn / Part: 会话中的一轮（user 或 assistant）及其有序片段
  （文本、工具调用请求、工具调用结果）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- StreamEvent: 适配器产出的有序、一次性消费的流式事件。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 wire 格式和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from devloop_core.domain.conversation import ConversationState
    from devloop_core.tools.definitions import ToolDef


# 会话角色：tool 结果折叠进 user 轮次，因此只有两种
Role = Literal["user", "assistant"]


class ToolErrorKind:
    """工具错误分类。STOP_EXECUTION 会让整个会话立即结束。"""

    STOP_EXECUTION = "STOP_EXECUTION"
    TOOL_NOT_REGISTERED = "TOOL_NOT_REGISTERED"
    INVALID_TOOL_PARAMS = "INVALID_TOOL_PARAMS"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    NO_SPACE_LEFT = "NO_SPACE_LEFT"
    CANCELLED = "CANCELLED"

    FATAL = frozenset({NO_SPACE_LEFT})


@dataclass
class TextPart:
    text: str


@dataclass
class ToolCallRequest:
    """模型发起的一次工具调用请求（参数已完整解析）。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallResult:
    """一次工具调用的结果。

    - call_id: 对应 ToolCallRequest.id。
    - output: 成功时的文本输出。
    - error / error_kind: 失败时的信息与分类（见 ToolErrorKind）。
    """

    call_id: str
    name: str
    output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_model_payload(self) -> Dict[str, Any]:
        """回传给模型的结构化内容。"""

        if self.ok:
            return {"output": self.output or ""}
        return {"error": self.error, "error_kind": self.error_kind}


Part = Union[TextPart, ToolCallRequest, ToolCallResult]


@dataclass
class Turn:
    role: Role
    parts: List[Part] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> List[ToolCallRequest]:
        return [p for p in self.parts if isinstance(p, ToolCallRequest)]

    @property
    def tool_results(self) -> List[ToolCallResult]:
        return [p for p in self.parts if isinstance(p, ToolCallResult)]


@dataclass
class ChatRequest:
    """一次完整的流式请求。

    驱动层把当前 ConversationState 交给具体 ContentGenerator，
    Provider 适配层负责把它转换成各家 API 的 JSON 请求体。
    """

    provider: str  # 逻辑 Provider 名，如 "openai"
    model: str  # 逻辑模型名（再由 registry 映射为真实模型名）
    conversation: "ConversationState"
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List["ToolDef"]] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


StreamEventKind = Literal[
    "content",
    "tool_call_request",
    "error",
    "loop_detected",
    "max_turns_exceeded",
    "usage",
]


@dataclass
class StreamEvent:
    """适配器产出的流式事件。

    kind:
        - "content": 文本增量，text 字段有值。
        - "tool_call_request": 一次完整的工具调用请求，tool_call 字段有值。
        - "error": 后端显式错误，error 字段为异常对象，由驱动层重新抛出。
        - "loop_detected" / "max_turns_exceeded": 终止信号。
        - "usage": token 统计，usage 字段有值。
    """

    kind: StreamEventKind
    text: Optional[str] = None
    tool_call: Optional[ToolCallRequest] = None
    error: Optional[Exception] = None
    usage: Optional[ChatUsage] = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(kind="content", text=text)

    @classmethod
    def tool_call_request(cls, call: ToolCallRequest) -> "StreamEvent":
        return cls(kind="tool_call_request", tool_call=call)

    @classmethod
    def failure(cls, error: Exception) -> "StreamEvent":
        return cls(kind="error", error=error)

    @classmethod
    def usage_stats(cls, usage: ChatUsage) -> "StreamEvent":
        return cls(kind="usage", usage=usage)

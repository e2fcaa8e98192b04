"""Provider 抽象接口。

驱动层 ConversationDriver 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每种后端实现一个 ContentGenerator（SSE 兼容接口、原生结构化流式接口）。
- 负责：将 ChatRequest 转成具体 API 请求，并把流式响应解析为有序的 StreamEvent。

驱动层只针对这个接口编写一次。
"""

from typing import Iterator, Optional, Protocol

from devloop_core.domain.models import ChatRequest, StreamEvent
from devloop_core.runtime.cancellation import CancellationToken


class ContentGenerator(Protocol):
    """流式内容生成协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - generate_stream(req, token): 返回惰性、有序、有限、不可重放的事件序列；
      token 被设置后必须在帧之间尽快结束序列，且不抛异常。
    """

    name: str

    def generate_stream(
        self,
        req: ChatRequest,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        ...

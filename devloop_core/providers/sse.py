"""SSE 行协议解析。

只处理 `data:` 帧；`[DONE]` 哨兵结束序列；token 被设置后在下一帧之前返回。
后端卡住不发数据时，取消会直接关闭响应，使阻塞中的读取立即返回。
"""

from typing import Iterable, Iterator, Optional

import httpx

from devloop_core.runtime.cancellation import CancellationToken

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def iter_response_lines(resp: httpx.Response, token: Optional[CancellationToken] = None) -> Iterator[str]:
    """逐行读取响应；取消时关闭连接并安静结束。"""

    unregister = token.on_cancel(resp.close) if token is not None else None
    try:
        for line in resp.iter_lines():
            yield line
    except (httpx.HTTPError, httpx.StreamError):
        if token is not None and token.is_cancelled:
            return
        raise
    finally:
        if unregister is not None:
            unregister()


def iter_data_frames(lines: Iterable[str], token: Optional[CancellationToken] = None) -> Iterator[str]:
    for line in lines:
        if token is not None and token.is_cancelled:
            return
        if not line or not line.startswith(DATA_PREFIX):
            continue
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            return
        if data:
            yield data

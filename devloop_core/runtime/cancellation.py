"""会话级取消控制。

CancellationToken 是一个只能写一次的中止标志，附带广播回调；
CancellationController 负责把外部中断（Ctrl-C / SIGINT）转换成对 token 的设置，
并在 200ms 宽限期后才提示 "Cancelling..."，避免快速取消时的噪声输出。

每个会话创建自己的 controller，通过构造函数注入各组件，不使用全局状态。
"""

from __future__ import annotations

import signal
import sys
import threading
from typing import Callable, List, Optional, TextIO

from devloop_core.domain.exceptions import FatalCancellationError
from devloop_core.infrastructure.logging.logger import logger

CANCEL_NOTICE = "\nCancelling...\n"


class CancellationToken:
    """写一次、不可重置的中止标志。"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """设置中止标志。只有第一次调用返回 True 并触发回调。"""

        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001 - 回调失败不能阻断其余订阅者
                logger.exception("cancel callback failed")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FatalCancellationError(code="CANCELLED", message="Operation cancelled.")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """注册取消回调，返回注销函数。已取消时立即执行。"""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None


class CancellationController:
    """拥有会话唯一的 CancellationToken，并负责外部状态的恢复。

    - install(): 在主线程接管 SIGINT。
    - interrupt(): 设置 token，启动宽限期定时器。
    - restore(): 撤销定时器并恢复原 SIGINT 处理器，只执行一次。
    """

    def __init__(self, notice_delay_ms: int = 200, stderr: Optional[TextIO] = None):
        self.token = CancellationToken()
        self._notice_delay = max(0, notice_delay_ms) / 1000.0
        self._stderr = stderr
        self._timer: Optional[threading.Timer] = None
        self._previous_handler = None
        self._installed = False
        self._restored = False
        self._lock = threading.Lock()

    def install(self) -> "CancellationController":
        if self._installed or threading.current_thread() is not threading.main_thread():
            return self
        self._previous_handler = signal.getsignal(signal.SIGINT)
        signal.signal(signal.SIGINT, self._handle_signal)
        self._installed = True
        return self

    def interrupt(self) -> None:
        if not self.token.cancel():
            return
        logger.info("cancellation requested")
        with self._lock:
            if self._restored:
                return
            self._timer = threading.Timer(self._notice_delay, self._write_notice)
            self._timer.daemon = True
            self._timer.start()

    def restore(self) -> None:
        with self._lock:
            if self._restored:
                return
            self._restored = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if self._installed:
            signal.signal(signal.SIGINT, self._previous_handler or signal.default_int_handler)
            self._installed = False

    def __enter__(self) -> "CancellationController":
        return self.install()

    def __exit__(self, *exc) -> bool:
        self.restore()
        return False

    def _handle_signal(self, signum, frame) -> None:
        # 信号处理函数运行在主线程上，可能打断正持有锁的代码；锁只能在另一线程里取。
        threading.Thread(target=self.interrupt, name="cancel-interrupt", daemon=True).start()

    def _write_notice(self) -> None:
        with self._lock:
            if self._restored:
                return
        stream = self._stderr or sys.stderr
        stream.write(CANCEL_NOTICE)
        stream.flush()

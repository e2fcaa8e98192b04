import io
import signal
import time

import pytest

from devloop_core.domain.exceptions import FatalCancellationError
from devloop_core.runtime.cancellation import CANCEL_NOTICE, CancellationController, CancellationToken


def test_token_is_write_once():
    token = CancellationToken()
    calls = []
    token.on_cancel(lambda: calls.append("a"))
    unregister = token.on_cancel(lambda: calls.append("b"))
    unregister()

    assert not token.is_cancelled
    token.raise_if_cancelled()
    assert token.cancel() is True
    assert token.cancel() is False
    assert token.is_cancelled
    assert calls == ["a"]

    token.on_cancel(lambda: calls.append("late"))
    assert calls == ["a", "late"]
    with pytest.raises(FatalCancellationError) as exc_info:
        token.raise_if_cancelled()
    assert exc_info.value.exit_code == 130


def test_failing_callback_does_not_block_others():
    token = CancellationToken()
    calls = []

    def boom():
        raise RuntimeError("x")

    token.on_cancel(boom)
    token.on_cancel(lambda: calls.append(1))
    token.cancel()
    assert calls == [1]


def test_notice_appears_after_grace_period():
    stderr = io.StringIO()
    controller = CancellationController(notice_delay_ms=20, stderr=stderr)
    controller.interrupt()
    assert controller.token.is_cancelled
    deadline = time.monotonic() + 2
    while CANCEL_NOTICE not in stderr.getvalue() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert stderr.getvalue() == CANCEL_NOTICE
    controller.interrupt()
    controller.restore()
    assert stderr.getvalue() == CANCEL_NOTICE


def test_fast_restore_suppresses_notice():
    stderr = io.StringIO()
    controller = CancellationController(notice_delay_ms=200, stderr=stderr)
    controller.interrupt()
    controller.restore()
    controller.restore()
    time.sleep(0.3)
    assert stderr.getvalue() == ""


def test_sigint_handler_is_installed_and_restored():
    before = signal.getsignal(signal.SIGINT)
    with CancellationController(stderr=io.StringIO()) as controller:
        assert signal.getsignal(signal.SIGINT) != before
        signal.raise_signal(signal.SIGINT)
        assert controller.token.wait(1)
    assert signal.getsignal(signal.SIGINT) == before


@pytest.mark.parametrize("held", ["token", "controller"])
def test_signal_arriving_while_lock_is_held_does_not_deadlock(held):
    controller = CancellationController(stderr=io.StringIO())
    lock = controller.token._lock if held == "token" else controller._lock
    with lock:
        controller._handle_signal(signal.SIGINT, None)
        assert not controller.token.is_cancelled
    assert controller.token.wait(1)
    controller.restore()

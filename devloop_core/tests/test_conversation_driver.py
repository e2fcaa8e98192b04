import errno
import io

import pytest

from devloop_core.agents.conversation_driver import (
    LOOP_DETECTED_MESSAGE,
    ConversationDriver,
    DriverConfig,
    SessionStatus,
)
from devloop_core.domain.exceptions import BackendError, FatalToolExecutionError
from devloop_core.domain.models import StreamEvent, ToolCallRequest, ToolErrorKind
from devloop_core.output.formatters import TextOutput
from devloop_core.runtime.cancellation import CancellationToken
from devloop_core.tools.executor import StopExecution, ToolExecutor


class FakeProvider:
    """每次调用按顺序回放一组事件；事件也可以是可调用对象（用来在流中途触发副作用）。"""

    name = "fake"

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.requests = []

    def generate_stream(self, req, token=None):
        self.requests.append([(t.role, list(t.parts)) for t in req.conversation.turns])
        script = self.scripts.pop(0)
        for item in script:
            if callable(item):
                item(token)
                continue
            yield item


def _call(call_id, name, **args):
    return StreamEvent.tool_call_request(ToolCallRequest(id=call_id, name=name, arguments=args))


def _driver(provider, tools, max_turns=-1, token=None):
    stdout, stderr = io.StringIO(), io.StringIO()
    output = TextOutput(stdout, stderr, "s-test")
    driver = ConversationDriver(
        provider,
        ToolExecutor(tools),
        output,
        token or CancellationToken(),
        DriverConfig(provider="fake", model="default", max_session_turns=max_turns),
    )
    return driver, stdout, stderr


def test_text_only_response_completes():
    provider = FakeProvider([[StreamEvent.content("Hello "), StreamEvent.content("world")]])
    driver, stdout, _ = _driver(provider, {})
    outcome = driver.run("hi")
    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.turns == 1
    assert stdout.getvalue() == "Hello world"
    assert [t.role for t in driver.conversation.turns] == ["user", "assistant"]


def test_tools_run_sequentially_and_results_fold_in_request_order():
    order = []

    def slow(args, token):
        order.append(("start", args["n"]))
        order.append(("end", args["n"]))
        return f"done {args['n']}"

    provider = FakeProvider(
        [
            [_call("c1", "work", n=1), _call("c2", "work", n=2), _call("c3", "work", n=3)],
            [StreamEvent.content("all done")],
        ]
    )
    driver, _, _ = _driver(provider, {"work": slow})
    outcome = driver.run("go")

    assert outcome.status == SessionStatus.COMPLETED
    assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2), ("start", 3), ("end", 3)]
    folded = driver.conversation.turns[2]
    assert folded.role == "user"
    assert [r.call_id for r in folded.tool_results] == ["c1", "c2", "c3"]
    assert [r.output for r in folded.tool_results] == ["done 1", "done 2", "done 3"]
    # 第二次请求已包含工具结果
    assert [role for role, _ in provider.requests[1]] == ["user", "assistant", "user"]


def test_stop_execution_skips_remaining_calls():
    executed = []

    def first(args, token):
        executed.append("first")
        raise StopExecution("user asked to stop")

    def second(args, token):
        executed.append("second")
        return "never"

    provider = FakeProvider([[_call("c1", "first"), _call("c2", "second")]])
    driver, _, stderr = _driver(provider, {"first": first, "second": second})
    outcome = driver.run("go")

    assert outcome.status == SessionStatus.STOPPED
    assert executed == ["first"]
    assert "Agent execution stopped: user asked to stop" in stderr.getvalue()
    assert len(provider.scripts) == 0


def test_cancel_mid_stream_aborts_without_dispatch():
    executed = []
    provider = FakeProvider(
        [[StreamEvent.content("partial"), lambda token: token.cancel(), _call("c1", "work")]]
    )
    driver, _, _ = _driver(provider, {"work": lambda args, token: executed.append(1)})
    outcome = driver.run("go")
    assert outcome.status == SessionStatus.ABORTED
    assert executed == []



def test_cancel_during_tool_batch_skips_remaining_calls():
    executed = []
    token = CancellationToken()

    def first(args, tok):
        executed.append("first")
        tok.cancel()
        return "partial"

    def second(args, tok):
        executed.append("second")
        return "never"

    provider = FakeProvider([[_call("c1", "first"), _call("c2", "second")], [StreamEvent.content("never")]])
    driver, _, _ = _driver(provider, {"first": first, "second": second}, token=token)
    outcome = driver.run("go")

    assert outcome.status == SessionStatus.ABORTED
    assert executed == ["first"]
    assert [t.role for t in driver.conversation.turns] == ["user", "assistant"]
    assert len(provider.scripts) == 1

def test_error_event_is_raised():
    provider = FakeProvider([[StreamEvent.failure(BackendError(code="X", message="backend down"))]])
    driver, _, _ = _driver(provider, {})
    with pytest.raises(BackendError):
        driver.run("go")


def test_max_session_turns():
    provider = FakeProvider([[_call("c1", "noop")], [StreamEvent.content("unused")]])
    driver, _, stderr = _driver(provider, {"noop": lambda args, token: "ok"}, max_turns=1)
    outcome = driver.run("go")
    assert outcome.status == SessionStatus.MAX_TURNS_EXCEEDED
    assert len(provider.requests) == 1
    assert "Maximum session turns exceeded" in stderr.getvalue()


def test_repeated_identical_tool_calls_stop_the_session():
    provider = FakeProvider([[_call(f"c{i}", "noop", path="same") for i in range(6)]])
    executed = []
    driver, _, stderr = _driver(provider, {"noop": lambda args, token: executed.append(1)})
    outcome = driver.run("go")
    assert outcome.status == SessionStatus.LOOP_DETECTED
    assert executed == []
    assert LOOP_DETECTED_MESSAGE in stderr.getvalue()


def test_unknown_tool_error_is_fed_back_to_model():
    provider = FakeProvider([[_call("c1", "missing")], [StreamEvent.content("sorry")]])
    driver, _, stderr = _driver(provider, {})
    outcome = driver.run("go")
    assert outcome.status == SessionStatus.COMPLETED
    result = driver.conversation.turns[2].tool_results[0]
    assert result.error_kind == ToolErrorKind.TOOL_NOT_REGISTERED
    assert "Error executing tool missing" in stderr.getvalue()


def test_disk_full_is_fatal():
    def full(args, token):
        raise OSError(errno.ENOSPC, "No space left on device")

    provider = FakeProvider([[_call("c1", "write")]])
    driver, _, _ = _driver(provider, {"write": full})
    with pytest.raises(FatalToolExecutionError) as exc_info:
        driver.run("go")
    assert exc_info.value.exit_code == 54

import pytest

from devloop_core.domain.conversation import ConversationState
from devloop_core.domain.exceptions import ConversationOrderError
from devloop_core.domain.models import ToolCallRequest, ToolCallResult


def _calls():
    return [
        ToolCallRequest(id="a", name="read_file", arguments={"path": "x"}),
        ToolCallRequest(id="b", name="list_files"),
    ]


def test_tool_results_fold_into_user_turn():
    state = ConversationState()
    state.append_user_text("hi")
    state.append_assistant("working", _calls())
    turn = state.append_tool_results(
        [ToolCallResult(call_id="a", name="read_file", output="1"), ToolCallResult(call_id="b", name="list_files", output="")]
    )
    assert turn.role == "user"
    assert [r.call_id for r in turn.tool_results] == ["a", "b"]
    assert [t.role for t in state.turns] == ["user", "assistant", "user"]
    assert state.turns[1].text == "working"


def test_results_must_match_requests_in_order():
    state = ConversationState()
    state.append_user_text("hi")
    state.append_assistant("", _calls())
    with pytest.raises(ConversationOrderError):
        state.append_tool_results(
            [ToolCallResult(call_id="b", name="list_files"), ToolCallResult(call_id="a", name="read_file")]
        )
    with pytest.raises(ConversationOrderError):
        state.append_tool_results([ToolCallResult(call_id="a", name="read_file")])


def test_results_require_preceding_assistant_turn():
    state = ConversationState()
    state.append_user_text("hi")
    with pytest.raises(ConversationOrderError):
        state.append_tool_results([])


def test_error_result_payload():
    ok = ToolCallResult(call_id="a", name="t", output="done")
    bad = ToolCallResult(call_id="b", name="t", error="boom", error_kind="TOOL_EXECUTION_ERROR")
    assert ok.ok and ok.as_model_payload() == {"output": "done"}
    assert not bad.ok
    assert bad.as_model_payload() == {"error": "boom", "error_kind": "TOOL_EXECUTION_ERROR"}

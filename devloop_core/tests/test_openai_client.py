import json
import threading
import time

import httpx
import pytest

from devloop_core.domain.conversation import ConversationState
from devloop_core.domain.exceptions import BackendError, NetworkError, RateLimitError, ValidationError
from devloop_core.domain.models import ChatRequest, ToolCallRequest, ToolCallResult
from devloop_core.providers.openai_client import OpenAICompatibleClient
from devloop_core.runtime.cancellation import CancellationToken
from devloop_core.tools.definitions import ToolDef, ToolParam


class SettingsStub:
    openai_api_key = "k"
    http_timeout = 1.0
    openai_base_url = "https://llm.example.test/v1"


def _frame(payload) -> str:
    return "data: " + json.dumps(payload)


def _request(conversation=None, tools=None) -> ChatRequest:
    if conversation is None:
        conversation = ConversationState()
        conversation.append_user_text("hi")
    return ChatRequest(provider="openai", model="default", conversation=conversation, tools=tools)


def _install_stream(monkeypatch, lines, status_code=200, captured=None, response=None):
    class FakeResponse:
        def __init__(self):
            self.status_code = status_code
            self.text = "upstream failure"
            self.closed = False

        def read(self):
            return self.text.encode()

        def close(self):
            self.closed = True

        def iter_lines(self):
            for line in lines:
                yield line

    class StreamContext:
        def __init__(self, response):
            self._response = response

        def __enter__(self):
            return self._response

        def __exit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            if captured is not None:
                captured["url"] = url
                captured["json"] = kw.get("json")
                captured["headers"] = kw.get("headers")
            return StreamContext(response or FakeResponse())

    monkeypatch.setattr("httpx.Client", Client)


TOOL_CALL_LINES = [
    _frame({"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}}]}),
    _frame({"choices": [{"index": 0, "delta": {"content": "lo"}}]}),
    _frame(
        {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 1, "id": "call_b", "function": {"name": "list_files", "arguments": ""}}
                        ]
                    }
                }
            ]
        }
    ),
    _frame(
        {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": "call_a", "function": {"name": "read_file", "arguments": '{"pa'}}
                        ]
                    }
                }
            ]
        }
    ),
    _frame({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'th": "a.txt"}'}}]}}]}),
    _frame({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}),
    _frame({"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}}),
    "data: [DONE]",
]


def _summary(events):
    out = []
    for e in events:
        if e.kind == "content":
            out.append(("content", e.text))
        elif e.kind == "tool_call_request":
            out.append(("tool", e.tool_call.id, e.tool_call.name, e.tool_call.arguments))
        elif e.kind == "usage":
            out.append(("usage", e.usage.total_tokens))
        else:
            out.append((e.kind,))
    return out


def test_stream_content_tool_calls_and_usage(monkeypatch):
    _install_stream(monkeypatch, TOOL_CALL_LINES)
    events = list(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    assert _summary(events) == [
        ("content", "Hel"),
        ("content", "lo"),
        ("tool", "call_a", "read_file", {"path": "a.txt"}),
        ("tool", "call_b", "list_files", {}),
        ("usage", 7),
    ]


def test_malformed_frames_are_invisible(monkeypatch):
    noisy = []
    for line in TOOL_CALL_LINES:
        noisy.append(": keep-alive")
        noisy.append("data: {not json")
        noisy.append("event: ping")
        noisy.append(line)
    noisy.insert(5, "data: [1, 2, 3]")

    _install_stream(monkeypatch, TOOL_CALL_LINES)
    clean = _summary(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    _install_stream(monkeypatch, noisy)
    dirty = _summary(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    assert dirty == clean


def test_malformed_arguments_and_nameless_calls_are_dropped(monkeypatch):
    lines = [
        _frame(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "bad", "function": {"name": "read_file", "arguments": "{broken"}},
                                {"index": 1, "id": "anon", "function": {"arguments": "{}"}},
                                {"index": 2, "id": "ok", "function": {"name": "list_files", "arguments": "{}"}},
                            ]
                        }
                    }
                ]
            }
        ),
        _frame({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
        "data: [DONE]",
    ]
    _install_stream(monkeypatch, lines)
    events = list(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    assert _summary(events) == [("tool", "ok", "list_files", {})]


def test_usage_frame_does_not_end_stream(monkeypatch):
    lines = [
        _frame({"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}}),
        _frame({"choices": [{"delta": {"content": "after"}}]}),
    ]
    _install_stream(monkeypatch, lines)
    events = list(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    assert _summary(events) == [("usage", 2), ("content", "after")]


def test_error_frame_becomes_error_event(monkeypatch):
    lines = [
        _frame({"choices": [{"delta": {"content": "a"}}]}),
        _frame({"error": {"code": "overloaded", "message": "backend overloaded"}}),
        _frame({"choices": [{"delta": {"content": "never"}}]}),
    ]
    _install_stream(monkeypatch, lines)
    events = list(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))
    assert [e.kind for e in events] == ["content", "error"]
    assert isinstance(events[1].error, BackendError)
    assert events[1].error.message == "backend overloaded"


def test_cancellation_ends_stream_without_error(monkeypatch):
    lines = [
        _frame({"choices": [{"delta": {"content": "one"}}]}),
        _frame({"choices": [{"delta": {"content": "two"}}]}),
        _frame({"choices": [{"delta": {"content": "three"}}]}),
    ]
    _install_stream(monkeypatch, lines)
    token = CancellationToken()
    stream = OpenAICompatibleClient(SettingsStub()).generate_stream(_request(), token)
    first = next(stream)
    token.cancel()
    rest = list(stream)
    assert first.text == "one"
    assert rest == []



class StalledResponse:
    """先给一帧，然后像卡住的后端一样阻塞，直到连接被关闭。"""

    status_code = 200
    text = ""

    def __init__(self, first_line):
        self._first_line = first_line
        self._closed = threading.Event()

    def read(self):
        return b""

    def close(self):
        self._closed.set()

    def iter_lines(self):
        yield self._first_line
        self._closed.wait(3)
        if self._closed.is_set():
            raise httpx.ReadError("connection closed")
        yield _frame({"choices": [{"delta": {"content": "late"}}]})


def test_cancel_closes_stalled_stream(monkeypatch):
    response = StalledResponse(_frame({"choices": [{"delta": {"content": "one"}}]}))
    _install_stream(monkeypatch, [], response=response)
    token = CancellationToken()
    stream = OpenAICompatibleClient(SettingsStub()).generate_stream(_request(), token)
    first = next(stream)
    timer = threading.Timer(0.1, token.cancel)
    timer.start()
    started = time.monotonic()
    rest = list(stream)
    elapsed = time.monotonic() - started
    timer.join()
    assert first.text == "one"
    assert rest == []
    assert elapsed < 1.0


def test_read_error_without_cancel_is_network_error(monkeypatch):
    response = StalledResponse(_frame({"choices": [{"delta": {"content": "one"}}]}))
    response.close()
    _install_stream(monkeypatch, [], response=response)
    stream = OpenAICompatibleClient(SettingsStub()).generate_stream(_request(), CancellationToken())
    next(stream)
    with pytest.raises(NetworkError):
        list(stream)

def test_rate_limit_and_missing_key(monkeypatch):
    _install_stream(monkeypatch, [], status_code=429)
    with pytest.raises(RateLimitError):
        list(OpenAICompatibleClient(SettingsStub()).generate_stream(_request()))

    class NoKey(SettingsStub):
        openai_api_key = None

    with pytest.raises(ValidationError):
        list(OpenAICompatibleClient(NoKey()).generate_stream(_request()))


def test_payload_correlates_tool_results_by_id(monkeypatch):
    conversation = ConversationState()
    conversation.append_user_text("look around")
    calls = [
        ToolCallRequest(id="call_1", name="read_file", arguments={"path": "a.txt"}),
        ToolCallRequest(id="call_2", name="list_files", arguments={}),
    ]
    conversation.append_assistant("checking", calls)
    conversation.append_tool_results(
        [
            ToolCallResult(call_id="call_1", name="read_file", output="hello"),
            ToolCallResult(call_id="call_2", name="list_files", error="denied", error_kind="TOOL_EXECUTION_ERROR"),
        ]
    )
    tool = ToolDef(
        name="read_file",
        description="read",
        params={"path": ToolParam(name="path", description="file", required=True, schema={"type": "string"})},
    )
    captured = {}
    _install_stream(monkeypatch, ["data: [DONE]"], captured=captured)
    req = _request(conversation, tools=[tool])
    req.system_prompt = "be brief"
    assert list(OpenAICompatibleClient(SettingsStub()).generate_stream(req)) == []

    payload = captured["json"]
    assert captured["url"] == "https://llm.example.test/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer k"
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["model"] == "gpt-4o-mini"
    roles = [m["role"] for m in payload["messages"]]
    assert roles == ["system", "user", "assistant", "tool", "tool"]
    assistant = payload["messages"][2]
    assert [c["id"] for c in assistant["tool_calls"]] == ["call_1", "call_2"]
    assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {"path": "a.txt"}
    assert [m["tool_call_id"] for m in payload["messages"][3:]] == ["call_1", "call_2"]
    assert json.loads(payload["messages"][4]["content"])["error"] == "denied"
    assert payload["tools"][0]["function"]["parameters"]["required"] == ["path"]

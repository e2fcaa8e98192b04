from devloop_core.providers.tool_call_accumulator import ToolCallAccumulator


def test_arguments_concatenate_and_name_overwrites():
    acc = ToolCallAccumulator()
    acc.add_delta(0, call_id="c0", name="read", arguments='{"path":')
    acc.add_delta(0, name="read_file", arguments=' "a.txt"}')
    acc.add_delta(0, call_id="ignored")
    calls = acc.finalize()
    assert len(calls) == 1
    assert calls[0].id == "c0"
    assert calls[0].name == "read_file"
    assert calls[0].arguments == {"path": "a.txt"}
    assert acc.pending == 0


def test_finalize_orders_by_index_and_drops_invalid_entries():
    acc = ToolCallAccumulator()
    acc.add_raw_delta({"index": 3, "id": "c3", "function": {"name": "c", "arguments": "[1, 2]"}})
    acc.add_raw_delta({"index": 2, "id": "c2", "function": {"name": "b", "arguments": "{}"}})
    acc.add_raw_delta({"index": 1, "id": "c1", "function": {"arguments": "{}"}})
    acc.add_raw_delta({"index": 0, "id": "c0", "function": {"name": "a", "arguments": "{oops"}})
    acc.add_raw_delta({"id": "c9", "function": {"name": "z", "arguments": ""}}, fallback_index=9)
    calls = acc.finalize()
    assert [(c.id, c.name, c.arguments) for c in calls] == [("c2", "b", {}), ("c9", "z", {})]


def test_missing_id_gets_generated_and_clear_discards():
    acc = ToolCallAccumulator()
    acc.add_delta(4, name="list_files")
    calls = acc.finalize()
    assert calls[0].id.startswith("call_4_")

    acc.add_delta(0, name="list_files")
    acc.clear()
    assert acc.finalize() == []

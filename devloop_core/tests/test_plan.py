from datetime import datetime, timezone

import pytest

from devloop_core.domain.exceptions import FatalInputError, PlanFileError
from devloop_core.infrastructure.storage.plan_store import PlanFileStore, format_log_entry
from devloop_core.tasks.commands import resolve_input
from devloop_core.tasks.plan import load_plan, parse_plan, plan_file_name

PLAN = """# Dev Loop Plan: Greeting
- **Timestamp**: 2026-01-01T00:00:00
- **Status**: Pending
- **Max Retries**: 3

## Description
Add a greet() function
that returns "hello".

## Completion Criteria (Verification Command)
```bash
pytest -q tests/test_greet.py
```

## Execution Log
- [Initial]: Plan created.
"""


def test_parse_plan_sections(tmp_path):
    plan = parse_plan(PLAN, tmp_path / "p.md")
    assert plan.task == 'Add a greet() function\nthat returns "hello".'
    assert plan.verify_command == "pytest -q tests/test_greet.py"
    assert plan.max_iterations == 3
    assert plan.iteration_count == 0
    assert plan.is_active
    assert plan.last_verification_output is None
    assert plan.plan_file_path == str((tmp_path / "p.md").resolve())


def test_parse_plan_defaults_and_variants(tmp_path):
    text = PLAN.replace("- **Max Retries**: 3\n", "").replace("```bash", "```").replace("\n", "\r\n")
    plan = parse_plan(text, tmp_path / "p.md", default_max_retries=7)
    assert plan.max_iterations == 7
    assert plan.verify_command == "pytest -q tests/test_greet.py"


def test_parse_plan_rejects_missing_sections(tmp_path):
    with pytest.raises(PlanFileError) as exc_info:
        parse_plan("## Description\nonly a description\n", tmp_path / "p.md")
    assert exc_info.value.code == "INVALID_PLAN_FORMAT"
    assert "## Completion Criteria (Verification Command)" in exc_info.value.message


def test_load_plan_resolves_relative_to_cwd(tmp_path):
    (tmp_path / "plan.md").write_text(PLAN, encoding="utf-8")
    plan = load_plan("plan.md", cwd=tmp_path)
    assert plan.max_iterations == 3
    with pytest.raises(PlanFileError) as exc_info:
        load_plan("absent.md", cwd=tmp_path)
    assert exc_info.value.code == "PLAN_NOT_FOUND"


def test_log_entries_append_without_rewriting(tmp_path):
    path = tmp_path / "plan.md"
    path.write_text(PLAN, encoding="utf-8")
    store = PlanFileStore()
    assert store.append_log(path, 1, "❌ FAILED - Exit code 1. Retrying...")
    assert store.append_log(path, 2, "✅ SUCCESS - Verification passed.")
    content = store.read(path)
    assert content.startswith(PLAN)
    assert content[len(PLAN):] == (
        format_log_entry(1, "❌ FAILED - Exit code 1. Retrying...")
        + format_log_entry(2, "✅ SUCCESS - Verification passed.")
    )


def test_log_append_failure_is_reported(tmp_path):
    assert PlanFileStore().append_log(tmp_path / "missing-dir" / "plan.md", 1, "x") is False


def test_resolve_plain_prompt_and_init(tmp_path):
    result = resolve_input("fix the bug", tmp_path)
    assert result.kind == "prompt"
    assert result.prompt == "fix the bug"

    now = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    init = resolve_input("/dev-loop init", tmp_path, now=now)
    assert init.kind == "prompt"
    assert plan_file_name(now) == "dev-loop-2026-03-04T05-06-07.md"
    assert "`dev-loop-2026-03-04T05-06-07.md`" in init.prompt
    assert "/dev-loop run dev-loop-2026-03-04T05-06-07.md" in init.prompt
    assert "## Completion Criteria (Verification Command)" in init.prompt


def test_resolve_run_loads_plan(tmp_path):
    (tmp_path / "my plan.md").write_text(PLAN, encoding="utf-8")
    result = resolve_input('/dev-loop run "my plan.md"', tmp_path)
    assert result.kind == "dev_loop"
    assert result.plan.verify_command == "pytest -q tests/test_greet.py"


def test_resolve_rejects_bad_commands(tmp_path):
    for text in ("/unknown", "/dev-loop", "/dev-loop start", "/dev-loop run"):
        with pytest.raises(FatalInputError) as exc_info:
            resolve_input(text, tmp_path)
        assert exc_info.value.exit_code == 42

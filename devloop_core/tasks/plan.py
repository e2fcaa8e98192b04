"""Dev-loop plan file model and parsing.

A plan file is markdown matched by regex, not parsed as a full document:

    ## Description
    <free text up to the next ## heading>

    ## Completion Criteria (Verification Command)
    ```bash
    <command>
    ```

    - **Max Retries**: <integer>     (optional, default 5)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from devloop_core.domain.exceptions import PlanFileError
from devloop_core.infrastructure.storage.plan_store import PlanFileStore

DEFAULT_MAX_RETRIES = 5

_DESCRIPTION_RE = re.compile(r"## Description[ \t]*\n([\s\S]+?)(?=\n##|\Z)")
_VERIFY_RE = re.compile(
    r"## Completion Criteria \(Verification Command\)[ \t]*\n+```[ \t]*(?:bash|sh|shell|zsh)?[ \t]*\n([\s\S]+?)\n```"
)
_MAX_RETRIES_RE = re.compile(r"\*\*Max Retries\*\*:[ \t]*(\d+)")

INVALID_FORMAT_MESSAGE = (
    'Invalid plan file format. Ensure it has "## Description" and '
    '"## Completion Criteria (Verification Command)" sections.'
)


@dataclass
class DevLoopPlan:
    """State of one autonomous loop.

    Attributes:
        task: 计划描述，作为首轮用户消息的主体。
        verify_command: 每轮结束后执行的验证命令。
        max_iterations: 最多验证次数（Max Retries）。
        iteration_count: 已完成并失败的验证次数。
        is_active: 成功、停滞、达到上限或验证异常后置为 False。
        plan_file_path: 计划文件绝对路径，执行日志追加到这里。
        last_verification_output: 上一次失败的验证输出（用于停滞检测）。
    """

    task: str
    verify_command: str
    max_iterations: int
    plan_file_path: str
    iteration_count: int = 0
    is_active: bool = True
    last_verification_output: Optional[str] = None

    def deactivate(self) -> None:
        self.is_active = False


def parse_plan(text: str, path: Union[str, Path], default_max_retries: int = DEFAULT_MAX_RETRIES) -> DevLoopPlan:
    content = text.replace("\r\n", "\n")
    description = _DESCRIPTION_RE.search(content)
    verify = _VERIFY_RE.search(content)
    task = description.group(1).strip() if description else ""
    command = verify.group(1).strip() if verify else ""
    if not task or not command:
        raise PlanFileError(code="INVALID_PLAN_FORMAT", message=INVALID_FORMAT_MESSAGE, path=str(path))
    retries = _MAX_RETRIES_RE.search(content)
    max_iterations = int(retries.group(1)) if retries else default_max_retries
    return DevLoopPlan(
        task=task,
        verify_command=command,
        max_iterations=max(1, max_iterations),
        plan_file_path=str(Path(path).resolve()),
    )


def load_plan(
    path: Union[str, Path],
    cwd: Optional[Union[str, Path]] = None,
    default_max_retries: int = DEFAULT_MAX_RETRIES,
    store: Optional[PlanFileStore] = None,
) -> DevLoopPlan:
    """Read and parse a plan file; relative paths resolve against cwd."""

    raw = Path(path).expanduser()
    resolved = raw if raw.is_absolute() else Path(cwd or Path.cwd()) / raw
    if not resolved.is_file():
        raise PlanFileError(code="PLAN_NOT_FOUND", message=f"Plan file not found: {path}", path=str(resolved))
    try:
        text = (store or PlanFileStore()).read(resolved)
    except OSError as exc:
        raise PlanFileError(code="PLAN_READ_ERROR", message=f"Error reading plan file: {exc}", path=str(resolved))
    return parse_plan(text, resolved, default_max_retries)


def plan_file_name(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return f"dev-loop-{stamp}.md"


def build_plan_init_prompt(now: Optional[datetime] = None) -> str:
    """Prompt that asks the model to interview the user and write a plan file."""

    moment = now or datetime.now(timezone.utc)
    filename = plan_file_name(moment)
    return f"""I want to start a new autonomous development loop.
Please interview me to collect the following information:
1. **Plan Description**: What specific task or feature should be implemented?
2. **Plan Goal / Verification**: What is the shell command to verify the work? (e.g., "pytest")
3. **Max Retries**: How many times should we try to fix errors automatically? (Default is {DEFAULT_MAX_RETRIES})

Once confirmed, please use your tool to create a file named `{filename}` in the current directory with this structure:

# Dev Loop Plan: [Title]
- **Timestamp**: {moment.isoformat(timespec='seconds')}
- **Status**: Pending
- **Max Retries**: [Number]

## Description
[Detailed description]

## Completion Criteria (Verification Command)
```bash
[Verification Command]
```

## Execution Log
- [Initial]: Plan created.

After creating the file, tell me exactly: "Plan file created at: `{filename}`. You can now start the loop by typing: `/dev-loop run {filename}`\""""

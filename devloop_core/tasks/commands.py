"""`/dev-loop` command handling for non-interactive input."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional, Union

from devloop_core.domain.exceptions import FatalInputError

from .plan import DEFAULT_MAX_RETRIES, DevLoopPlan, build_plan_init_prompt, load_plan

DEV_LOOP_COMMAND = "/dev-loop"
RUN_USAGE = "Usage: /dev-loop run <plan-file.md>"
USAGE = "Usage: /dev-loop init | /dev-loop run <plan-file.md>"


@dataclass
class CommandResult:
    """What the session should do with the user input.

    - "prompt": send ``prompt`` to the model as the first user message.
    - "dev_loop": start an autonomous loop for ``plan``.
    """

    kind: Literal["prompt", "dev_loop"]
    prompt: Optional[str] = None
    plan: Optional[DevLoopPlan] = None


def resolve_input(
    text: str,
    cwd: Union[str, Path],
    default_max_retries: int = DEFAULT_MAX_RETRIES,
    now: Optional[datetime] = None,
) -> CommandResult:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return CommandResult(kind="prompt", prompt=text)
    head, _, rest = stripped.partition(" ")
    if head != DEV_LOOP_COMMAND:
        raise FatalInputError(code="UNKNOWN_COMMAND", message=f"Unknown command: {head}")
    return _dev_loop(rest.strip(), cwd, default_max_retries, now)


def _dev_loop(args: str, cwd, default_max_retries: int, now: Optional[datetime]) -> CommandResult:
    sub, _, rest = args.partition(" ")
    if sub == "init":
        return CommandResult(kind="prompt", prompt=build_plan_init_prompt(now))
    if sub == "run":
        target = _single_path(rest.strip())
        if not target:
            raise FatalInputError(code="INVALID_COMMAND", message=RUN_USAGE)
        return CommandResult(kind="dev_loop", plan=load_plan(target, cwd, default_max_retries))
    raise FatalInputError(code="INVALID_COMMAND", message=USAGE)


def _single_path(raw: str) -> str:
    if not raw:
        return ""
    try:
        parts = shlex.split(raw)
    except ValueError:
        return raw
    return parts[0] if len(parts) == 1 else raw

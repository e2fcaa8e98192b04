"""Non-interactive session entry point.

One call processes one user input (plain prompt or ``/dev-loop`` command) to
completion and returns the process exit code. All terminal states unwind
through a single finalization path that flushes output and restores the
cancellation controller exactly once.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO
from uuid import uuid4

from devloop_core.agents.conversation_driver import ConversationDriver, DriverConfig, SessionStatus
from devloop_core.config.settings import settings
from devloop_core.domain.exceptions import BusinessError, FatalCancellationError, FatalTurnLimitedError
from devloop_core.flows.graph import build_session_graph, recursion_limit_for
from devloop_core.infrastructure.logging.logger import logger
from devloop_core.infrastructure.shell import ShellExecutionService
from devloop_core.infrastructure.storage.plan_store import PlanFileStore
from devloop_core.output.formatters import SessionOutput, create_output
from devloop_core.prompts import load_system_prompt
from devloop_core.providers import create_provider
from devloop_core.providers.base import ContentGenerator
from devloop_core.runtime.cancellation import CancellationController
from devloop_core.tools.executor import ToolExecutor, create_default_executor

from .commands import resolve_input
from .dev_loop import DevLoopController, Verdict

CANCELLED_MESSAGE = "Operation cancelled."
MAX_TURNS_HINT = (
    "Reached max session turns for this session. "
    "Increase the number of turns by specifying max_session_turns in settings."
)
DEV_LOOP_FAILURES = {
    Verdict.STAGNANT: "Dev loop stopped: verification output unchanged (stagnation).",
    Verdict.MAX_ITERATIONS: "Dev loop stopped: reached max iterations without passing verification.",
    Verdict.ERROR: "Dev loop stopped: the verification command could not be executed.",
}


def run_non_interactive(
    input_text: str,
    *,
    cfg=None,
    provider: Optional[ContentGenerator] = None,
    tool_executor: Optional[ToolExecutor] = None,
    shell: Optional[ShellExecutionService] = None,
    plan_store: Optional[PlanFileStore] = None,
    output_format: Optional[str] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    controller: Optional[CancellationController] = None,
    session_id: Optional[str] = None,
    install_signal_handler: bool = True,
) -> int:
    """执行一次非交互会话，返回退出码。"""

    cfg = cfg or settings
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    session_id = session_id or f"s-{uuid4().hex}"
    log_ctx: Dict[str, Any] = {"session_id": session_id}
    output = create_output(output_format or cfg.output_format, stdout, stderr, session_id, cfg.default_model)
    cancel = controller or CancellationController(cfg.cancel_notice_delay_ms, stderr)
    if install_signal_handler:
        cancel.install()

    try:
        output.start()
        workspace = Path(cfg.workspace_root)
        command = resolve_input(input_text, workspace, cfg.dev_loop_default_max_retries)
        shell = shell or ShellExecutionService(cfg.shell_timeout)
        provider = provider or create_provider(cfg.default_provider, cfg)
        executor = tool_executor or create_default_executor(workspace, shell, cfg)
        driver = ConversationDriver(
            provider,
            executor,
            output,
            cancel.token,
            DriverConfig(
                provider=getattr(provider, "name", cfg.default_provider),
                model=cfg.default_model,
                max_session_turns=cfg.max_session_turns,
                system_prompt=load_system_prompt("system", workspace),
            ),
            log_ctx=log_ctx,
        )

        dev_loop: Optional[DevLoopController] = None
        message = command.prompt or ""
        if command.kind == "dev_loop" and command.plan is not None:
            dev_loop = DevLoopController(
                command.plan,
                shell,
                plan_store or PlanFileStore(),
                output,
                cancel.token,
                workspace,
                cfg.shell_timeout,
            )
            message = dev_loop.initial_prompt()
            _log(logging.INFO, "Dev loop started", log_ctx, plan=command.plan.plan_file_path)

        graph = build_session_graph(driver, dev_loop)
        final = graph.invoke(
            {"message": message, "iterations": 0},
            config={"recursion_limit": recursion_limit_for(dev_loop)},
        )
        cancel.token.raise_if_cancelled()
        return _finalize(final, output, log_ctx)
    except KeyboardInterrupt:
        cancel.interrupt()
        return _report(output, FatalCancellationError(code="CANCELLED", message=CANCELLED_MESSAGE), log_ctx)
    except BusinessError as exc:
        return _report(output, exc, log_ctx)
    except Exception as exc:  # noqa: BLE001 - 会话入口统一转换为退出码
        logger.exception("session.unexpected_error", extra={"extra": log_ctx})
        output.error(type(exc).__name__, str(exc), 1)
        return 1
    finally:
        output.finish()
        cancel.restore()


def _finalize(final: Dict[str, Any], output: SessionOutput, log_ctx: Dict[str, Any]) -> int:
    outcome = final.get("outcome")
    status = outcome.status if outcome is not None else SessionStatus.COMPLETED
    _log(logging.INFO, "Session finished", log_ctx, status=status.value, turns=getattr(outcome, "turns", 0))

    if status == SessionStatus.ABORTED:
        raise FatalCancellationError(code="CANCELLED", message=CANCELLED_MESSAGE)
    if status == SessionStatus.MAX_TURNS_EXCEEDED:
        raise FatalTurnLimitedError(code="MAX_TURNS_EXCEEDED", message=MAX_TURNS_HINT)

    verification = final.get("verification")
    if status == SessionStatus.COMPLETED and verification is not None:
        if verification.verdict == Verdict.ABORTED:
            raise FatalCancellationError(code="CANCELLED", message=CANCELLED_MESSAGE)
        failure = DEV_LOOP_FAILURES.get(verification.verdict)
        if failure:
            output.error("DevLoopError", failure, 1)
            return 1
    return 0


def _report(output: SessionOutput, exc: BusinessError, log_ctx: Dict[str, Any]) -> int:
    _log(logging.WARNING, "Session failed", log_ctx, error_code=exc.code, error=exc.message, **exc.extra)
    output.error(type(exc).__name__, exc.message, exc.exit_code)
    return exc.exit_code


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})

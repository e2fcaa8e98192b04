"""Autonomous dev-loop controller.

Runs the plan's verification command whenever the driver finishes a turn
sequence, classifies the result and either stops or produces the feedback
message for the next turn. Every verification attempt appends exactly one
line to the plan file's execution log before returning.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from devloop_core.infrastructure.logging.logger import logger
from devloop_core.infrastructure.shell import ShellExecutionService
from devloop_core.infrastructure.storage.plan_store import PlanFileStore
from devloop_core.output.formatters import SessionOutput
from devloop_core.runtime.cancellation import CancellationToken

from .plan import DevLoopPlan

NO_OUTPUT = "(No output)"


class Verdict(str, Enum):
    SUCCESS = "success"
    STAGNANT = "stagnant"
    MAX_ITERATIONS = "max_iterations"
    RETRY = "retry"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class VerificationOutcome:
    verdict: Verdict
    iteration: int
    exit_code: Optional[int] = None
    output: str = ""
    feedback: Optional[str] = None
    message: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.verdict == Verdict.RETRY


def classify_verification(
    exit_code: int,
    output: str,
    last_output: Optional[str],
    iteration: int,
    max_iterations: int,
) -> Verdict:
    """Exit code 0 wins; identical failing output beats the retry budget."""

    if exit_code == 0:
        return Verdict.SUCCESS
    if last_output is not None and output == last_output:
        return Verdict.STAGNANT
    if iteration >= max_iterations:
        return Verdict.MAX_ITERATIONS
    return Verdict.RETRY


def build_initial_prompt(plan: DevLoopPlan) -> str:
    return (
        f"{plan.task}\n\n[Dev Loop Mode] After you complete this task, I will automatically run "
        f"verification: `{plan.verify_command}`. If it fails, I will feed the error back to you "
        f"for further fixes."
    )


def build_retry_feedback(plan: DevLoopPlan, exit_code: int, output: str) -> str:
    return (
        f"Task: {plan.task}\n\n"
        f"The verification command `{plan.verify_command}` failed with exit code {exit_code}. "
        f"Output:\n\n```\n{output}\n```\n\nPlease fix the remaining issues and try again."
    )


class DevLoopController:
    def __init__(
        self,
        plan: DevLoopPlan,
        shell: ShellExecutionService,
        store: PlanFileStore,
        output: SessionOutput,
        token: CancellationToken,
        cwd: Union[str, Path],
        timeout: Optional[float] = None,
    ):
        self._plan = plan
        self._shell = shell
        self._store = store
        self._output = output
        self._token = token
        self._cwd = cwd
        self._timeout = timeout

    @property
    def plan(self) -> DevLoopPlan:
        return self._plan

    @property
    def is_active(self) -> bool:
        return self._plan.is_active

    def initial_prompt(self) -> str:
        return build_initial_prompt(self._plan)

    def verify(self) -> VerificationOutcome:
        plan = self._plan
        iteration = plan.iteration_count + 1
        self._output.notice(
            f"\n[Iteration {iteration}/{plan.max_iterations}] Verifying: {plan.verify_command}...\n"
        )
        try:
            result = self._shell.execute(plan.verify_command, self._cwd, self._token, self._timeout)
        except Exception as exc:  # noqa: BLE001 - 验证命令本身无法执行时终止计划
            logger.error(
                "dev_loop.verification_error",
                extra={"extra": {"iteration": iteration, "error": str(exc)}},
            )
            message = f"Error during verification: {exc}"
            self._output.info(message)
            self._finish(iteration, f"🛑 STOPPED - Verification error: {exc}")
            return VerificationOutcome(Verdict.ERROR, iteration, message=message)

        if result.aborted:
            self._finish(iteration, "🛑 STOPPED - Cancelled during verification.")
            return VerificationOutcome(Verdict.ABORTED, iteration)

        output = result.output.strip() or NO_OUTPUT
        if result.timed_out:
            output = f"{output}\n(Command timed out)"
        verdict = classify_verification(
            result.exit_code,
            output,
            plan.last_verification_output,
            iteration,
            plan.max_iterations,
        )
        logger.info(
            "dev_loop.verified",
            extra={"extra": {"iteration": iteration, "exit_code": result.exit_code, "verdict": verdict.value}},
        )
        outcome = VerificationOutcome(verdict, iteration, exit_code=result.exit_code, output=output)

        if verdict == Verdict.SUCCESS:
            self._output.notice(f"✅ Verification passed!\n\nOutput:\n{output}\n")
            self._finish(iteration, "✅ SUCCESS - Verification passed.")
            return outcome

        if verdict == Verdict.STAGNANT:
            self._output.notice(
                "🛑 Stagnation detected: verification output is identical to the previous attempt. "
                "Stopping loop.\n"
            )
            self._finish(iteration, "🛑 STOPPED - Stagnation detected (error output unchanged).")
            return outcome

        plan.last_verification_output = output
        self._output.notice(f"❌ Verification failed (Exit code: {result.exit_code}).\n\nOutput:\n{output}\n")
        if verdict == Verdict.MAX_ITERATIONS:
            self._output.notice(f"🛑 Reached maximum iterations ({plan.max_iterations}). Stopping loop.\n")
            self._finish(iteration, f"🛑 STOPPED - Reached max iterations ({plan.max_iterations}).")
            return outcome

        self._store.append_log(plan.plan_file_path, iteration, f"❌ FAILED - Exit code {result.exit_code}. Retrying...")
        plan.iteration_count = iteration
        self._output.notice("Retrying with the verification output...\n")
        outcome.feedback = build_retry_feedback(plan, result.exit_code, output)
        return outcome

    def _finish(self, iteration: int, message: str) -> None:
        self._store.append_log(self._plan.plan_file_path, iteration, message)
        self._plan.deactivate()

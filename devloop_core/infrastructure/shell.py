"""Shell 命令执行服务。

dev-loop 的验证命令与 run_shell_command 工具都经由这里执行：
stderr 合并进 stdout，执行期间轮询 CancellationToken，取消或超时时结束整个进程组。
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from devloop_core.infrastructure.logging.logger import logger
from devloop_core.runtime.cancellation import CancellationToken

POLL_INTERVAL = 0.1


@dataclass
class ShellResult:
    """一次命令执行的结果。aborted 为 True 时 exit_code 没有意义。"""

    command: str
    exit_code: int
    output: str
    aborted: bool = False
    timed_out: bool = False


class ShellExecutionService:
    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout

    def execute(
        self,
        command: str,
        cwd: Union[str, Path],
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> ShellResult:
        """执行命令并返回退出码与输出。进程无法启动时抛出 OSError。"""

        limit = timeout if timeout is not None else self._timeout
        logger.info("shell.start", extra={"extra": {"command": command, "cwd": str(cwd)}})
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            start_new_session=os.name == "posix",
        )
        unregister = token.on_cancel(lambda: _kill(proc)) if token is not None else None
        started = time.monotonic()
        try:
            while True:
                try:
                    output, _ = proc.communicate(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    if token is not None and token.is_cancelled:
                        _kill(proc)
                        output, _ = proc.communicate()
                        logger.info("shell.aborted", extra={"extra": {"command": command}})
                        return ShellResult(command, proc.returncode or -1, output or "", aborted=True)
                    if limit is not None and time.monotonic() - started > limit:
                        _kill(proc)
                        output, _ = proc.communicate()
                        logger.warning("shell.timeout", extra={"extra": {"command": command, "timeout": limit}})
                        return ShellResult(command, proc.returncode or -1, output or "", timed_out=True)
        finally:
            if unregister is not None:
                unregister()
        aborted = token is not None and token.is_cancelled
        logger.info(
            "shell.finish",
            extra={"extra": {"command": command, "exit_code": proc.returncode, "aborted": aborted}},
        )
        return ShellResult(command, proc.returncode, output or "", aborted=aborted)


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass

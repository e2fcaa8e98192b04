from pathlib import Path
from typing import Union

from devloop_core.infrastructure.logging.logger import logger


def format_log_entry(iteration: int, message: str) -> str:
    return f"\n- [Iteration {iteration}]: {message}\n"


class PlanFileStore:
    """计划文件的执行日志：每次写入都以追加模式打开，写完即关闭。"""

    def read(self, path: Union[str, Path]) -> str:
        return Path(path).read_text(encoding="utf-8")

    def append_log(self, path: Union[str, Path], iteration: int, message: str) -> bool:
        line = format_log_entry(iteration, message)
        try:
            with Path(path).open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.warning(
                "plan_log.append_failed",
                extra={"extra": {"path": str(path), "iteration": iteration, "error": str(e)}},
            )
            return False
        return True

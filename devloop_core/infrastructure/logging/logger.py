import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from devloop_core.config.settings import settings

LOGGER_NAME = "devloop_core"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / "devloop.log", encoding="utf-8")
    except OSError:
        # 日志目录不可写时退化为丢弃
        logger.addHandler(logging.NullHandler())
        return logger
    fh.setLevel(level)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def enable_console_logging(level: int = logging.DEBUG) -> None:
    """额外把日志输出到 stderr（CLI --debug）。stdout 只留给会话输出。"""

    for handler in logger.handlers:
        if getattr(handler, "_devloop_console", False):
            handler.setLevel(level)
            return
    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(JsonFormatter())
    sh._devloop_console = True  # type: ignore[attr-defined]
    logger.addHandler(sh)


logger = setup_logger()

"""会话输出格式（text / json / stream-json）。"""

from .formatters import SessionOutput, SessionStats, create_output

__all__ = ["SessionOutput", "SessionStats", "create_output"]

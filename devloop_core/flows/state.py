"""State definition for the session graph."""

from __future__ import annotations

from typing import Optional, TypedDict

from devloop_core.agents.conversation_driver import DriverOutcome
from devloop_core.tasks.dev_loop import VerificationOutcome


class SessionState(TypedDict, total=False):
    """State shared across LangGraph nodes."""

    message: str
    outcome: Optional[DriverOutcome]
    verification: Optional[VerificationOutcome]
    iterations: int

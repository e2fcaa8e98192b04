"""LangGraph construction for one processing session.

    turn ──(completed & plan active)──▶ verify ──(retry)──▶ turn
      │                                   │
      └──────────────▶ END ◀──────────────┘
"""

from __future__ import annotations

from typing import Optional

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from devloop_core.agents.conversation_driver import ConversationDriver, SessionStatus
from devloop_core.flows.state import SessionState
from devloop_core.infrastructure.logging.logger import logger
from devloop_core.tasks.dev_loop import DevLoopController


def turn_node(state: SessionState, driver: ConversationDriver) -> SessionState:
    logger.info("turn_node.start", extra={"extra": {"turns": driver.turn_count}})
    outcome = driver.run(state["message"])
    logger.info("turn_node.end", extra={"extra": {"status": outcome.status.value, "turns": outcome.turns}})
    return {"outcome": outcome}


def verify_node(state: SessionState, controller: DevLoopController) -> SessionState:
    verification = controller.verify()
    update: SessionState = {
        "verification": verification,
        "iterations": state.get("iterations", 0) + 1,
    }
    if verification.should_retry and verification.feedback:
        update["message"] = verification.feedback
    return update


def after_turn(state: SessionState, controller: Optional[DevLoopController]) -> str:
    outcome = state.get("outcome")
    if outcome is None or outcome.status != SessionStatus.COMPLETED:
        return "end"
    if controller is not None and controller.is_active:
        return "verify"
    return "end"


def after_verify(state: SessionState) -> str:
    verification = state.get("verification")
    if verification is not None and verification.should_retry:
        return "turn"
    return "end"


def build_session_graph(
    driver: ConversationDriver,
    controller: Optional[DevLoopController] = None,
) -> CompiledStateGraph:
    graph = StateGraph(SessionState)
    graph.add_node("turn", lambda s: turn_node(s, driver))
    graph.set_entry_point("turn")
    if controller is None:
        graph.add_edge("turn", END)
        return graph.compile()
    graph.add_node("verify", lambda s: verify_node(s, controller))
    graph.add_conditional_edges("turn", lambda s: after_turn(s, controller), {"verify": "verify", "end": END})
    graph.add_conditional_edges("verify", after_verify, {"turn": "turn", "end": END})
    return graph.compile()


def recursion_limit_for(controller: Optional[DevLoopController]) -> int:
    """Each dev-loop iteration costs two graph steps (turn + verify)."""

    if controller is None:
        return 10
    return 2 * controller.plan.max_iterations + 10

"""Task-level automation: dev-loop plans, the loop controller and the session runner."""

from .plan import DevLoopPlan, load_plan, parse_plan
from .task_runner import run_non_interactive

__all__ = ["DevLoopPlan", "load_plan", "parse_plan", "run_non_interactive"]

from .base import AgentKind, extract_json_object, session_key
from .evaluator import EvaluatorAgent, EvaluatorOutcome
from .planner import PlannedTask, PlannerAgent, PlannerOutcome
from .worker import WorkerAgent

__all__ = [
    "AgentKind",
    "EvaluatorAgent",
    "EvaluatorOutcome",
    "PlannedTask",
    "PlannerAgent",
    "PlannerOutcome",
    "WorkerAgent",
    "extract_json_object",
    "session_key",
]

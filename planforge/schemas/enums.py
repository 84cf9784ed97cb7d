from __future__ import annotations

from enum import Enum


class PlanStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class PlanPhase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REPLANNING = "replanning"
    EVALUATING = "evaluating"
    DONE = "done"


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class EvaluationPhase(str, Enum):
    PLANNING = "planning"
    REPLANNING = "replanning"
    FINAL = "final"


ACTIVE_PLAN_STATUSES = frozenset({PlanStatus.PLANNING, PlanStatus.RUNNING})
RESUMABLE_PLAN_STATUSES = frozenset({PlanStatus.STOPPED, PlanStatus.FAILED})


__all__ = [
    "PlanStatus",
    "PlanPhase",
    "TaskStatus",
    "EvaluationPhase",
    "ACTIVE_PLAN_STATUSES",
    "RESUMABLE_PLAN_STATUSES",
]

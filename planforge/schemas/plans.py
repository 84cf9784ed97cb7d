from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from .enums import EvaluationPhase, PlanPhase, PlanStatus, TaskStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenUsage(BaseModel):
    input: int = Field(0, ge=0)
    output: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class TaskResult(BaseModel):
    status: Literal["ok", "error"]
    summary: str | None = None
    output_text: str | None = None
    error: str | None = None
    token_usage: TokenUsage | None = None


class PlanTask(BaseModel):
    id: str = Field(..., min_length=1)
    title: str
    instructions: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    group: str | None = None
    result: TaskResult | None = None
    retries: int = Field(0, ge=0)
    max_retries: int = Field(0, ge=0)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PlanBudget(BaseModel):
    max_agent_turns: int = Field(..., ge=0, description="Agent turns across planning, workers and evaluation.")
    max_tokens: int = Field(..., ge=0)
    max_time_ms: int = Field(..., ge=0, description="Wall-clock ceiling in milliseconds.")
    max_retries: int = Field(..., ge=0, description="Per-task retry limit.")
    max_concurrency: int = Field(..., ge=1, description="Maximum parallel workers per batch.")
    replan_threshold: int = Field(..., ge=0, le=100, description="Batch failure percentage triggering a replan.")


class PlanUsage(BaseModel):
    agent_turns: int = Field(0, ge=0)
    total_tokens: int = Field(0, ge=0)
    errors: int = Field(0, ge=0)
    started_at: datetime | None = None


class NotifyTarget(BaseModel):
    channel: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1)
    account_id: str | None = None


class CriterionStatus(BaseModel):
    criterion: str
    met: bool = False
    notes: str | None = None


class Evaluation(BaseModel):
    score: int = Field(..., ge=0, le=100)
    assessment: str
    criteria_status: list[CriterionStatus] = Field(default_factory=list)
    suggestions: str | None = None


class Plan(BaseModel):
    id: str = Field(..., min_length=1)
    goal: str = Field(..., min_length=1)
    criteria: list[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING
    current_phase: PlanPhase = PlanPhase.PLANNING
    tasks: list[PlanTask] = Field(default_factory=list)
    budget: PlanBudget
    usage: PlanUsage = Field(default_factory=PlanUsage)
    notify: NotifyTarget | None = None
    plan_revision: int = Field(0, ge=0)
    final_evaluation: Evaluation | None = None
    stop_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_task(self, task_id: str) -> PlanTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def completed_task_ids(self) -> set[str]:
        return {task.id for task in self.tasks if task.status == TaskStatus.COMPLETED}

    def count_tasks(self, status: TaskStatus) -> int:
        return sum(1 for task in self.tasks if task.status == status)


class TaskStateRecord(BaseModel):
    plan_id: str
    task_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    from_status: TaskStatus
    to_status: TaskStatus
    reason: str | None = None


class WorkerRunRecord(BaseModel):
    plan_id: str
    task_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: Literal["ok", "error"]
    summary: str | None = None
    output_text: str | None = None
    error: str | None = None
    prompt_chars: int = Field(0, ge=0)
    duration_ms: float = Field(0.0, ge=0.0)


class PlanEvaluationRecord(BaseModel):
    plan_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    phase: EvaluationPhase
    outcome: Literal["ok", "fallback", "no_plan"] = "ok"
    result: Evaluation | None = None
    task_count: int | None = None
    prompt_chars: int = Field(0, ge=0)
    duration_ms: float = Field(0.0, ge=0.0)


__all__ = [
    "utc_now",
    "TokenUsage",
    "TaskResult",
    "PlanTask",
    "PlanBudget",
    "PlanUsage",
    "NotifyTarget",
    "CriterionStatus",
    "Evaluation",
    "Plan",
    "TaskStateRecord",
    "WorkerRunRecord",
    "PlanEvaluationRecord",
]

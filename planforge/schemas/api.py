from __future__ import annotations

from pydantic import BaseModel, Field

from .enums import PlanPhase, PlanStatus, TaskStatus
from .plans import NotifyTarget, Plan, PlanEvaluationRecord, PlanTask, WorkerRunRecord


class BudgetOverrides(BaseModel):
    max_agent_turns: int | None = Field(default=None, ge=0)
    max_tokens: int | None = Field(default=None, ge=0)
    max_time_ms: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    max_concurrency: int | None = Field(default=None, ge=1)
    replan_threshold: int | None = Field(default=None, ge=0, le=100)


class StartPlanRequest(BaseModel):
    goal: str = Field(..., min_length=1)
    criteria: list[str] = Field(default_factory=list)
    budget: BudgetOverrides = Field(default_factory=BudgetOverrides)
    notify: NotifyTarget | None = None


class ResumePlanRequest(BaseModel):
    add_turns: int | None = Field(default=None, ge=0)
    add_tokens: int | None = Field(default=None, ge=0)
    add_time_ms: int | None = Field(default=None, ge=0)


class PlanStatusResponse(BaseModel):
    plan_id: str
    status: PlanStatus


class PlanSummary(BaseModel):
    id: str
    goal: str
    status: PlanStatus
    phase: PlanPhase
    tasks: int
    completed_tasks: int
    agent_turns: int
    max_agent_turns: int
    final_score: int | None = None
    is_running: bool = False

    @classmethod
    def from_plan(cls, plan: Plan, *, is_running: bool) -> "PlanSummary":
        return cls(
            id=plan.id,
            goal=plan.goal,
            status=plan.status,
            phase=plan.current_phase,
            tasks=len(plan.tasks),
            completed_tasks=plan.count_tasks(TaskStatus.COMPLETED),
            agent_turns=plan.usage.agent_turns,
            max_agent_turns=plan.budget.max_agent_turns,
            final_score=plan.final_evaluation.score if plan.final_evaluation else None,
            is_running=is_running,
        )


class PlanDetail(BaseModel):
    plan: Plan
    worker_runs: list[WorkerRunRecord] = Field(default_factory=list)
    evaluations: list[PlanEvaluationRecord] = Field(default_factory=list)
    is_running: bool = False


class PlanOverview(BaseModel):
    total_plans: int
    active_plan_ids: list[str] = Field(default_factory=list)
    plans: list[PlanSummary] = Field(default_factory=list)


class TaskBoard(BaseModel):
    plan_id: str
    goal: str
    status: PlanStatus
    phase: PlanPhase
    plan_revision: int
    agent_turns: int
    max_agent_turns: int
    columns: dict[TaskStatus, list[PlanTask]] = Field(default_factory=dict)
    final_score: int | None = None
    assessment: str | None = None

    def render(self) -> str:
        """Plain-text board grouped by task status."""
        lines = [
            f"Plan: {self.goal} [{self.plan_id}]",
            f"Status: {self.status.value} | Phase: {self.phase.value} | Revision: {self.plan_revision}",
            f"Turns: {self.agent_turns}/{self.max_agent_turns}",
            "",
        ]
        for status in TaskStatus:
            tasks = self.columns.get(status) or []
            if not tasks:
                continue
            lines.append(f"--- {status.value.upper()} ({len(tasks)}) ---")
            for task in tasks:
                line = f"  [{task.id}] {task.title}"
                if task.group:
                    line += f" ({task.group})"
                if task.dependencies:
                    line += f" [deps: {','.join(task.dependencies)}]"
                if task.retries > 0:
                    line += f" [retries: {task.retries}/{task.max_retries}]"
                if task.result and task.result.summary:
                    line += f" -- {task.result.summary[:80]}"
                if task.result and task.result.error:
                    line += f" -- ERR: {task.result.error[:80]}"
                lines.append(line)
            lines.append("")
        if self.final_score is not None:
            lines.append(f"Final Score: {self.final_score}/100")
            lines.append(f"Assessment: {self.assessment or ''}")
        return "\n".join(lines)


__all__ = [
    "BudgetOverrides",
    "StartPlanRequest",
    "ResumePlanRequest",
    "PlanStatusResponse",
    "PlanSummary",
    "PlanDetail",
    "PlanOverview",
    "TaskBoard",
]

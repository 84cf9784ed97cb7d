from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError, model_validator

from ..core.logging import get_logger
from ..schemas.enums import EvaluationPhase, TaskStatus
from ..schemas.plans import Plan, PlanEvaluationRecord, PlanTask, TokenUsage
from .base import AgentAdapter, AgentKind, extract_json_object, session_key

logger = get_logger(name=__name__)

_TASK_FORMAT_EXAMPLE = """{
  "tasks": [
    {
      "id": "t1",
      "title": "Initialize project",
      "description": "Exact commands, file paths and contents needed to do the work",
      "dependencies": [],
      "group": "setup"
    },
    {
      "id": "t2",
      "title": "Create data layer",
      "description": "Create src/data.py containing ...",
      "dependencies": ["t1"],
      "group": "backend"
    }
  ]
}"""


class PlannedTask(BaseModel):
    """Task description emitted by the planner before it becomes a ``PlanTask``."""

    id: str = Field(..., min_length=1)
    title: str
    instructions: str = ""
    dependencies: list[str] = Field(default_factory=list)
    group: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_loose_fields(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        task_id = data.get("id")
        title = data.get("title")
        instructions = data.get("description", data.get("instructions"))
        dependencies = data.get("dependencies")
        group = data.get("group")
        return {
            "id": task_id,
            "title": title if isinstance(title, str) else f"Task {task_id}",
            "instructions": instructions if isinstance(instructions, str) else "",
            "dependencies": [dep for dep in dependencies if isinstance(dep, str)]
            if isinstance(dependencies, list)
            else [],
            "group": group if isinstance(group, str) else None,
        }

    def to_plan_task(self, *, max_retries: int) -> PlanTask:
        return PlanTask(
            id=self.id,
            title=self.title,
            instructions=self.instructions,
            status=TaskStatus.PENDING,
            dependencies=list(self.dependencies),
            group=self.group,
            retries=0,
            max_retries=max_retries,
        )


@dataclass(slots=True)
class PlannerOutcome:
    tasks: list[PlannedTask] | None
    token_usage: TokenUsage | None = None


def _numbered(criteria: list[str]) -> str:
    return "\n".join(f"  {index}. {criterion}" for index, criterion in enumerate(criteria, start=1))


def build_planner_prompt(goal: str, criteria: list[str]) -> str:
    return f"""You are a project planner. Decompose this goal into a DAG of focused,
independently executable tasks.

## Goal
{goal}

## Acceptance Criteria
{_numbered(criteria)}

## Rules
- Each task should be completable in a single agent turn
- Keep tasks as independent as possible
- Use dependencies only when order truly matters
- Group related tasks (for example "setup", "backend", "deploy")
- Descriptions must be specific enough to execute without extra context
- 5-20 tasks is typical; do not over-decompose

Return ONLY valid JSON (no markdown fences, no extra text):
{_TASK_FORMAT_EXAMPLE}"""


def build_replanner_prompt(plan: Plan) -> str:
    completed = "\n".join(
        f"  - [{task.id}] {task.title}: {(task.result.summary if task.result else None) or 'completed'}"
        for task in plan.tasks
        if task.status == TaskStatus.COMPLETED
    )
    failed = "\n".join(
        f"  - [{task.id}] {task.title}: {(task.result.error if task.result else None) or 'failed'}"
        for task in plan.tasks
        if task.status == TaskStatus.FAILED
    )
    remaining = "\n".join(
        f"  - [{task.id}] {task.title} (deps: {', '.join(task.dependencies) or 'none'})"
        for task in plan.tasks
        if task.status in (TaskStatus.PENDING, TaskStatus.READY)
    )
    return f"""You are replanning a project. Some tasks failed and need alternative approaches.

## Original Goal
{plan.goal}

## Acceptance Criteria
{_numbered(plan.criteria)}

## Completed Tasks
{completed or '  (none)'}

## Failed Tasks
{failed or '  (none)'}

## Remaining Tasks
{remaining or '  (none)'}

Return an updated task list as JSON in the planner format.
You may add new tasks, rewrite task descriptions or drop blocked tasks.
Only include tasks that still need to be done. Do NOT include completed tasks.
Dependencies may reference completed task IDs; they are already satisfied.

Return ONLY valid JSON (no markdown fences, no extra text):
{_TASK_FORMAT_EXAMPLE}"""


def parse_planner_response(text: str) -> list[PlannedTask] | None:
    """Parse a planner reply; ``None`` means no usable plan was produced."""
    payload = extract_json_object(text)
    if payload is None:
        return None
    entries = payload.get("tasks")
    if not isinstance(entries, list):
        return None

    tasks: list[PlannedTask] = []
    for entry in entries:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("id"), str):
            continue
        try:
            tasks.append(PlannedTask.model_validate(entry))
        except ValidationError as exc:
            logger.debug("planner_task_dropped", task_id=entry.get("id"), error=str(exc))
    return tasks or None


class PlannerAgent(AgentAdapter):
    kind = AgentKind.PLANNER
    agent_id = "planner"

    async def plan(self, plan: Plan, *, replan: bool = False) -> PlannerOutcome:
        prompt = build_replanner_prompt(plan) if replan else build_planner_prompt(plan.goal, plan.criteria)
        call = await self._call(key=session_key(self.kind, plan.id), prompt=prompt)

        tasks = parse_planner_response(call.text)
        if tasks and replan:
            completed = plan.completed_task_ids()
            tasks = [task for task in tasks if task.id not in completed] or None

        phase = EvaluationPhase.REPLANNING if replan else EvaluationPhase.PLANNING
        self._store.append_evaluation(
            PlanEvaluationRecord(
                plan_id=plan.id,
                phase=phase,
                outcome="ok" if tasks else "no_plan",
                task_count=len(tasks) if tasks else 0,
                prompt_chars=len(prompt),
                duration_ms=call.duration_ms,
            )
        )
        if not tasks:
            logger.error(
                "planner_no_plan",
                plan_id=plan.id,
                phase=phase.value,
                response=call.text[:200],
            )
        return PlannerOutcome(tasks=tasks, token_usage=call.token_usage)


__all__ = [
    "PlannedTask",
    "PlannerAgent",
    "PlannerOutcome",
    "build_planner_prompt",
    "build_replanner_prompt",
    "parse_planner_response",
]

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..schemas.enums import TaskStatus
from ..schemas.plans import PlanTask


def find_ready_tasks(tasks: Sequence[PlanTask]) -> list[PlanTask]:
    return [task for task in tasks if task.status == TaskStatus.READY]


def update_ready_tasks(tasks: Sequence[PlanTask], completed_ids: Iterable[str]) -> list[str]:
    """Promote pending tasks whose dependencies are all satisfied.

    A dependency counts as satisfied when it is listed in ``completed_ids``
    (which may name tasks from an earlier plan revision) or when the task in
    ``tasks`` is already completed. Returns the promoted task ids.
    """
    satisfied = set(completed_ids)
    satisfied.update(task.id for task in tasks if task.status == TaskStatus.COMPLETED)

    promoted: list[str] = []
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if all(dep in satisfied for dep in task.dependencies):
            task.status = TaskStatus.READY
            promoted.append(task.id)
    return promoted


@dataclass(slots=True)
class SchedulerState:
    has_ready: bool
    has_running: bool
    all_done: bool
    deadlocked: bool
    counts: dict[TaskStatus, int] = field(default_factory=dict)

    @property
    def pending_count(self) -> int:
        return self.counts.get(TaskStatus.PENDING, 0)

    @property
    def ready_count(self) -> int:
        return self.counts.get(TaskStatus.READY, 0)

    @property
    def running_count(self) -> int:
        return self.counts.get(TaskStatus.RUNNING, 0)

    @property
    def completed_count(self) -> int:
        return self.counts.get(TaskStatus.COMPLETED, 0)

    @property
    def failed_count(self) -> int:
        return self.counts.get(TaskStatus.FAILED, 0)

    @property
    def skipped_count(self) -> int:
        return self.counts.get(TaskStatus.SKIPPED, 0)


def analyze_scheduler_state(tasks: Sequence[PlanTask]) -> SchedulerState:
    counts = {status: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status] += 1

    pending = counts[TaskStatus.PENDING]
    ready = counts[TaskStatus.READY]
    running = counts[TaskStatus.RUNNING]

    return SchedulerState(
        has_ready=ready > 0,
        has_running=running > 0,
        all_done=pending == 0 and ready == 0 and running == 0,
        # pending work that can never become ready without intervention
        deadlocked=ready == 0 and running == 0 and pending > 0,
        counts=counts,
    )


def skip_downstream_tasks(tasks: Sequence[PlanTask], failed_task_id: str) -> list[str]:
    """Skip every pending/ready task that transitively depends on ``failed_task_id``."""
    blocked = {failed_task_id}
    skipped: list[str] = []

    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.status not in (TaskStatus.PENDING, TaskStatus.READY):
                continue
            if task.id in blocked:
                continue
            if any(dep in blocked for dep in task.dependencies):
                task.status = TaskStatus.SKIPPED
                blocked.add(task.id)
                skipped.append(task.id)
                changed = True

    return skipped


__all__ = [
    "SchedulerState",
    "analyze_scheduler_state",
    "find_ready_tasks",
    "skip_downstream_tasks",
    "update_ready_tasks",
]

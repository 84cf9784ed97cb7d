from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Sequence

from ..schemas.plans import PlanTask

CYCLE_ERROR = "Cycle detected in task dependencies"


@dataclass(slots=True)
class DagValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_dag(tasks: Sequence[PlanTask]) -> DagValidationResult:
    """Check that ``tasks`` form a DAG.

    Structural problems (duplicate ids, self references, unknown dependencies)
    are all collected. Cycle detection only runs on an otherwise clean list.
    """
    errors: list[str] = []
    ids = {task.id for task in tasks}

    if len(ids) != len(tasks):
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                errors.append(f"Duplicate task ID: {task.id}")
            seen.add(task.id)

    for task in tasks:
        for dep in task.dependencies:
            if dep == task.id:
                errors.append(f"Task {task.id} depends on itself")
            elif dep not in ids:
                errors.append(f"Task {task.id} depends on unknown task {dep}")

    if not errors and _has_cycle(tasks):
        errors.append(CYCLE_ERROR)

    return DagValidationResult(valid=not errors, errors=errors)


def _has_cycle(tasks: Sequence[PlanTask]) -> bool:
    # Kahn's algorithm
    in_degree: dict[str, int] = {task.id: 0 for task in tasks}
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in task.dependencies:
            dependents[dep].append(task.id)
            in_degree[task.id] += 1

    queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
    processed = 0
    while queue:
        current = queue.popleft()
        processed += 1
        for nxt in dependents[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    return processed < len(tasks)


__all__ = ["CYCLE_ERROR", "DagValidationResult", "validate_dag"]

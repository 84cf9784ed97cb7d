from __future__ import annotations

from planforge.orchestration.dag import CYCLE_ERROR, validate_dag
from planforge.schemas.plans import PlanTask


def _task(task_id: str, *deps: str) -> PlanTask:
    return PlanTask(id=task_id, title=task_id, dependencies=list(deps))


def test_valid_diamond_is_accepted() -> None:
    tasks = [_task("a"), _task("b", "a"), _task("c", "a"), _task("d", "b", "c")]

    result = validate_dag(tasks)

    assert result.valid is True
    assert result.errors == []


def test_empty_task_list_is_a_valid_dag() -> None:
    assert validate_dag([]).valid is True


def test_structural_errors_are_accumulated() -> None:
    tasks = [_task("a", "a"), _task("a"), _task("b", "ghost")]

    result = validate_dag(tasks)

    assert result.valid is False
    assert "Duplicate task ID: a" in result.errors
    assert "Task a depends on itself" in result.errors
    assert "Task b depends on unknown task ghost" in result.errors


def test_cycle_reported_once() -> None:
    tasks = [_task("a", "c"), _task("b", "a"), _task("c", "b"), _task("d")]

    result = validate_dag(tasks)

    assert result.valid is False
    assert result.errors == [CYCLE_ERROR]


def test_cycle_check_skipped_when_structure_is_broken() -> None:
    tasks = [_task("a", "b"), _task("b", "a"), _task("c", "missing")]

    result = validate_dag(tasks)

    assert result.errors == ["Task c depends on unknown task missing"]

from __future__ import annotations

import json
from pathlib import Path

from planforge.orchestration.store import PlanStore
from planforge.schemas.enums import EvaluationPhase, PlanStatus, TaskStatus
from planforge.schemas.plans import (
    Evaluation,
    NotifyTarget,
    Plan,
    PlanBudget,
    PlanEvaluationRecord,
    PlanTask,
    TaskResult,
    TaskStateRecord,
    WorkerRunRecord,
    utc_now,
)


def _plan(plan_id: str = "p1") -> Plan:
    return Plan(
        id=plan_id,
        goal="Write the docs",
        criteria=["docs exist"],
        budget=PlanBudget(
            max_agent_turns=5,
            max_tokens=100,
            max_time_ms=1000,
            max_retries=1,
            max_concurrency=2,
            replan_threshold=50,
        ),
        tasks=[
            PlanTask(
                id="t1",
                title="Draft",
                status=TaskStatus.COMPLETED,
                result=TaskResult(status="ok", summary="drafted"),
                completed_at=utc_now(),
            ),
            PlanTask(id="t2", title="Review", dependencies=["t1"], group="qa"),
        ],
        notify=NotifyTarget(channel="slack", to="#docs"),
        final_evaluation=Evaluation(score=80, assessment="fine"),
    )


def test_plan_round_trips_through_disk(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    plan = _plan()

    store.save(plan)
    loaded = PlanStore(tmp_path).get("p1")

    assert loaded == plan
    document = json.loads(store.plans_path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert set(document["plans"]) == {"p1"}


def test_missing_or_corrupt_file_reads_as_empty(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    assert store.list_plans() == []

    tmp_path.mkdir(exist_ok=True)
    store.plans_path.write_text("{not json", encoding="utf-8")
    assert store.read_all() == {}

    store.plans_path.write_text(json.dumps({"version": 99, "plans": {}}), encoding="utf-8")
    assert store.read_all() == {}


def test_update_applies_mutation_atomically(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    store.save(_plan("p1"))
    store.save(_plan("p2"))

    def _stop(plans: dict[str, Plan]) -> None:
        plans["p2"].status = PlanStatus.STOPPED

    store.update(_stop)

    assert store.get("p1").status == PlanStatus.PENDING
    assert store.get("p2").status == PlanStatus.STOPPED
    assert not list(tmp_path.glob("*.tmp"))


def test_save_stores_a_snapshot(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    plan = _plan()
    store.save(plan)

    plan.goal = "changed after save"

    assert store.get("p1").goal == "Write the docs"


def test_audit_logs_append_and_skip_malformed_lines(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    store.append_task_state(
        TaskStateRecord(plan_id="p1", task_id="t1", from_status=TaskStatus.PENDING, to_status=TaskStatus.READY)
    )
    with (store.plan_dir("p1") / "tasks.jsonl").open("a", encoding="utf-8") as handle:
        handle.write("garbage line\n\n")
    store.append_task_state(
        TaskStateRecord(plan_id="p1", task_id="t1", from_status=TaskStatus.READY, to_status=TaskStatus.RUNNING)
    )

    records = store.read_task_states("p1")

    assert [(r.from_status, r.to_status) for r in records] == [
        (TaskStatus.PENDING, TaskStatus.READY),
        (TaskStatus.READY, TaskStatus.RUNNING),
    ]


def test_worker_and_evaluation_logs(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    store.append_worker_run(WorkerRunRecord(plan_id="p1", task_id="t1", status="ok", summary="done", duration_ms=12.5))
    store.append_evaluation(PlanEvaluationRecord(plan_id="p1", phase=EvaluationPhase.PLANNING, task_count=3))

    assert store.read_worker_runs("p1")[0].summary == "done"
    assert store.read_evaluations("p1")[0].task_count == 3
    assert store.read_worker_runs("unknown") == []

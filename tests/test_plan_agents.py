from __future__ import annotations

from pathlib import Path

import pytest

from planforge.agents.base import AgentKind, extract_json_object, session_key
from planforge.agents.evaluator import EvaluatorAgent, parse_evaluator_response
from planforge.agents.planner import PlannerAgent, build_replanner_prompt, parse_planner_response
from planforge.agents.worker import WorkerAgent, build_worker_prompt
from planforge.orchestration.store import PlanStore
from planforge.schemas.enums import EvaluationPhase, TaskStatus
from planforge.schemas.plans import Plan, PlanBudget, PlanTask, TaskResult, TokenUsage
from planforge.services.agent_service import AgentTurnResult
from tests.helpers.stubs import StubAgentService, planned_task, planner_reply


def _plan(tasks: list[PlanTask] | None = None) -> Plan:
    return Plan(
        id="p1",
        goal="Launch the site",
        criteria=["site is live", "docs written"],
        budget=PlanBudget(
            max_agent_turns=20,
            max_tokens=10_000,
            max_time_ms=60_000,
            max_retries=1,
            max_concurrency=2,
            replan_threshold=50,
        ),
        tasks=tasks or [],
    )


def test_session_key_format() -> None:
    assert session_key(AgentKind.PLANNER, "p1") == "planner:p1"
    assert session_key(AgentKind.WORKER, "p1", "t3") == "worker:p1:t3"


def test_extract_json_object_handles_prose_and_braces_in_strings() -> None:
    text = 'Sure! {"a": "brace } inside", "b": {"c": 1}} trailing {"ignored": true}'

    assert extract_json_object(text) == {"a": "brace } inside", "b": {"c": 1}}
    assert extract_json_object("no json here") is None
    assert extract_json_object("{broken") is None


def test_parse_planner_response_is_lenient() -> None:
    text = """```json
    {"tasks": [
        {"id": "t1", "description": "setup", "dependencies": ["x", 3, null]},
        {"title": "no id"},
        {"id": "t2", "title": "Build", "instructions": "go", "group": "backend"}
    ]}
    ```"""

    tasks = parse_planner_response(text)

    assert tasks is not None
    assert [task.id for task in tasks] == ["t1", "t2"]
    assert tasks[0].title == "Task t1"
    assert tasks[0].dependencies == ["x"]
    assert tasks[1].instructions == "go"
    assert tasks[1].group == "backend"


@pytest.mark.parametrize("text", ["", "nothing", '{"tasks": []}', '{"tasks": "nope"}', '{"other": 1}'])
def test_parse_planner_response_reports_no_plan(text: str) -> None:
    assert parse_planner_response(text) is None


@pytest.mark.asyncio
async def test_planner_agent_logs_planning_record(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    service = StubAgentService(
        plan=[AgentTurnResult(status="ok", output_text=planner_reply([planned_task("t1")]), token_usage=TokenUsage(total=42))]
    )
    agent = PlannerAgent(service, store)

    outcome = await agent.plan(_plan())

    assert outcome.tasks is not None and outcome.tasks[0].id == "t1"
    assert outcome.token_usage == TokenUsage(total=42)
    assert service.calls[0].session_key == "planner:p1"
    assert service.calls[0].agent_id == "planner"
    record = store.read_evaluations("p1")[0]
    assert record.phase == EvaluationPhase.PLANNING
    assert record.task_count == 1


@pytest.mark.asyncio
async def test_replan_drops_completed_ids(tmp_path: Path) -> None:
    plan = _plan(
        [
            PlanTask(id="t1", title="Setup", status=TaskStatus.COMPLETED, result=TaskResult(status="ok", summary="ok")),
            PlanTask(id="t2", title="Build", status=TaskStatus.FAILED, result=TaskResult(status="error", error="E42")),
        ]
    )
    service = StubAgentService(replan=[planner_reply([planned_task("t1"), planned_task("t3", "t1")])])

    outcome = await PlannerAgent(service, PlanStore(tmp_path)).plan(plan, replan=True)

    assert [task.id for task in outcome.tasks] == ["t3"]
    prompt = service.calls[0].prompt
    assert "[t1] Setup: ok" in prompt
    assert "[t2] Build: E42" in prompt
    assert "Do NOT include completed tasks" in prompt


@pytest.mark.asyncio
async def test_planner_exception_becomes_no_plan(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    service = StubAgentService(plan=[RuntimeError("service down")])

    outcome = await PlannerAgent(service, store).plan(_plan())

    assert outcome.tasks is None
    assert store.read_evaluations("p1")[0].outcome == "no_plan"


def test_worker_prompt_includes_completed_dependency_context() -> None:
    plan = _plan(
        [
            PlanTask(id="t1", title="Setup", status=TaskStatus.COMPLETED, result=TaskResult(status="ok", summary="Repo ready")),
            PlanTask(id="t0", title="Other", status=TaskStatus.FAILED),
            PlanTask(id="t2", title="Build", instructions="Run make", dependencies=["t1", "t0"]),
        ]
    )

    prompt = build_worker_prompt(plan.tasks[2], plan)

    assert "## Your Task\nBuild" in prompt
    assert "## Instructions\nRun make" in prompt
    assert "### t1: Setup\nRepo ready" in prompt
    assert "t0: Other" not in prompt


@pytest.mark.asyncio
async def test_worker_summary_defaults(tmp_path: Path) -> None:
    long_output = "x" * 700
    outcomes = {
        "t1": AgentTurnResult(status="ok", output_text="out", summary="short summary"),
        "t2": AgentTurnResult(status="ok", output_text=long_output),
        "t3": AgentTurnResult(status="ok"),
    }
    service = StubAgentService(worker=lambda task_id, attempt: outcomes[task_id])
    store = PlanStore(tmp_path)
    plan = _plan([PlanTask(id=task_id, title=task_id) for task_id in outcomes])
    worker = WorkerAgent(service, store)

    results = [await worker.execute(task, plan) for task in plan.tasks]

    assert [result.summary for result in results] == ["short summary", "x" * 500, "Task completed"]
    assert len(store.read_worker_runs("p1")) == 3


@pytest.mark.asyncio
async def test_worker_errors_never_raise(tmp_path: Path) -> None:
    plan = _plan([PlanTask(id="t1", title="t1"), PlanTask(id="t2", title="t2")])
    scripted = {"t1": RuntimeError("network"), "t2": AgentTurnResult(status="error", error="tool crashed")}
    service = StubAgentService(worker=lambda task_id, attempt: scripted[task_id])
    store = PlanStore(tmp_path)
    worker = WorkerAgent(service, store)

    first = await worker.execute(plan.tasks[0], plan)
    second = await worker.execute(plan.tasks[1], plan)

    assert first == TaskResult(status="error", error="network")
    assert second.status == "error" and second.error == "tool crashed"
    assert [run.status for run in store.read_worker_runs("p1")] == ["error", "error"]
    assert service.calls[0].session_key == "worker:p1:t1"


def test_parse_evaluator_clamps_and_aligns_criteria() -> None:
    text = '{"score": 120.6, "assessment": "great", "criteriaStatus": [{"met": true, "notes": "live"}], "suggestions": 5}'

    evaluation, fallback = parse_evaluator_response(text, ["site is live", "docs written"])

    assert fallback is False
    assert evaluation.score == 100
    assert [(c.criterion, c.met, c.notes) for c in evaluation.criteria_status] == [
        ("site is live", True, "live"),
        ("docs written", False, None),
    ]
    assert evaluation.suggestions is None


def test_parse_evaluator_defaults_for_bad_fields() -> None:
    evaluation, fallback = parse_evaluator_response('{"score": "high"}', ["a"])

    assert fallback is False
    assert evaluation.score == 0
    assert evaluation.assessment == "No assessment provided"


@pytest.mark.asyncio
async def test_evaluator_fallback_on_unparseable_reply(tmp_path: Path) -> None:
    store = PlanStore(tmp_path)
    service = StubAgentService(evaluation=["I think it went well."])

    outcome = await EvaluatorAgent(service, store).evaluate(_plan())

    assert outcome.fallback is True
    assert outcome.evaluation.score == 0
    assert all(not status.met and status.notes == "Parse error" for status in outcome.evaluation.criteria_status)
    assert len(outcome.evaluation.criteria_status) == 2
    assert outcome.evaluation.suggestions == "Re-evaluate manually."
    assert service.calls[0].agent_id == "qa"
    record = store.read_evaluations("p1")[0]
    assert record.phase == EvaluationPhase.FINAL
    assert record.outcome == "fallback"

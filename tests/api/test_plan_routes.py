from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator

import httpx
import pytest
import pytest_asyncio

from planforge.core.config import PlannerSettings
from planforge.dependencies import set_plan_service
from planforge.main import app
from planforge.orchestration.orchestrator import PlanOrchestrator
from planforge.orchestration.service import PlanService
from planforge.orchestration.store import PlanStore
from tests.helpers.stubs import StubAgentService, planned_task, planner_reply


def _install(tmp_path: Path, agents: StubAgentService, **overrides) -> PlanService:
    settings = PlannerSettings(poll_interval_seconds=0, batch_pause_seconds=0, **overrides)
    store = PlanStore(tmp_path)
    orchestrator = PlanOrchestrator(store=store, agent_service=agents, settings=settings)
    service = PlanService(store=store, orchestrator=orchestrator, settings=settings)
    set_plan_service(service)
    return service


@pytest_asyncio.fixture
async def client() -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            yield http
    finally:
        set_plan_service(None)
        await transport.aclose()


@pytest.mark.asyncio
async def test_start_plan_returns_accepted_and_runs(tmp_path: Path, client: httpx.AsyncClient) -> None:
    service = _install(tmp_path, StubAgentService(plan=[planner_reply([planned_task("t1"), planned_task("t2", "t1")])]))

    response = await client.post(
        "/api/v1/plans",
        json={"goal": "Write release notes", "criteria": ["notes exist"], "budget": {"max_retries": 0}},
    )

    assert response.status_code == 202
    payload = response.json()
    assert payload["status"] == "pending"
    plan_id = payload["plan_id"]

    await service.orchestrator.wait_for_runs()

    detail = await client.get(f"/api/v1/plans/{plan_id}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["plan"]["status"] == "completed"
    assert body["plan"]["budget"]["max_retries"] == 0
    assert len(body["worker_runs"]) == 2
    assert body["is_running"] is False

    board = await client.get(f"/api/v1/plans/{plan_id}/tasks")
    assert board.status_code == 200
    assert [task["id"] for task in board.json()["columns"]["completed"]] == ["t1", "t2"]

    listing = await client.get("/api/v1/plans")
    assert listing.json()["total_plans"] == 1
    active = await client.get("/api/v1/plans", params={"active": "true"})
    assert active.json()["plans"] == []


@pytest.mark.asyncio
async def test_start_plan_validates_goal(tmp_path: Path, client: httpx.AsyncClient) -> None:
    _install(tmp_path, StubAgentService())

    response = await client.post("/api/v1/plans", json={"goal": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_plan_returns_404(tmp_path: Path, client: httpx.AsyncClient) -> None:
    _install(tmp_path, StubAgentService())

    for response in (
        await client.get("/api/v1/plans/missing"),
        await client.get("/api/v1/plans/missing/tasks"),
        await client.post("/api/v1/plans/missing/stop"),
        await client.post("/api/v1/plans/missing/resume"),
    ):
        assert response.status_code == 404
        assert response.json()["detail"] == "Plan missing not found"


@pytest.mark.asyncio
async def test_resume_of_completed_plan_conflicts(tmp_path: Path, client: httpx.AsyncClient) -> None:
    service = _install(tmp_path, StubAgentService(plan=[planner_reply([planned_task("t1")])]))
    plan = await service.start("Done soon")
    await service.orchestrator.wait_for_runs()

    response = await client.post(f"/api/v1/plans/{plan.id}/resume", json={"add_turns": 5})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_capacity_and_stop(tmp_path: Path, client: httpx.AsyncClient) -> None:
    gate = asyncio.Event()
    agents = StubAgentService(plan=[planner_reply([planned_task("t1")])], worker_gate=gate)
    service = _install(tmp_path, agents, max_concurrent_plans=1)

    first = await client.post("/api/v1/plans", json={"goal": "one"})
    second = await client.post("/api/v1/plans", json={"goal": "two"})

    assert first.status_code == 202
    assert second.status_code == 429
    assert "Max concurrent plans reached" in second.json()["detail"]

    plan_id = first.json()["plan_id"]
    stopped = await client.post(f"/api/v1/plans/{plan_id}/stop")
    assert stopped.status_code == 200
    assert stopped.json() == {"plan_id": plan_id, "status": "stopped"}

    gate.set()
    await service.orchestrator.wait_for_runs()

    resumed = await client.post(f"/api/v1/plans/{plan_id}/resume", json={"add_turns": 3})
    assert resumed.status_code == 200
    assert resumed.json()["status"] == "pending"
    await service.orchestrator.wait_for_runs()
    assert service.get_plan(plan_id).budget.max_agent_turns == 53


@pytest.mark.asyncio
async def test_health_and_metrics(tmp_path: Path, client: httpx.AsyncClient) -> None:
    _install(tmp_path, StubAgentService())

    root = await client.get("/")
    metrics = await client.get("/metrics")

    assert root.status_code == 200
    assert root.json()["active_runs"] == 0
    assert metrics.status_code == 200
    assert metrics.headers.get("content-type", "").startswith("text/plain")
    assert "planforge_plan_runs_active" in metrics.text


def test_plan_bodies_are_not_embedded() -> None:
    paths = app.openapi()["paths"]

    start_body = paths["/api/v1/plans"]["post"]["requestBody"]["content"]["application/json"]["schema"]
    resume_body = paths["/api/v1/plans/{plan_id}/resume"]["post"]["requestBody"]["content"]["application/json"]["schema"]

    assert start_body == {"$ref": "#/components/schemas/StartPlanRequest"}
    assert "Body_" not in str(resume_body)
    assert "ResumePlanRequest" in str(resume_body)

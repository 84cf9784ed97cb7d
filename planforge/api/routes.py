from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.logging import get_logger
from ..dependencies import get_plan_service
from ..orchestration.service import (
    PlanCapacityError,
    PlanNotFoundError,
    PlanService,
    PlanServiceError,
    PlanStateError,
)
from ..schemas.api import (
    PlanDetail,
    PlanOverview,
    PlanStatusResponse,
    ResumePlanRequest,
    StartPlanRequest,
    TaskBoard,
)

logger = get_logger(name=__name__)

router = APIRouter(prefix="/plans", tags=["plans"])


def _to_http_error(exc: PlanServiceError) -> HTTPException:
    if isinstance(exc, PlanNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PlanStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PlanCapacityError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("", response_model=PlanStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_plan(
    request: StartPlanRequest,
    service: PlanService = Depends(get_plan_service),
) -> PlanStatusResponse:
    try:
        plan = await service.start(
            request.goal,
            request.criteria,
            budget=request.budget,
            notify=request.notify,
        )
    except PlanServiceError as exc:
        logger.warning("plan_start_rejected", error=str(exc))
        raise _to_http_error(exc) from exc
    return PlanStatusResponse(plan_id=plan.id, status=plan.status)


@router.get("", response_model=PlanOverview)
async def list_plans(
    active: bool = Query(False, description="Only include planning or running plans."),
    service: PlanService = Depends(get_plan_service),
) -> PlanOverview:
    overview = service.overview()
    if active:
        overview.plans = service.list_plans(active_only=True)
    return overview


@router.get("/{plan_id}", response_model=PlanDetail)
async def get_plan(plan_id: str, service: PlanService = Depends(get_plan_service)) -> PlanDetail:
    try:
        return service.detail(plan_id)
    except PlanServiceError as exc:
        raise _to_http_error(exc) from exc


@router.get("/{plan_id}/tasks", response_model=TaskBoard)
async def get_task_board(plan_id: str, service: PlanService = Depends(get_plan_service)) -> TaskBoard:
    try:
        return service.task_board(plan_id)
    except PlanServiceError as exc:
        raise _to_http_error(exc) from exc


@router.post("/{plan_id}/stop", response_model=PlanStatusResponse)
async def stop_plan(plan_id: str, service: PlanService = Depends(get_plan_service)) -> PlanStatusResponse:
    try:
        plan = await service.stop(plan_id)
    except PlanServiceError as exc:
        raise _to_http_error(exc) from exc
    return PlanStatusResponse(plan_id=plan.id, status=plan.status)


@router.post("/{plan_id}/resume", response_model=PlanStatusResponse)
async def resume_plan(
    plan_id: str,
    request: ResumePlanRequest | None = None,
    service: PlanService = Depends(get_plan_service),
) -> PlanStatusResponse:
    payload = request or ResumePlanRequest()
    try:
        plan = await service.resume(
            plan_id,
            add_turns=payload.add_turns,
            add_tokens=payload.add_tokens,
            add_time_ms=payload.add_time_ms,
        )
    except PlanServiceError as exc:
        logger.warning("plan_resume_rejected", plan_id=plan_id, error=str(exc))
        raise _to_http_error(exc) from exc
    return PlanStatusResponse(plan_id=plan.id, status=plan.status)


__all__ = ["router"]

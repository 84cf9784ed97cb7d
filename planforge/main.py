from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as plans_router
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .dependencies import get_plan_service, get_plan_service_singleton
from .orchestration.service import PlanService

settings = get_settings()
configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
logger = get_logger(name=__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """Relaunch interrupted plans on boot; cancel (but keep resumable) on exit."""
    service = get_plan_service_singleton(settings)
    app.state.plan_service = service
    resumed = await service.start_service()
    logger.info("planforge_started", resumed=resumed, environment=settings.environment)
    try:
        yield
    finally:
        await service.shutdown()
        logger.info("planforge_stopped")


app = FastAPI(title="PlanForge", version="0.1.0", lifespan=app_lifespan)
app.include_router(plans_router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["health"])
async def root(service: PlanService = Depends(get_plan_service)) -> dict[str, object]:
    return {
        "message": "PlanForge planner running",
        "planner_enabled": settings.planner.enabled,
        "active_runs": service.registry.active_count(),
        "max_concurrent_plans": settings.planner.max_concurrent_plans,
    }


if settings.observability.prometheus_enabled:

    @app.get("/metrics", tags=["observability"])
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

from __future__ import annotations

from .core.config import Settings, get_settings
from .orchestration.service import PlanService

_plan_service_singleton: PlanService | None = None


def get_plan_service_singleton(settings: Settings) -> PlanService:
    global _plan_service_singleton
    if _plan_service_singleton is None:
        _plan_service_singleton = PlanService.from_settings(settings)
    return _plan_service_singleton


def set_plan_service(service: PlanService | None) -> None:
    """Install (or clear) the process-wide plan service."""
    global _plan_service_singleton
    _plan_service_singleton = service


async def get_plan_service() -> PlanService:
    # no parameters: FastAPI would read get_settings' arguments as body fields
    return get_plan_service_singleton(get_settings())

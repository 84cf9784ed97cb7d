from __future__ import annotations

import uuid
from typing import Any, Mapping

from ..core.config import PlannerSettings, Settings
from ..core.logging import get_logger
from ..core.metrics import record_plan_outcome
from ..schemas.api import (
    BudgetOverrides,
    PlanDetail,
    PlanOverview,
    PlanSummary,
    TaskBoard,
)
from ..schemas.enums import ACTIVE_PLAN_STATUSES, RESUMABLE_PLAN_STATUSES, PlanPhase, PlanStatus, TaskStatus
from ..schemas.plans import NotifyTarget, Plan, PlanBudget, PlanTask, utc_now
from ..services.agent_service import AgentExecutionService, build_agent_service
from ..services.notifications import (
    AutomationPublisher,
    NotificationService,
    build_notification_service,
    log_automation_event,
)
from .orchestrator import PlanOrchestrator
from .registry import RunRegistry
from .store import PlanStore

logger = get_logger(name=__name__)

MANUAL_STOP_REASON = "Manually stopped"
_STOPPABLE_STATUSES = frozenset({PlanStatus.PENDING, PlanStatus.PLANNING, PlanStatus.RUNNING})


class PlanServiceError(RuntimeError):
    """Base class for plan lifecycle errors surfaced to callers."""


class PlanNotFoundError(PlanServiceError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


class PlanStateError(PlanServiceError):
    """The plan is not in a state that permits the requested operation."""


class PlanCapacityError(PlanServiceError):
    """Too many plans are already being driven."""


class PlanService:
    """Lifecycle facade used by the HTTP router and the CLI."""

    def __init__(
        self,
        *,
        store: PlanStore,
        orchestrator: PlanOrchestrator,
        settings: PlannerSettings | None = None,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._settings = settings or PlannerSettings()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        agent_service: AgentExecutionService | None = None,
        notifier: NotificationService | None = None,
        automation: AutomationPublisher | None = None,
    ) -> "PlanService":
        store = PlanStore.from_settings(settings)
        if automation is None:
            automation = AutomationPublisher(settings.automation)
            automation.subscribe(log_automation_event)
        orchestrator = PlanOrchestrator(
            store=store,
            agent_service=agent_service or build_agent_service(settings),
            registry=RunRegistry(),
            settings=settings.planner,
            notifier=notifier or build_notification_service(settings.notifications),
            automation=automation,
        )
        return cls(store=store, orchestrator=orchestrator, settings=settings.planner)

    @property
    def store(self) -> PlanStore:
        return self._store

    @property
    def orchestrator(self) -> PlanOrchestrator:
        return self._orchestrator

    @property
    def registry(self) -> RunRegistry:
        return self._orchestrator.registry

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    def default_budget(self, overrides: BudgetOverrides | Mapping[str, Any] | None = None) -> PlanBudget:
        values: dict[str, Any] = {
            "max_agent_turns": self._settings.default_max_agent_turns,
            "max_tokens": self._settings.default_max_tokens,
            "max_time_ms": self._settings.default_max_time_ms,
            "max_retries": self._settings.default_max_retries,
            "max_concurrency": self._settings.default_max_concurrency,
            "replan_threshold": self._settings.default_replan_threshold,
        }
        if isinstance(overrides, BudgetOverrides):
            overrides = overrides.model_dump(exclude_none=True)
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value
        return PlanBudget(**values)

    def create_plan(
        self,
        goal: str,
        criteria: list[str] | None = None,
        *,
        budget: BudgetOverrides | Mapping[str, Any] | None = None,
        notify: NotifyTarget | None = None,
    ) -> Plan:
        plan = Plan(
            id=uuid.uuid4().hex[:8],
            goal=goal,
            criteria=list(criteria or []),
            status=PlanStatus.PENDING,
            current_phase=PlanPhase.PLANNING,
            budget=self.default_budget(budget),
            notify=notify,
        )
        self._store.save(plan)
        logger.info("plan_created", plan_id=plan.id, criteria=len(plan.criteria))
        return plan

    async def start(
        self,
        goal: str,
        criteria: list[str] | None = None,
        *,
        budget: BudgetOverrides | Mapping[str, Any] | None = None,
        notify: NotifyTarget | None = None,
    ) -> Plan:
        self._ensure_capacity()
        plan = self.create_plan(goal, criteria, budget=budget, notify=notify)
        self._orchestrator.launch(plan)
        return plan

    async def stop(self, plan_id: str) -> Plan:
        self._require(plan_id)
        self.registry.cancel(plan_id)

        changed = False

        def _mark_stopped(plans: dict[str, Plan]) -> None:
            nonlocal changed
            stored = plans.get(plan_id)
            if stored is None or stored.status not in _STOPPABLE_STATUSES:
                return
            stored.status = PlanStatus.STOPPED
            stored.stop_reason = MANUAL_STOP_REASON
            stored.updated_at = utc_now()
            changed = True

        plan = self._store.update(_mark_stopped).get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if changed:
            record_plan_outcome(PlanStatus.STOPPED.value)
            logger.info("plan_stopped", plan_id=plan_id, reason=MANUAL_STOP_REASON)
            await self._orchestrator.notify(plan, f"Plan stopped: {plan.goal} [{plan.id}] -- {MANUAL_STOP_REASON}")
        return plan

    async def resume(
        self,
        plan_id: str,
        *,
        add_turns: int | None = None,
        add_tokens: int | None = None,
        add_time_ms: int | None = None,
    ) -> Plan:
        plan = self._require(plan_id)
        if self.registry.is_active(plan_id):
            raise PlanStateError(f"Plan {plan_id} still has an active run")
        self._check_resumable(plan)
        self._ensure_capacity()

        def _reopen(plans: dict[str, Plan]) -> None:
            stored = plans.get(plan_id)
            if stored is None:
                raise PlanNotFoundError(plan_id)
            self._check_resumable(stored)
            if add_turns:
                stored.budget.max_agent_turns += add_turns
            if add_tokens:
                stored.budget.max_tokens += add_tokens
            if add_time_ms:
                stored.budget.max_time_ms += add_time_ms
            stored.stop_reason = None
            stored.status = PlanStatus.PENDING
            stored.updated_at = utc_now()

        plan = self._store.update(_reopen)[plan_id]
        logger.info(
            "plan_resume_requested",
            plan_id=plan_id,
            add_turns=add_turns,
            add_tokens=add_tokens,
            add_time_ms=add_time_ms,
        )
        self._orchestrator.launch(plan)
        return plan

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_plan(self, plan_id: str) -> Plan:
        return self._require(plan_id)

    def status(self, plan_id: str | None = None) -> PlanDetail | PlanOverview:
        if plan_id is not None:
            return self.detail(plan_id)
        return self.overview()

    def detail(self, plan_id: str) -> PlanDetail:
        plan = self._require(plan_id)
        return PlanDetail(
            plan=plan,
            worker_runs=self._store.read_worker_runs(plan_id),
            evaluations=self._store.read_evaluations(plan_id),
            is_running=self.registry.is_active(plan_id),
        )

    def overview(self) -> PlanOverview:
        return PlanOverview(
            total_plans=len(self._store.list_plans()),
            active_plan_ids=self.registry.active_plan_ids(),
            plans=self.list_plans(),
        )

    def list_plans(self, *, active_only: bool = False) -> list[PlanSummary]:
        plans = self._store.list_plans()
        if active_only:
            plans = [plan for plan in plans if plan.status in ACTIVE_PLAN_STATUSES]
        return [PlanSummary.from_plan(plan, is_running=self.registry.is_active(plan.id)) for plan in plans]

    def task_board(self, plan_id: str) -> TaskBoard:
        plan = self._require(plan_id)
        columns: dict[TaskStatus, list[PlanTask]] = {status: [] for status in TaskStatus}
        for task in plan.tasks:
            columns[task.status].append(task)
        evaluation = plan.final_evaluation
        return TaskBoard(
            plan_id=plan.id,
            goal=plan.goal,
            status=plan.status,
            phase=plan.current_phase,
            plan_revision=plan.plan_revision,
            agent_turns=plan.usage.agent_turns,
            max_agent_turns=plan.budget.max_agent_turns,
            columns=columns,
            final_score=evaluation.score if evaluation else None,
            assessment=evaluation.assessment if evaluation else None,
        )

    # ------------------------------------------------------------------
    # service lifecycle
    # ------------------------------------------------------------------

    async def start_service(self) -> list[str]:
        """Relaunch plans that were mid-flight when the process last exited."""
        if not self._settings.enabled:
            logger.info("planner_service_disabled")
            return []
        logger.info("planner_service_starting")
        resumable = [plan for plan in self._store.list_plans() if plan.status in ACTIVE_PLAN_STATUSES]
        launched: list[str] = []
        for plan in resumable:
            if self.registry.active_count() >= self._settings.max_concurrent_plans:
                logger.warning("planner_resume_capacity_reached", skipped=len(resumable) - len(launched))
                break
            if self._orchestrator.launch(plan) is not None:
                launched.append(plan.id)
        if launched:
            logger.info("planner_plans_resumed", plan_ids=launched)
        return launched

    async def shutdown(self) -> None:
        """Cancel active runs without marking them stopped so they resume on restart."""
        logger.info("planner_service_stopping", active=self.registry.active_count())
        for plan_id in self.registry.active_plan_ids():
            self.registry.cancel(plan_id)
        await self._orchestrator.wait_for_runs()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require(self, plan_id: str) -> Plan:
        plan = self._store.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def _ensure_capacity(self) -> None:
        active = self.registry.active_count()
        limit = self._settings.max_concurrent_plans
        if active >= limit:
            raise PlanCapacityError(f"Max concurrent plans reached ({active}/{limit})")

    @staticmethod
    def _check_resumable(plan: Plan) -> None:
        if plan.status not in RESUMABLE_PLAN_STATUSES:
            raise PlanStateError(
                f"Plan {plan.id} is {plan.status.value}, can only resume stopped or failed plans"
            )


__all__ = [
    "MANUAL_STOP_REASON",
    "PlanCapacityError",
    "PlanNotFoundError",
    "PlanService",
    "PlanServiceError",
    "PlanStateError",
]

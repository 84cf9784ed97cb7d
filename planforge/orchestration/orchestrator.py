from __future__ import annotations

import asyncio
import time
from typing import Iterable

from ..agents.evaluator import EvaluatorAgent
from ..agents.planner import PlannerAgent
from ..agents.worker import WorkerAgent
from ..core.config import PlannerSettings
from ..core.logging import get_logger, plan_log_context
from ..core.metrics import observe_plan_run, record_plan_outcome, record_replan, record_task_outcome
from ..schemas.enums import PlanPhase, PlanStatus, TaskStatus
from ..schemas.plans import Plan, PlanTask, TaskResult, TaskStateRecord, TokenUsage, utc_now
from ..services.agent_service import AgentExecutionService
from ..services.notifications import AutomationEvent, AutomationPublisher, NotificationService
from .dag import validate_dag
from .governance import run_governance_checks
from .registry import CancellationToken, RunRegistry
from .scheduler import analyze_scheduler_state, find_ready_tasks, skip_downstream_tasks, update_ready_tasks
from .store import PlanStore

logger = get_logger(name=__name__)

PLANNER_FAILED_REASON = "Planner agent failed to produce a valid task DAG"
COMPLETION_SCORE = 95


class PlanOrchestrator:
    """Drives plans from decomposition through execution to a scored verdict.

    One run owns one plan id at a time; the :class:`RunRegistry` enforces
    that. The store is the source of truth: the in-memory plan is re-read at
    every iteration boundary and after every agent call, and a ``stopped``
    status written by another actor is never overwritten.
    """

    def __init__(
        self,
        *,
        store: PlanStore,
        agent_service: AgentExecutionService,
        registry: RunRegistry | None = None,
        settings: PlannerSettings | None = None,
        notifier: NotificationService | None = None,
        automation: AutomationPublisher | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or RunRegistry()
        self._settings = settings or PlannerSettings()
        self._notifier = notifier
        self._automation = automation
        self._planner = PlannerAgent(agent_service, store)
        self._worker = WorkerAgent(agent_service, store)
        self._evaluator = EvaluatorAgent(agent_service, store)
        self._background: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # run lifecycle
    # ------------------------------------------------------------------

    def launch(self, plan: Plan) -> asyncio.Task[None] | None:
        """Schedule a background run; ``None`` if the plan already has one."""
        token = self._registry.acquire(plan.id)
        if token is None:
            logger.warning("plan_run_already_active", plan_id=plan.id)
            return None
        task = asyncio.create_task(self._drive(plan, token), name=f"plan-run:{plan.id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def run(self, plan: Plan) -> None:
        token = self._registry.acquire(plan.id)
        if token is None:
            logger.warning("plan_run_already_active", plan_id=plan.id)
            return
        await self._drive(plan, token)

    async def wait_for_runs(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _drive(self, plan: Plan, token: CancellationToken) -> None:
        started = time.perf_counter()
        with plan_log_context(plan.id):
            logger.info("plan_run_started", plan_id=plan.id)
            try:
                if self._settings.startup_delay_seconds > 0:
                    if await token.sleep(self._settings.startup_delay_seconds):
                        return
                await self._execute(plan, token)
            except Exception as exc:
                logger.exception("plan_run_crashed", plan_id=plan.id, error=str(exc))
                await self._record_crash(plan, exc)
            finally:
                self._registry.release(plan.id, token)
                observe_plan_run(time.perf_counter() - started)
                logger.info("plan_run_finished", plan_id=plan.id)

    async def _execute(self, plan: Plan, token: CancellationToken) -> None:
        plan = self._reload(plan)
        if plan.tasks:
            plan = self._prepare_resume(plan)
        else:
            planned = await self._plan_phase(plan)
            if planned is None:
                return
            plan = planned

        if plan.status != PlanStatus.RUNNING:
            return
        if await self._execution_loop(plan, token):
            await self._evaluate(plan, token)

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    async def _plan_phase(self, plan: Plan) -> Plan | None:
        plan.status = PlanStatus.PLANNING
        plan.current_phase = PlanPhase.PLANNING
        if plan.usage.started_at is None:
            plan.usage.started_at = utc_now()
        self._save(plan)
        if plan.status == PlanStatus.STOPPED:
            return None

        await self.notify(plan, f"Plan started: {plan.goal} [{plan.id}]")
        await self._publish(AutomationEvent.plan_started(plan_id=plan.id, goal=plan.goal, status=plan.status.value))

        logger.info("plan_decomposition_started", plan_id=plan.id)
        plan.usage.agent_turns += 1
        self._save(plan)
        outcome = await self._planner.plan(plan)

        plan = self._reload(plan)
        self._add_tokens(plan, outcome.token_usage)
        if plan.status == PlanStatus.STOPPED:
            self._save(plan)
            return None
        if not outcome.tasks:
            await self._fail(plan, PLANNER_FAILED_REASON)
            return None

        tasks = [planned.to_plan_task(max_retries=plan.budget.max_retries) for planned in outcome.tasks]
        validation = validate_dag(tasks)
        if not validation.valid:
            await self._fail(plan, f"Invalid task DAG: {'; '.join(validation.errors)}")
            return None

        plan.tasks = tasks
        self._promote_ready(plan)
        plan.status = PlanStatus.RUNNING
        plan.current_phase = PlanPhase.EXECUTING
        self._save(plan)
        if plan.status != PlanStatus.RUNNING:
            return None

        logger.info("plan_decomposed", plan_id=plan.id, task_count=len(tasks))
        await self.notify(plan, f"Plan decomposed into {len(tasks)} tasks [{plan.id}]. Starting execution.")
        return plan

    def _prepare_resume(self, plan: Plan) -> Plan:
        for task in plan.tasks:
            # left running by a run that died mid-batch
            if task.status == TaskStatus.RUNNING:
                self._set_task_status(plan, task, TaskStatus.READY, reason="resumed")
                task.started_at = None
        plan.status = PlanStatus.RUNNING
        plan.current_phase = PlanPhase.EXECUTING
        if plan.usage.started_at is None:
            plan.usage.started_at = utc_now()
        self._save(plan)
        logger.info("plan_resumed", plan_id=plan.id, revision=plan.plan_revision)
        return plan

    async def _execution_loop(self, plan: Plan, token: CancellationToken) -> bool:
        """Run batches until the plan is done; ``True`` means go on to evaluation."""
        while not token.cancelled:
            plan = self._reload(plan)
            if plan.status != PlanStatus.RUNNING:
                logger.info("plan_no_longer_running", plan_id=plan.id, status=plan.status.value)
                return False

            governance = run_governance_checks(plan)
            if not governance.allowed:
                await self._stop(plan, governance.reason or "Budget exceeded")
                return False
            for warning in governance.warnings:
                logger.warning("plan_budget_warning", plan_id=plan.id, warning=warning)
                await self.notify(plan, f"Plan warning [{plan.id}]: {warning}")

            self._promote_ready(plan)
            self._save(plan)
            state = analyze_scheduler_state(plan.tasks)

            if state.all_done:
                logger.info("plan_tasks_done", plan_id=plan.id)
                return True

            if state.deadlocked:
                failed_percent = state.failed_count * 100 / len(plan.tasks)
                logger.warning("plan_deadlocked", plan_id=plan.id, failed_percent=round(failed_percent))
                if failed_percent >= plan.budget.replan_threshold and await self._replan(plan, trigger="deadlock"):
                    continue
                return True

            if not state.has_ready and state.has_running:
                if await token.sleep(self._settings.poll_interval_seconds):
                    return False
                continue

            if not state.has_ready:
                return True

            plan = await self._run_batch(plan, token)
            if await token.sleep(self._settings.batch_pause_seconds):
                return False
        return False

    async def _run_batch(self, plan: Plan, token: CancellationToken) -> Plan:
        batch = find_ready_tasks(plan.tasks)[: plan.budget.max_concurrency]
        dispatched_at = utc_now()
        for task in batch:
            self._set_task_status(plan, task, TaskStatus.RUNNING)
            task.started_at = dispatched_at
        self._save(plan)

        task_ids = [task.id for task in batch]
        logger.info("plan_batch_dispatched", plan_id=plan.id, task_ids=task_ids)
        outcomes = await asyncio.gather(
            *(self._worker.execute(task, plan) for task in batch),
            return_exceptions=True,
        )

        plan = self._reload(plan)
        completed = 0
        failed_ids: list[str] = []
        for task_id, outcome in zip(task_ids, outcomes):
            task = plan.get_task(task_id)
            if task is None:
                continue
            if isinstance(outcome, Exception):
                result = TaskResult(status="error", error=str(outcome) or outcome.__class__.__name__)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result = outcome

            plan.usage.agent_turns += 1
            self._add_tokens(plan, result.token_usage)
            task.result = result
            if result.status == "ok":
                task.completed_at = utc_now()
                self._set_task_status(plan, task, TaskStatus.COMPLETED)
                completed += 1
                continue

            task.retries += 1
            plan.usage.errors += 1
            if task.retries >= task.max_retries:
                self._set_task_status(plan, task, TaskStatus.FAILED, reason=result.error)
                failed_ids.append(task.id)
                logger.warning("plan_task_failed", plan_id=plan.id, task_id=task.id, error=result.error)
            else:
                self._set_task_status(plan, task, TaskStatus.READY, reason=result.error)
                record_task_outcome("retry")
                logger.info(
                    "plan_task_retry",
                    plan_id=plan.id,
                    task_id=task.id,
                    retries=task.retries,
                    max_retries=task.max_retries,
                    error=result.error,
                )

        skipped = self._skip_downstream(plan, failed_ids)
        record_task_outcome("completed", completed)
        record_task_outcome("failed", len(failed_ids))
        record_task_outcome("skipped", len(skipped))
        self._save(plan)

        judged = completed + len(failed_ids)
        if failed_ids and judged:
            failure_rate = len(failed_ids) * 100 / judged
            if failure_rate >= plan.budget.replan_threshold and plan.status == PlanStatus.RUNNING and not token.cancelled:
                logger.info(
                    "plan_batch_failure_threshold",
                    plan_id=plan.id,
                    failure_rate=round(failure_rate),
                    threshold=plan.budget.replan_threshold,
                )
                await self._replan(plan, trigger="batch_failure")
                plan = self._reload(plan)

        if completed or failed_ids:
            state = analyze_scheduler_state(plan.tasks)
            message = f"Plan progress [{plan.id}]: {state.completed_count}/{len(plan.tasks)} tasks done"
            if state.failed_count:
                message += f", {state.failed_count} failed"
            if state.skipped_count:
                message += f", {state.skipped_count} skipped"
            await self.notify(plan, message)
        return plan

    async def _replan(self, plan: Plan, *, trigger: str) -> bool:
        plan = self._reload(plan)
        plan.current_phase = PlanPhase.REPLANNING
        plan.usage.agent_turns += 1
        self._save(plan)
        logger.info("plan_replan_started", plan_id=plan.id, trigger=trigger, revision=plan.plan_revision + 1)
        await self.notify(plan, f"Re-planning triggered for [{plan.id}]: adjusting task strategy.")

        outcome = await self._planner.plan(plan, replan=True)
        plan = self._reload(plan)
        self._add_tokens(plan, outcome.token_usage)
        plan.current_phase = PlanPhase.EXECUTING

        if not outcome.tasks:
            logger.warning("plan_replan_empty", plan_id=plan.id, trigger=trigger)
            self._save(plan)
            record_replan(trigger=trigger, outcome="empty")
            return False

        kept = [task for task in plan.tasks if task.status == TaskStatus.COMPLETED]
        kept_ids = {task.id for task in kept}
        fresh = [
            planned.to_plan_task(max_retries=plan.budget.max_retries)
            for planned in outcome.tasks
            if planned.id not in kept_ids
        ]
        merged = kept + fresh
        validation = validate_dag(merged)
        if not validation.valid:
            logger.warning("plan_replan_invalid", plan_id=plan.id, trigger=trigger, errors=validation.errors)
            self._save(plan)
            record_replan(trigger=trigger, outcome="invalid")
            return False

        plan.tasks = merged
        plan.plan_revision += 1
        self._promote_ready(plan, kept_ids)
        self._save(plan)
        record_replan(trigger=trigger, outcome="applied")
        logger.info("plan_replanned", plan_id=plan.id, task_count=len(merged), revision=plan.plan_revision)
        return True

    async def _evaluate(self, plan: Plan, token: CancellationToken) -> None:
        plan = self._reload(plan)
        if plan.status != PlanStatus.RUNNING or token.cancelled:
            return
        plan.current_phase = PlanPhase.EVALUATING
        plan.usage.agent_turns += 1
        self._save(plan)

        logger.info("plan_evaluation_started", plan_id=plan.id)
        outcome = await self._evaluator.evaluate(plan)
        evaluation = outcome.evaluation

        plan = self._reload(plan)
        self._add_tokens(plan, outcome.token_usage)
        plan.final_evaluation = evaluation
        if plan.status == PlanStatus.STOPPED:
            self._save(plan)
            return

        plan.status = PlanStatus.COMPLETED
        plan.current_phase = PlanPhase.DONE
        if evaluation.score >= COMPLETION_SCORE:
            plan.stop_reason = f"Plan completed with score {evaluation.score}/100"
        else:
            plan.stop_reason = f"Plan finished with score {evaluation.score}/100: {evaluation.assessment}"
        self._save(plan)
        if plan.status != PlanStatus.COMPLETED:
            return

        record_plan_outcome(PlanStatus.COMPLETED.value)
        logger.info("plan_completed", plan_id=plan.id, score=evaluation.score, fallback=outcome.fallback)
        await self.notify(
            plan,
            f"Plan COMPLETED: {plan.goal} [{plan.id}] -- Score: {evaluation.score}/100. {evaluation.assessment}",
        )
        duration_ms = None
        if plan.usage.started_at is not None:
            duration_ms = (utc_now() - plan.usage.started_at).total_seconds() * 1000
        await self._publish(
            AutomationEvent.plan_completed(
                plan_id=plan.id,
                goal=plan.goal,
                score=evaluation.score,
                duration_ms=duration_ms,
            )
        )

    # ------------------------------------------------------------------
    # terminal transitions
    # ------------------------------------------------------------------

    async def _fail(self, plan: Plan, reason: str) -> None:
        plan.status = PlanStatus.FAILED
        plan.stop_reason = reason
        self._save(plan)
        if plan.status != PlanStatus.FAILED:
            return
        record_plan_outcome(PlanStatus.FAILED.value)
        logger.error("plan_failed", plan_id=plan.id, reason=reason)
        await self.notify(plan, f"Plan FAILED: {plan.goal} [{plan.id}] -- {reason}")
        await self._publish(AutomationEvent.plan_failed(plan_id=plan.id, goal=plan.goal, error=reason))

    async def _stop(self, plan: Plan, reason: str) -> None:
        plan.status = PlanStatus.STOPPED
        plan.stop_reason = reason
        self._save(plan)
        record_plan_outcome(PlanStatus.STOPPED.value)
        logger.info("plan_stopped", plan_id=plan.id, reason=plan.stop_reason)
        await self.notify(plan, f"Plan stopped: {plan.goal} [{plan.id}] -- {plan.stop_reason}")

    async def _record_crash(self, plan: Plan, exc: Exception) -> None:
        try:
            current = self._reload(plan)
            if current.status == PlanStatus.STOPPED:
                return
            await self._fail(current, str(exc) or exc.__class__.__name__)
        except Exception as inner:
            logger.error("plan_crash_not_recorded", plan_id=plan.id, error=str(inner))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _reload(self, plan: Plan) -> Plan:
        return self._store.get(plan.id) or plan

    def _save(self, plan: Plan) -> None:
        plan.updated_at = utc_now()

        def _merge(plans: dict[str, Plan]) -> None:
            stored = plans.get(plan.id)
            if stored is not None and stored.status == PlanStatus.STOPPED and plan.status != PlanStatus.STOPPED:
                plan.status = PlanStatus.STOPPED
                plan.stop_reason = stored.stop_reason
            plans[plan.id] = plan.model_copy(deep=True)

        self._store.update(_merge)

    def _set_task_status(
        self,
        plan: Plan,
        task: PlanTask,
        status: TaskStatus,
        *,
        reason: str | None = None,
    ) -> None:
        previous = task.status
        task.status = status
        self._store.append_task_state(
            TaskStateRecord(
                plan_id=plan.id,
                task_id=task.id,
                from_status=previous,
                to_status=status,
                reason=reason,
            )
        )

    def _promote_ready(self, plan: Plan, completed_ids: Iterable[str] = ()) -> None:
        for task_id in update_ready_tasks(plan.tasks, completed_ids):
            self._store.append_task_state(
                TaskStateRecord(
                    plan_id=plan.id,
                    task_id=task_id,
                    from_status=TaskStatus.PENDING,
                    to_status=TaskStatus.READY,
                )
            )

    def _skip_downstream(self, plan: Plan, failed_ids: list[str]) -> list[str]:
        previous = {task.id: task.status for task in plan.tasks}
        skipped: list[str] = []
        for failed_id in failed_ids:
            skipped.extend(skip_downstream_tasks(plan.tasks, failed_id))
        for task_id in skipped:
            self._store.append_task_state(
                TaskStateRecord(
                    plan_id=plan.id,
                    task_id=task_id,
                    from_status=previous[task_id],
                    to_status=TaskStatus.SKIPPED,
                    reason="upstream task failed",
                )
            )
        if skipped:
            logger.info("plan_tasks_skipped", plan_id=plan.id, task_ids=skipped)
        return skipped

    @staticmethod
    def _add_tokens(plan: Plan, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        plan.usage.total_tokens += usage.total or (usage.input + usage.output)

    async def notify(self, plan: Plan, text: str) -> None:
        """Best-effort delivery to the plan's notification target."""
        if plan.notify is None or self._notifier is None:
            return
        try:
            await self._notifier.deliver(plan.notify, text)
        except Exception as exc:
            logger.warning("plan_notification_failed", plan_id=plan.id, error=str(exc))

    async def _publish(self, event: AutomationEvent) -> None:
        if self._automation is None:
            return
        try:
            await self._automation.publish(event)
        except Exception as exc:
            logger.warning("automation_publish_failed", event=event.type, error=str(exc))


__all__ = ["PlanOrchestrator", "PLANNER_FAILED_REASON"]

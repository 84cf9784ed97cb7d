from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

PLAN_OUTCOMES_TOTAL = Counter(
    "planforge_plan_outcomes_total",
    "Plans reaching a terminal state grouped by status",
    labelnames=("status",),
)

PLAN_RUN_LATENCY_SECONDS = Histogram(
    "planforge_plan_run_latency_seconds",
    "Wall-clock duration of one orchestrator run",
    buckets=(1, 5, 30, 60, 300, 600, 1800, 3600, 7200, float("inf")),
)

PLAN_RUNS_ACTIVE = Gauge(
    "planforge_plan_runs_active",
    "Orchestrator runs currently driving a plan",
)

TASK_OUTCOMES_TOTAL = Counter(
    "planforge_task_outcomes_total",
    "Worker attempts grouped by outcome (completed/retry/failed/skipped)",
    labelnames=("outcome",),
)

REPLANS_TOTAL = Counter(
    "planforge_replans_total",
    "Replan attempts grouped by trigger and outcome",
    labelnames=("trigger", "outcome"),
)

AGENT_LATENCY_SECONDS = Histogram(
    "planforge_agent_latency_seconds",
    "Latency of agent execution service calls",
    labelnames=("agent",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)


def record_plan_outcome(status: str) -> None:
    PLAN_OUTCOMES_TOTAL.labels(status=status).inc()


def observe_plan_run(duration_seconds: float) -> None:
    PLAN_RUN_LATENCY_SECONDS.observe(max(duration_seconds, 0.0))


def record_task_outcome(outcome: str, count: int = 1) -> None:
    if count > 0:
        TASK_OUTCOMES_TOTAL.labels(outcome=outcome).inc(count)


def record_replan(*, trigger: str, outcome: str) -> None:
    REPLANS_TOTAL.labels(trigger=trigger, outcome=outcome).inc()


def observe_agent_latency(agent: str, duration_seconds: float) -> None:
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(max(duration_seconds, 0.0))


__all__ = [
    "PLAN_OUTCOMES_TOTAL",
    "PLAN_RUN_LATENCY_SECONDS",
    "PLAN_RUNS_ACTIVE",
    "TASK_OUTCOMES_TOTAL",
    "REPLANS_TOTAL",
    "AGENT_LATENCY_SECONDS",
    "record_plan_outcome",
    "observe_plan_run",
    "record_task_outcome",
    "record_replan",
    "observe_agent_latency",
]

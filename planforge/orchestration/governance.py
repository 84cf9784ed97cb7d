from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..schemas.plans import Plan

BUDGET_WARNING_PERCENT = 80


@dataclass(slots=True)
class GovernanceCheck:
    allowed: bool
    reason: str | None = None
    warning: str | None = None


@dataclass(slots=True)
class GovernanceResult:
    allowed: bool
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


def _check_ceiling(label: str, used: float, ceiling: float, *, render=str) -> GovernanceCheck:
    if used >= ceiling:
        return GovernanceCheck(
            allowed=False,
            reason=f"{label} budget exceeded ({render(used)}/{render(ceiling)})",
        )
    if used * 100 >= ceiling * BUDGET_WARNING_PERCENT:
        percent = round(used / ceiling * 100)
        return GovernanceCheck(
            allowed=True,
            warning=f"{label} budget at {percent}% ({render(used)}/{render(ceiling)})",
        )
    return GovernanceCheck(allowed=True)


def check_agent_turn_budget(plan: Plan) -> GovernanceCheck:
    return _check_ceiling("Agent turn", plan.usage.agent_turns, plan.budget.max_agent_turns)


def check_token_budget(plan: Plan) -> GovernanceCheck:
    return _check_ceiling("Token", plan.usage.total_tokens, plan.budget.max_tokens)


def check_time_budget(plan: Plan, *, now: datetime | None = None) -> GovernanceCheck:
    started_at = plan.usage.started_at
    if started_at is None:
        return GovernanceCheck(allowed=True)
    current = now or datetime.now(timezone.utc)
    elapsed_ms = max(0.0, (current - started_at).total_seconds() * 1000)
    return _check_ceiling("Time", elapsed_ms, plan.budget.max_time_ms, render=format_duration)


def run_governance_checks(plan: Plan, *, now: datetime | None = None) -> GovernanceResult:
    """Run every budget check in a fixed order.

    The first denial wins; warnings from all checks are still collected.
    """
    checks = (
        check_agent_turn_budget(plan),
        check_token_budget(plan),
        check_time_budget(plan, now=now),
    )
    reason: str | None = None
    warnings: list[str] = []
    for check in checks:
        if not check.allowed and reason is None:
            reason = check.reason
        if check.warning:
            warnings.append(check.warning)
    return GovernanceResult(allowed=reason is None, reason=reason, warnings=warnings)


def format_duration(ms: float) -> str:
    seconds = int(ms // 1000)
    minutes, seconds_rem = divmod(seconds, 60)
    hours, minutes_rem = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h{minutes_rem}m"
    if minutes > 0:
        return f"{minutes}m{seconds_rem}s"
    return f"{seconds}s"


__all__ = [
    "BUDGET_WARNING_PERCENT",
    "GovernanceCheck",
    "GovernanceResult",
    "check_agent_turn_budget",
    "check_token_budget",
    "check_time_budget",
    "format_duration",
    "run_governance_checks",
]

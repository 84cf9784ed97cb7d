from __future__ import annotations

import asyncio
import json
import re
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Any, Sequence

from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .orchestration.service import PlanService, PlanServiceError
from .schemas.api import BudgetOverrides, PlanDetail
from .schemas.plans import NotifyTarget

_TIME_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h)$", re.IGNORECASE)
_TIME_UNITS_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}

_PRD_GOAL = re.compile(
    r"^#+\s*(?:Goal|Objective|Project Goal)\s*\n+([\s\S]*?)(?=\n#|\n---|\Z)",
    re.IGNORECASE | re.MULTILINE,
)
_PRD_CRITERIA = re.compile(
    r"^#+\s*(?:Acceptance|Success)\s*Criteria\s*\n+([\s\S]*?)(?=\n#|\n---|\Z)",
    re.IGNORECASE | re.MULTILINE,
)
_LIST_MARKER = re.compile(r"^[-*\d.]+\s*")


def parse_time_str(value: str) -> int:
    """Convert ``2h`` / ``30m`` / ``120s`` / ``500ms`` or plain milliseconds to ms."""
    text = value.strip()
    match = _TIME_PATTERN.match(text)
    if match is None:
        try:
            number = float(text)
        except ValueError:
            number = 0.0
        if number > 0:
            return int(number)
        raise ValueError(f'Invalid time format: "{value}". Use e.g. "2h", "30m", "120s", or milliseconds.')
    amount = float(match.group(1))
    return int(amount * _TIME_UNITS_MS[match.group(2).lower()])


def extract_prd_goal(content: str) -> str | None:
    match = _PRD_GOAL.search(content)
    if match is None:
        return None
    first_line = match.group(1).strip().split("\n")[0].strip()
    return first_line or None


def extract_prd_criteria(content: str) -> list[str]:
    match = _PRD_CRITERIA.search(content)
    if match is None:
        return []
    criteria = []
    for line in match.group(1).split("\n"):
        item = _LIST_MARKER.sub("", line.strip()).strip()
        if item:
            criteria.append(item)
    return criteria


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, default=str))


def _build_parser(settings: Settings) -> ArgumentParser:
    planner = settings.planner
    parser = ArgumentParser(
        prog="planforge",
        description="Task-based goal decomposition with DAG scheduling and parallel execution",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a new plan and drive it to completion")
    start.add_argument("--goal", help="Goal description")
    start.add_argument("--criteria", nargs="*", default=[], help="Acceptance criteria")
    start.add_argument("--from-prd", dest="from_prd", help="Load goal and criteria from a markdown PRD")
    start.add_argument("--max-turns", type=int, default=planner.default_max_agent_turns)
    start.add_argument("--max-tokens", type=int, default=planner.default_max_tokens)
    start.add_argument("--max-time", default=f"{planner.default_max_time_ms}ms", help="e.g. 2h, 30m")
    start.add_argument("--concurrency", type=int, default=planner.default_max_concurrency)
    start.add_argument("--max-retries", type=int, default=planner.default_max_retries)
    start.add_argument("--replan-threshold", type=int, default=planner.default_replan_threshold)
    start.add_argument("--notify-channel")
    start.add_argument("--notify-to")
    start.add_argument("--notify-account-id")

    stop = commands.add_parser("stop", help="Stop a running plan")
    stop.add_argument("plan_id")

    status = commands.add_parser("status", help="Show plan status")
    status.add_argument("plan_id", nargs="?")

    listing = commands.add_parser("list", help="List plans")
    listing.add_argument("--active", action="store_true", help="Only show planning or running plans")

    tasks = commands.add_parser("tasks", help="Show the task board for a plan")
    tasks.add_argument("plan_id")

    resume = commands.add_parser("resume", help="Resume a stopped or failed plan")
    resume.add_argument("plan_id")
    resume.add_argument("--add-turns", type=int)
    resume.add_argument("--add-tokens", type=int)
    resume.add_argument("--add-time", help="Extra wall-clock time, e.g. 30m")
    return parser


async def _start(service: PlanService, args: Namespace) -> int:
    goal: str | None = args.goal
    criteria: list[str] = list(args.criteria or [])
    if args.from_prd:
        try:
            content = Path(args.from_prd).read_text(encoding="utf-8")
        except OSError as exc:
            _emit({"ok": False, "error": f"Failed to read PRD: {exc}"})
            return 1
        goal = extract_prd_goal(content) or goal
        if not criteria:
            criteria = extract_prd_criteria(content)
    if not goal:
        _emit({"ok": False, "error": "A goal is required (--goal or a PRD with a Goal section)"})
        return 1

    budget = BudgetOverrides(
        max_agent_turns=args.max_turns,
        max_tokens=args.max_tokens,
        max_time_ms=parse_time_str(args.max_time),
        max_retries=args.max_retries,
        max_concurrency=args.concurrency,
        replan_threshold=args.replan_threshold,
    )
    notify = None
    if args.notify_channel and args.notify_to:
        notify = NotifyTarget(channel=args.notify_channel, to=args.notify_to, account_id=args.notify_account_id)

    plan = await service.start(goal, criteria, budget=budget, notify=notify)
    _emit({"ok": True, "plan_id": plan.id, "status": "planning"})
    await service.orchestrator.wait_for_runs()
    final = service.get_plan(plan.id)
    _emit({"ok": True, "plan_id": final.id, "status": final.status.value, "stop_reason": final.stop_reason})
    return 0


async def _resume(service: PlanService, args: Namespace) -> int:
    plan = await service.resume(
        args.plan_id,
        add_turns=args.add_turns,
        add_tokens=args.add_tokens,
        add_time_ms=parse_time_str(args.add_time) if args.add_time else None,
    )
    _emit({"ok": True, "plan_id": plan.id, "status": "running"})
    await service.orchestrator.wait_for_runs()
    final = service.get_plan(plan.id)
    _emit({"ok": True, "plan_id": final.id, "status": final.status.value, "stop_reason": final.stop_reason})
    return 0


async def _dispatch(service: PlanService, args: Namespace) -> int:
    if args.command == "start":
        return await _start(service, args)
    if args.command == "resume":
        return await _resume(service, args)
    if args.command == "stop":
        plan = await service.stop(args.plan_id)
        _emit({"ok": True, "plan_id": plan.id, "status": plan.status.value})
        return 0
    if args.command == "status":
        report = service.status(args.plan_id)
        payload = report.model_dump(mode="json")
        if isinstance(report, PlanDetail):
            payload["worker_run_count"] = len(report.worker_runs)
            payload["evaluation_count"] = len(report.evaluations)
        _emit({"ok": True, **payload})
        return 0
    if args.command == "list":
        plans = service.list_plans(active_only=args.active)
        _emit({"ok": True, "plans": [summary.model_dump(mode="json") for summary in plans]})
        return 0
    if args.command == "tasks":
        print(service.task_board(args.plan_id).render())
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
    args = _build_parser(settings).parse_args(argv)
    service = PlanService.from_settings(settings)
    try:
        return asyncio.run(_dispatch(service, args))
    except (PlanServiceError, ValueError) as exc:
        _emit({"ok": False, "error": str(exc)})
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

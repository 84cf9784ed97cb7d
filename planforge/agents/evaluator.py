from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from ..core.logging import get_logger
from ..schemas.enums import EvaluationPhase, TaskStatus
from ..schemas.plans import CriterionStatus, Evaluation, Plan, PlanEvaluationRecord, TokenUsage
from .base import AgentAdapter, AgentKind, extract_json_object, session_key

logger = get_logger(name=__name__)

_STATUS_LABELS = {TaskStatus.COMPLETED: "done", TaskStatus.FAILED: "FAILED"}


@dataclass(slots=True)
class EvaluatorOutcome:
    evaluation: Evaluation
    fallback: bool = False
    token_usage: TokenUsage | None = None


def build_evaluator_prompt(plan: Plan) -> str:
    criteria = "\n".join(f"  {index}. {criterion}" for index, criterion in enumerate(plan.criteria, start=1))
    task_lines = []
    for task in plan.tasks:
        label = _STATUS_LABELS.get(task.status, task.status.value)
        detail = None
        if task.result is not None:
            detail = task.result.summary or task.result.error
        task_lines.append(f"  - [{task.id}] {task.title} ({label}): {detail or '(no result)'}")

    return f"""You are evaluating the final result of a planned project execution.

## Goal
{plan.goal}

## Acceptance Criteria
{criteria}

## Task Results
{chr(10).join(task_lines)}

## Stats
- Total tasks: {len(plan.tasks)}
- Completed: {plan.count_tasks(TaskStatus.COMPLETED)}
- Failed: {plan.count_tasks(TaskStatus.FAILED)}
- Skipped: {plan.count_tasks(TaskStatus.SKIPPED)}
- Agent turns used: {plan.usage.agent_turns}
- Plan revision: {plan.plan_revision}

## Instructions
Evaluate the overall result. Return ONLY a JSON object (no markdown fences, no extra text):

{{
  "score": <number 0-100>,
  "assessment": "<brief assessment of overall result>",
  "criteriaStatus": [
    {{ "criterion": "<criterion text>", "met": <boolean>, "notes": "<optional notes>" }}
  ],
  "suggestions": "<what could be done to improve, or empty string if complete>"
}}

Rules:
- score 95+ means the goal is effectively complete.
- criteriaStatus must have one entry per acceptance criterion, in order.
- Be objective and verify based on task results."""


def fallback_evaluation(criteria: list[str], reason: str) -> Evaluation:
    return Evaluation(
        score=0,
        assessment=reason,
        criteria_status=[CriterionStatus(criterion=criterion, met=False, notes="Parse error") for criterion in criteria],
        suggestions="Re-evaluate manually.",
    )


def _clamp_score(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, min(100, round(value)))


def parse_evaluator_response(text: str, criteria: list[str]) -> tuple[Evaluation, bool]:
    """Parse an evaluator reply; the flag is ``True`` when the fallback was used."""
    payload = extract_json_object(text)
    if payload is None:
        return fallback_evaluation(criteria, "Could not extract JSON from evaluator response"), True

    assessment = payload.get("assessment")
    suggestions = payload.get("suggestions")
    raw_statuses = payload.get("criteriaStatus", payload.get("criteria_status"))
    statuses = raw_statuses if isinstance(raw_statuses, list) else []

    criteria_status: list[CriterionStatus] = []
    for index, criterion in enumerate(criteria):
        entry = statuses[index] if index < len(statuses) and isinstance(statuses[index], dict) else {}
        notes = entry.get("notes")
        criteria_status.append(
            CriterionStatus(
                criterion=criterion,
                met=entry.get("met") is True,
                notes=notes if isinstance(notes, str) else None,
            )
        )

    evaluation = Evaluation(
        score=_clamp_score(payload.get("score")),
        assessment=assessment if isinstance(assessment, str) else "No assessment provided",
        criteria_status=criteria_status,
        suggestions=suggestions if isinstance(suggestions, str) else None,
    )
    return evaluation, False


class EvaluatorAgent(AgentAdapter):
    kind = AgentKind.EVALUATOR
    agent_id = "qa"

    async def evaluate(self, plan: Plan) -> EvaluatorOutcome:
        prompt = build_evaluator_prompt(plan)
        call = await self._call(key=session_key(self.kind, plan.id), prompt=prompt)
        evaluation, fallback = parse_evaluator_response(call.text, plan.criteria)

        self._store.append_evaluation(
            PlanEvaluationRecord(
                plan_id=plan.id,
                phase=EvaluationPhase.FINAL,
                outcome="fallback" if fallback else "ok",
                result=evaluation,
                task_count=len(plan.tasks),
                prompt_chars=len(prompt),
                duration_ms=call.duration_ms,
            )
        )
        if fallback:
            logger.warning("evaluator_fallback", plan_id=plan.id, response=call.text[:200])
        return EvaluatorOutcome(evaluation=evaluation, fallback=fallback, token_usage=call.token_usage)


__all__ = [
    "EvaluatorAgent",
    "EvaluatorOutcome",
    "build_evaluator_prompt",
    "fallback_evaluation",
    "parse_evaluator_response",
]

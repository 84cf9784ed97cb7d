from __future__ import annotations

from ..core.logging import get_logger
from ..schemas.enums import TaskStatus
from ..schemas.plans import Plan, PlanTask, TaskResult, WorkerRunRecord
from .base import AgentAdapter, AgentKind, session_key

logger = get_logger(name=__name__)

SUMMARY_MAX_CHARS = 500


def build_worker_prompt(task: PlanTask, plan: Plan) -> str:
    context_blocks: list[str] = []
    for dep_id in task.dependencies:
        dep = plan.get_task(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETED:
            continue
        summary = (dep.result.summary if dep.result else None) or "(completed, no summary)"
        context_blocks.append(f"### {dep.id}: {dep.title}\n{summary}")

    sections = [
        "You are executing a single focused task. Complete it fully.",
        f"## Your Task\n{task.title}",
        f"## Instructions\n{task.instructions}",
    ]
    if context_blocks:
        sections.append("## Context from Previous Tasks\n" + "\n\n".join(context_blocks))
    sections.append(
        "## Rules\n"
        "- Complete this specific task only; do not work on other tasks\n"
        "- If you encounter an error, describe it clearly in your response\n"
        "- Verify your work (run the build, check the file exists)\n"
        "- End your response with a brief summary of what you did"
    )
    return "\n\n".join(sections)


class WorkerAgent(AgentAdapter):
    kind = AgentKind.WORKER

    async def execute(self, task: PlanTask, plan: Plan) -> TaskResult:
        """Run one attempt of ``task``. Failures come back as error results."""
        prompt = build_worker_prompt(task, plan)
        call = await self._call(key=session_key(self.kind, plan.id, task.id), prompt=prompt)

        if call.error is not None or call.result is None:
            error = call.error or "Agent returned no result"
            result = TaskResult(status="error", error=error, token_usage=call.token_usage)
            logger.warning("worker_task_failed", plan_id=plan.id, task_id=task.id, error=error)
        else:
            output_text = call.result.output_text
            summary = call.result.summary or (output_text[:SUMMARY_MAX_CHARS] if output_text else None)
            result = TaskResult(
                status="ok",
                summary=summary or "Task completed",
                output_text=output_text,
                token_usage=call.token_usage,
            )

        self._store.append_worker_run(
            WorkerRunRecord(
                plan_id=plan.id,
                task_id=task.id,
                status=result.status,
                summary=result.summary,
                output_text=result.output_text,
                error=result.error,
                prompt_chars=len(prompt),
                duration_ms=call.duration_ms,
            )
        )
        return result


__all__ = ["WorkerAgent", "build_worker_prompt"]

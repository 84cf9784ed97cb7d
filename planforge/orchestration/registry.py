from __future__ import annotations

import asyncio
from contextlib import suppress

from ..core.logging import get_logger
from ..core.metrics import PLAN_RUNS_ACTIVE

logger = get_logger(name=__name__)


class CancellationToken:
    """Cooperative cancellation signal observed at the orchestrator's wait points."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if woken by cancellation."""
        if self.cancelled:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self.cancelled


class RunRegistry:
    """Tracks which plan ids currently have an orchestrator run.

    An entry is added when a run acquires the plan and removed when that run
    exits, even if it was cancelled first.
    """

    def __init__(self) -> None:
        self._runs: dict[str, CancellationToken] = {}

    def acquire(self, plan_id: str) -> CancellationToken | None:
        if plan_id in self._runs:
            return None
        token = CancellationToken()
        self._runs[plan_id] = token
        PLAN_RUNS_ACTIVE.set(len(self._runs))
        return token

    def release(self, plan_id: str, token: CancellationToken) -> None:
        if self._runs.get(plan_id) is token:
            del self._runs[plan_id]
            PLAN_RUNS_ACTIVE.set(len(self._runs))

    def cancel(self, plan_id: str) -> bool:
        token = self._runs.get(plan_id)
        if token is None or token.cancelled:
            return False
        token.cancel()
        logger.info("plan_run_cancel_requested", plan_id=plan_id)
        return True

    def is_active(self, plan_id: str) -> bool:
        return plan_id in self._runs

    def active_plan_ids(self) -> list[str]:
        return list(self._runs)

    def active_count(self) -> int:
        return len(self._runs)


__all__ = ["CancellationToken", "RunRegistry"]

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..core.logging import get_logger
from ..core.metrics import observe_agent_latency
from ..schemas.plans import TokenUsage
from ..services.agent_service import AgentExecutionService, AgentTurnResult

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.store import PlanStore

logger = get_logger(name=__name__)


class AgentKind(str, Enum):
    PLANNER = "planner"
    WORKER = "worker"
    EVALUATOR = "evaluator"


def session_key(kind: AgentKind | str, plan_id: str, task_id: str | None = None) -> str:
    prefix = kind.value if isinstance(kind, AgentKind) else str(kind)
    if task_id:
        return f"{prefix}:{plan_id}:{task_id}"
    return f"{prefix}:{plan_id}"


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` block in ``text`` parsed as a dict.

    Braces inside JSON string literals are ignored, so prose around the
    object (or a markdown fence) does not confuse the scan.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : index + 1]
                    try:
                        parsed = json.loads(candidate)
                    except json.JSONDecodeError:
                        break
                    return parsed if isinstance(parsed, dict) else None
        start = text.find("{", start + 1)
    return None


@dataclass(slots=True)
class AgentCall:
    """Raw outcome of a single agent turn, successful or not."""

    result: AgentTurnResult | None
    error: str | None
    duration_ms: float

    @property
    def token_usage(self) -> TokenUsage | None:
        return self.result.token_usage if self.result is not None else None

    @property
    def text(self) -> str:
        """Best-effort response text used by the JSON-producing adapters."""
        if self.result is None:
            return ""
        if self.result.status == "error":
            return self.result.error or ""
        return self.result.output_text or self.result.summary or ""


class AgentAdapter:
    """Shared plumbing for adapters that talk to the agent execution service."""

    kind: AgentKind
    agent_id: str | None = None

    def __init__(self, service: AgentExecutionService, store: "PlanStore") -> None:
        self._service = service
        self._store = store

    async def _call(self, *, key: str, prompt: str) -> AgentCall:
        started = time.perf_counter()
        try:
            result = await self._service.invoke(session_key=key, prompt=prompt, agent_id=self.agent_id)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            observe_agent_latency(self.kind.value, duration_ms / 1000)
            logger.error("agent_call_failed", agent=self.kind.value, session_key=key, error=str(exc))
            return AgentCall(result=None, error=str(exc) or exc.__class__.__name__, duration_ms=duration_ms)

        duration_ms = (time.perf_counter() - started) * 1000
        observe_agent_latency(self.kind.value, duration_ms / 1000)
        if result.status == "error":
            logger.warning("agent_call_error", agent=self.kind.value, session_key=key, error=result.error)
            return AgentCall(result=result, error=result.error or "Agent returned an error", duration_ms=duration_ms)
        return AgentCall(result=result, error=None, duration_ms=duration_ms)


__all__ = [
    "AgentKind",
    "AgentAdapter",
    "AgentCall",
    "extract_json_object",
    "session_key",
]

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.plans import Plan, PlanEvaluationRecord, TaskStateRecord, WorkerRunRecord

logger = get_logger(name=__name__)

STORE_VERSION = 1
PLANS_FILENAME = "plans.json"
TASKS_LOG = "tasks.jsonl"
WORKER_RUNS_LOG = "worker-runs.jsonl"
EVALUATIONS_LOG = "evaluations.jsonl"

RecordT = TypeVar("RecordT", bound=BaseModel)
PlanMutator = Callable[[dict[str, Plan]], None]


class PlanStore:
    """File-backed plan collection plus per-plan append-only audit logs.

    ``plans.json`` is always rewritten whole through a temp file and an
    atomic rename. Audit logs are JSON Lines under ``{base_dir}/{plan_id}/``.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir).expanduser()
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanStore":
        return cls(settings.store.base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def plans_path(self) -> Path:
        return self._base_dir / PLANS_FILENAME

    def plan_dir(self, plan_id: str) -> Path:
        return self._base_dir / plan_id

    # ------------------------------------------------------------------
    # plans.json
    # ------------------------------------------------------------------

    def read_all(self) -> dict[str, Plan]:
        with self._lock:
            return self._read_unlocked()

    def update(self, mutator: PlanMutator) -> dict[str, Plan]:
        """Read the whole collection, apply ``mutator`` and write it back."""
        with self._lock:
            plans = self._read_unlocked()
            mutator(plans)
            self._write_unlocked(plans)
            return plans

    def get(self, plan_id: str) -> Plan | None:
        return self.read_all().get(plan_id)

    def save(self, plan: Plan) -> None:
        snapshot = plan.model_copy(deep=True)

        def _put(plans: dict[str, Plan]) -> None:
            plans[snapshot.id] = snapshot

        self.update(_put)

    def list_plans(self) -> list[Plan]:
        return list(self.read_all().values())

    def _read_unlocked(self) -> dict[str, Plan]:
        try:
            raw = self.plans_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("plan_store_read_failed", path=str(self.plans_path), error=str(exc))
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("plan_store_corrupt", path=str(self.plans_path), error=str(exc))
            return {}
        if not isinstance(payload, dict) or payload.get("version") != STORE_VERSION:
            return {}
        entries = payload.get("plans")
        if not isinstance(entries, dict):
            return {}

        plans: dict[str, Plan] = {}
        for plan_id, entry in entries.items():
            try:
                plans[plan_id] = Plan.model_validate(entry)
            except ValidationError as exc:
                logger.warning("plan_store_entry_invalid", plan_id=plan_id, error=str(exc))
        return plans

    def _write_unlocked(self, plans: dict[str, Plan]) -> None:
        self._base_dir.mkdir(parents=True, exist_ok=True)
        document = {
            "version": STORE_VERSION,
            "plans": {plan_id: plan.model_dump(mode="json") for plan_id, plan in plans.items()},
        }
        fd, tmp_name = tempfile.mkstemp(prefix=f"{PLANS_FILENAME}.", suffix=".tmp", dir=self._base_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self.plans_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # audit logs
    # ------------------------------------------------------------------

    def append_task_state(self, record: TaskStateRecord) -> None:
        self._append(record.plan_id, TASKS_LOG, record)

    def read_task_states(self, plan_id: str) -> list[TaskStateRecord]:
        return self._read_log(plan_id, TASKS_LOG, TaskStateRecord)

    def append_worker_run(self, record: WorkerRunRecord) -> None:
        self._append(record.plan_id, WORKER_RUNS_LOG, record)

    def read_worker_runs(self, plan_id: str) -> list[WorkerRunRecord]:
        return self._read_log(plan_id, WORKER_RUNS_LOG, WorkerRunRecord)

    def append_evaluation(self, record: PlanEvaluationRecord) -> None:
        self._append(record.plan_id, EVALUATIONS_LOG, record)

    def read_evaluations(self, plan_id: str) -> list[PlanEvaluationRecord]:
        return self._read_log(plan_id, EVALUATIONS_LOG, PlanEvaluationRecord)

    def _append(self, plan_id: str, filename: str, record: BaseModel) -> None:
        path = self.plan_dir(plan_id) / filename
        line = record.model_dump_json() + "\n"
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)

    def _read_log(self, plan_id: str, filename: str, model: type[RecordT]) -> list[RecordT]:
        path = self.plan_dir(plan_id) / filename
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

        records: list[RecordT] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(model.model_validate_json(line))
            except ValidationError as exc:
                logger.warning(
                    "plan_log_line_skipped",
                    plan_id=plan_id,
                    log=filename,
                    line=lineno,
                    error=str(exc),
                )
        return records


__all__ = ["PlanStore", "STORE_VERSION"]

"""
Orchestration Package

Core components that turn a goal into a scored result:
- DAG validation of planner output
- Ready-set scheduling and skip propagation
- Budget governance
- File-backed plan store with audit logs
- The plan orchestrator state machine and its lifecycle service
"""

from .dag import CYCLE_ERROR, DagValidationResult, validate_dag
from .governance import GovernanceCheck, GovernanceResult, format_duration, run_governance_checks
from .orchestrator import PlanOrchestrator
from .registry import CancellationToken, RunRegistry
from .scheduler import (
    SchedulerState,
    analyze_scheduler_state,
    find_ready_tasks,
    skip_downstream_tasks,
    update_ready_tasks,
)
from .service import (
    PlanCapacityError,
    PlanNotFoundError,
    PlanService,
    PlanServiceError,
    PlanStateError,
)
from .store import PlanStore

__all__ = [
    "CYCLE_ERROR",
    "CancellationToken",
    "DagValidationResult",
    "GovernanceCheck",
    "GovernanceResult",
    "PlanCapacityError",
    "PlanNotFoundError",
    "PlanOrchestrator",
    "PlanService",
    "PlanServiceError",
    "PlanStateError",
    "PlanStore",
    "RunRegistry",
    "SchedulerState",
    "analyze_scheduler_state",
    "find_ready_tasks",
    "format_duration",
    "run_governance_checks",
    "skip_downstream_tasks",
    "update_ready_tasks",
    "validate_dag",
]

"""Planning run supervision."""

from .state import (
    PLANNING_STALE_TIMEOUT_MS,
    OverlayPending,
    PlanningPhase,
    PlanningState,
    PlanningSupervisor,
    RestoreResult,
    is_process_alive,
    normalize_cwd,
    state_path,
)

__all__ = [
    "OverlayPending",
    "PLANNING_STALE_TIMEOUT_MS",
    "PlanningPhase",
    "PlanningState",
    "PlanningSupervisor",
    "RestoreResult",
    "is_process_alive",
    "normalize_cwd",
    "state_path",
]

"""Durable planning-run state machine, one record per working directory."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..storage.models import WriteOutcome
from ..storage.writes import write_atomic

logger = logging.getLogger(__name__)

PLANNING_STALE_TIMEOUT_MS = 5 * 60 * 1000
STATE_RELATIVE_PATH = Path(".pi") / "messenger" / "crew" / "planning-state.json"


class PlanningPhase(str, Enum):
    IDLE = "idle"
    READ_PRD = "read-prd"
    SCAN_CODE = "scan-code"
    DOCS = "docs"
    REFS = "refs"
    GAP_ANALYSIS = "gap-analysis"
    BUILD_STEPS = "build-steps"
    BUILD_TASK_GRAPH = "build-task-graph"
    REVIEW_PASS = "review-pass"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({PlanningPhase.COMPLETED, PlanningPhase.FAILED})


class PlanningState(BaseModel):
    """Snapshot persisted to ``planning-state.json`` with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    active: bool = False
    cwd: str | None = None
    run_id: str | None = Field(default=None, alias="runId")
    pass_number: int = Field(default=0, alias="pass")
    max_passes: int = Field(default=0, alias="maxPasses")
    phase: PlanningPhase = PlanningPhase.IDLE
    updated_at: str | None = Field(default=None, alias="updatedAt")
    pid: int | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(slots=True, frozen=True)
class RestoreResult:
    stale_cleared: bool


@dataclass(slots=True, frozen=True)
class OverlayPending:
    run_id: str
    cwd: str


def normalize_cwd(cwd: str | Path) -> str:
    return os.path.realpath(os.fspath(cwd))


def state_path(cwd: str | Path) -> Path:
    return Path(cwd) / STATE_RELATIVE_PATH


def is_process_alive(pid: int) -> bool:
    """Signal-0 probe; a process owned by another user still counts as alive."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _parse_iso_ms(value: str | None) -> int | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanningSupervisor:
    """Tracks planning runs for every working directory this process touches.

    Each directory has its own state record and its own cancellation flag.
    Every mutation is persisted immediately through an atomic replace.
    """

    def __init__(
        self,
        *,
        stale_after_ms: int = PLANNING_STALE_TIMEOUT_MS,
        clock: Callable[[], datetime] = _utcnow,
        pid_alive: Callable[[int], bool] = is_process_alive,
        pid: int | None = None,
    ) -> None:
        self._stale_after_ms = stale_after_ms
        self._clock = clock
        self._pid_alive = pid_alive
        self._pid = pid if pid is not None else os.getpid()
        self._states: dict[str, PlanningState] = {}
        self._cancelled: set[str] = set()
        self._overlay_pending: dict[str, str] = {}
        self._dismissed: set[str] = set()

    @property
    def stale_after_ms(self) -> int:
        return self._stale_after_ms

    def _record(self, key: str) -> PlanningState:
        state = self._states.get(key)
        if state is None:
            state = PlanningState(cwd=key)
            self._states[key] = state
        return state

    def _stamp(self) -> str:
        return self._clock().isoformat()

    def _persist(self, key: str) -> WriteOutcome:
        document = self._record(key).to_document()
        return write_atomic(state_path(key), json.dumps(document, indent=2))

    def state(self, cwd: str | Path) -> PlanningState:
        """Return a copy of the record for ``cwd``."""

        return self._record(normalize_cwd(cwd)).model_copy()

    def states(self) -> dict[str, PlanningState]:
        return {key: state.model_copy() for key, state in self._states.items()}

    def is_planning_for(self, cwd: str | Path) -> bool:
        state = self._states.get(normalize_cwd(cwd))
        return bool(state and state.active)

    def is_cancelled(self, cwd: str | Path) -> bool:
        return normalize_cwd(cwd) in self._cancelled

    def start(self, cwd: str | Path, max_passes: int) -> PlanningState:
        key = normalize_cwd(cwd)
        self._cancelled.discard(key)
        self._states[key] = PlanningState(
            active=True,
            cwd=key,
            run_id=str(uuid.uuid4()),
            pass_number=0,
            max_passes=max(1, max_passes),
            phase=PlanningPhase.READ_PRD,
            updated_at=self._stamp(),
            pid=self._pid,
        )
        self._persist(key)
        self.mark_overlay_pending(key)
        logger.info("Planning run started", extra={"cwd": key, "run_id": self._states[key].run_id})
        return self._states[key].model_copy()

    def set_phase(
        self,
        cwd: str | Path,
        phase: PlanningPhase | str,
        pass_number: int | None = None,
    ) -> bool:
        """Advance the run; returns False when the run was cancelled."""

        phase = PlanningPhase(phase)
        key = normalize_cwd(cwd)
        if key in self._cancelled:
            return False
        state = self._record(key)
        state.active = True
        state.cwd = key
        if not state.run_id:
            state.run_id = str(uuid.uuid4())
        state.phase = phase
        if pass_number is not None:
            state.pass_number = pass_number
        state.updated_at = self._stamp()
        self._persist(key)
        return True

    def finish(
        self,
        cwd: str | Path,
        status: PlanningPhase | str,
        pass_number: int | None = None,
    ) -> bool:
        status = PlanningPhase(status)
        if status not in TERMINAL_PHASES:
            raise ValueError(f"Planning can only finish as completed or failed, not {status.value}")
        key = normalize_cwd(cwd)
        if key in self._cancelled:
            return False
        self._overlay_pending.pop(key, None)
        state = self._record(key)
        state.active = False
        state.cwd = key
        state.run_id = None
        state.phase = status
        if pass_number is not None:
            state.pass_number = pass_number
        state.updated_at = self._stamp()
        self._persist(key)
        logger.info("Planning run finished", extra={"cwd": key, "status": status.value})
        return True

    def cancel(self, cwd: str | Path) -> None:
        key = normalize_cwd(cwd)
        self._cancelled.add(key)
        self.clear(key)
        logger.info("Planning run cancelled", extra={"cwd": key})

    def clear(self, cwd: str | Path) -> None:
        key = normalize_cwd(cwd)
        self._overlay_pending.pop(key, None)
        self._states[key] = PlanningState(cwd=key, updated_at=self._stamp())
        self._persist(key)

    def restore(self, cwd: str | Path) -> RestoreResult:
        """Load the persisted record, clearing runs whose owner process is gone."""

        key = normalize_cwd(cwd)
        path = state_path(key)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return RestoreResult(stale_cleared=False)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable planning state", extra={"path": str(path), "error": str(exc)})
            return RestoreResult(stale_cleared=False)
        if not isinstance(raw, dict):
            return RestoreResult(stale_cleared=False)

        if raw.get("active"):
            stored_pid = raw.get("pid")
            if not isinstance(stored_pid, int) or isinstance(stored_pid, bool) or stored_pid <= 0:
                stored_pid = None
            if stored_pid is None or not self._pid_alive(stored_pid):
                self.clear(key)
                logger.warning("Cleared stale planning run", extra={"cwd": key, "pid": stored_pid})
                return RestoreResult(stale_cleared=True)

        try:
            state = PlanningState.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid planning state", extra={"path": str(path), "error": str(exc)})
            return RestoreResult(stale_cleared=False)

        state.cwd = normalize_cwd(state.cwd or key)
        self._states[key] = state
        if state.active and not state.run_id:
            state.run_id = str(uuid.uuid4())
            self._persist(key)
        return RestoreResult(stale_cleared=False)

    def update_age_ms(self, cwd: str | Path, now_ms: int | None = None) -> int | None:
        if not self.is_planning_for(cwd):
            return None
        updated = _parse_iso_ms(self._states[normalize_cwd(cwd)].updated_at)
        if updated is None:
            return None
        current = now_ms if now_ms is not None else int(self._clock().timestamp() * 1000)
        return max(0, current - updated)

    def is_stalled(
        self,
        cwd: str | Path,
        now_ms: int | None = None,
        stale_after_ms: int | None = None,
    ) -> bool:
        if not self.is_planning_for(cwd):
            return False
        age = self.update_age_ms(cwd, now_ms)
        if age is None:
            return True
        threshold = stale_after_ms if stale_after_ms is not None else self._stale_after_ms
        return age >= max(1, threshold)

    def mark_overlay_pending(self, cwd: str | Path) -> bool:
        key = normalize_cwd(cwd)
        state = self._states.get(key)
        if state is None or not state.active or not state.run_id:
            return False
        if state.run_id in self._dismissed:
            return False
        self._overlay_pending[key] = state.run_id
        return True

    def peek_overlay_pending(self, cwd: str | Path) -> OverlayPending | None:
        """Return the pending notification only while it still matches the live run."""

        key = normalize_cwd(cwd)
        state = self._states.get(key)
        if state is None or not state.active or not state.run_id:
            return None
        if self._overlay_pending.get(key) != state.run_id:
            return None
        return OverlayPending(run_id=state.run_id, cwd=key)

    def consume_overlay_pending(self, cwd: str | Path) -> OverlayPending | None:
        pending = self.peek_overlay_pending(cwd)
        if pending is not None:
            self._overlay_pending.pop(pending.cwd, None)
        return pending

    def dismiss_overlay_run(self, run_id: str) -> None:
        self._dismissed.add(run_id)
        for key, pending in list(self._overlay_pending.items()):
            if pending == run_id:
                del self._overlay_pending[key]


__all__ = [
    "OverlayPending",
    "PLANNING_STALE_TIMEOUT_MS",
    "PlanningPhase",
    "PlanningState",
    "PlanningSupervisor",
    "RestoreResult",
    "TERMINAL_PHASES",
    "is_process_alive",
    "normalize_cwd",
    "state_path",
]

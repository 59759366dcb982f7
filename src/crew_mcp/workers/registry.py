"""Unified registry of live worker processes, task workers and lobby workers alike."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Iterator, Protocol

from ..config import CoordinationLevel
from .utils import now_ms

logger = logging.getLogger(__name__)

KILL_ESCALATION_SECONDS = 5.0


class ProcessLike(Protocol):
    """The slice of ``asyncio.subprocess.Process`` the crew relies on."""

    pid: int

    @property
    def returncode(self) -> int | None:
        ...

    def send_signal(self, sig: int) -> None:
        ...


@dataclass(slots=True, eq=False)
class WorkerHandle:
    process: ProcessLike
    name: str
    cwd: str
    task_id: str
    identity: str | None = None
    stop_signaled: bool = False

    kind: ClassVar[str] = "worker"

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None

    def is_alive(self) -> bool:
        return not self.exited and not self.stop_signaled

    def send_signal(self, sig: int) -> bool:
        """Signal the process unless it already exited; returns whether a signal went out."""

        if self.exited:
            return False
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        self.stop_signaled = True
        return True


@dataclass(slots=True, eq=False)
class TaskWorker(WorkerHandle):
    kind: ClassVar[str] = "worker"


@dataclass(slots=True, eq=False)
class LobbyWorker(WorkerHandle):
    lobby_id: str = ""
    assigned_task_id: str | None = None
    coordination: CoordinationLevel = "chatty"
    started_at: int = field(default_factory=now_ms)
    prompt_tmp_dir: Path | None = None
    alive_file: Path | None = None

    kind: ClassVar[str] = "lobby"


def _key(cwd: str | Path, task_id: str) -> tuple[str, str]:
    return (str(cwd), task_id)


class WorkerRegistry:
    """Keyed table of every live worker handle, keyed by ``(cwd, task_id)``."""

    def __init__(self) -> None:
        self._workers: dict[tuple[str, str], WorkerHandle] = {}

    def __len__(self) -> int:
        return len(self._workers)

    def __iter__(self) -> Iterator[WorkerHandle]:
        return iter(list(self._workers.values()))

    def register(self, handle: WorkerHandle) -> None:
        self._workers[_key(handle.cwd, handle.task_id)] = handle

    def unregister(self, cwd: str | Path, task_id: str) -> WorkerHandle | None:
        return self._workers.pop(_key(cwd, task_id), None)

    def find_worker_by_task(self, cwd: str | Path, task_id: str) -> WorkerHandle | None:
        """Direct key lookup, then a lobby worker currently assigned to ``task_id``."""

        direct = self._workers.get(_key(cwd, task_id))
        if direct is not None:
            return direct
        for handle in self._workers.values():
            if handle.cwd != str(cwd):
                continue
            if isinstance(handle, LobbyWorker) and handle.assigned_task_id == task_id:
                return handle
        return None

    def has_active_worker(self, cwd: str | Path, task_id: str) -> bool:
        handle = self.find_worker_by_task(cwd, task_id)
        return handle is not None and handle.is_alive()

    def kill_worker_by_task(self, cwd: str | Path, task_id: str) -> bool:
        """SIGTERM the worker, escalating to SIGKILL after five seconds if needed."""

        handle = self.find_worker_by_task(cwd, task_id)
        if handle is None or not handle.is_alive():
            return False
        handle.send_signal(signal.SIGTERM)
        _schedule_kill_fallback(handle)
        logger.info("Terminated worker", extra={"cwd": str(cwd), "task_id": task_id, "worker": handle.name})
        return True

    def kill_all(self, cwd: str | Path | None = None) -> int:
        """SIGTERM every live worker (optionally scoped to ``cwd``) and forget it immediately."""

        killed = 0
        for key, handle in list(self._workers.items()):
            if cwd is not None and handle.cwd != str(cwd):
                continue
            if handle.is_alive() and handle.send_signal(signal.SIGTERM):
                killed += 1
            del self._workers[key]
        return killed

    def lobby_workers(self, cwd: str | Path) -> list[LobbyWorker]:
        return [
            handle
            for handle in self._workers.values()
            if isinstance(handle, LobbyWorker) and handle.cwd == str(cwd)
        ]

    def available_lobby_workers(self, cwd: str | Path) -> list[LobbyWorker]:
        """Lobby workers with no task assigned whose process is still running."""

        return [
            handle
            for handle in self.lobby_workers(cwd)
            if not handle.assigned_task_id and not handle.exited
        ]

    def lobby_worker_count(self, cwd: str | Path) -> int:
        return len(self.available_lobby_workers(cwd))

    def record_identity(self, cwd: str | Path, task_id: str, identity: str) -> bool:
        """Store the coordination identity a worker announced for itself."""

        handle = self.find_worker_by_task(cwd, task_id)
        if handle is None:
            return False
        handle.identity = identity
        return True

    def record_identity_for_pid(self, pid: int, identity: str) -> bool:
        for handle in self._workers.values():
            if handle.process.pid == pid:
                handle.identity = identity
                return True
        return False

    def identity_for_pid(self, pid: int) -> str | None:
        for handle in self._workers.values():
            if handle.process.pid == pid:
                return handle.identity
        return None


def _schedule_kill_fallback(handle: WorkerHandle, delay: float | None = None) -> None:
    delay = KILL_ESCALATION_SECONDS if delay is None else delay

    def _escalate() -> None:
        if handle.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                handle.process.send_signal(signal.SIGKILL)

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # No loop: a daemon timer never holds the interpreter open.
        timer = threading.Timer(delay, _escalate)
        timer.daemon = True
        timer.start()
        return
    loop.call_later(delay, _escalate)


__all__ = [
    "KILL_ESCALATION_SECONDS",
    "LobbyWorker",
    "ProcessLike",
    "TaskWorker",
    "WorkerHandle",
    "WorkerRegistry",
]

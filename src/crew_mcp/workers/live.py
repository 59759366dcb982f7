"""In-memory board of executing workers and their latest progress snapshots."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .progress import AgentProgress

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


@dataclass(slots=True)
class LiveWorkerInfo:
    cwd: str
    task_id: str
    agent: str
    name: str
    progress: AgentProgress
    started_at: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "cwd": self.cwd,
            "taskId": self.task_id,
            "agent": self.agent,
            "name": self.name,
            "startedAt": self.started_at,
            "progress": self.progress.as_dict(),
        }


class LiveProgressBoard:
    """Tracks running workers and notifies subscribers after every change."""

    def __init__(self) -> None:
        self._workers: dict[tuple[str, str], LiveWorkerInfo] = {}
        self._listeners: list[Listener] = []

    def update(self, cwd: str, task_id: str, info: LiveWorkerInfo) -> None:
        self._workers[(str(cwd), task_id)] = info
        self._notify()

    def remove(self, cwd: str, task_id: str) -> None:
        self._workers.pop((str(cwd), task_id), None)
        self._notify()

    def workers(self, cwd: str | None = None) -> dict[Any, LiveWorkerInfo]:
        """All entries keyed ``(cwd, task_id)``, or entries for ``cwd`` keyed by task id."""

        if cwd is None:
            return dict(self._workers)
        return {
            task_id: info
            for (worker_cwd, task_id), info in self._workers.items()
            if worker_cwd == str(cwd)
        }

    def has_live_workers(self, cwd: str | None = None) -> bool:
        if cwd is None:
            return bool(self._workers)
        return any(worker_cwd == str(cwd) for worker_cwd, _ in self._workers)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it again."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Live progress listener failed")


__all__ = ["LiveProgressBoard", "LiveWorkerInfo"]

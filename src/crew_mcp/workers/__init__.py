"""Worker subprocess orchestration."""

from .concurrency import ConcurrencyControl, clamp_concurrency
from .live import LiveProgressBoard, LiveWorkerInfo
from .lobby import LOBBY_TOKEN_BUDGETS, LobbyPool
from .progress import AgentProgress
from .registry import LobbyWorker, TaskWorker, WorkerHandle, WorkerRegistry
from .runner import AgentResult, AgentTask, WorkerOrchestrator, shutdown_all_workers
from .shutdown import (
    InvalidTransitionError,
    MessengerDirs,
    ShutdownProtocol,
    ShutdownState,
)

__all__ = [
    "AgentProgress",
    "AgentResult",
    "AgentTask",
    "ConcurrencyControl",
    "InvalidTransitionError",
    "LOBBY_TOKEN_BUDGETS",
    "LiveProgressBoard",
    "LiveWorkerInfo",
    "LobbyPool",
    "LobbyWorker",
    "MessengerDirs",
    "ShutdownProtocol",
    "ShutdownState",
    "TaskWorker",
    "WorkerHandle",
    "WorkerOrchestrator",
    "WorkerRegistry",
    "clamp_concurrency",
    "shutdown_all_workers",
]

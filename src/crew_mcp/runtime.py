"""Process-wide context shared by the orchestrator, lobby and MCP tools."""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import CrewConfig, CrewSettings
from .planning import PlanningSupervisor
from .workers.concurrency import ConcurrencyControl
from .workers.live import LiveProgressBoard
from .workers.registry import WorkerRegistry


@dataclass(slots=True)
class CrewRuntime:
    concurrency: ConcurrencyControl = field(default_factory=ConcurrencyControl)
    registry: WorkerRegistry = field(default_factory=WorkerRegistry)
    live: LiveProgressBoard = field(default_factory=LiveProgressBoard)
    planning: PlanningSupervisor = field(default_factory=PlanningSupervisor)

    @classmethod
    def from_settings(cls, settings: CrewSettings, config: CrewConfig | None = None) -> "CrewRuntime":
        """Seed the concurrency limit from crew config and the stale threshold from settings."""

        config = config or CrewConfig()
        return cls(
            concurrency=ConcurrencyControl(
                config.concurrency.workers, config_max=config.concurrency.max
            ),
            planning=PlanningSupervisor(stale_after_ms=settings.planning_stale_ms),
        )


__all__ = ["CrewRuntime"]

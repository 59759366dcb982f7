"""Configuration management for Crew MCP."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
BUNDLED_AGENTS_DIR = PACKAGE_DIR / "agents" / "bundled"
DEFAULT_USER_CONFIG = Path("~/.pi/agent/pi-messenger.json")
DEFAULT_MESSENGER_DIR = Path("~/.pi/agent/messenger")
PROJECT_CONFIG_FILE = "config.json"

CoordinationLevel = Literal["none", "minimal", "moderate", "chatty"]
CrewRole = Literal["planner", "worker", "reviewer", "analyst"]

COORDINATION_LEVELS: tuple[CoordinationLevel, ...] = ("none", "minimal", "moderate", "chatty")


class CrewSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    worker_command: str = Field(default="pi", validation_alias="CREW_WORKER_COMMAND")
    project_dir: Path = Field(default=Path("."), validation_alias="CREW_PROJECT_DIR")
    agent_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(BUNDLED_AGENTS_DIR,), validation_alias="CREW_AGENT_PATHS"
    )
    extension_path: Path = Field(default=PACKAGE_DIR, validation_alias="CREW_EXTENSION_PATH")
    user_config_path: Path = Field(default=DEFAULT_USER_CONFIG, validation_alias="CREW_USER_CONFIG")
    messenger_dir: Path = Field(default=DEFAULT_MESSENGER_DIR, validation_alias="PI_MESSENGER_DIR")
    log_level: str = Field(default="INFO", validation_alias="CREW_LOG_LEVEL")
    planning_stale_ms: int = Field(default=5 * 60 * 1000, validation_alias="CREW_PLANNING_STALE_MS")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CREW_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_paths", mode="before")
    @classmethod
    def _parse_agent_paths(cls, value):
        if value is None or value == "":
            return (BUNDLED_AGENTS_DIR,)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (BUNDLED_AGENTS_DIR,)
        raise TypeError("CREW_AGENT_PATHS must be a list of paths or a path-separated string")

    @field_validator("planning_stale_ms")
    @classmethod
    def _validate_planning_stale_ms(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CREW_PLANNING_STALE_MS must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CrewSettings:
    """Return cached settings instance."""

    settings = CrewSettings()
    settings.project_dir = settings.project_dir.expanduser().resolve()
    settings.agent_paths = tuple(path.expanduser().resolve() for path in settings.agent_paths)
    settings.user_config_path = settings.user_config_path.expanduser()
    settings.messenger_dir = settings.messenger_dir.expanduser()
    return settings


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OutputBudget(_CamelModel):
    """Maximum size of the text handed back from a worker."""

    bytes: int | None = Field(default=None, ge=1)
    lines: int | None = Field(default=None, ge=1)


class RoleSettings(_CamelModel):
    planner: str | None = None
    worker: str | None = None
    reviewer: str | None = None
    analyst: str | None = None

    def for_role(self, role: str) -> str | None:
        if role not in type(self).model_fields:
            return None
        return getattr(self, role)


class ConcurrencyConfig(_CamelModel):
    workers: int = 2
    max: int = 10


class TruncationConfig(_CamelModel):
    planners: OutputBudget = Field(default_factory=lambda: OutputBudget(bytes=204800, lines=5000))
    workers: OutputBudget = Field(default_factory=lambda: OutputBudget(bytes=204800, lines=5000))
    reviewers: OutputBudget = Field(default_factory=lambda: OutputBudget(bytes=102400, lines=2000))
    analysts: OutputBudget = Field(default_factory=lambda: OutputBudget(bytes=102400, lines=2000))


class ArtifactsConfig(_CamelModel):
    enabled: bool = True
    cleanup_days: int = 7


class PlanningConfig(_CamelModel):
    max_passes: int = 1


class WorkConfig(_CamelModel):
    max_attempts_per_task: int = 5
    max_waves: int = 50
    stop_on_block: bool = False
    env: dict[str, str] = Field(default_factory=dict)
    shutdown_grace_period_ms: int = Field(default=30000, ge=0)


class CrewConfig(_CamelModel):
    """Project-level crew configuration merged from user and project JSON files."""

    models: RoleSettings = Field(default_factory=RoleSettings)
    thinking: RoleSettings = Field(default_factory=RoleSettings)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    truncation: TruncationConfig = Field(default_factory=TruncationConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    work: WorkConfig = Field(default_factory=WorkConfig)
    coordination: CoordinationLevel = "chatty"
    feed_retention: int = Field(default=50, ge=0)
    message_budgets: dict[str, int] = Field(
        default_factory=lambda: {"none": 0, "minimal": 2, "moderate": 5, "chatty": 10}
    )


def _load_json(path: Path) -> dict[str, Any]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config file", extra={"path": str(path), "error": str(exc)})
        return {}
    if not isinstance(document, dict):
        logger.warning("Ignoring non-object config file", extra={"path": str(path)})
        return {}
    return document


def deep_merge(target: dict[str, Any], *sources: dict[str, Any]) -> dict[str, Any]:
    """Merge nested mappings; later sources win, ``None`` values are skipped."""

    result = dict(target)
    for source in sources:
        for key, value in source.items():
            if isinstance(value, dict):
                base = result.get(key)
                result[key] = deep_merge(base if isinstance(base, dict) else {}, value)
            elif value is not None:
                result[key] = value
    return result


def load_crew_config(
    crew_dir: Path,
    *,
    user_config_path: Path | None = None,
    coordination_override: CoordinationLevel | None = None,
) -> CrewConfig:
    """Load crew configuration with priority defaults <- user <- project <- override."""

    user_path = (user_config_path or DEFAULT_USER_CONFIG).expanduser()
    user_document = _load_json(user_path).get("crew") or {}
    if not isinstance(user_document, dict):
        user_document = {}
    project_document = _load_json(Path(crew_dir) / PROJECT_CONFIG_FILE)

    defaults = CrewConfig().model_dump(by_alias=True)
    merged = deep_merge(defaults, user_document, project_document)
    if coordination_override is not None:
        merged["coordination"] = coordination_override

    try:
        return CrewConfig.model_validate(merged)
    except ValidationError as exc:
        logger.warning(
            "Crew config failed validation; using defaults",
            extra={"crew_dir": str(crew_dir), "error": str(exc)},
        )
        return CrewConfig()


def truncation_for_role(config: CrewConfig, role: str) -> OutputBudget:
    """Return the output budget configured for a crew role."""

    mapping = {
        "planner": config.truncation.planners,
        "worker": config.truncation.workers,
        "reviewer": config.truncation.reviewers,
        "analyst": config.truncation.analysts,
    }
    return mapping.get(role, config.truncation.workers)


__all__ = [
    "COORDINATION_LEVELS",
    "CoordinationLevel",
    "CrewConfig",
    "CrewRole",
    "CrewSettings",
    "OutputBudget",
    "deep_merge",
    "get_settings",
    "load_crew_config",
    "truncation_for_role",
]

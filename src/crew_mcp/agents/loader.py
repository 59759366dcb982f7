"""Agent discovery from Markdown files with YAML front matter."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import AgentDefinition

logger = logging.getLogger(__name__)

PROJECT_AGENTS_SUBDIR = Path(".pi") / "messenger" / "crew" / "agents"


class AgentLoadError(RuntimeError):
    """Raised when one or more agent files cannot be parsed."""


def parse_front_matter(content: str) -> tuple[dict[str, Any], str]:
    """Split a Markdown document into its front matter mapping and body."""

    normalized = content.replace("\r\n", "\n")
    if not normalized.startswith("---"):
        return {}, normalized
    end = normalized.find("\n---", 3)
    if end == -1:
        return {}, normalized

    block = normalized[4:end]
    body = normalized[end + 4 :].strip()
    document = yaml.safe_load(block) if block.strip() else {}
    if not isinstance(document, dict):
        return {}, body
    return document, body


class AgentLoader:
    """Loads agent definitions from extension directories and the project."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths: list[Path] = [Path(path) for path in (search_paths or [])]

    @property
    def search_paths(self) -> list[Path]:
        """Return the configured extension search paths."""

        return list(self._search_paths)

    def _load_dir(self, base: Path, source: str, errors: list[str]) -> list[AgentDefinition]:
        if not base.is_dir():
            return []

        agents: list[AgentDefinition] = []
        for path in sorted(base.glob("*.md")):
            if not path.is_file():
                continue
            try:
                front_matter, body = parse_front_matter(path.read_text(encoding="utf-8"))
            except OSError as exc:
                errors.append(f"Failed to read {path}: {exc}")
                continue
            except yaml.YAMLError as exc:
                errors.append(f"Failed to parse front matter in {path}: {exc}")
                continue

            if not front_matter.get("name") or not front_matter.get("description"):
                continue

            try:
                agent = AgentDefinition.model_validate(
                    {
                        **front_matter,
                        "system_prompt": body,
                        "source": source,
                        "file_path": path,
                    }
                )
            except ValidationError as exc:
                errors.append(f"Agent validation error in {path}: {exc}")
                continue
            agents.append(agent)
        return agents

    def _collect(self, cwd: Path | None) -> tuple[dict[str, AgentDefinition], list[str]]:
        errors: list[str] = []
        agents: dict[str, AgentDefinition] = {}
        for base in self._search_paths:
            for agent in self._load_dir(base, "extension", errors):
                agents[agent.name] = agent
        if cwd is not None:
            for agent in self._load_dir(Path(cwd) / PROJECT_AGENTS_SUBDIR, "project", errors):
                agents[agent.name] = agent
        return agents, errors

    def load_all(self, cwd: Path | None = None) -> dict[str, AgentDefinition]:
        """Load agents from extension paths then the project directory.

        Later sources override earlier ones when agent names collide. Raises
        ``AgentLoadError`` when any file fails to parse.
        """

        agents, errors = self._collect(cwd)
        if errors:
            raise AgentLoadError("; ".join(errors))
        return agents

    def discover(self, cwd: Path | None = None) -> dict[str, AgentDefinition]:
        """Like ``load_all`` but logs broken files instead of raising."""

        agents, errors = self._collect(cwd)
        for error in errors:
            logger.warning("Skipping agent definition", extra={"error": error})
        return agents

    def get(self, name: str, cwd: Path | None = None) -> AgentDefinition:
        """Return a single agent by name."""

        agents = self.discover(cwd)
        try:
            return agents[name]
        except KeyError as exc:
            raise AgentLoadError(f"Agent '{name}' not found in search paths") from exc


def discover_agents(
    cwd: Path | None = None, search_paths: Iterable[Path] | None = None
) -> dict[str, AgentDefinition]:
    """Convenience wrapper for discovering agents from the provided paths."""

    return AgentLoader(search_paths).discover(cwd)


__all__ = ["AgentDefinition", "AgentLoadError", "AgentLoader", "discover_agents", "parse_front_matter"]

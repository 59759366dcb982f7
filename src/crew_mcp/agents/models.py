"""Agent definition models for crew workers."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import CrewRole, OutputBudget


class AgentDefinition(BaseModel):
    """Declarative description of an agent the orchestrator can spawn."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., description="Unique agent name referenced by tasks.")
    description: str = Field(..., description="Human-friendly summary of the agent.")
    tools: list[str] | None = Field(
        default=None,
        description="Built-in tool names or extension paths available to the agent.",
    )
    model: str | None = Field(default=None, description="Default model for this agent.")
    thinking: str | None = Field(default=None, description="Default thinking effort level.")
    system_prompt: str = Field(
        default="",
        description="Markdown body appended to the worker's system prompt.",
    )
    source: Literal["extension", "project"] = "extension"
    file_path: Path | None = None
    crew_role: CrewRole | None = Field(default=None, alias="crewRole")
    max_output: OutputBudget | None = Field(default=None, alias="maxOutput")
    parallel: bool = True
    retryable: bool = True

    @field_validator("name", "description")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("Agent name and description must not be empty")
        return normalized

    @field_validator("tools", mode="before")
    @classmethod
    def _split_tools(cls, value: Any):
        if value is None:
            return None
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            tools = [str(item).strip() for item in value if str(item).strip()]
            return tools or None
        raise TypeError("tools must be a comma-separated string or a list of strings")

    @field_validator("model", "thinking", mode="before")
    @classmethod
    def _stringify(cls, value: Any):
        if value is None or value == "":
            return None
        # YAML 1.1 reads a bare ``off`` as False
        if value is False:
            return "off"
        return str(value)

    @property
    def role(self) -> str:
        return self.crew_role or "worker"


__all__ = ["AgentDefinition"]

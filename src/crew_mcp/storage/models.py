"""Data models for persisted crew files."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class WriteOutcome:
    """Result of a best-effort filesystem write."""

    path: Path
    ok: bool
    error: str | None = None
    attempts: int = 1


@dataclass(slots=True)
class ArtifactPaths:
    input_path: Path
    output_path: Path
    jsonl_path: Path
    metadata_path: Path

    def as_dict(self) -> dict[str, str]:
        return {
            "input": str(self.input_path),
            "output": str(self.output_path),
            "jsonl": str(self.jsonl_path),
            "metadata": str(self.metadata_path),
        }


@dataclass(slots=True)
class FeedEvent:
    ts: str
    agent: str
    type: str
    target: str | None = None
    preview: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ts": self.ts, "agent": self.agent, "type": self.type}
        if self.target is not None:
            payload["target"] = self.target
        if self.preview is not None:
            payload["preview"] = self.preview
        return payload


__all__ = ["ArtifactPaths", "FeedEvent", "WriteOutcome"]

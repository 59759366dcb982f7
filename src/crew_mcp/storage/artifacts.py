"""Debug artifacts written for each worker run."""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

from .models import ArtifactPaths, WriteOutcome
from .writes import append_line, write_text

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^\w.-]")
_ARTIFACT_SUFFIXES = ("_input.md", "_output.md", ".jsonl", "_meta.json")


def sanitize_name(name: str) -> str:
    return _UNSAFE_NAME.sub("_", name)


def get_artifact_paths(
    artifacts_dir: Path,
    run_id: str,
    agent: str,
    index: int | None = None,
) -> ArtifactPaths:
    suffix = f"_{index}" if index is not None else ""
    base = f"{run_id}_{sanitize_name(agent)}{suffix}"
    directory = Path(artifacts_dir)
    return ArtifactPaths(
        input_path=directory / f"{base}_input.md",
        output_path=directory / f"{base}_output.md",
        jsonl_path=directory / f"{base}.jsonl",
        metadata_path=directory / f"{base}_meta.json",
    )


def write_artifact(path: Path, content: str) -> WriteOutcome:
    return write_text(path, content)


def write_metadata(path: Path, metadata: dict[str, Any]) -> WriteOutcome:
    return write_text(path, json.dumps(metadata, indent=2))


def append_jsonl(path: Path, line: str) -> WriteOutcome:
    return append_line(path, line)


def cleanup_old_artifacts(artifacts_dir: Path, max_age_days: int, *, now: float | None = None) -> int:
    """Delete artifact files older than ``max_age_days``; returns the count removed."""

    directory = Path(artifacts_dir)
    if max_age_days <= 0 or not directory.is_dir():
        return 0

    cutoff = (now if now is not None else time.time()) - max_age_days * 86400
    removed = 0
    for path in directory.iterdir():
        if not path.is_file() or not path.name.endswith(_ARTIFACT_SUFFIXES):
            continue
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Could not remove artifact", extra={"path": str(path), "error": str(exc)})
    return removed


__all__ = [
    "append_jsonl",
    "cleanup_old_artifacts",
    "get_artifact_paths",
    "sanitize_name",
    "write_artifact",
    "write_metadata",
]

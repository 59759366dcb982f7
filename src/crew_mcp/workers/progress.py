"""Progress tracking parsed from the worker's ``--mode json`` event stream."""

from __future__ import annotations

import copy
import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Literal

from .utils import now_ms

ProgressStatus = Literal["pending", "running", "completed", "failed"]

_PREVIEW_KEYS = ("command", "path", "file_path", "pattern", "query")
_PREVIEW_LIMIT = 60


@dataclass(slots=True)
class ToolEntry:
    tool: str
    args: str
    start_ms: int
    end_ms: int


@dataclass(slots=True)
class AgentProgress:
    """Mutable accumulator updated on every parsed event."""

    agent: str
    status: ProgressStatus = "pending"
    current_tool: str | None = None
    current_tool_args: str | None = None
    current_tool_start_ms: int | None = None
    recent_tools: list[ToolEntry] = field(default_factory=list)
    tool_call_count: int = 0
    tokens: int = 0
    duration_ms: int = 0
    error: str | None = None

    def snapshot(self) -> "AgentProgress":
        """Deep copy safe to hand to other components."""

        return copy.deepcopy(self)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def create_progress(agent: str) -> AgentProgress:
    return AgentProgress(agent=agent)


def parse_jsonl_line(line: str) -> dict[str, Any] | None:
    """Parse one line of the event stream; blank or malformed lines yield None."""

    if not line.strip():
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _args_preview(args: Any) -> str:
    if not isinstance(args, dict):
        return ""
    for key in _PREVIEW_KEYS:
        value = args.get(key)
        if value and isinstance(value, str):
            flattened = value.replace("\n", " ").replace("\r", "")
            if len(flattened) > _PREVIEW_LIMIT:
                return f"{flattened[: _PREVIEW_LIMIT - 3]}..."
            return flattened
    return ""


def _token_count(value: Any) -> int:
    # Booleans are ints in Python but never token counts.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0
    return int(value)


def update_progress(
    progress: AgentProgress,
    event: dict[str, Any],
    start_ms: int,
    *,
    now: int | None = None,
) -> None:
    current = now if now is not None else now_ms()
    progress.duration_ms = current - start_ms
    event_type = event.get("type")

    if event_type == "tool_execution_start":
        progress.status = "running"
        tool_name = event.get("toolName")
        progress.current_tool = tool_name if isinstance(tool_name, str) else None
        progress.current_tool_args = _args_preview(event.get("args"))
        progress.current_tool_start_ms = current
    elif event_type == "tool_execution_end":
        progress.tool_call_count += 1
        if progress.current_tool:
            progress.recent_tools.append(
                ToolEntry(
                    tool=progress.current_tool,
                    args=progress.current_tool_args or "",
                    start_ms=progress.current_tool_start_ms or current,
                    end_ms=current,
                )
            )
        progress.current_tool = None
        progress.current_tool_args = None
        progress.current_tool_start_ms = None
    elif event_type == "message_end":
        message = event.get("message")
        if not isinstance(message, dict):
            return
        usage = message.get("usage")
        if isinstance(usage, dict):
            progress.tokens += _token_count(usage.get("input")) + _token_count(usage.get("output"))
        if message.get("errorMessage"):
            progress.error = str(message["errorMessage"])


def get_final_output(events: Iterable[dict[str, Any]]) -> str:
    """Return the first text part of the last assistant ``message_end`` event."""

    for event in reversed(list(events)):
        if event.get("type") != "message_end":
            continue
        message = event.get("message")
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                return str(part["text"])
    return ""


__all__ = [
    "AgentProgress",
    "ToolEntry",
    "create_progress",
    "get_final_output",
    "parse_jsonl_line",
    "update_progress",
]

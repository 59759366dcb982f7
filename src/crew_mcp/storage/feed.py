"""Append-only activity feed stored at ``<cwd>/.pi/messenger/feed.jsonl``."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .models import FeedEvent, WriteOutcome
from .writes import append_line, write_atomic

logger = logging.getLogger(__name__)

FEED_RELATIVE_PATH = Path(".pi") / "messenger" / "feed.jsonl"


def feed_path(cwd: Path) -> Path:
    return Path(cwd) / FEED_RELATIVE_PATH


def log_feed_event(
    cwd: Path,
    agent: str,
    event_type: str,
    target: str | None = None,
    preview: str | None = None,
) -> WriteOutcome:
    """Append a single event stamped with the current time."""

    event = FeedEvent(
        ts=datetime.now(timezone.utc).isoformat(),
        agent=agent,
        type=event_type,
        target=target,
        preview=preview,
    )
    return append_feed_event(cwd, event)


def append_feed_event(cwd: Path, event: FeedEvent) -> WriteOutcome:
    return append_line(feed_path(cwd), json.dumps(event.as_dict()))


def _read_lines(cwd: Path) -> list[str]:
    path = feed_path(cwd)
    try:
        content = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Could not read feed", extra={"path": str(path), "error": str(exc)})
        return []
    return content.split("\n") if content else []


def read_feed_events(cwd: Path, limit: int = 20) -> list[FeedEvent]:
    """Return the newest ``limit`` events; malformed lines are skipped."""

    events: list[FeedEvent] = []
    for line in _read_lines(cwd):
        try:
            raw = json.loads(line)
            events.append(
                FeedEvent(
                    ts=raw["ts"],
                    agent=raw["agent"],
                    type=raw["type"],
                    target=raw.get("target"),
                    preview=raw.get("preview"),
                )
            )
        except (json.JSONDecodeError, KeyError, TypeError):
            continue
    return events[-limit:] if limit > 0 else []


def prune_feed(cwd: Path, max_events: int) -> WriteOutcome | None:
    """Keep only the newest ``max_events`` lines. Returns None when nothing changed."""

    lines = _read_lines(cwd)
    if len(lines) <= max_events:
        return None
    kept = lines[-max_events:] if max_events > 0 else []
    return write_atomic(feed_path(cwd), "".join(f"{line}\n" for line in kept))


__all__ = ["append_feed_event", "feed_path", "log_feed_event", "prune_feed", "read_feed_events"]

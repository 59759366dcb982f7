"""Storage helpers for Crew MCP."""

from .artifacts import (
    append_jsonl,
    cleanup_old_artifacts,
    get_artifact_paths,
    write_artifact,
    write_metadata,
)
from .feed import log_feed_event, prune_feed, read_feed_events
from .models import ArtifactPaths, FeedEvent, WriteOutcome
from .writes import best_effort, write_atomic

__all__ = [
    "ArtifactPaths",
    "FeedEvent",
    "WriteOutcome",
    "append_jsonl",
    "best_effort",
    "cleanup_old_artifacts",
    "get_artifact_paths",
    "log_feed_event",
    "prune_feed",
    "read_feed_events",
    "write_artifact",
    "write_atomic",
    "write_metadata",
]

from __future__ import annotations

import errno
import json
import os
import time
from pathlib import Path

from crew_mcp.storage import (
    append_jsonl,
    best_effort,
    cleanup_old_artifacts,
    get_artifact_paths,
    write_artifact,
    write_atomic,
    write_metadata,
)
from crew_mcp.storage.feed import feed_path, log_feed_event, prune_feed, read_feed_events


def _flaky(errors: list[int]):
    calls = {"count": 0}

    def action() -> None:
        calls["count"] += 1
        if errors:
            code = errors.pop(0)
            raise OSError(code, os.strerror(code))

    return action, calls


def test_best_effort_retries_recoverable_error_once(tmp_path: Path) -> None:
    action, calls = _flaky([errno.EAGAIN])

    outcome = best_effort(tmp_path / "file", action)

    assert outcome.ok
    assert outcome.attempts == 2
    assert calls["count"] == 2


def test_best_effort_reports_failure(tmp_path: Path) -> None:
    action, calls = _flaky([errno.EBUSY, errno.EBUSY])

    outcome = best_effort(tmp_path / "file", action)

    assert not outcome.ok
    assert outcome.attempts == 2
    assert outcome.error

    action, calls = _flaky([errno.EACCES])
    outcome = best_effort(tmp_path / "file", action)

    assert not outcome.ok
    assert calls["count"] == 1


def test_artifact_paths_are_sanitized(tmp_path: Path) -> None:
    paths = get_artifact_paths(tmp_path, "abcd1234", "crew/worker one", 3)

    assert paths.input_path.name == "abcd1234_crew_worker_one_3_input.md"
    assert paths.output_path.name == "abcd1234_crew_worker_one_3_output.md"
    assert paths.jsonl_path.name == "abcd1234_crew_worker_one_3.jsonl"
    assert paths.metadata_path.name == "abcd1234_crew_worker_one_3_meta.json"
    assert get_artifact_paths(tmp_path, "run", "agent").input_path.name == "run_agent_input.md"


def test_artifact_writes_create_directories(tmp_path: Path) -> None:
    paths = get_artifact_paths(tmp_path / "nested" / "artifacts", "run", "agent", 0)

    assert write_artifact(paths.input_path, "# Task").ok
    assert append_jsonl(paths.jsonl_path, '{"a": 1}').ok
    assert append_jsonl(paths.jsonl_path, '{"b": 2}').ok
    assert write_metadata(paths.metadata_path, {"exitCode": 0}).ok

    assert paths.jsonl_path.read_text(encoding="utf-8").splitlines() == ['{"a": 1}', '{"b": 2}']
    assert json.loads(paths.metadata_path.read_text(encoding="utf-8")) == {"exitCode": 0}


def test_cleanup_old_artifacts(tmp_path: Path) -> None:
    old = tmp_path / "old_agent_output.md"
    fresh = tmp_path / "new_agent_output.md"
    unrelated = tmp_path / "notes.txt"
    for path in (old, fresh, unrelated):
        path.write_text("x", encoding="utf-8")
    now = time.time()
    stale = now - 10 * 86400
    os.utime(old, (stale, stale))
    os.utime(unrelated, (stale, stale))

    removed = cleanup_old_artifacts(tmp_path, 7, now=now)

    assert removed == 1
    assert not old.exists()
    assert fresh.exists()
    assert unrelated.exists()
    assert cleanup_old_artifacts(tmp_path / "missing", 7) == 0


def test_write_atomic_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "state" / "file.json"

    assert write_atomic(target, "one").ok
    assert write_atomic(target, "two").ok

    assert target.read_text(encoding="utf-8") == "two"
    assert [path.name for path in target.parent.iterdir()] == ["file.json"]


def test_feed_roundtrip_skips_malformed_lines(tmp_path: Path) -> None:
    log_feed_event(tmp_path, "SwiftFalcon", "plan.start")
    with feed_path(tmp_path).open("a", encoding="utf-8") as handle:
        handle.write("garbage\n")
        handle.write('{"ts": "x"}\n')
    log_feed_event(tmp_path, "SwiftFalcon", "leave", None, "Lobby worker exited (code 0)")

    events = read_feed_events(tmp_path)

    assert [event.type for event in events] == ["plan.start", "leave"]
    assert events[1].preview == "Lobby worker exited (code 0)"
    assert "target" not in events[0].as_dict()


def test_feed_limit_and_prune(tmp_path: Path) -> None:
    for index in range(5):
        log_feed_event(tmp_path, "agent", "message", f"t{index}")

    assert [event.target for event in read_feed_events(tmp_path, limit=2)] == ["t3", "t4"]
    assert read_feed_events(tmp_path, limit=0) == []
    assert prune_feed(tmp_path, 10) is None

    outcome = prune_feed(tmp_path, 3)

    assert outcome is not None and outcome.ok
    assert [event.target for event in read_feed_events(tmp_path)] == ["t2", "t3", "t4"]

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import SimpleNamespace

from crew_mcp.agents import AgentLoader
from crew_mcp.config import CrewSettings
from crew_mcp.planning import PlanningSupervisor
from crew_mcp.planning.state import state_path
from crew_mcp.runtime import CrewRuntime
from crew_mcp.server import build_status, create_server
from crew_mcp.storage.feed import log_feed_event, read_feed_events
from crew_mcp.workers.live import LiveWorkerInfo
from crew_mcp.workers.progress import create_progress
from crew_mcp.workers.registry import TaskWorker
from fakes import FakeProcess


def _settings(tmp_path: Path) -> CrewSettings:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return CrewSettings(
        project_dir=project.resolve(),
        user_config_path=tmp_path / "no-user-config.json",
        messenger_dir=tmp_path / "messenger",
    )


def _skip_tools(monkeypatch) -> list[dict]:
    calls: list[dict] = []

    def fake_register_tools(*_, **kwargs):
        calls.append(kwargs)
        return SimpleNamespace(batch_events={})

    monkeypatch.setattr("crew_mcp.server.register_tools", fake_register_tools)
    return calls


def test_create_server_clears_stale_planning_run(monkeypatch, tmp_path: Path, caplog) -> None:
    settings = _settings(tmp_path)
    path = state_path(settings.project_dir)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"active": True, "runId": "run-1", "phase": "docs"}), encoding="utf-8")
    calls = _skip_tools(monkeypatch)

    with caplog.at_level(logging.WARNING, logger="crew_mcp.server"):
        server = create_server(settings)

    assert getattr(server, "restore_metadata") == {"stale_cleared": True}
    assert "dead process" in caplog.text
    assert json.loads(path.read_text(encoding="utf-8"))["active"] is False
    assert calls and calls[0]["runtime"] is getattr(server, "runtime")


def test_create_server_seeds_concurrency_from_project_config(monkeypatch, tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    crew_dir = settings.project_dir / ".pi" / "messenger" / "crew"
    crew_dir.mkdir(parents=True)
    (crew_dir / "config.json").write_text(
        json.dumps({"concurrency": {"workers": 4, "max": 6}}), encoding="utf-8"
    )
    _skip_tools(monkeypatch)

    server = create_server(settings)

    runtime: CrewRuntime = getattr(server, "runtime")
    assert runtime.concurrency.value == 4
    assert runtime.concurrency.config_max == 6
    assert getattr(server, "restore_metadata") == {"stale_cleared": False}


def test_create_server_prunes_feed_to_configured_retention(monkeypatch, tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    crew_dir = settings.project_dir / ".pi" / "messenger" / "crew"
    crew_dir.mkdir(parents=True)
    (crew_dir / "config.json").write_text(json.dumps({"feedRetention": 2}), encoding="utf-8")
    for index in range(5):
        log_feed_event(settings.project_dir, "agent", "message", f"t{index}")
    _skip_tools(monkeypatch)

    create_server(settings, runtime=CrewRuntime.from_settings(settings))

    assert [event.target for event in read_feed_events(settings.project_dir)] == ["t3", "t4"]


def test_create_server_warns_about_stalled_run(monkeypatch, tmp_path: Path, caplog) -> None:
    settings = _settings(tmp_path)
    path = state_path(settings.project_dir)
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "active": True,
                "runId": "run-2",
                "phase": "scan-code",
                "pid": 1234,
                "updatedAt": "2020-01-01T00:00:00+00:00",
            }
        ),
        encoding="utf-8",
    )
    runtime = CrewRuntime(planning=PlanningSupervisor(pid_alive=lambda pid: True))
    _skip_tools(monkeypatch)

    with caplog.at_level(logging.WARNING, logger="crew_mcp.server"):
        create_server(settings, runtime)

    assert runtime.planning.is_planning_for(settings.project_dir)
    assert "not reported progress" in caplog.text


def test_build_status_summarizes_runtime(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runtime = CrewRuntime()
    project = str(settings.project_dir)
    runtime.registry.register(TaskWorker(process=FakeProcess(), name="SwiftFalcon", cwd=project, task_id="task-1"))
    runtime.live.update(
        project,
        "task-1",
        LiveWorkerInfo(
            cwd=project,
            task_id="task-1",
            agent="crew-worker",
            name="SwiftFalcon",
            progress=create_progress("crew-worker"),
            started_at=0,
        ),
    )
    runtime.planning.start(settings.project_dir, max_passes=2)

    status = build_status(
        settings,
        runtime,
        AgentLoader(settings.agent_paths),
        restore={"stale_cleared": False},
        request_id="req-1",
    )

    assert status["project_dir"] == project
    assert "crew-worker" in status["agents"]["names"]
    assert status["concurrency"] == {"current": 2, "max": None}
    assert status["workers"]["registered"] == 1
    assert status["workers"]["live_by_project"] == {project: 1}
    assert status["planning"]["active"] is True
    assert status["planning"]["maxPasses"] == 2
    assert status["planning"]["restore"] == {"stale_cleared": False}
    assert status["request_id"] == "req-1"
    json.dumps(status)

from __future__ import annotations

import asyncio
import json
import signal
import textwrap
from pathlib import Path

import pytest

from crew_mcp.config import CrewSettings, OutputBudget
from crew_mcp.runtime import CrewRuntime
from crew_mcp.storage.models import WriteOutcome
from crew_mcp.workers import runner
from crew_mcp.workers.progress import create_progress
from crew_mcp.workers.runner import (
    AgentResult,
    AgentTask,
    WorkerOrchestrator,
    build_command,
    model_has_thinking_suffix,
    resolve_model,
    resolve_thinking,
    split_tools,
)
from crew_mcp.workers.shutdown import MessengerDirs

SUCCESS_SCRIPT = """\
#!/bin/sh
printf '%s\\n' "$@" > args.txt
echo '{"type":"tool_execution_start","toolName":"bash","args":{"command":"ls"}}'
echo '{"type":"tool_execution_end"}'
echo 'this is not json'
echo '{"type":"message_end","message":{"role":"assistant","content":[{"type":"text","text":"first"}],"usage":{"input":10,"output":5}}}'
echo 'warning on stderr' >&2
printf '%s' '{"type":"message_end","message":{"role":"assistant","content":[{"type":"text","text":"final answer"}]}}'
"""

FAILING_SCRIPT = """\
#!/bin/sh
echo '{"type":"message_end","message":{"role":"assistant","content":[{"type":"text","text":"partial"}]}}'
echo 'something broke' >&2
exit 3
"""

SLEEPING_SCRIPT = """\
#!/bin/sh
if [ -n "$CREW_TEST_REGISTRY" ]; then
  echo "{\\"name\\": \\"ShutdownWorker\\", \\"pid\\": $$}" > "$CREW_TEST_REGISTRY/ShutdownWorker.json"
fi
echo '{"type":"tool_execution_start","toolName":"bash","args":{"command":"sleep"}}'
exec sleep 30
"""


ODD_EVENT_SCRIPT = """\
#!/bin/sh
echo '{"type":"message_end","message":{"usage":{"input":"n/a"},"content":7}}'
echo '{"type":"tool_execution_start","toolName":["bash"]}'
echo '{"type":"tool_execution_end"}'
echo '{"type":"message_end","message":{"role":"assistant","content":[{"type":"text","text":"done"}],"usage":{"input":3,"output":4}}}'
exit 0
"""


def write_script(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)
    return path


def write_agent(agents_dir: Path, name: str, front_matter: str, body: str = "") -> None:
    agents_dir.mkdir(parents=True, exist_ok=True)
    (agents_dir / f"{name}.md").write_text(
        f"---\nname: {name}\ndescription: test agent\n{front_matter}\n---\n{body}\n",
        encoding="utf-8",
    )


def make_orchestrator(tmp_path: Path, script: str, runtime: CrewRuntime | None = None) -> WorkerOrchestrator:
    worker = write_script(tmp_path / "fake-pi", script)
    agents_dir = tmp_path / "agents"
    write_agent(
        agents_dir,
        "crew-worker",
        "model: base-model\nthinking: high\ntools: read, bash, ./ext/tool.ts, teleport\ncrewRole: worker",
        "You are a careful worker.",
    )
    settings = CrewSettings(
        worker_command=str(worker),
        agent_paths=(agents_dir,),
        extension_path=tmp_path / "extension",
        user_config_path=tmp_path / "no-user-config.json",
        project_dir=tmp_path,
    )
    return WorkerOrchestrator(settings, runtime or CrewRuntime())


def write_project_config(project: Path, document: dict) -> None:
    crew_dir = project / ".pi" / "messenger" / "crew"
    crew_dir.mkdir(parents=True, exist_ok=True)
    (crew_dir / "config.json").write_text(json.dumps(document), encoding="utf-8")


def test_resolution_helpers() -> None:
    assert resolve_model("task", None, "config", "agent") == "task"
    assert resolve_model(None, None, "config", "agent") == "config"
    assert resolve_model() is None
    assert resolve_thinking("off", "high") is None
    assert resolve_thinking(None, "high") == "high"
    assert model_has_thinking_suffix("claude-sonnet:high")
    assert not model_has_thinking_suffix("openai/gpt:latest")
    assert not model_has_thinking_suffix(None)
    assert split_tools(["read", "./x.ts", "pkg/tool", "lib.js", "unknown"]) == (
        ["read"],
        ["./x.ts", "pkg/tool", "lib.js"],
    )


def test_build_command_layout(tmp_path: Path) -> None:
    command = build_command(
        "pi",
        "do the thing",
        model="m:low",
        thinking="high",
        tools=["read", "ext/a.ts"],
        extension_path=tmp_path,
        system_prompt_path=tmp_path / "prompt.md",
    )

    assert command == [
        "pi",
        "--mode",
        "json",
        "--no-session",
        "-p",
        "--model",
        "m:low",
        "--tools",
        "read",
        "--extension",
        "ext/a.ts",
        "--extension",
        str(tmp_path),
        "--append-system-prompt",
        str(tmp_path / "prompt.md"),
        "do the thing",
    ]


def test_successful_worker_run(tmp_path: Path) -> None:
    runtime = CrewRuntime()
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT, runtime)
    notifications: list[int] = []
    runtime.live.subscribe(lambda: notifications.append(len(runtime.live.workers())))

    results = asyncio.run(
        orchestrator.spawn_agents(
            [AgentTask(agent="crew-worker", task="Implement task-1", task_id="task-1")],
            tmp_path,
        )
    )

    assert len(results) == 1
    result = results[0]
    assert result.exit_code == 0
    assert result.ok
    assert result.output == "final answer"
    assert result.error is None
    assert result.progress.status == "completed"
    assert result.progress.tool_call_count == 1
    assert result.progress.tokens == 15
    assert not result.was_gracefully_shutdown

    args = (tmp_path / "args.txt").read_text(encoding="utf-8").splitlines()
    assert args[:4] == ["--mode", "json", "--no-session", "-p"]
    assert args[args.index("--model") + 1] == "base-model"
    assert args[args.index("--thinking") + 1] == "high"
    assert args[args.index("--tools") + 1] == "read,bash"
    assert "./ext/tool.ts" in args
    assert str(tmp_path / "extension") in args
    prompt_path = Path(args[args.index("--append-system-prompt") + 1])
    assert not prompt_path.exists()
    assert args[-1] == "Implement task-1"

    assert result.artifact_paths is not None
    jsonl_lines = result.artifact_paths.jsonl_path.read_text(encoding="utf-8").splitlines()
    assert len(jsonl_lines) == 4
    assert result.artifact_paths.output_path.read_text(encoding="utf-8") == "final answer"
    metadata = json.loads(result.artifact_paths.metadata_path.read_text(encoding="utf-8"))
    assert metadata["exitCode"] == 0
    assert metadata["tokens"] == 15

    assert notifications and max(notifications) == 1
    assert runtime.live.workers() == {}
    assert len(runtime.registry) == 0


def test_model_override_suppresses_thinking(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT)

    asyncio.run(
        orchestrator.spawn_agents(
            [AgentTask(agent="crew-worker", task="go", model_override="fast-model:low")],
            tmp_path,
        )
    )

    args = (tmp_path / "args.txt").read_text(encoding="utf-8").splitlines()
    assert args[args.index("--model") + 1] == "fast-model:low"
    assert "--thinking" not in args


def test_failed_worker_reports_stderr(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, FAILING_SCRIPT)

    [result] = asyncio.run(orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x")], tmp_path))

    assert result.exit_code == 3
    assert not result.ok
    assert result.progress.status == "failed"
    assert result.error is not None and "something broke" in result.error
    assert result.output == "partial"


def test_odd_typed_events_do_not_fail_the_worker(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, ODD_EVENT_SCRIPT)

    [result] = asyncio.run(
        orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x", task_id="task-2")], tmp_path)
    )

    assert result.exit_code == 0
    assert result.ok
    assert result.output == "done"
    assert result.progress.tokens == 7
    assert result.progress.tool_call_count == 1
    assert result.progress.recent_tools == []


def test_event_that_breaks_progress_is_dropped(monkeypatch, tmp_path: Path) -> None:
    real_update = runner.update_progress

    def fussy_update(progress, event, start_ms, **kwargs):
        if event.get("type") == "tool_execution_start":
            raise TypeError("unexpected event shape")
        real_update(progress, event, start_ms, **kwargs)

    monkeypatch.setattr("crew_mcp.workers.runner.update_progress", fussy_update)
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT)

    [result] = asyncio.run(
        orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x", task_id="task-3")], tmp_path)
    )

    assert result.exit_code == 0
    assert result.output == "final answer"
    assert result.progress.tokens == 15
    assert result.artifact_paths is not None
    assert len(result.artifact_paths.jsonl_path.read_text(encoding="utf-8").splitlines()) == 3


def test_failed_event_append_disables_artifacts(monkeypatch, tmp_path: Path) -> None:
    appended: list[str] = []

    def failing_append(path: Path, line: str) -> WriteOutcome:
        appended.append(line)
        return WriteOutcome(path=path, ok=False, error="disk full")

    monkeypatch.setattr("crew_mcp.workers.runner.append_jsonl", failing_append)
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT)

    [result] = asyncio.run(orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x")], tmp_path))

    assert result.ok
    assert result.output == "final answer"
    assert result.artifact_paths is None
    assert len(appended) == 1
    assert list(tmp_path.rglob("*_output.md")) == []
    assert list(tmp_path.rglob("*_meta.json")) == []


def test_output_is_truncated_to_task_budget(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT)
    write_project_config(tmp_path, {"artifacts": {"enabled": False}})

    [result] = asyncio.run(
        orchestrator.spawn_agents(
            [AgentTask(agent="crew-worker", task="x", max_output=OutputBudget(bytes=5))],
            tmp_path,
        )
    )

    assert result.truncated
    assert result.output == "final"
    assert result.artifact_paths is None


def test_missing_executable_yields_failed_result(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, SUCCESS_SCRIPT)
    orchestrator._settings.worker_command = str(tmp_path / "does-not-exist")

    [result] = asyncio.run(orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x")], tmp_path))

    assert result.exit_code == 1
    assert result.progress.status == "failed"
    assert result.error


class ScriptedOrchestrator(WorkerOrchestrator):
    """Replaces subprocesses with timed sleeps to observe scheduling."""

    def __init__(self, settings: CrewSettings, runtime: CrewRuntime, durations: dict[str, float]) -> None:
        super().__init__(settings, runtime)
        self.durations = durations
        self.active = 0
        self.peak = 0
        self.started: list[str] = []

    async def run_agent(self, task, index, cwd, agents, config, run_id, artifacts_dir, **kwargs):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(task.task)
        try:
            await asyncio.sleep(self.durations[task.task])
        finally:
            self.active -= 1
        return AgentResult(
            agent=task.agent,
            exit_code=0,
            output=task.task,
            truncated=False,
            progress=create_progress(task.agent),
            task_id=task.task_id,
        )


def scripted(tmp_path: Path, durations: dict[str, float], limit: int) -> ScriptedOrchestrator:
    settings = CrewSettings(
        agent_paths=(tmp_path / "agents",),
        user_config_path=tmp_path / "no-user-config.json",
        project_dir=tmp_path,
    )
    runtime = CrewRuntime()
    runtime.concurrency.set(limit)
    return ScriptedOrchestrator(settings, runtime, durations)


def test_three_tasks_with_limit_two(tmp_path: Path) -> None:
    orchestrator = scripted(tmp_path, {"a": 0.15, "b": 0.02, "c": 0.02}, limit=2)
    seen: list[int] = []

    results = asyncio.run(
        orchestrator.spawn_agents(
            [AgentTask(agent="w", task=name) for name in ("a", "b", "c")],
            tmp_path,
            on_progress=lambda partial: seen.append(len(partial)),
        )
    )

    assert orchestrator.peak == 2
    assert orchestrator.started == ["a", "b", "c"]
    assert [result.output for result in results] == ["b", "c", "a"]
    assert seen == [1, 2, 3]


def test_concurrency_never_exceeded(tmp_path: Path) -> None:
    durations = {f"t{i}": 0.01 * (i % 3 + 1) for i in range(9)}
    orchestrator = scripted(tmp_path, durations, limit=3)

    results = asyncio.run(
        orchestrator.spawn_agents([AgentTask(agent="w", task=name) for name in durations], tmp_path)
    )

    assert len(results) == 9
    assert orchestrator.peak == 3


def test_raising_limit_mid_run_admits_queued_tasks(tmp_path: Path) -> None:
    orchestrator = scripted(tmp_path, {name: 0.2 for name in "abcd"}, limit=1)

    async def scenario() -> list[AgentResult]:
        batch = asyncio.ensure_future(
            orchestrator.spawn_agents([AgentTask(agent="w", task=name) for name in "abcd"], tmp_path)
        )
        await asyncio.sleep(0.05)
        assert orchestrator.active == 1
        orchestrator.runtime.concurrency.set(4)
        await asyncio.sleep(0.05)
        assert orchestrator.active == 4
        return await batch

    results = asyncio.run(scenario())

    assert len(results) == 4
    assert orchestrator.peak == 4


def test_cancellation_stops_admission(tmp_path: Path) -> None:
    orchestrator = scripted(tmp_path, {"a": 0.05, "b": 0.05, "c": 0.05}, limit=1)

    async def scenario() -> list[AgentResult]:
        cancel = asyncio.Event()
        batch = asyncio.ensure_future(
            orchestrator.spawn_agents(
                [AgentTask(agent="w", task=name) for name in "abc"], tmp_path, cancel_event=cancel
            )
        )
        await asyncio.sleep(0.01)
        cancel.set()
        return await batch

    results = asyncio.run(scenario())

    assert [result.output for result in results] == ["a"]
    assert orchestrator.started == ["a"]

    cancelled = asyncio.Event()
    cancelled.set()
    assert asyncio.run(
        orchestrator.spawn_agents([AgentTask(agent="w", task="b")], tmp_path, cancel_event=cancelled)
    ) == []


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_graceful_shutdown_messages_then_terminates(tmp_path: Path) -> None:
    registry_dir = tmp_path / "messenger" / "registry"
    inbox_dir = tmp_path / "messenger" / "inbox"
    registry_dir.mkdir(parents=True)
    (inbox_dir / "ShutdownWorker").mkdir(parents=True)
    write_project_config(
        tmp_path,
        {"work": {"shutdownGracePeriodMs": 100, "env": {"CREW_TEST_REGISTRY": str(registry_dir)}}},
    )
    orchestrator = make_orchestrator(tmp_path, SLEEPING_SCRIPT)
    descriptor = registry_dir / "ShutdownWorker.json"

    async def scenario() -> list[AgentResult]:
        cancel = asyncio.Event()
        batch = asyncio.ensure_future(
            orchestrator.spawn_agents(
                [AgentTask(agent="crew-worker", task="long job", task_id="task-7")],
                tmp_path,
                cancel_event=cancel,
                messenger_dirs=MessengerDirs(registry=registry_dir, inbox=inbox_dir),
            )
        )
        await _wait_for(descriptor.exists)
        await _wait_for(lambda: orchestrator.runtime.live.has_live_workers())
        cancel.set()
        return await asyncio.wait_for(batch, 10)

    [result] = asyncio.run(scenario())

    assert result.was_gracefully_shutdown
    assert result.exit_code == -signal.SIGTERM
    assert result.progress.status == "failed"
    messages = list((inbox_dir / "ShutdownWorker").glob("*-shutdown.json"))
    assert len(messages) == 1
    assert json.loads(messages[0].read_text(encoding="utf-8"))["to"] == "ShutdownWorker"
    assert not descriptor.exists()
    assert len(orchestrator.runtime.registry) == 0


def test_graceful_shutdown_uses_registered_identity(tmp_path: Path) -> None:
    registry_dir = tmp_path / "messenger" / "registry"
    inbox_dir = tmp_path / "messenger" / "inbox"
    registry_dir.mkdir(parents=True)
    (inbox_dir / "Explicit").mkdir(parents=True)
    write_project_config(tmp_path, {"work": {"shutdownGracePeriodMs": 50}})
    orchestrator = make_orchestrator(tmp_path, SLEEPING_SCRIPT)
    runtime = orchestrator.runtime

    async def scenario() -> list[AgentResult]:
        cancel = asyncio.Event()
        batch = asyncio.ensure_future(
            orchestrator.spawn_agents(
                [AgentTask(agent="crew-worker", task="long job", task_id="task-8")],
                tmp_path,
                cancel_event=cancel,
                messenger_dirs=MessengerDirs(registry=registry_dir, inbox=inbox_dir),
            )
        )
        await _wait_for(lambda: runtime.live.has_live_workers())
        assert runtime.registry.record_identity(str(tmp_path), "task-8", "Explicit")
        cancel.set()
        return await asyncio.wait_for(batch, 10)

    [result] = asyncio.run(scenario())

    assert result.was_gracefully_shutdown
    assert len(list((inbox_dir / "Explicit").glob("*-shutdown.json"))) == 1


def test_graceful_shutdown_marks_worker_stopping(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, SLEEPING_SCRIPT)
    registry = orchestrator.runtime.registry
    seen: dict[str, object] = {}

    async def scenario() -> list[AgentResult]:
        cancel = asyncio.Event()
        batch = asyncio.ensure_future(
            orchestrator.spawn_agents(
                [AgentTask(agent="crew-worker", task="long job", task_id="task-9")],
                tmp_path,
                cancel_event=cancel,
            )
        )
        await _wait_for(lambda: registry.has_active_worker(str(tmp_path), "task-9"))
        seen["handle"] = registry.find_worker_by_task(str(tmp_path), "task-9")
        cancel.set()
        return await asyncio.wait_for(batch, 10)

    [result] = asyncio.run(scenario())

    assert result.was_gracefully_shutdown
    assert result.exit_code == -signal.SIGTERM
    handle = seen["handle"]
    assert handle is not None and handle.stop_signaled
    assert not handle.is_alive()


@pytest.mark.parametrize("role,expected", [("worker", "1"), ("reviewer", None)])
def test_worker_role_environment(tmp_path: Path, role: str, expected: str | None) -> None:
    script = textwrap.dedent(
        """\
        #!/bin/sh
        printf '%s' "${PI_CREW_WORKER:-unset}" > flag.txt
        printf '%s' "$EXTRA_FLAG" > extra.txt
        """
    )
    orchestrator = make_orchestrator(tmp_path, script)
    write_agent(tmp_path / "agents", "crew-worker", f"crewRole: {role}")
    write_project_config(tmp_path, {"work": {"env": {"EXTRA_FLAG": "from-config"}}})

    asyncio.run(orchestrator.spawn_agents([AgentTask(agent="crew-worker", task="x")], tmp_path))

    flag = (tmp_path / "flag.txt").read_text(encoding="utf-8")
    assert flag == (expected or "unset")
    assert (tmp_path / "extra.txt").read_text(encoding="utf-8") == "from-config"

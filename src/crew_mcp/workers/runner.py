"""Bounded-concurrency orchestration of worker subprocesses."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import tempfile
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from ..agents import AgentDefinition, AgentLoader
from ..config import CrewConfig, CrewSettings, OutputBudget, load_crew_config, truncation_for_role
from ..storage.artifacts import (
    append_jsonl,
    cleanup_old_artifacts,
    get_artifact_paths,
    sanitize_name,
    write_artifact,
    write_metadata,
)
from ..storage.models import ArtifactPaths
from .live import LiveWorkerInfo
from .progress import AgentProgress, create_progress, get_final_output, parse_jsonl_line, update_progress
from .registry import TaskWorker
from .shutdown import (
    MessengerDirs,
    ShutdownProtocol,
    remove_registry_descriptor,
    resolve_identity,
    write_shutdown_message,
)
from .truncate import truncate_output
from .utils import generate_memorable_name, now_ms, sanitize_environment

if TYPE_CHECKING:
    from ..runtime import CrewRuntime

logger = logging.getLogger(__name__)

BUILTIN_TOOLS = frozenset({"read", "bash", "edit", "write", "grep", "find", "ls"})
THINKING_LEVELS = frozenset({"off", "minimal", "low", "medium", "high", "xhigh"})
CREW_SUBDIR = Path(".pi") / "messenger" / "crew"
_READ_CHUNK = 64 * 1024

ProgressCallback = Callable[[list["AgentResult"]], None]


@dataclass(slots=True, frozen=True)
class AgentTask:
    """A unit of delegated work; immutable once queued."""

    agent: str
    task: str
    task_id: str | None = None
    model_override: str | None = None
    max_output: OutputBudget | None = None


@dataclass(slots=True)
class AgentResult:
    """Outcome of a single worker run."""

    agent: str
    exit_code: int
    output: str
    truncated: bool
    progress: AgentProgress
    task_id: str | None = None
    error: str | None = None
    artifact_paths: ArtifactPaths | None = None
    was_gracefully_shutdown: bool = False
    config: AgentDefinition | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "taskId": self.task_id,
            "exitCode": self.exit_code,
            "output": self.output,
            "truncated": self.truncated,
            "error": self.error,
            "wasGracefullyShutdown": self.was_gracefully_shutdown,
            "artifactPaths": self.artifact_paths.as_dict() if self.artifact_paths else None,
            "progress": self.progress.as_dict(),
        }


def resolve_model(
    task_model: str | None = None,
    param_model: str | None = None,
    config_model: str | None = None,
    agent_model: str | None = None,
) -> str | None:
    for candidate in (task_model, param_model, config_model, agent_model):
        if candidate is not None:
            return candidate
    return None


def resolve_thinking(config_thinking: str | None, agent_thinking: str | None) -> str | None:
    resolved = config_thinking if config_thinking is not None else agent_thinking
    if not resolved or resolved == "off":
        return None
    return resolved


def model_has_thinking_suffix(model: str | None) -> bool:
    """True when ``model`` already pins a thinking level, e.g. ``claude:high``."""

    if not model or ":" not in model:
        return False
    return model.rsplit(":", 1)[1] in THINKING_LEVELS


def split_tools(tools: Iterable[str] | None) -> tuple[list[str], list[str]]:
    """Separate built-in tool names from extension references; unknown names are dropped."""

    builtin: list[str] = []
    extensions: list[str] = []
    for tool in tools or []:
        if "/" in tool or tool.endswith((".ts", ".js")):
            extensions.append(tool)
        elif tool in BUILTIN_TOOLS:
            builtin.append(tool)
    return builtin, extensions


def build_command(
    executable: str,
    prompt: str,
    *,
    model: str | None = None,
    thinking: str | None = None,
    tools: Iterable[str] | None = None,
    extension_path: Path | None = None,
    system_prompt_path: Path | None = None,
) -> list[str]:
    args = [executable, "--mode", "json", "--no-session", "-p"]
    if model:
        args.extend(["--model", model])
    if thinking and not model_has_thinking_suffix(model):
        args.extend(["--thinking", thinking])

    builtin, extensions = split_tools(tools)
    if builtin:
        args.extend(["--tools", ",".join(builtin)])
    for extension in extensions:
        args.extend(["--extension", extension])
    if extension_path is not None:
        args.extend(["--extension", str(extension_path)])
    if system_prompt_path is not None:
        args.extend(["--append-system-prompt", str(system_prompt_path)])
    args.append(prompt)
    return args


def write_system_prompt(content: str, filename: str, *, prefix: str = "crew-agent-") -> tuple[Path, Path]:
    """Write ``content`` to a private temp dir; returns ``(directory, file)``."""

    directory = Path(tempfile.mkdtemp(prefix=prefix))
    path = directory / filename
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    return directory, path


async def read_event_lines(stream: asyncio.StreamReader | None, on_line: Callable[[str], None]) -> None:
    """Feed complete newline-delimited lines from ``stream`` to ``on_line``.

    Chunks are decoded incrementally so multi-byte characters split across
    reads survive; a trailing line without a newline is delivered at EOF.
    """

    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            on_line(line)
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        on_line(buffer)


async def read_all_text(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


def crew_dir_for(cwd: Path) -> Path:
    return Path(cwd) / CREW_SUBDIR


class WorkerOrchestrator:
    """Runs batches of agent tasks as subprocesses under the runtime's concurrency limit."""

    def __init__(
        self,
        settings: CrewSettings,
        runtime: "CrewRuntime",
        agent_loader: AgentLoader | None = None,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._agent_loader = agent_loader or AgentLoader(settings.agent_paths)

    @property
    def runtime(self) -> "CrewRuntime":
        return self._runtime

    @property
    def agent_loader(self) -> AgentLoader:
        return self._agent_loader

    def load_config(self, crew_dir: Path) -> CrewConfig:
        return load_crew_config(crew_dir, user_config_path=self._settings.user_config_path)

    async def spawn_agents(
        self,
        tasks: Sequence[AgentTask],
        cwd: Path,
        *,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
        messenger_dirs: MessengerDirs | None = None,
        crew_dir: Path | None = None,
    ) -> list[AgentResult]:
        """Run ``tasks`` and return their results in completion order.

        The concurrency limit is re-read on every pass, so raising it while a
        batch runs admits queued tasks right away. Once ``cancel_event`` is set
        no further tasks are started; running workers get the graceful
        shutdown sequence.
        """

        cwd = Path(cwd)
        crew_dir = Path(crew_dir) if crew_dir is not None else crew_dir_for(cwd)
        config = self.load_config(crew_dir)
        agents = self._agent_loader.discover(cwd)
        run_id = uuid.uuid4().hex[:8]
        artifacts_dir = crew_dir / "artifacts"
        if config.artifacts.enabled:
            removed = cleanup_old_artifacts(artifacts_dir, config.artifacts.cleanup_days)
            if removed:
                logger.info("Removed old artifacts", extra={"count": removed, "dir": str(artifacts_dir)})

        logger.info(
            "Spawning agent batch",
            extra={"run_id": run_id, "tasks": len(tasks), "concurrency": self._runtime.concurrency.value},
        )

        def _cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        queue = deque(enumerate(tasks))
        running: set[asyncio.Task[AgentResult]] = set()
        results: list[AgentResult] = []
        try:
            while queue or running:
                if _cancelled() and not running:
                    break

                while len(running) < self._runtime.concurrency.value and queue:
                    if _cancelled():
                        break
                    index, task = queue.popleft()
                    running.add(
                        asyncio.ensure_future(
                            self.run_agent(
                                task,
                                index,
                                cwd,
                                agents,
                                config,
                                run_id,
                                artifacts_dir,
                                cancel_event=cancel_event,
                                messenger_dirs=messenger_dirs,
                            )
                        )
                    )

                if not running:
                    continue

                change = asyncio.ensure_future(self._runtime.concurrency.wait_for_change())
                done, _ = await asyncio.wait({*running, change}, return_when=asyncio.FIRST_COMPLETED)
                if not change.done():
                    change.cancel()

                for job in done:
                    if job is change:
                        continue
                    running.discard(job)
                    results.append(job.result())
                    if on_progress is not None:
                        on_progress(list(results))
        finally:
            for job in running:
                job.cancel()
        return results

    async def run_agent(
        self,
        task: AgentTask,
        index: int,
        cwd: Path,
        agents: dict[str, AgentDefinition],
        config: CrewConfig,
        run_id: str,
        artifacts_dir: Path,
        *,
        cancel_event: asyncio.Event | None = None,
        messenger_dirs: MessengerDirs | None = None,
    ) -> AgentResult:
        """Run one task to completion. Never raises for worker failures."""

        agent = agents.get(task.agent)
        progress = create_progress(task.agent)
        started = now_ms()
        worker_name = generate_memorable_name()
        role = agent.role if agent else "worker"
        budget = task.max_output or (agent.max_output if agent else None) or truncation_for_role(config, role)

        artifact_paths: ArtifactPaths | None = None
        if config.artifacts.enabled:
            artifact_paths = get_artifact_paths(artifacts_dir, run_id, task.agent, index)
            if not write_artifact(artifact_paths.input_path, f"# Task for {task.agent}\n\n{task.task}").ok:
                artifact_paths = None

        model = resolve_model(task.model_override, agent_model=agent.model if agent else None)
        thinking = resolve_thinking(config.thinking.for_role(role), agent.thinking if agent else None)

        prompt_dir: Path | None = None
        process: asyncio.subprocess.Process | None = None
        try:
            prompt_path: Path | None = None
            if agent and agent.system_prompt:
                prompt_dir, prompt_path = write_system_prompt(
                    agent.system_prompt, f"{sanitize_name(task.agent)}.md"
                )

            command = build_command(
                self._settings.worker_command,
                task.task,
                model=model,
                thinking=thinking,
                tools=agent.tools if agent else None,
                extension_path=self._settings.extension_path,
                system_prompt_path=prompt_path,
            )
            worker_env = {"PI_CREW_WORKER": "1", "PI_AGENT_NAME": worker_name} if role == "worker" else {}
            env = sanitize_environment({**config.work.env, **worker_env})

            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            return await self._supervise(
                process,
                task=task,
                index=index,
                cwd=cwd,
                agent=agent,
                config=config,
                run_id=run_id,
                progress=progress,
                started=started,
                worker_name=worker_name,
                budget=budget,
                artifact_paths=artifact_paths,
                cancel_event=cancel_event,
                messenger_dirs=messenger_dirs,
            )
        except Exception as exc:
            exit_code = process.returncode if process is not None and process.returncode is not None else 1
            logger.error(
                "Worker run failed",
                extra={"agent": task.agent, "task_id": task.task_id, "error": str(exc)},
            )
            progress.status = "failed"
            progress.duration_ms = now_ms() - started
            progress.error = str(exc)
            return AgentResult(
                agent=task.agent,
                exit_code=exit_code,
                output="",
                truncated=False,
                progress=progress,
                task_id=task.task_id,
                error=str(exc),
                artifact_paths=artifact_paths,
                config=agent,
            )
        finally:
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            if prompt_dir is not None:
                shutil.rmtree(prompt_dir, ignore_errors=True)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        *,
        task: AgentTask,
        index: int,
        cwd: Path,
        agent: AgentDefinition | None,
        config: CrewConfig,
        run_id: str,
        progress: AgentProgress,
        started: int,
        worker_name: str,
        budget: OutputBudget,
        artifact_paths: ArtifactPaths | None,
        cancel_event: asyncio.Event | None,
        messenger_dirs: MessengerDirs | None,
    ) -> AgentResult:
        registry = self._runtime.registry
        board = self._runtime.live
        handle: TaskWorker | None = None
        if task.task_id:
            handle = TaskWorker(process=process, name=worker_name, cwd=str(cwd), task_id=task.task_id)
            registry.register(handle)

        identity: str | None = None

        def _deliver_shutdown() -> bool:
            nonlocal identity
            registered = handle.identity if handle else registry.identity_for_pid(process.pid)
            identity = resolve_identity(
                registered, process.pid, messenger_dirs.registry if messenger_dirs else None
            )
            if identity is None or messenger_dirs is None:
                return False
            outcome = write_shutdown_message(messenger_dirs.inbox, identity)
            return outcome is not None and outcome.ok

        def _mark_stopping(_sig: int) -> None:
            if handle is not None:
                handle.stop_signaled = True

        protocol = ShutdownProtocol(
            process,
            deliver=_deliver_shutdown,
            grace_period_ms=config.work.shutdown_grace_period_ms,
            on_signal=_mark_stopping,
        )

        watcher: asyncio.Task[Any] | None = None
        if cancel_event is not None:
            watcher = asyncio.ensure_future(_shutdown_on_cancel(cancel_event, protocol))

        events: list[dict[str, Any]] = []

        def _on_line(line: str) -> None:
            nonlocal artifact_paths
            event = parse_jsonl_line(line)
            if event is None:
                return
            try:
                update_progress(progress, event, started)
            except Exception as exc:
                logger.debug(
                    "Dropped unprocessable worker event",
                    extra={"task_id": task.task_id, "worker": worker_name, "error": str(exc)},
                )
                return
            events.append(event)
            if artifact_paths is not None and not append_jsonl(artifact_paths.jsonl_path, line).ok:
                artifact_paths = None
            if task.task_id:
                board.update(
                    str(cwd),
                    task.task_id,
                    LiveWorkerInfo(
                        cwd=str(cwd),
                        task_id=task.task_id,
                        agent=task.agent,
                        name=worker_name,
                        progress=progress.snapshot(),
                        started_at=started,
                    ),
                )

        try:
            _, stderr = await asyncio.gather(
                read_event_lines(process.stdout, _on_line),
                read_all_text(process.stderr),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            if watcher is not None:
                watcher.cancel()
            raise
        finally:
            if task.task_id:
                board.remove(str(cwd), task.task_id)
                registry.unregister(cwd, task.task_id)
            if watcher is not None:
                if not protocol.requested:
                    watcher.cancel()
                await asyncio.wait({watcher})
                if not watcher.cancelled() and watcher.exception() is not None:
                    logger.warning(
                        "Graceful shutdown failed",
                        extra={"task_id": task.task_id, "error": str(watcher.exception())},
                    )

        exit_code = returncode if returncode is not None else 1
        progress.status = "completed" if exit_code == 0 else "failed"
        progress.duration_ms = now_ms() - started
        if stderr and exit_code != 0:
            progress.error = stderr

        full_output = get_final_output(events)
        truncation = truncate_output(
            full_output, budget, artifact_paths.output_path if artifact_paths else None
        )
        if artifact_paths is not None:
            write_artifact(artifact_paths.output_path, full_output)
            write_metadata(
                artifact_paths.metadata_path,
                {
                    "runId": run_id,
                    "agent": task.agent,
                    "index": index,
                    "exitCode": exit_code,
                    "durationMs": progress.duration_ms,
                    "tokens": progress.tokens,
                    "truncated": truncation.truncated,
                    "error": progress.error,
                },
            )

        if protocol.requested and identity and messenger_dirs is not None:
            remove_registry_descriptor(messenger_dirs.registry, identity)

        logger.info(
            "Worker finished",
            extra={"agent": task.agent, "task_id": task.task_id, "exit_code": exit_code, "worker": worker_name},
        )
        return AgentResult(
            agent=task.agent,
            exit_code=exit_code,
            output=truncation.text,
            truncated=truncation.truncated,
            progress=progress,
            task_id=task.task_id,
            error=progress.error,
            artifact_paths=artifact_paths,
            was_gracefully_shutdown=protocol.requested,
            config=agent,
        )


async def _shutdown_on_cancel(cancel_event: asyncio.Event, protocol: ShutdownProtocol) -> None:
    await cancel_event.wait()
    state = await protocol.run()
    logger.info("Worker shutdown finished", extra={"state": state.value})


def shutdown_all_workers(runtime: "CrewRuntime") -> int:
    """SIGTERM every registered worker across all projects."""

    return runtime.registry.kill_all()


__all__ = [
    "AgentResult",
    "AgentTask",
    "BUILTIN_TOOLS",
    "THINKING_LEVELS",
    "WorkerOrchestrator",
    "build_command",
    "crew_dir_for",
    "model_has_thinking_suffix",
    "read_all_text",
    "read_event_lines",
    "resolve_model",
    "resolve_thinking",
    "shutdown_all_workers",
    "split_tools",
    "write_system_prompt",
]

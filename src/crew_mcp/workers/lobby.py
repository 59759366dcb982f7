"""Lobby workers: pre-spawned crew workers that idle until a task is assigned."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shutil
import signal
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from ..agents import AgentLoader
from ..config import CoordinationLevel, CrewConfig, CrewSettings, load_crew_config
from ..storage.feed import log_feed_event
from ..storage.writes import write_text
from .live import LiveWorkerInfo
from .progress import AgentProgress, create_progress, parse_jsonl_line, update_progress
from .registry import LobbyWorker
from .runner import (
    build_command,
    crew_dir_for,
    read_all_text,
    read_event_lines,
    resolve_model,
    resolve_thinking,
    write_system_prompt,
)
from .shutdown import ORCHESTRATOR_NAME
from .utils import generate_memorable_name, now_ms, sanitize_environment

if TYPE_CHECKING:
    from ..runtime import CrewRuntime

logger = logging.getLogger(__name__)

LOBBY_AGENT = "crew-worker"
LOBBY_TOKEN_BUDGETS: dict[str, int] = {
    "none": 10_000,
    "minimal": 20_000,
    "moderate": 50_000,
    "chatty": 100_000,
}
_NAME_ATTEMPTS = 5


def lobby_task_id(lobby_id: str) -> str:
    return f"__lobby-{lobby_id}__"


def build_lobby_prompt(level: CoordinationLevel, prd_path: str | None = None) -> str:
    """Instructions for a worker waiting in the lobby, scaled to the coordination level."""

    sections = [
        "# Crew Lobby\n\n"
        "You're a crew worker waiting for the team's plan to be finalized. "
        "There's no task for you yet, so hang tight.\n\n"
        "## Step 1: Join the Mesh\n\n"
        '```typescript\npi_messenger({ action: "join" })\n```\n\n'
        "## Step 2: Get Familiar\n\n"
    ]

    if level == "none":
        sections.append("Skip this step. You'll get full context when your task arrives.\n\n")
    elif prd_path:
        sections.append(
            f'Read the PRD to understand what the team is building:\n\n```typescript\nread("{prd_path}")\n```\n\n'
        )

    if level in ("chatty", "moderate"):
        sections.append(
            "Briefly explore the project structure to get oriented. "
            "Don't go deep; save your budget for the actual task.\n\n"
        )

    if level == "chatty":
        sections.append(
            "## Step 3: Share Your Findings\n\n"
            "Post updates to the team feed while you wait. Introduce yourself, share "
            "observations about the PRD and reply briefly to direct messages.\n\n"
            "**Hard limit: send at most 5 messages total (broadcasts + DMs combined).** "
            "After that, stop messaging and wait quietly.\n\n"
            '```typescript\npi_messenger({ action: "broadcast", message: "Hey team! Just joined. Reading the PRD now..." })\n```\n\n'
            "After sending your messages, wait for a **TASK ASSIGNMENT** message.\n"
        )
    elif level == "moderate":
        sections.append(
            "## Step 3: Brief Check-in\n\n"
            "Announce yourself, then wait:\n\n"
            '```typescript\npi_messenger({ action: "broadcast", message: "Joined the lobby. Reading the PRD..." })\n```\n\n'
            "**Hard limit: send at most 2 messages total.** You may reply once if someone DMs you.\n\n"
            "Wait for a **TASK ASSIGNMENT** message to begin work.\n"
        )
    elif level == "minimal":
        sections.append(
            "## Step 3: Wait for Assignment\n\n"
            "Announce your presence with one broadcast, then wait:\n\n"
            '```typescript\npi_messenger({ action: "broadcast", message: "Standing by for task assignment." })\n```\n\n'
            "**Do NOT send any other messages.** Wait for a **TASK ASSIGNMENT** message to begin work.\n"
        )
    else:
        sections.append(
            "## Step 3: Wait\n\n"
            "**Do NOT send any messages, do NOT explore the codebase.** "
            "Wait for a **TASK ASSIGNMENT** message.\n"
        )

    sections.append(
        "\n## When You Receive a Task Assignment\n\n"
        "1. Read the task details carefully\n"
        "2. Reserve files you'll modify\n"
        "3. Implement the feature as the task describes\n"
        "4. Run tests to verify\n"
        "5. Commit your changes\n"
        "6. Release reservations and mark complete\n\n"
        "The task is already claimed and started for you; do NOT call `task.start`. "
        "Switch to full work mode immediately.\n"
    )
    return "".join(sections)


def build_assignment_text(task_prompt: str) -> str:
    return (
        "# TASK ASSIGNMENT: SWITCH TO WORK MODE\n\n"
        "Drop your current activity and start working on this task immediately.\n\n"
        "**IMPORTANT:** This task is already claimed and started for you. Do NOT call "
        "`task.start`. Jump straight to reading the task details, reserving files, implementing, "
        "testing, committing, and marking complete with `task.done`.\n\n"
        f"{task_prompt}"
    )


def _unlink(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove lobby file", extra={"path": str(path), "error": str(exc)})


class LobbyPool:
    """Spawns, assigns and tears down lobby workers for a project."""

    def __init__(
        self,
        settings: CrewSettings,
        runtime: "CrewRuntime",
        agent_loader: AgentLoader | None = None,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._agent_loader = agent_loader or AgentLoader(settings.agent_paths)
        self._monitors: dict[LobbyWorker, asyncio.Task[int]] = {}

    def _load_config(self, cwd: Path, coordination: CoordinationLevel | None = None) -> CrewConfig:
        return load_crew_config(
            crew_dir_for(cwd),
            user_config_path=self._settings.user_config_path,
            coordination_override=coordination,
        )

    def _unique_name(self, cwd: Path) -> str:
        name = generate_memorable_name()
        for _ in range(_NAME_ATTEMPTS):
            taken = {
                worker.name for worker in self._runtime.registry.lobby_workers(cwd) if not worker.exited
            }
            if name not in taken:
                break
            name = generate_memorable_name()
        return name

    async def spawn(
        self,
        cwd: Path,
        prompt_override: str | None = None,
        *,
        prd_path: str | None = None,
        coordination: CoordinationLevel | None = None,
    ) -> LobbyWorker | None:
        """Start a lobby worker; returns None when no ``crew-worker`` agent is defined."""

        cwd = Path(cwd)
        agent = self._agent_loader.discover(cwd).get(LOBBY_AGENT)
        if agent is None:
            logger.warning("No crew-worker agent available for the lobby", extra={"cwd": str(cwd)})
            return None

        crew_dir = crew_dir_for(cwd)
        config = self._load_config(cwd, coordination)
        lobby_id = uuid.uuid4().hex[:6]
        name = self._unique_name(cwd)
        prompt = prompt_override or build_lobby_prompt(config.coordination, prd_path)

        prompt_dir: Path | None = None
        prompt_path: Path | None = None
        if agent.system_prompt:
            prompt_dir, prompt_path = write_system_prompt(
                agent.system_prompt, f"{LOBBY_AGENT}.md", prefix="crew-lobby-"
            )

        command = build_command(
            self._settings.worker_command,
            prompt,
            model=resolve_model(config_model=config.models.worker, agent_model=agent.model),
            thinking=resolve_thinking(config.thinking.worker, agent.thinking),
            tools=agent.tools,
            extension_path=self._settings.extension_path,
            system_prompt_path=prompt_path,
        )
        env = sanitize_environment(
            {**config.work.env, "PI_AGENT_NAME": name, "PI_CREW_WORKER": "1", "PI_LOBBY_ID": lobby_id}
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError:
            if prompt_dir is not None:
                shutil.rmtree(prompt_dir, ignore_errors=True)
            raise

        alive_file = crew_dir / f"lobby-{lobby_id}.alive"
        write_text(alive_file, "", mode=0o600)

        worker = LobbyWorker(
            process=process,
            name=name,
            cwd=str(cwd),
            task_id=lobby_task_id(lobby_id),
            lobby_id=lobby_id,
            coordination=config.coordination,
            started_at=now_ms(),
            prompt_tmp_dir=prompt_dir,
            alive_file=alive_file,
        )
        self._runtime.registry.register(worker)

        progress = create_progress(LOBBY_AGENT)
        self._publish(worker, progress)
        self._monitors[worker] = asyncio.ensure_future(self._monitor(worker, process, progress))
        logger.info("Lobby worker spawned", extra={"cwd": str(cwd), "worker": name, "lobby_id": lobby_id})
        return worker

    def _publish(self, worker: LobbyWorker, progress: AgentProgress) -> None:
        display_id = worker.assigned_task_id or worker.task_id
        self._runtime.live.update(
            worker.cwd,
            display_id,
            LiveWorkerInfo(
                cwd=worker.cwd,
                task_id=display_id,
                agent=LOBBY_AGENT,
                name=worker.name,
                progress=progress.snapshot(),
                started_at=worker.started_at,
            ),
        )

    async def _monitor(
        self,
        worker: LobbyWorker,
        process: asyncio.subprocess.Process,
        progress: AgentProgress,
    ) -> int:
        cwd = Path(worker.cwd)

        def _on_line(line: str) -> None:
            event = parse_jsonl_line(line)
            if event is None:
                return
            try:
                update_progress(progress, event, worker.started_at)
            except Exception as exc:
                logger.debug(
                    "Dropped unprocessable lobby event",
                    extra={"worker": worker.name, "error": str(exc)},
                )
                return
            self._publish(worker, progress)
            if worker.assigned_task_id or worker.stop_signaled:
                return
            budget = LOBBY_TOKEN_BUDGETS.get(worker.coordination, LOBBY_TOKEN_BUDGETS["chatty"])
            if progress.tokens > budget and worker.send_signal(signal.SIGTERM):
                logger.info(
                    "Lobby worker exceeded its token budget",
                    extra={"worker": worker.name, "tokens": progress.tokens, "budget": budget},
                )

        try:
            await asyncio.gather(read_event_lines(process.stdout, _on_line), read_all_text(process.stderr))
            returncode = await process.wait()
        finally:
            self._runtime.live.remove(worker.cwd, worker.assigned_task_id or worker.task_id)
            self._runtime.registry.unregister(worker.cwd, worker.task_id)
            self._cleanup_files(worker)
            self._monitors.pop(worker, None)

        if worker.assigned_task_id:
            logger.info(
                "Assigned lobby worker exited",
                extra={"worker": worker.name, "task_id": worker.assigned_task_id, "exit_code": returncode},
            )
        else:
            log_feed_event(cwd, worker.name, "leave", None, f"Lobby worker exited (code {returncode})")
        return returncode

    @staticmethod
    def _cleanup_files(worker: LobbyWorker) -> None:
        if worker.prompt_tmp_dir is not None:
            shutil.rmtree(worker.prompt_tmp_dir, ignore_errors=True)
        _unlink(worker.alive_file)

    async def wait_closed(self, worker: LobbyWorker) -> int | None:
        """Wait for the worker's monitor to finish; returns its exit code."""

        monitor = self._monitors.get(worker)
        if monitor is None:
            return worker.process.returncode
        return await monitor

    def count(self, cwd: Path) -> int:
        return self._runtime.registry.lobby_worker_count(cwd)

    def available(self, cwd: Path) -> list[LobbyWorker]:
        return self._runtime.registry.available_lobby_workers(cwd)

    def assign(self, worker: LobbyWorker, task_id: str, task_prompt: str, inbox_dir: Path) -> bool:
        """Hand ``task_id`` to an idle lobby worker through its inbox."""

        if worker.assigned_task_id or worker.exited:
            return False

        target = Path(inbox_dir) / worker.name
        message = {
            "id": str(uuid.uuid4()),
            "from": ORCHESTRATOR_NAME,
            "to": worker.name,
            "text": build_assignment_text(task_prompt),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "replyTo": None,
        }
        _unlink(worker.alive_file)
        outcome = write_text(target / f"{now_ms()}-{secrets.token_hex(3)}.json", json.dumps(message, indent=2))
        if not outcome.ok:
            if worker.alive_file is not None:
                write_text(worker.alive_file, "", mode=0o600)
            return False

        self._runtime.live.remove(worker.cwd, worker.task_id)
        worker.assigned_task_id = task_id
        logger.info("Assigned task to lobby worker", extra={"worker": worker.name, "task_id": task_id})
        return True

    def kill_for_task(self, cwd: Path, task_id: str) -> bool:
        for worker in self._runtime.registry.lobby_workers(cwd):
            if worker.assigned_task_id != task_id:
                continue
            worker.send_signal(signal.SIGTERM)
            _unlink(worker.alive_file)
            return True
        return False

    def _discard(self, worker: LobbyWorker) -> None:
        worker.send_signal(signal.SIGTERM)
        self._runtime.live.remove(worker.cwd, worker.assigned_task_id or worker.task_id)
        self._runtime.registry.unregister(worker.cwd, worker.task_id)
        self._cleanup_files(worker)

    def remove_idle(self, cwd: Path) -> bool:
        """Stop the first unassigned lobby worker, if any."""

        available = self.available(cwd)
        if not available:
            return False
        self._discard(available[0])
        return True

    def shutdown(self, cwd: Path) -> None:
        for worker in self._runtime.registry.lobby_workers(cwd):
            self._discard(worker)
        crew_dir = crew_dir_for(Path(cwd))
        if crew_dir.is_dir():
            for marker in crew_dir.glob("lobby-*.alive"):
                _unlink(marker)


__all__ = [
    "LOBBY_TOKEN_BUDGETS",
    "LobbyPool",
    "build_assignment_text",
    "build_lobby_prompt",
    "lobby_task_id",
]

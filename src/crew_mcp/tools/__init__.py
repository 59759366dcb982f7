"""Tool registration for Crew MCP."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from ..agents import AgentLoader
from ..config import COORDINATION_LEVELS, CrewSettings, OutputBudget
from ..planning import PlanningPhase
from ..runtime import CrewRuntime
from ..storage.feed import log_feed_event, read_feed_events
from ..workers import AgentTask, LobbyPool, MessengerDirs, WorkerOrchestrator
from ..workers.runner import crew_dir_for, resolve_model
from ..workers.shutdown import ORCHESTRATOR_NAME

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    spawn_agents: Any
    list_agents: Any
    live_workers: Any
    adjust_concurrency: Any
    kill_worker: Any
    register_worker_identity: Any
    planning_start: Any
    planning_phase: Any
    planning_finish: Any
    planning_cancel: Any
    planning_status: Any
    planning_overlay: Any
    planning_dismiss: Any
    read_feed: Any
    lobby_spawn: Any
    lobby_assign: Any
    lobby_shutdown: Any
    batch_events: dict[str, asyncio.Event] = field(default_factory=dict)


def _parse_task(raw: dict[str, Any]) -> AgentTask:
    agent = str(raw.get("agent") or "").strip()
    text = str(raw.get("task") or "").strip()
    if not agent or not text:
        raise ValueError("Each task needs an 'agent' and a 'task'")
    max_output = raw.get("max_output") or raw.get("maxOutput")
    return AgentTask(
        agent=agent,
        task=text,
        task_id=raw.get("task_id") or raw.get("taskId"),
        model_override=raw.get("model") or raw.get("model_override"),
        max_output=OutputBudget.model_validate(max_output) if max_output else None,
    )


def register_tools(
    server: FastMCP,
    *,
    runtime: CrewRuntime,
    settings: CrewSettings,
    agents: AgentLoader,
    orchestrator: WorkerOrchestrator | None = None,
    lobby: LobbyPool | None = None,
) -> ToolHandles:
    """Register Crew's MCP tools on the server."""

    orchestrator = orchestrator or WorkerOrchestrator(settings, runtime, agents)
    lobby = lobby or LobbyPool(settings, runtime, agents)
    messenger_dirs = MessengerDirs(
        registry=settings.messenger_dir / "registry",
        inbox=settings.messenger_dir / "inbox",
    )
    batch_events: dict[str, asyncio.Event] = {}

    def _resolve_cwd(cwd: str | None) -> Path:
        if cwd:
            return Path(cwd).expanduser().resolve()
        return settings.project_dir

    async def _spawn_agents(
        tasks: list[dict[str, Any]],
        cwd: str | None = None,
        model: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run agent tasks in parallel under the current concurrency limit."""

        if not tasks:
            raise ValueError("At least one task is required")
        project = _resolve_cwd(cwd)
        config = orchestrator.load_config(crew_dir_for(project))
        known = agents.discover(project)
        parsed = []
        for raw in tasks:
            task = _parse_task(raw)
            role = known[task.agent].role if task.agent in known else "worker"
            override = resolve_model(task.model_override, model, config.models.for_role(role))
            parsed.append(replace(task, model_override=override))
        cancel_event = asyncio.Event()
        batch_events[str(project)] = cancel_event

        _emit_log(
            context,
            "info",
            "Spawning agents",
            extra={"cwd": str(project), "tasks": len(parsed), "concurrency": runtime.concurrency.value},
        )
        try:
            results = await orchestrator.spawn_agents(
                parsed,
                project,
                cancel_event=cancel_event,
                messenger_dirs=messenger_dirs,
            )
        finally:
            if batch_events.get(str(project)) is cancel_event:
                del batch_events[str(project)]

        failed = sum(1 for result in results if not result.ok)
        _emit_log(
            context,
            "info" if not failed else "warning",
            "Agent batch finished",
            extra={"cwd": str(project), "completed": len(results) - failed, "failed": failed},
        )
        return {
            "results": [result.as_dict() for result in results],
            "cancelled": cancel_event.is_set(),
        }

    def _list_agents(cwd: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        """List agent definitions visible from the project."""

        catalog = [
            {
                "name": agent.name,
                "description": agent.description,
                "role": agent.role,
                "model": agent.model,
                "thinking": agent.thinking,
                "tools": agent.tools or [],
                "source": agent.source,
            }
            for agent in agents.discover(_resolve_cwd(cwd)).values()
        ]
        _emit_log(context, "debug", "Listing crew agents", extra={"count": len(catalog)})
        return catalog

    def _live_workers(cwd: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Show progress for every worker currently executing."""

        scope = str(_resolve_cwd(cwd)) if cwd else None
        workers = [info.as_dict() for info in runtime.live.workers(scope).values()]
        return {"count": len(workers), "workers": workers, "concurrency": runtime.concurrency.value}

    def _adjust_concurrency(
        delta: int | None = None,
        value: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Change the number of workers allowed to run at once."""

        if (delta is None) == (value is None):
            raise ValueError("Provide exactly one of 'delta' or 'value'")
        previous = runtime.concurrency.value
        current = (
            runtime.concurrency.adjust(delta) if delta is not None else runtime.concurrency.set(value)
        )
        _emit_log(
            context,
            "info",
            "Concurrency adjusted",
            extra={"previous": previous, "current": current},
        )
        return {"previous": previous, "concurrency": current, "max": runtime.concurrency.config_max}

    def _kill_worker(task_id: str, cwd: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Terminate the worker running a task."""

        project = _resolve_cwd(cwd)
        killed = runtime.registry.kill_worker_by_task(str(project), task_id)
        if not killed:
            killed = lobby.kill_for_task(project, task_id)
        _emit_log(context, "info", "Kill requested", extra={"task_id": task_id, "killed": killed})
        return {"task_id": task_id, "killed": killed}

    def _register_worker_identity(
        identity: str,
        task_id: str | None = None,
        pid: int | None = None,
        cwd: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record the coordination name a worker joined the mesh with."""

        if task_id:
            recorded = runtime.registry.record_identity(str(_resolve_cwd(cwd)), task_id, identity)
        elif pid:
            recorded = runtime.registry.record_identity_for_pid(pid, identity)
        else:
            raise ValueError("Provide 'task_id' or 'pid' to identify the worker")
        _emit_log(
            context,
            "debug",
            "Worker identity registered",
            extra={"identity": identity, "task_id": task_id, "pid": pid, "recorded": recorded},
        )
        return {"identity": identity, "recorded": recorded}

    def _planning_summary(project: Path) -> dict[str, Any]:
        state = runtime.planning.state(project)
        return {
            **state.to_document(),
            "cancelled": runtime.planning.is_cancelled(project),
            "stalled": runtime.planning.is_stalled(project),
            "ageMs": runtime.planning.update_age_ms(project),
        }

    def _planning_start(
        cwd: str | None = None,
        max_passes: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Begin a planning run for the project."""

        project = _resolve_cwd(cwd)
        if max_passes is None:
            max_passes = orchestrator.load_config(crew_dir_for(project)).planning.max_passes
        state = runtime.planning.start(project, max_passes)
        log_feed_event(project, ORCHESTRATOR_NAME, "plan.start", None, f"max passes {state.max_passes}")
        _emit_log(context, "info", "Planning started", extra={"cwd": str(project), "run_id": state.run_id})
        return _planning_summary(project)

    def _planning_phase(
        phase: str,
        pass_number: int | None = None,
        cwd: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record the phase (and optionally the pass) a planning run reached."""

        project = _resolve_cwd(cwd)
        previous_pass = runtime.planning.state(project).pass_number
        applied = runtime.planning.set_phase(project, PlanningPhase(phase), pass_number)
        if applied and pass_number is not None and pass_number != previous_pass:
            log_feed_event(project, ORCHESTRATOR_NAME, "plan.pass.start", None, f"pass {pass_number}")
        _emit_log(context, "debug", "Planning phase", extra={"phase": phase, "applied": applied})
        return {"applied": applied, **_planning_summary(project)}

    def _planning_finish(
        status: str,
        pass_number: int | None = None,
        cwd: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Close a planning run as completed or failed."""

        project = _resolve_cwd(cwd)
        applied = runtime.planning.finish(project, PlanningPhase(status), pass_number)
        if applied:
            event_type = "plan.done" if status == PlanningPhase.COMPLETED.value else "plan.failed"
            log_feed_event(project, ORCHESTRATOR_NAME, event_type)
        _emit_log(context, "info", "Planning finished", extra={"status": status, "applied": applied})
        return {"applied": applied, **_planning_summary(project)}

    def _planning_cancel(cwd: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Cancel the planning run and stop any agent batch running for the project."""

        project = _resolve_cwd(cwd)
        runtime.planning.cancel(project)
        batch = batch_events.get(str(project))
        if batch is not None:
            batch.set()
        log_feed_event(project, ORCHESTRATOR_NAME, "plan.cancel")
        _emit_log(context, "info", "Planning cancelled", extra={"cwd": str(project)})
        return {"batch_cancelled": batch is not None, **_planning_summary(project)}

    def _planning_status(cwd: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Report the planning state, including staleness."""

        return _planning_summary(_resolve_cwd(cwd))

    def _planning_overlay(
        cwd: str | None = None,
        consume: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any] | None:
        """Fetch the one-shot notification raised when a planning run starts."""

        project = _resolve_cwd(cwd)
        pending = (
            runtime.planning.consume_overlay_pending(project)
            if consume
            else runtime.planning.peek_overlay_pending(project)
        )
        if pending is None:
            return None
        return {"runId": pending.run_id, "cwd": pending.cwd}

    def _planning_dismiss(run_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop showing the planning notification for a run."""

        runtime.planning.dismiss_overlay_run(run_id)
        return {"dismissed": run_id}

    def _read_feed(cwd: str | None = None, limit: int = 20, context: Context | None = None) -> list[dict[str, Any]]:
        """Return the newest activity feed events."""

        return [event.as_dict() for event in read_feed_events(_resolve_cwd(cwd), limit)]

    async def _lobby_spawn(
        cwd: str | None = None,
        prd_path: str | None = None,
        coordination: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start an idle crew worker that waits for a task assignment."""

        if coordination is not None and coordination not in COORDINATION_LEVELS:
            raise ValueError(f"coordination must be one of {', '.join(COORDINATION_LEVELS)}")
        project = _resolve_cwd(cwd)
        worker = await lobby.spawn(project, prd_path=prd_path, coordination=coordination)
        if worker is None:
            raise RuntimeError("No 'crew-worker' agent is defined; cannot start a lobby worker")
        _emit_log(context, "info", "Lobby worker started", extra={"worker": worker.name})
        return {
            "name": worker.name,
            "lobby_id": worker.lobby_id,
            "pid": worker.process.pid,
            "available": lobby.count(project),
        }

    def _lobby_assign(
        task_id: str,
        prompt: str,
        cwd: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Hand a task to the first idle lobby worker."""

        project = _resolve_cwd(cwd)
        for worker in lobby.available(project):
            if lobby.assign(worker, task_id, prompt, messenger_dirs.inbox):
                _emit_log(context, "info", "Task assigned", extra={"task_id": task_id, "worker": worker.name})
                return {"assigned": True, "worker": worker.name, "task_id": task_id}
        return {"assigned": False, "worker": None, "task_id": task_id}

    def _lobby_shutdown(
        cwd: str | None = None,
        idle_only: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop lobby workers for the project."""

        project = _resolve_cwd(cwd)
        if idle_only:
            return {"removed": lobby.remove_idle(project)}
        lobby.shutdown(project)
        return {"removed": True}

    tool_spawn = server.tool(
        name="spawn_agents",
        description=(
            "Run one or more crew agents as worker subprocesses. Each task names an agent "
            "and gives its instructions; optional task_id, model and max_output. A task's model "
            "wins over the batch model, which wins over the role model from crew config. "
            "Returns per-task exit codes, output and artifact paths."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Workers run with the project's permissions and can edit files",
            }
        },
    )(_spawn_agents)

    tool_list = server.tool(
        name="list_agents",
        description="List crew agent definitions from the extension and the project.",
    )(_list_agents)

    tool_live = server.tool(
        name="live_workers",
        description="Show the live progress of workers that are currently running.",
    )(_live_workers)

    tool_concurrency = server.tool(
        name="adjust_concurrency",
        description="Set or nudge the worker concurrency limit; running batches pick it up immediately.",
    )(_adjust_concurrency)

    tool_kill = server.tool(
        name="kill_worker",
        description="Terminate the worker assigned to a task (SIGTERM, then SIGKILL after 5s).",
    )(_kill_worker)

    tool_identity = server.tool(
        name="register_worker_identity",
        description="Record the mesh name a worker joined with so shutdown messages can reach it.",
    )(_register_worker_identity)

    tool_planning_start = server.tool(
        name="planning_start",
        description="Start a planning run for the project.",
    )(_planning_start)

    tool_planning_phase = server.tool(
        name="planning_phase",
        description="Advance the planning run to a new phase or pass.",
    )(_planning_phase)

    tool_planning_finish = server.tool(
        name="planning_finish",
        description="Finish the planning run as completed or failed.",
    )(_planning_finish)

    tool_planning_cancel = server.tool(
        name="planning_cancel",
        description="Cancel the planning run and gracefully stop its workers.",
    )(_planning_cancel)

    tool_planning_status = server.tool(
        name="planning_status",
        description="Report planning phase, pass, age and whether the run looks stalled.",
    )(_planning_status)

    tool_planning_overlay = server.tool(
        name="planning_overlay",
        description="Return the pending planning notification for the project, if any.",
    )(_planning_overlay)

    tool_planning_dismiss = server.tool(
        name="planning_dismiss",
        description="Dismiss the planning notification for a run id.",
    )(_planning_dismiss)

    tool_feed = server.tool(
        name="read_feed",
        description="Read the newest events from the project's activity feed.",
    )(_read_feed)

    tool_lobby_spawn = server.tool(
        name="lobby_spawn",
        description="Start a lobby worker that idles until a task is assigned.",
    )(_lobby_spawn)

    tool_lobby_assign = server.tool(
        name="lobby_assign",
        description="Assign a task to an idle lobby worker through its inbox.",
    )(_lobby_assign)

    tool_lobby_shutdown = server.tool(
        name="lobby_shutdown",
        description="Stop all lobby workers for the project, or only one idle worker.",
    )(_lobby_shutdown)

    return ToolHandles(
        spawn_agents=tool_spawn,
        list_agents=tool_list,
        live_workers=tool_live,
        adjust_concurrency=tool_concurrency,
        kill_worker=tool_kill,
        register_worker_identity=tool_identity,
        planning_start=tool_planning_start,
        planning_phase=tool_planning_phase,
        planning_finish=tool_planning_finish,
        planning_cancel=tool_planning_cancel,
        planning_status=tool_planning_status,
        planning_overlay=tool_planning_overlay,
        planning_dismiss=tool_planning_dismiss,
        read_feed=tool_feed,
        lobby_spawn=tool_lobby_spawn,
        lobby_assign=tool_lobby_assign,
        lobby_shutdown=tool_lobby_shutdown,
        batch_events=batch_events,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)

"""FastMCP server bootstrap for Crew."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agents import AgentLoader
from .config import CrewSettings, get_settings, load_crew_config
from .runtime import CrewRuntime
from .storage.feed import prune_feed
from .tools import register_tools
from .workers import WorkerOrchestrator, shutdown_all_workers
from .workers.runner import crew_dir_for

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Crew server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_status(
    settings: CrewSettings,
    runtime: CrewRuntime,
    agents: AgentLoader,
    *,
    restore: dict[str, Any] | None = None,
    request_id: Any = None,
) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    project = settings.project_dir
    agent_map = agents.discover(project)
    planning = runtime.planning.state(project)

    live = runtime.live.workers()
    by_project: dict[str, int] = {}
    for cwd, _ in live:
        by_project[cwd] = by_project.get(cwd, 0) + 1

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "project_dir": str(project),
        "worker_command": settings.worker_command,
        "agents": {"count": len(agent_map), "names": sorted(agent_map)},
        "concurrency": {
            "current": runtime.concurrency.value,
            "max": runtime.concurrency.config_max,
        },
        "workers": {
            "registered": len(runtime.registry),
            "live": len(live),
            "live_by_project": by_project,
            "lobby_available": runtime.registry.lobby_worker_count(str(project)),
        },
        "planning": {
            **planning.to_document(),
            "stalled": runtime.planning.is_stalled(project),
            "ageMs": runtime.planning.update_age_ms(project),
            "restore": restore or {},
        },
        "request_id": request_id,
    }


def create_server(
    settings: Optional[CrewSettings] = None,
    runtime: CrewRuntime | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools and the status resource."""

    settings = settings or get_settings()
    config = load_crew_config(crew_dir_for(settings.project_dir), user_config_path=settings.user_config_path)
    if runtime is None:
        runtime = CrewRuntime.from_settings(settings, config)
    prune_feed(settings.project_dir, config.feed_retention)

    agent_loader = AgentLoader(settings.agent_paths)
    orchestrator = WorkerOrchestrator(settings, runtime, agent_loader)

    restored = runtime.planning.restore(settings.project_dir)
    restore_metadata = {"stale_cleared": restored.stale_cleared}
    if restored.stale_cleared:
        logger.warning(
            "Cleared planning run left behind by a dead process",
            extra={"cwd": str(settings.project_dir)},
        )
    elif runtime.planning.is_stalled(settings.project_dir):
        logger.warning(
            "Planning run has not reported progress recently",
            extra={
                "cwd": str(settings.project_dir),
                "age_ms": runtime.planning.update_age_ms(settings.project_dir),
            },
        )

    server = FastMCP(
        name="Crew MCP",
        version=__version__,
        instructions=(
            "Crew runs delegated agent tasks as parallel worker subprocesses and "
            "tracks multi-pass planning runs. Use the tools to spawn agents, watch "
            "live progress, adjust concurrency and drive the planning state."
        ),
    )

    handles = register_tools(
        server,
        runtime=runtime,
        settings=settings,
        agents=agent_loader,
        orchestrator=orchestrator,
    )

    @server.resource(
        "resource://crew/status",
        name="crew_status",
        title="Crew MCP Status",
        description="Provides the current runtime status for the Crew MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        payload = build_status(
            settings,
            runtime,
            agent_loader,
            restore=restore_metadata,
            request_id=getattr(context, "request_id", None),
        )
        return json.dumps(payload)

    setattr(server, "runtime", runtime)
    setattr(server, "agent_loader", agent_loader)
    setattr(server, "orchestrator", orchestrator)
    setattr(server, "restore_metadata", restore_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Crew MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    runtime: CrewRuntime = getattr(server, "runtime")
    logger.info(
        "Launching Crew MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "project_dir": str(settings.project_dir),
            "concurrency": runtime.concurrency.value,
        },
    )
    try:
        server.run()
    finally:
        killed = shutdown_all_workers(runtime)
        if killed:
            logger.info("Terminated workers on exit", extra={"count": killed})


if __name__ == "__main__":
    main()

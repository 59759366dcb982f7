"""Crew MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from pydantic import ValidationError

from crew_mcp.agents import AgentLoader
from crew_mcp.config import CrewSettings, load_crew_config
from crew_mcp.planning import PlanningState, is_process_alive
from crew_mcp.planning.state import state_path
from crew_mcp.storage import cleanup_old_artifacts, read_feed_events
from crew_mcp.workers.runner import crew_dir_for


def resolve_cwd(args: argparse.Namespace) -> Path:
    if getattr(args, "cwd", None):
        return Path(args.cwd).expanduser().resolve()
    return CrewSettings().project_dir.expanduser().resolve()


def load_planning_state(cwd: Path) -> PlanningState | None:
    path = state_path(cwd)
    try:
        return PlanningState.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        print(f"Planning state unreadable: {exc}")
        raise SystemExit(1)


def cmd_planning(args: argparse.Namespace) -> None:
    cwd = resolve_cwd(args)
    state = load_planning_state(cwd)
    if state is None:
        print(f"No planning state recorded for {cwd}")
        return
    payload = state.to_document()
    payload["ownerAlive"] = bool(state.pid) and is_process_alive(state.pid)
    if args.json:
        print(json.dumps(payload, indent=2))
        return
    owner = "alive" if payload["ownerAlive"] else "gone"
    print(
        f"{state.phase.value} pass {state.pass_number}/{state.max_passes} "
        f"active={state.active} run={state.run_id} pid={state.pid} ({owner}) updated={state.updated_at}"
    )


def cmd_agents(args: argparse.Namespace) -> None:
    settings = CrewSettings()
    agents = AgentLoader(settings.agent_paths).discover(resolve_cwd(args))
    payload = [
        {
            "name": agent.name,
            "role": agent.role,
            "model": agent.model,
            "source": agent.source,
            "file": str(agent.file_path) if agent.file_path else None,
        }
        for agent in sorted(agents.values(), key=lambda agent: agent.name)
    ]
    print(json.dumps(payload, indent=2))


def cmd_artifacts(args: argparse.Namespace) -> None:
    cwd = resolve_cwd(args)
    crew_dir = crew_dir_for(cwd)
    artifacts_dir = crew_dir / "artifacts"
    removed = 0
    if args.cleanup:
        days = load_crew_config(crew_dir, user_config_path=CrewSettings().user_config_path).artifacts.cleanup_days
        removed = cleanup_old_artifacts(artifacts_dir, days)

    files = sorted(path.name for path in artifacts_dir.glob("*") if path.is_file()) if artifacts_dir.is_dir() else []
    runs = sorted({name.split("_", 1)[0] for name in files})
    print(
        json.dumps(
            {"dir": str(artifacts_dir), "files": len(files), "runs": runs, "removed": removed},
            indent=2,
        )
    )


def cmd_feed(args: argparse.Namespace) -> None:
    events = read_feed_events(resolve_cwd(args), args.limit)
    if args.json:
        print(json.dumps([event.as_dict() for event in events], indent=2))
        return
    for event in events:
        target = f" {event.target}" if event.target else ""
        preview = f": {event.preview}" if event.preview else ""
        print(f"{event.ts} {event.agent} {event.type}{target}{preview}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crew MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_planning = sub.add_parser("planning", help="Show the persisted planning state")
    p_planning.add_argument("--cwd")
    p_planning.add_argument("--json", action="store_true", help="Output JSON")
    p_planning.set_defaults(func=cmd_planning)

    p_agents = sub.add_parser("agents", help="List discovered agent definitions")
    p_agents.add_argument("--cwd")
    p_agents.set_defaults(func=cmd_agents)

    p_artifacts = sub.add_parser("artifacts", help="Summarize worker artifacts")
    p_artifacts.add_argument("--cwd")
    p_artifacts.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete artifacts older than artifacts.cleanupDays first",
    )
    p_artifacts.set_defaults(func=cmd_artifacts)

    p_feed = sub.add_parser("feed", help="Show the newest activity feed events")
    p_feed.add_argument("--cwd")
    p_feed.add_argument("--limit", type=int, default=20)
    p_feed.add_argument("--json", action="store_true", help="Output JSON")
    p_feed.set_defaults(func=cmd_feed)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()

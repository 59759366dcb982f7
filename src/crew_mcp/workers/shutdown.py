"""Three-tier graceful shutdown: inbox message, then SIGTERM, then SIGKILL."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from ..storage.models import WriteOutcome
from ..storage.writes import write_text
from .utils import now_ms

logger = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "crew-orchestrator"
DEFAULT_TERM_GRACE_MS = 5000

SHUTDOWN_MESSAGE = """SHUTDOWN REQUESTED: Please wrap up your current work.
1. Release any file reservations
2. If the task is not complete, leave it as in_progress (do NOT mark done)
3. Do NOT commit anything
4. Exit"""


class ShutdownProcess(Protocol):
    pid: int

    @property
    def returncode(self) -> int | None:
        ...

    def send_signal(self, sig: int) -> None:
        ...

    async def wait(self) -> int:
        ...


ExitWaiter = Callable[[ShutdownProcess, float], Awaitable[bool]]


@dataclass(slots=True, frozen=True)
class MessengerDirs:
    """Coordination directories shared with workers."""

    registry: Path
    inbox: Path


class ShutdownState(str, Enum):
    RUNNING = "running"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    MESSAGE_SENT = "message_sent"
    WAITING_GRACE = "waiting_grace"
    TERMINATING = "terminating"
    WAITING_TERM_GRACE = "waiting_term_grace"
    KILLED = "killed"
    EXITED = "exited"


_TRANSITIONS: dict[ShutdownState, frozenset[ShutdownState]] = {
    ShutdownState.RUNNING: frozenset({ShutdownState.SHUTDOWN_REQUESTED, ShutdownState.EXITED}),
    ShutdownState.SHUTDOWN_REQUESTED: frozenset(
        {ShutdownState.MESSAGE_SENT, ShutdownState.TERMINATING, ShutdownState.EXITED}
    ),
    ShutdownState.MESSAGE_SENT: frozenset({ShutdownState.WAITING_GRACE, ShutdownState.EXITED}),
    ShutdownState.WAITING_GRACE: frozenset({ShutdownState.TERMINATING, ShutdownState.EXITED}),
    ShutdownState.TERMINATING: frozenset({ShutdownState.WAITING_TERM_GRACE, ShutdownState.EXITED}),
    ShutdownState.WAITING_TERM_GRACE: frozenset({ShutdownState.KILLED, ShutdownState.EXITED}),
    ShutdownState.KILLED: frozenset(),
    ShutdownState.EXITED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the shutdown machine is asked to make an illegal move."""


async def wait_for_exit(process: ShutdownProcess, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds; returns whether the process exited."""

    if process.returncode is not None:
        return True
    try:
        await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        return process.returncode is not None
    return True


class ShutdownProtocol:
    """Escalating shutdown for a single worker process.

    ``deliver`` is called once and reports whether a shutdown message reached
    the worker. A delivered message buys the worker ``grace_period_ms`` to
    exit on its own before SIGTERM; SIGKILL follows ``term_grace_ms`` later.
    An observed exit ends the escalation at any step. ``on_signal`` sees every
    signal the protocol sends.
    """

    def __init__(
        self,
        process: ShutdownProcess,
        *,
        deliver: Callable[[], bool],
        grace_period_ms: int,
        term_grace_ms: int = DEFAULT_TERM_GRACE_MS,
        waiter: ExitWaiter = wait_for_exit,
        on_signal: Callable[[int], None] | None = None,
    ) -> None:
        self._process = process
        self._deliver = deliver
        self._on_signal = on_signal
        self._grace_period_ms = grace_period_ms
        self._term_grace_ms = term_grace_ms
        self._waiter = waiter
        self._state = ShutdownState.RUNNING
        self._history: list[ShutdownState] = [ShutdownState.RUNNING]

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def history(self) -> list[ShutdownState]:
        return list(self._history)

    @property
    def requested(self) -> bool:
        return self._state is not ShutdownState.RUNNING

    def _transition(self, target: ShutdownState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Cannot move shutdown from {self._state.value} to {target.value}"
            )
        self._state = target
        self._history.append(target)

    def _exited(self) -> bool:
        if self._process.returncode is None:
            return False
        self._transition(ShutdownState.EXITED)
        return True

    def _signal(self, sig: int) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(sig)
        if self._on_signal is not None:
            self._on_signal(sig)

    async def run(self) -> ShutdownState:
        self._transition(ShutdownState.SHUTDOWN_REQUESTED)
        if self._exited():
            return self._state

        if self._deliver():
            self._transition(ShutdownState.MESSAGE_SENT)
            self._transition(ShutdownState.WAITING_GRACE)
            if await self._waiter(self._process, self._grace_period_ms / 1000):
                self._transition(ShutdownState.EXITED)
                return self._state

        if self._exited():
            return self._state
        self._transition(ShutdownState.TERMINATING)
        self._signal(signal.SIGTERM)
        self._transition(ShutdownState.WAITING_TERM_GRACE)
        if await self._waiter(self._process, self._term_grace_ms / 1000):
            self._transition(ShutdownState.EXITED)
            return self._state

        if self._exited():
            return self._state
        self._transition(ShutdownState.KILLED)
        self._signal(signal.SIGKILL)
        logger.warning("Worker ignored SIGTERM; sent SIGKILL", extra={"pid": self._process.pid})
        return self._state


def discover_identity(pid: int | None, registry_dir: Path | None) -> str | None:
    """Find the coordination name whose registry descriptor records ``pid``."""

    if not pid or registry_dir is None or not Path(registry_dir).is_dir():
        return None
    for path in sorted(Path(registry_dir).glob("*.json")):
        try:
            descriptor = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            continue
        if isinstance(descriptor, dict) and descriptor.get("pid") == pid:
            name = descriptor.get("name")
            return str(name) if name else path.stem
    return None


def resolve_identity(
    registered: str | None,
    pid: int | None,
    registry_dir: Path | None,
) -> str | None:
    """Explicitly registered identity first, then a scan of the registry directory."""

    if registered:
        return registered
    return discover_identity(pid, registry_dir)


def build_shutdown_message(identity: str) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "from": ORCHESTRATOR_NAME,
        "to": identity,
        "text": SHUTDOWN_MESSAGE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "replyTo": None,
    }


def write_shutdown_message(inbox_dir: Path, identity: str) -> WriteOutcome | None:
    """Drop a shutdown message into the worker's inbox.

    Returns None when the worker has no inbox to deliver to.
    """

    target_dir = Path(inbox_dir) / identity
    if not target_dir.is_dir():
        return None
    path = target_dir / f"{now_ms()}-shutdown.json"
    return write_text(path, json.dumps(build_shutdown_message(identity)))


def remove_registry_descriptor(registry_dir: Path, identity: str) -> None:
    path = Path(registry_dir) / f"{identity}.json"
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove registry descriptor", extra={"path": str(path), "error": str(exc)})


__all__ = [
    "DEFAULT_TERM_GRACE_MS",
    "InvalidTransitionError",
    "MessengerDirs",
    "ORCHESTRATOR_NAME",
    "SHUTDOWN_MESSAGE",
    "ShutdownProtocol",
    "ShutdownState",
    "build_shutdown_message",
    "discover_identity",
    "remove_registry_descriptor",
    "resolve_identity",
    "wait_for_exit",
    "write_shutdown_message",
]

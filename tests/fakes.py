from __future__ import annotations

import asyncio
import signal


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process`` in registry and shutdown tests."""

    def __init__(self, pid: int = 4242, *, exit_on: tuple[int, ...] = ()) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.signals: list[int] = []
        self._exit_on = set(exit_on)

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if sig in self._exit_on:
            self.exit(-sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(0.005)
        return self.returncode

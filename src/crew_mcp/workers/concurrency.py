"""Mutable concurrency limit with change notification."""

from __future__ import annotations

import asyncio
import math

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


def clamp_concurrency(value: float, config_max: int | None = None) -> int:
    """Clamp ``value`` into ``[1, min(config_max, 10)]``."""

    if value is None or not math.isfinite(value):
        return MIN_CONCURRENCY
    effective_max = MAX_CONCURRENCY if config_max is None else min(config_max, MAX_CONCURRENCY)
    return max(MIN_CONCURRENCY, min(effective_max, int(value)))


class ConcurrencyControl:
    """Holds the live concurrency limit shared by every dispatch loop.

    Readers call ``value`` on every scheduling decision. Writers go through
    ``set``/``adjust``, which wake every coroutine blocked in
    ``wait_for_change``.
    """

    def __init__(self, initial: int = 2, *, config_max: int | None = None) -> None:
        self._config_max = config_max
        self._value = clamp_concurrency(initial, config_max)
        self._waiters: set[asyncio.Future[int]] = set()

    @property
    def value(self) -> int:
        return self._value

    @property
    def config_max(self) -> int | None:
        return self._config_max

    def set(self, value: int, *, config_max: int | None = None) -> int:
        if config_max is not None:
            self._config_max = config_max
        self._value = clamp_concurrency(value, self._config_max)
        self._notify()
        return self._value

    def adjust(self, delta: int, *, config_max: int | None = None) -> int:
        return self.set(self._value + delta, config_max=config_max)

    def _notify(self) -> None:
        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(self._value)

    async def wait_for_change(self) -> int:
        waiter: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            return await waiter
        finally:
            self._waiters.discard(waiter)


__all__ = ["ConcurrencyControl", "MAX_CONCURRENCY", "MIN_CONCURRENCY", "clamp_concurrency"]

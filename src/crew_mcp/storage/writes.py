"""Best-effort filesystem writes that report instead of raising."""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Callable

from .models import WriteOutcome

logger = logging.getLogger(__name__)

RECOVERABLE_ERRNOS = frozenset(
    {errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.EMFILE, errno.ENFILE}
)


def best_effort(path: Path, action: Callable[[], None], *, label: str = "write") -> WriteOutcome:
    """Run ``action``, retrying once on a recoverable errno.

    Failures are logged and returned as ``WriteOutcome(ok=False)``; the
    caller's control flow never changes because of them.
    """

    attempts = 0
    while True:
        attempts += 1
        try:
            action()
            return WriteOutcome(path=Path(path), ok=True, attempts=attempts)
        except OSError as exc:
            if exc.errno in RECOVERABLE_ERRNOS and attempts == 1:
                continue
            logger.warning(
                "Best-effort %s failed",
                label,
                extra={"path": str(path), "error": str(exc), "attempts": attempts},
            )
            return WriteOutcome(path=Path(path), ok=False, error=str(exc), attempts=attempts)


def write_text(path: Path, content: str, *, mode: int | None = None) -> WriteOutcome:
    def _write() -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(target, mode)

    return best_effort(path, _write)


def write_atomic(path: Path, content: str) -> WriteOutcome:
    """Write through a temp file and ``os.replace`` so readers never see a partial file."""

    def _write() -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        temp.write_text(content, encoding="utf-8")
        os.replace(temp, target)

    return best_effort(path, _write)


def append_line(path: Path, line: str) -> WriteOutcome:
    def _append() -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{line}\n")

    return best_effort(path, _append, label="append")


__all__ = ["RECOVERABLE_ERRNOS", "append_line", "best_effort", "write_atomic", "write_text"]

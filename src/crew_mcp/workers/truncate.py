"""Output truncation against a byte/line budget."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..config import OutputBudget

_SEPARATOR = "\n\n"


@dataclass(slots=True)
class TruncationResult:
    text: str
    truncated: bool


def _line_count(text: str) -> int:
    return text.count("\n") + 1 if text else 0


def fits_budget(text: str, budget: OutputBudget) -> bool:
    if budget.bytes is not None and len(text.encode("utf-8")) > budget.bytes:
        return False
    if budget.lines is not None and _line_count(text) > budget.lines:
        return False
    return True


def truncate_output(
    text: str,
    budget: OutputBudget,
    artifact_path: Path | None = None,
) -> TruncationResult:
    """Cut ``text`` down to ``budget``.

    The returned text, notice included, always fits the budget, so truncating
    an already-truncated text again returns it unchanged.
    """

    if fits_budget(text, budget):
        return TruncationResult(text=text, truncated=False)

    total_lines = _line_count(text)
    total_bytes = len(text.encode("utf-8"))
    notice = f"[Output truncated: {total_lines} lines, {total_bytes} bytes"
    if artifact_path is not None:
        notice += f". Full output: {artifact_path}"
    notice += "]"
    tail = f"{_SEPARATOR}{notice}"
    tail_bytes = len(tail.encode("utf-8"))
    tail_lines = tail.count("\n")

    include_notice = (budget.lines is None or budget.lines > tail_lines) and (
        budget.bytes is None or budget.bytes > tail_bytes
    )

    head = text
    if budget.lines is not None:
        keep = budget.lines - tail_lines if include_notice else budget.lines
        head = "\n".join(head.split("\n")[:keep])
    if budget.bytes is not None:
        limit = budget.bytes - tail_bytes if include_notice else budget.bytes
        head = head.encode("utf-8")[:limit].decode("utf-8", errors="ignore")

    return TruncationResult(text=f"{head}{tail}" if include_notice else head, truncated=True)


__all__ = ["TruncationResult", "fits_budget", "truncate_output"]

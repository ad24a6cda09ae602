"""
Conversation history windowing.

Selects the most recent run of messages that fits a token budget. The scan
walks backwards from the newest message and stops at the first message that
would overflow the budget, so the result is always a contiguous suffix of
the history.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tokens import estimate_tokens


@dataclass(frozen=True)
class WindowResult:
    """Messages kept for the upstream call plus bookkeeping for logs."""

    messages: list[dict[str, Any]]
    tokens: int  # Estimated cost of the kept messages
    dropped: int  # Older messages left out of the window

    @property
    def kept(self) -> int:
        return len(self.messages)


def window_history(
    history: list[dict[str, Any]] | None, budget: int
) -> WindowResult:
    """
    Build the history window for a token budget.

    Note: if the newest message alone costs more than the budget, the window
    is empty even when older messages would fit. Older, cheaper messages are
    never considered once a newer one has been rejected.
    """
    if not history:
        return WindowResult(messages=[], tokens=0, dropped=0)

    total = 0
    start = len(history)

    for i in range(len(history) - 1, -1, -1):
        cost = estimate_tokens(history[i])
        if total + cost > budget:
            break
        total += cost
        start = i

    return WindowResult(messages=list(history[start:]), tokens=total, dropped=start)


def select_window(
    history: list[dict[str, Any]] | None, budget: int
) -> list[dict[str, Any]]:
    """Return the suffix of `history` that fits `budget`, oldest first."""
    return window_history(history, budget).messages

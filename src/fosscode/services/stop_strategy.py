"""Pluggable early-stop decisions for the agent loop.

The loop asks a StopStrategy before every model request after the first.
HeuristicStopStrategy uses two lexical signals: stalled progress (successive
assistant replies of near-equal length) and explicit completion phrases.
A structured stop signal can replace it without touching the loop.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from ..models import Message


class StopReason(str, Enum):
    COMPLETED = "completed"  # model gave a final answer
    ITERATION_CAP = "iteration_cap"
    TOKEN_BUDGET = "token_budget"
    STALLED = "stalled"
    COMPLETION_DETECTED = "completion_detected"
    CANCELLED = "cancelled"


COMPLETION_PHRASES: tuple[str, ...] = (
    "task completed",
    "task is complete",
    "finished",
    "done",
    "completed successfully",
    "implementation complete",
    "here is the",
    "here's the",
    "i've created",
    "i've implemented",
    "the solution is",
    "summary",
    "to summarize",
    "in conclusion",
    "changes applied",
    "files updated",
    "modifications complete",
    "refactoring complete",
    "the code is now",
    "this should",
    "you can now",
    "ready to use",
)


class StopStrategy(Protocol):
    def should_stop(self, turn: Sequence[Message]) -> StopReason | None:
        """Inspect the current turn (latest user message onward); return a reason to stop, or None."""
        ...


def word_ratio(current: str, previous: str) -> float:
    prev_words = len(previous.split())
    if not prev_words:
        return 0.0
    return len(current.split()) / prev_words


def completion_matches(text: str) -> list[str]:
    lower = text.lower()
    return [p for p in COMPLETION_PHRASES if p in lower]


class HeuristicStopStrategy:
    def __init__(
        self,
        stall_band: tuple[float, float] = (0.8, 1.2),
        stall_turns: int = 3,
        completion_min_matches: int = 2,
    ) -> None:
        self.stall_band = stall_band
        self.stall_turns = stall_turns
        self.completion_min_matches = completion_min_matches

    def _stall_streak(self, replies: list[str]) -> int:
        """Length of the trailing run of reply pairs whose word-count ratio is inside the band."""
        low, high = self.stall_band
        streak = 0
        for previous, current in zip(replies, replies[1:]):
            if low < word_ratio(current, previous) < high:
                streak += 1
            else:
                streak = 0
        return streak

    def should_stop(self, turn: Sequence[Message]) -> StopReason | None:
        replies = [m.content for m in turn if m.role == "assistant" and m.content.strip()]
        if len(replies) < 2:
            return None
        if self._stall_streak(replies) >= self.stall_turns:
            return StopReason.STALLED
        if len(completion_matches(replies[-1])) >= self.completion_min_matches:
            return StopReason.COMPLETION_DETECTED
        return None

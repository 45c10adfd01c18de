"""Token budgeting and scoring-based context compression for the agent loop."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ..models import Message

logger = logging.getLogger(__name__)

COMPRESSION_NOTE_PREFIX = "Context compressed:"

# (keywords, extra tokens) applied when any keyword occurs in the latest user message
_COMPLEXITY_SIGNALS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("refactor", "architecture"), 5_000),
    (("debug", "fix", "error"), 3_000),
    (("test", "testing"), 2_000),
    (("step", "multiple", "several"), 3_000),
)
_CODE_MODE_BONUS = 2_000


def compute_token_budget(
    user_message: str,
    context_window: int,
    reserved_headroom: int,
    cap_headroom: int,
    mode: str = "code",
) -> int:
    """Adaptive token budget for one conversation turn.

    Starts from the context window minus reserved headroom and grows by fixed
    increments for complexity signals, capped just under the context window.
    """
    budget = context_window - reserved_headroom
    text = user_message.lower()
    for keywords, bonus in _COMPLEXITY_SIGNALS:
        if any(k in text for k in keywords):
            budget += bonus
    if mode == "code":
        budget += _CODE_MODE_BONUS
    return max(0, min(budget, context_window - cap_headroom))


def score_message(message: Message, position: int, total: int) -> float:
    content = message.content or ""
    lower = content.lower()
    score = (position / total) * 30 if total else 0.0
    if message.tool_calls:
        score += 50
    if message.tool_call_id is not None:
        score += 40
    if "```" in content or "function" in content or "class" in content:
        score += 25
    if "error" in lower or "failed" in lower:
        score += 20
    if "?" in content:
        score += 15
    if len(content) > 200:
        score += 10
    return score


def _group_units(messages: Sequence[Message]) -> list[list[Message]]:
    """Group an assistant tool-call message with the tool results answering it."""
    units: list[list[Message]] = []
    open_calls: dict[str, list[Message]] = {}
    for msg in messages:
        if msg.role == "tool" and msg.tool_call_id in open_calls:
            open_calls[msg.tool_call_id].append(msg)
            continue
        unit = [msg]
        units.append(unit)
        if msg.tool_calls:
            open_calls = {tc.id: unit for tc in msg.tool_calls}
        else:
            open_calls = {}
    return units


def is_compression_note(message: Message) -> bool:
    return message.role == "system" and message.content.startswith(COMPRESSION_NOTE_PREFIX)


@dataclass
class CompressionResult:
    messages: list[Message]
    elided: int  # messages dropped by this pass
    total_elided: int  # including earlier passes


def compress_history(
    history: Sequence[Message],
    keep: int,
    iteration: int,
    previously_elided: int = 0,
) -> CompressionResult:
    """Keep the ``keep`` highest-scoring units and replace the rest with one system note.

    A unit is a single message, or an assistant tool-call message together
    with its tool results, so request/response pairs survive or go together.
    System messages (other than earlier compression notes) and the latest
    user message are always kept.
    """
    pinned_system = [m for m in history if m.role == "system" and not is_compression_note(m)]
    body = [m for m in history if m.role != "system"]
    units = _group_units(body)

    last_user = max((i for i, u in enumerate(units) if u[0].role == "user"), default=None)
    total = len(units)
    scored = []
    for i, unit in enumerate(units):
        score = max(score_message(m, i, total) for m in unit)
        scored.append((score, i))

    ranked = sorted(scored, key=lambda s: (s[0], s[1]), reverse=True)
    chosen = {i for _, i in ranked[:keep]}
    if last_user is not None:
        chosen.add(last_user)

    kept: list[Message] = []
    for i in sorted(chosen):
        kept.extend(units[i])

    elided = len(body) - len(kept)
    total_elided = previously_elided + elided
    result = list(pinned_system)
    if total_elided > 0:
        result.append(
            Message(
                role="system",
                content=(
                    f"{COMPRESSION_NOTE_PREFIX} {total_elided} less important messages summarized. "
                    f"Iteration {iteration + 1}, focusing on tool calls, code, and recent interactions."
                ),
            )
        )
    result.extend(kept)
    if elided:
        logger.info("Compressed context: dropped %d messages, kept %d", elided, len(kept))
    return CompressionResult(messages=result, elided=elided, total_elided=total_elided)

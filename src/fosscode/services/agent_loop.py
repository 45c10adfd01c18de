"""Conversation orchestrator: the iterative tool-calling agent loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

from ..config import MAX_ITERATIONS, AgentConfig
from ..models import CancellationToken, Message, ToolCallRequest, ToolResult, Usage
from ..tools import ToolRegistry
from .ai_service import ModelBackend
from .cancellation import CancellationController
from .context import compress_history, compute_token_budget
from .stop_strategy import HeuristicStopStrategy, StopReason, StopStrategy

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """A model backend call failed; the turn was aborted."""


@dataclass
class AgentEvent:
    kind: str
    data: dict[str, Any]


@dataclass
class TurnResult:
    content: str
    stop_reason: StopReason
    iterations: int
    usage: Usage = field(default_factory=Usage)
    tool_calls: int = 0
    token_budget: int = 0
    diagnostic: bool = False


def token_limit_diagnostic(budget: int, used: int, iterations: int) -> str:
    return (
        "⚠️ **Response stopped early due to token limit**\n\n"
        f"The AI agent reached the maximum token budget ({budget} tokens) before completing the response. "
        "This usually happens with complex requests that require multiple iterations.\n\n"
        "Try:\n"
        "• Simplifying your request\n"
        "• Breaking it into smaller parts\n"
        "• Using a different model with higher token limits\n\n"
        f"*Used {used} tokens in {iterations} iterations*"
    )


NO_RESPONSE_DIAGNOSTIC = (
    "⚠️ **No response generated**\n\n"
    "The AI agent couldn't generate a response. This might be due to:\n"
    "• Content filtering by the AI service\n"
    "• Network issues\n"
    "• Service limitations\n\n"
    "Please try again or rephrase your request."
)


def incomplete_diagnostic(iterations: int, reason: StopReason) -> str:
    cause = {
        StopReason.STALLED: "The replies stopped making progress",
        StopReason.ITERATION_CAP: "The iteration limit was reached",
    }.get(reason, "The loop ended without a final answer")
    return (
        "⚠️ **Incomplete response**\n\n"
        f"The AI agent stopped after {iterations} iterations without completing the response. "
        f"{cause}. This might indicate:\n"
        "• The request was too complex\n"
        "• Content filtering occurred\n"
        "• Service limitations\n\n"
        "*Partial content may be available in the conversation above*"
    )


def _truncate(content: str, max_chars: int, tool_name: str) -> str:
    if len(content) <= max_chars:
        return content
    logger.info("Truncated tool output for %s: %d -> %d chars", tool_name, len(content), max_chars)
    return (
        content[:max_chars] + f"\n\n... [TRUNCATED: original output was {len(content):,} chars from '{tool_name}'. "
        "Retry this tool call with narrower parameters to see the rest.]"
    )


async def _execute_tool(
    registry: ToolRegistry,
    tc: ToolCallRequest,
    token: CancellationToken | None,
) -> tuple[ToolResult, str]:
    """Execute a single tool call, returning (result, status)."""
    if token is None:
        return await registry.call_tool(tc.tool_name, tc.arguments), "success"

    cancel_task = asyncio.ensure_future(token.wait())
    exec_task = asyncio.ensure_future(registry.call_tool(tc.tool_name, tc.arguments))
    try:
        done, pending = await asyncio.wait({cancel_task, exec_task}, return_when=asyncio.FIRST_COMPLETED)
        for p in pending:
            p.cancel()
            try:
                await asyncio.wait_for(p, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
    finally:
        # Reached with live futures only when the caller is cancelled mid-wait
        for f in (cancel_task, exec_task):
            if not f.done():
                f.cancel()
    if exec_task in done:
        return exec_task.result(), "success"
    return ToolResult.fail("Cancelled by user"), "cancelled"


class ConversationOrchestrator:
    """Drives conversation turns against a model backend and a tool registry.

    Owns its message history exclusively. One turn runs at a time.
    """

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        *,
        config: AgentConfig | None = None,
        system_prompt: str | None = None,
        stop_strategy: StopStrategy | None = None,
        cancellation: CancellationController | None = None,
        mode: str = "code",
        initial_messages: Sequence[Message] = (),
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.config = config or AgentConfig()
        self.system_prompt = system_prompt
        self.stop_strategy: StopStrategy = stop_strategy or HeuristicStopStrategy(
            stall_band=self.config.stall_band,
            stall_turns=self.config.stall_turns,
            completion_min_matches=self.config.completion_min_matches,
        )
        self.cancellation = cancellation
        self.mode = mode
        self._initial = list(initial_messages)
        self._history: list[Message] = list(initial_messages)
        self._elided = 0
        self._running = False
        self.usage = Usage()

    @property
    def history(self) -> tuple[Message, ...]:
        return tuple(self._history)

    @property
    def is_running(self) -> bool:
        return self._running

    def reset(self) -> None:
        if self._running:
            raise RuntimeError("Cannot reset while a turn is running")
        self._history = list(self._initial)
        self._elided = 0
        self.usage = Usage()

    def _current_turn(self) -> list[Message]:
        for i in range(len(self._history) - 1, -1, -1):
            if self._history[i].role == "user":
                return self._history[i:]
        return list(self._history)

    def token_budget_for(self, user_message: str) -> int:
        if self.config.token_budget is not None:
            return self.config.token_budget
        return compute_token_budget(
            user_message,
            context_window=getattr(self.backend, "context_window", 128_000),
            reserved_headroom=self.config.reserved_headroom,
            cap_headroom=self.config.budget_cap_headroom,
            mode=self.mode,
        )

    def _finish(
        self,
        stop_reason: StopReason,
        final_content: str,
        budget: int,
        usage: Usage,
        iterations: int,
        tool_calls: int,
        token: CancellationToken | None,
    ) -> TurnResult:
        diagnostic = False
        content = final_content
        if stop_reason == StopReason.CANCELLED:
            reason = token.reason if token is not None and token.reason else "Cancelled"
            content = f"⚠️ **Cancelled**: {reason}" + (f"\n\n{final_content}" if final_content.strip() else "")
            diagnostic = True
        elif not content.strip():
            diagnostic = True
            if usage.total_tokens >= budget:
                content = token_limit_diagnostic(budget, usage.total_tokens, iterations)
            elif iterations == 0:
                content = NO_RESPONSE_DIAGNOSTIC
            else:
                content = incomplete_diagnostic(iterations, stop_reason)
        return TurnResult(
            content=content,
            stop_reason=stop_reason,
            iterations=iterations,
            usage=usage,
            tool_calls=tool_calls,
            token_budget=budget,
            diagnostic=diagnostic,
        )

    async def run_turn(
        self, user_message: str, token: CancellationToken | None = None
    ) -> AsyncGenerator[AgentEvent, None]:
        """Run one turn, yielding events. The last event is ``done`` carrying the TurnResult.

        Raises ProviderError if a backend call fails.
        """
        if self._running:
            raise RuntimeError("A turn is already running on this conversation")
        self._running = True
        try:
            async for event in self._run(user_message, token):
                yield event
        finally:
            self._running = False

    async def _run(self, user_message: str, token: CancellationToken | None) -> AsyncGenerator[AgentEvent, None]:
        if token is None and self.cancellation is not None:
            token = self.cancellation.token
        cfg = self.config

        self._history.append(Message(role="user", content=user_message))
        budget = self.token_budget_for(user_message)
        tools = self.registry.get_openai_tools() or None
        logger.info("Starting agent turn with %d token budget", budget)

        usage = Usage()
        iterations = 0
        tool_calls_made = 0
        final_content = ""
        latest_reply = ""

        while True:
            # Termination policy, first match wins.
            stop_reason: StopReason | None = None
            if token is not None and token.is_cancelled:
                stop_reason = StopReason.CANCELLED
            elif iterations >= min(cfg.max_iterations, MAX_ITERATIONS):
                stop_reason = StopReason.ITERATION_CAP
            elif usage.total_tokens >= budget:
                stop_reason = StopReason.TOKEN_BUDGET
            elif iterations > 0:
                stop_reason = self.stop_strategy.should_stop(self._current_turn())
            if stop_reason is not None:
                if stop_reason == StopReason.COMPLETION_DETECTED:
                    final_content = latest_reply
                elif stop_reason == StopReason.CANCELLED:
                    final_content = latest_reply
                    yield AgentEvent(kind="cancelled", data={"reason": token.reason if token else None})
                logger.info("Stopping after %d iterations: %s", iterations, stop_reason.value)
                break

            if iterations > cfg.compress_after_iteration and len(self._history) > cfg.compress_threshold:
                compressed = compress_history(self._history, cfg.compress_keep, iterations, self._elided)
                if compressed.elided:
                    self._history = compressed.messages
                    self._elided = compressed.total_elided
                    yield AgentEvent(
                        kind="compressed", data={"elided": compressed.elided, "kept": len(self._history)}
                    )

            yield AgentEvent(kind="thinking", data={"iteration": iterations + 1})
            try:
                response = await self.backend.send_message(
                    list(self._history),
                    system_prompt=self.system_prompt,
                    tools=tools,
                    mode=self.mode,
                    token=token,
                )
            except Exception as e:
                provider = getattr(self.backend, "provider_name", "Model")
                logger.warning("%s backend call failed: %s", provider, e)
                raise ProviderError(f"{provider} API error: {e}") from e

            iterations += 1
            usage.add(response.usage)
            self.usage.add(response.usage)

            if response.finish_reason == "cancelled" or (token is not None and token.is_cancelled):
                stop_reason = StopReason.CANCELLED
                final_content = latest_reply
                yield AgentEvent(kind="cancelled", data={"reason": token.reason if token else None})
                break

            if not response.tool_calls:
                self._history.append(Message(role="assistant", content=response.content))
                yield AgentEvent(kind="assistant_message", data={"content": response.content, "tool_calls": 0})
                final_content = response.content
                stop_reason = StopReason.COMPLETED
                break

            self._history.append(
                Message(role="assistant", content=response.content, tool_calls=tuple(response.tool_calls))
            )
            yield AgentEvent(
                kind="assistant_message",
                data={"content": response.content, "tool_calls": len(response.tool_calls)},
            )
            if response.content.strip():
                latest_reply = response.content

            # Sequential, in emitted order: later calls may depend on earlier ones.
            for tc in response.tool_calls:
                if token is not None and token.is_cancelled:
                    result, status = ToolResult.fail("Cancelled by user"), "cancelled"
                else:
                    yield AgentEvent(
                        kind="tool_call_start",
                        data={"id": tc.id, "tool_name": tc.tool_name, "arguments": tc.arguments},
                    )
                    result, status = await _execute_tool(self.registry, tc, token)
                if not result.success and status == "success":
                    status = "error"
                self._history.append(
                    Message(
                        role="tool",
                        content=_truncate(result.to_content(), cfg.tool_output_max_chars, tc.tool_name),
                        tool_call_id=tc.id,
                    )
                )
                tool_calls_made += 1
                yield AgentEvent(
                    kind="tool_call_end",
                    data={"id": tc.id, "tool_name": tc.tool_name, "output": result.to_dict(), "status": status},
                )

        result = self._finish(stop_reason, final_content, budget, usage, iterations, tool_calls_made, token)
        if result.diagnostic:
            yield AgentEvent(kind="diagnostic", data={"reason": stop_reason.value, "content": result.content})
        yield AgentEvent(kind="done", data={"result": result})

    async def send(self, user_message: str, token: CancellationToken | None = None) -> TurnResult:
        """Run one turn to completion and return its result."""
        result: TurnResult | None = None
        async for event in self.run_turn(user_message, token):
            if event.kind == "done":
                result = event.data["result"]
        if result is None:
            raise RuntimeError("Turn ended without a result")
        return result

"""OpenAI-compatible model backend.

The orchestrator talks to any object satisfying ModelBackend. AIService is
the production implementation: one non-streaming chat completion per call,
raced against the caller's cancellation token, with bounded exponential
backoff for transient transport failures.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from ..config import AIConfig
from ..models import BackendResponse, CancellationToken, Message, ToolCallRequest, Usage

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """A model backend call failed after any connection-level retries."""

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class _CancelledByToken(Exception):
    pass


class ModelBackend(Protocol):
    provider_name: str
    context_window: int

    async def send_message(
        self,
        history: list[Message],
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        mode: str = "code",
        token: CancellationToken | None = None,
    ) -> BackendResponse: ...


def _cancelled_response() -> BackendResponse:
    return BackendResponse(content="", finish_reason="cancelled")


class AIService:
    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self.provider_name = config.provider_name
        self.context_window = config.context_window
        self._build_client()

    def _build_client(self) -> None:
        timeout = httpx.Timeout(
            connect=float(self.config.connect_timeout),
            read=float(self.config.request_timeout),
            write=30.0,
            pool=10.0,
        )
        http_client = httpx.AsyncClient(verify=self.config.verify_ssl, timeout=timeout)
        # Retries are handled here, not by the SDK.
        self.client = AsyncOpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key,
            http_client=http_client,
            max_retries=0,
        )

    async def close(self) -> None:
        await self.client.close()

    async def _create(self, kwargs: dict[str, Any], token: CancellationToken | None) -> Any:
        create = asyncio.ensure_future(self.client.chat.completions.create(**kwargs))
        waiters: set[asyncio.Future[Any]] = {create}
        cancel_wait = asyncio.ensure_future(token.wait()) if token is not None else None
        if cancel_wait is not None:
            waiters.add(cancel_wait)

        try:
            done, _pending = await asyncio.wait(
                waiters, timeout=float(self.config.request_timeout), return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            for w in waiters:
                w.cancel()
            raise

        if create in done:
            if cancel_wait is not None:
                cancel_wait.cancel()
            return create.result()

        create.cancel()
        if cancel_wait is not None:
            fired = cancel_wait in done
            cancel_wait.cancel()
            if fired:
                raise _CancelledByToken()
        raise asyncio.TimeoutError()

    @staticmethod
    def _parse(response: Any) -> BackendResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise BackendError("Malformed response: no choices returned")
        choice = choices[0]
        message = choice.message

        tool_calls: list[ToolCallRequest] = []
        for tc in message.tool_calls or []:
            raw_args = tc.function.arguments or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError as e:
                raise BackendError(f"Malformed tool call arguments for '{tc.function.name}': {e}") from e
            if not isinstance(arguments, dict):
                raise BackendError(f"Malformed tool call arguments for '{tc.function.name}': expected an object")
            tool_calls.append(ToolCallRequest(id=tc.id, tool_name=tc.function.name, arguments=arguments))

        usage = None
        if getattr(response, "usage", None) is not None:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        return BackendResponse(
            content=message.content or "",
            usage=usage,
            finish_reason=choice.finish_reason or "stop",
            tool_calls=tool_calls,
        )

    async def _sleep(self, delay: float, token: CancellationToken | None) -> bool:
        """Wait ``delay`` seconds. Returns False if the token fired first."""
        if token is None:
            await asyncio.sleep(delay)
            return True
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
            return False
        except asyncio.TimeoutError:
            return True

    async def send_message(
        self,
        history: list[Message],
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        mode: str = "code",
        token: CancellationToken | None = None,
    ) -> BackendResponse:
        messages: list[dict[str, Any]] = []
        prompt = system_prompt if system_prompt is not None else self.config.system_prompt
        if prompt:
            messages.append({"role": "system", "content": prompt})
        messages.extend(m.to_openai() for m in history)

        kwargs: dict[str, Any] = {"model": self.config.model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
        logger.debug("Sending %d messages (%s mode, %d tools)", len(messages), mode, len(tools or []))

        max_attempts = max(1, self.config.retry_max_attempts + 1)  # +1: first attempt is not a "retry"
        last_error = ""
        last_status: int | None = None
        for attempt in range(max_attempts):
            if token is not None and token.is_cancelled:
                return _cancelled_response()
            try:
                response = await self._create(kwargs, token)
                return self._parse(response)
            except _CancelledByToken:
                return _cancelled_response()
            except AuthenticationError as e:
                raise BackendError("Authentication failed: check the API key", status_code=e.status_code) from e
            except BadRequestError as e:
                raise BackendError(f"Bad request: {e.message}", status_code=e.status_code) from e
            except RateLimitError as e:
                last_error, last_status = "Rate limited", e.status_code
            except APIStatusError as e:
                if e.status_code < 500:
                    raise BackendError(f"HTTP {e.status_code}: {e.message}", status_code=e.status_code) from e
                last_error, last_status = f"Server error (HTTP {e.status_code})", e.status_code
            except (APITimeoutError, asyncio.TimeoutError):
                last_error, last_status = "Request timed out", None
            except APIConnectionError:
                last_error, last_status = "Cannot connect to API", None

            if attempt < max_attempts - 1:
                delay = self.config.retry_backoff_base * (2**attempt)
                logger.warning(
                    "Transient error (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt + 1,
                    max_attempts,
                    last_error,
                    delay,
                )
                if not await self._sleep(delay, token):
                    return _cancelled_response()

        raise BackendError(f"{last_error} ({max_attempts} attempts)", retryable=True, status_code=last_status)

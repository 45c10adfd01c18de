"""Serializes user messages against a single interactive session."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable

from ..models import CancellationLevel, CancellationToken, MessageStatus, QueuedMessage, make_id
from .cancellation import CancellationController

logger = logging.getLogger(__name__)

Processor = Callable[[QueuedMessage, "CancellationToken | None"], Awaitable[Any]]
Listener = Callable[[str, QueuedMessage], None]


class MessageQueue:
    """FIFO queue with exactly one message ``processing`` at a time.

    Each message starts with a fresh cancellation token. A command-level
    cancellation fails only the message in flight; a full cancellation also
    drops everything still queued.
    """

    def __init__(self, processor: Processor, cancellation: CancellationController | None = None) -> None:
        self._processor = processor
        self.cancellation = cancellation
        self._queue: deque[QueuedMessage] = deque()
        self._messages: dict[str, QueuedMessage] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._current: QueuedMessage | None = None
        self._worker: asyncio.Task[None] | None = None
        self._listeners: list[Listener] = []
        self._empty = asyncio.Event()
        self._empty.set()
        if cancellation is not None:
            cancellation.add_listener(self._on_cancellation)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Events: added, processing, completed, failed, removed."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, event: str, message: QueuedMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, message)
            except Exception:
                logger.exception("Message queue listener failed on %s", event)

    def add_message(self, message: str, options: dict[str, Any] | None = None) -> str:
        queued = QueuedMessage(id=make_id("msg"), message=message, options=dict(options or {}))
        self._queue.append(queued)
        self._messages[queued.id] = queued
        self._done[queued.id] = asyncio.Event()
        self._empty.clear()
        logger.debug("Queued message %s (%d waiting)", queued.id, len(self._queue))
        self._notify("added", queued)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())
        return queued.id

    def _settle(
        self, message: QueuedMessage, status: MessageStatus, error: str | None = None, event: str | None = None
    ) -> None:
        message.status = status
        message.error = error
        done = self._done.pop(message.id, None)
        if done is not None:
            done.set()
        self._notify(event or status.value, message)

    def remove_message(self, message_id: str) -> bool:
        """Remove a message that has not started processing."""
        for queued in self._queue:
            if queued.id == message_id:
                self._queue.remove(queued)
                self._settle(queued, MessageStatus.FAILED, "Removed from queue", event="removed")
                self._update_empty()
                return True
        return False

    def clear_queue(self) -> int:
        dropped = list(self._queue)
        self._queue.clear()
        for queued in dropped:
            self._settle(queued, MessageStatus.FAILED, "Queue cleared")
        self._update_empty()
        return len(dropped)

    def _on_cancellation(self, token: CancellationToken) -> None:
        if token.level == CancellationLevel.FULL:
            count = self.clear_queue()
            if count:
                logger.warning("Message queue cleared due to full cancellation (%d dropped)", count)

    def _update_empty(self) -> None:
        if not self._queue and self._current is None:
            self._empty.set()

    async def _drain(self) -> None:
        while self._queue:
            message = self._queue.popleft()
            token = self.cancellation.reset() if self.cancellation is not None else None
            self._current = message
            message.status = MessageStatus.PROCESSING
            self._notify("processing", message)
            try:
                message.response = await self._processor(message, token)
            except Exception as e:
                logger.warning("Processing message %s failed: %s", message.id, e)
                self._settle(message, MessageStatus.FAILED, str(e) or type(e).__name__)
            else:
                if token is not None and token.is_cancelled:
                    self._settle(message, MessageStatus.FAILED, token.reason)
                else:
                    self._settle(message, MessageStatus.COMPLETED)
            finally:
                self._current = None
        self._update_empty()

    def get_message(self, message_id: str) -> QueuedMessage | None:
        return self._messages.get(message_id)

    def get_queued_messages(self) -> list[QueuedMessage]:
        return list(self._queue)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_queued": len(self._queue),
            "is_processing": self._current is not None,
            "current_message_id": self._current.id if self._current is not None else None,
        }

    async def wait_for(self, message_id: str) -> QueuedMessage:
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(message_id)
        done = self._done.get(message_id)
        if done is not None:
            await done.wait()
        return message

    async def wait_until_empty(self) -> None:
        await self._empty.wait()

    async def close(self) -> None:
        self.clear_queue()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

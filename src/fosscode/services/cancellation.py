"""Two-level cooperative cancellation.

A first trigger cancels the current step (``command`` level). A second
trigger inside the escalation window upgrades to ``full``, which also
terminates every tracked subprocess.

Controllers form a tree: the scheduler gives each background task a child
controller so a per-task cancel or timeout only touches that task's
processes, while a full cancellation on the root reaches every child.
"""

from __future__ import annotations

import logging
import signal
import time
from contextvars import ContextVar
from typing import Any, Callable, Protocol

from ..models import CancellationLevel, CancellationToken

logger = logging.getLogger(__name__)

COMMAND_REASON = "Command cancelled by user (ESC)"
FULL_REASON = "Full cancellation requested by user (ESC ESC)"

Listener = Callable[[CancellationToken], None]


class ProcessHandle(Protocol):
    pid: int
    returncode: int | None

    def send_signal(self, sig: int) -> None: ...


_current: ContextVar[CancellationController | None] = ContextVar("fosscode_cancellation", default=None)


def current_controller() -> CancellationController | None:
    """The controller bound to the running asyncio task, if any."""
    return _current.get()


def bind_controller(controller: CancellationController | None) -> None:
    """Bind ``controller`` to the current context (asyncio tasks copy it on creation)."""
    _current.set(controller)


class CancellationController:
    def __init__(
        self,
        escalation_window: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        parent: CancellationController | None = None,
    ) -> None:
        self.escalation_window = escalation_window
        self._clock = clock
        self._parent = parent
        self._token = CancellationToken()
        self._last_trigger: float | None = None
        self._processes: set[Any] = set()
        self._listeners: list[Listener] = []
        self._children: set[CancellationController] = set()

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def process_count(self) -> int:
        return len(self._processes)

    def child(self) -> CancellationController:
        """Create a controller that follows this one's full cancellations."""
        ctrl = CancellationController(self.escalation_window, self._clock, parent=self)
        self._children.add(ctrl)
        return ctrl

    def detach(self) -> None:
        if self._parent is not None:
            self._parent._children.discard(self)

    def trigger(self) -> CancellationLevel:
        """Keypress-style trigger. Returns the level now in force."""
        now = self._clock()
        token = self._token
        if token.is_cancelled and token.level == CancellationLevel.FULL:
            return CancellationLevel.FULL
        if (
            token.is_cancelled
            and self._last_trigger is not None
            and now - self._last_trigger <= self.escalation_window
        ):
            self._last_trigger = None
            self.cancel(CancellationLevel.FULL)
            return CancellationLevel.FULL
        self._last_trigger = now
        if not token.is_cancelled:
            self.cancel(CancellationLevel.COMMAND)
        return CancellationLevel.COMMAND

    def cancel(self, level: CancellationLevel = CancellationLevel.COMMAND, reason: str | None = None) -> None:
        token = self._token
        if token.is_cancelled and token.level == CancellationLevel.FULL:
            return
        if reason is None:
            reason = COMMAND_REASON if level == CancellationLevel.COMMAND else FULL_REASON
        token._set(level, reason)
        logger.info("Cancellation requested (%s): %s", level.value, reason)

        if level == CancellationLevel.FULL:
            for ctrl in list(self._children):
                ctrl.cancel(CancellationLevel.FULL, reason)
            self.kill_all_processes()

        for listener in list(self._listeners):
            try:
                listener(token)
            except Exception:
                logger.exception("Cancellation listener failed")

    def reset(self) -> CancellationToken:
        """Start a new operation with a fresh token. Holders of the old token still see it cancelled."""
        self._token = CancellationToken()
        self._last_trigger = None
        return self._token

    def register_process(self, proc: Any) -> Callable[[], None]:
        """Track a subprocess for full-level termination. Returns an unregister callable."""
        self._processes.add(proc)
        if self._parent is not None:
            self._parent.register_process(proc)
        if self._token.is_cancelled and self._token.level == CancellationLevel.FULL:
            self._terminate(proc)

        def unregister() -> None:
            self.unregister_process(proc)

        return unregister

    def unregister_process(self, proc: Any) -> None:
        self._processes.discard(proc)
        if self._parent is not None:
            self._parent.unregister_process(proc)

    @staticmethod
    def _terminate(proc: Any) -> bool:
        if getattr(proc, "returncode", None) is not None:
            return False
        try:
            proc.send_signal(signal.SIGTERM)
        except (ProcessLookupError, OSError):
            return False
        return True

    def kill_all_processes(self) -> int:
        """Send SIGTERM to every tracked process. Returns how many were signalled."""
        procs = list(self._processes)
        killed = 0
        for proc in procs:
            if self._terminate(proc):
                killed += 1
            self.unregister_process(proc)
        if procs:
            logger.warning("Terminated %d tracked process(es)", killed)
        return killed

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

"""Tests for the two-level cancellation controller."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import MagicMock

import pytest

from fosscode.models import CancellationLevel
from fosscode.services.cancellation import (
    COMMAND_REASON,
    FULL_REASON,
    CancellationController,
    bind_controller,
    current_controller,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _proc(returncode=None) -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    return proc


class TestTrigger:
    def test_first_trigger_is_command_level(self) -> None:
        ctrl = CancellationController(clock=FakeClock())
        assert ctrl.trigger() == CancellationLevel.COMMAND
        token = ctrl.token
        assert token.is_cancelled
        assert token.level == CancellationLevel.COMMAND
        assert token.reason == COMMAND_REASON

    def test_second_trigger_inside_window_escalates(self) -> None:
        clock = FakeClock()
        ctrl = CancellationController(escalation_window=0.5, clock=clock)
        ctrl.trigger()
        clock.advance(0.3)
        assert ctrl.trigger() == CancellationLevel.FULL
        assert ctrl.token.level == CancellationLevel.FULL
        assert ctrl.token.reason == FULL_REASON

    def test_second_trigger_outside_window_stays_command(self) -> None:
        clock = FakeClock()
        ctrl = CancellationController(escalation_window=0.5, clock=clock)
        ctrl.trigger()
        clock.advance(0.8)
        assert ctrl.trigger() == CancellationLevel.COMMAND
        assert ctrl.token.level == CancellationLevel.COMMAND
        # The late press restarts the window.
        clock.advance(0.2)
        assert ctrl.trigger() == CancellationLevel.FULL

    def test_full_is_sticky(self) -> None:
        clock = FakeClock()
        ctrl = CancellationController(clock=clock)
        ctrl.cancel(CancellationLevel.FULL)
        clock.advance(10)
        assert ctrl.trigger() == CancellationLevel.FULL
        ctrl.cancel(CancellationLevel.COMMAND, "ignored")
        assert ctrl.token.reason == FULL_REASON

    def test_full_kills_processes_command_does_not(self) -> None:
        clock = FakeClock()
        ctrl = CancellationController(clock=clock)
        proc = _proc()
        ctrl.register_process(proc)
        ctrl.trigger()
        proc.send_signal.assert_not_called()
        ctrl.trigger()
        proc.send_signal.assert_called_once_with(signal.SIGTERM)
        assert ctrl.process_count == 0


class TestReset:
    def test_reset_issues_fresh_token(self) -> None:
        ctrl = CancellationController(clock=FakeClock())
        ctrl.trigger()
        old = ctrl.token
        new = ctrl.reset()
        assert new is ctrl.token
        assert new is not old
        assert not new.is_cancelled
        assert old.is_cancelled

    def test_reset_clears_escalation_window(self) -> None:
        ctrl = CancellationController(clock=FakeClock())
        ctrl.trigger()
        ctrl.reset()
        assert ctrl.trigger() == CancellationLevel.COMMAND


class TestProcesses:
    def test_register_returns_unregister(self) -> None:
        ctrl = CancellationController()
        unregister = ctrl.register_process(_proc())
        assert ctrl.process_count == 1
        unregister()
        assert ctrl.process_count == 0

    def test_kill_all_skips_exited_processes(self) -> None:
        ctrl = CancellationController()
        running, exited = _proc(), _proc(returncode=0)
        ctrl.register_process(running)
        ctrl.register_process(exited)
        assert ctrl.kill_all_processes() == 1
        exited.send_signal.assert_not_called()
        assert ctrl.process_count == 0

    def test_kill_tolerates_vanished_process(self) -> None:
        ctrl = CancellationController()
        proc = _proc()
        proc.send_signal.side_effect = ProcessLookupError
        ctrl.register_process(proc)
        assert ctrl.kill_all_processes() == 0

    def test_register_after_full_cancel_terminates_immediately(self) -> None:
        ctrl = CancellationController()
        ctrl.cancel(CancellationLevel.FULL)
        proc = _proc()
        ctrl.register_process(proc)
        proc.send_signal.assert_called_once_with(signal.SIGTERM)


class TestChildren:
    def test_full_cascades_to_children(self) -> None:
        root = CancellationController()
        child = root.child()
        proc = _proc()
        child.register_process(proc)
        assert root.process_count == 1
        root.cancel(CancellationLevel.FULL)
        assert child.token.level == CancellationLevel.FULL
        assert child.token.reason == FULL_REASON
        proc.send_signal.assert_called_with(signal.SIGTERM)

    def test_command_does_not_cascade(self) -> None:
        root = CancellationController()
        child = root.child()
        root.cancel(CancellationLevel.COMMAND)
        assert not child.token.is_cancelled

    def test_child_cancel_does_not_touch_parent_or_siblings(self) -> None:
        root = CancellationController()
        a, b = root.child(), root.child()
        proc_b = _proc()
        b.register_process(proc_b)
        a.cancel(CancellationLevel.FULL, "task a timed out")
        assert not root.token.is_cancelled
        assert not b.token.is_cancelled
        proc_b.send_signal.assert_not_called()

    def test_detached_child_no_longer_follows(self) -> None:
        root = CancellationController()
        child = root.child()
        child.detach()
        root.cancel(CancellationLevel.FULL)
        assert not child.token.is_cancelled


class TestListeners:
    def test_listener_called_and_removable(self) -> None:
        ctrl = CancellationController()
        seen = []
        remove = ctrl.add_listener(lambda token: seen.append(token.level))
        ctrl.cancel(CancellationLevel.COMMAND)
        remove()
        ctrl.reset()
        ctrl.cancel(CancellationLevel.FULL)
        assert seen == [CancellationLevel.COMMAND]

    def test_failing_listener_does_not_block_others(self) -> None:
        ctrl = CancellationController()
        seen = []

        def bad(token):
            raise RuntimeError("listener bug")

        ctrl.add_listener(bad)
        ctrl.add_listener(lambda token: seen.append(token.reason))
        ctrl.cancel(CancellationLevel.COMMAND, "custom")
        assert seen == ["custom"]


class TestTokenWait:
    @pytest.mark.asyncio
    async def test_wait_resolves_on_cancel(self) -> None:
        ctrl = CancellationController()
        token = ctrl.token
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        ctrl.cancel()
        await asyncio.wait_for(waiter, timeout=1)


class TestCurrentController:
    @pytest.mark.asyncio
    async def test_bound_per_task(self) -> None:
        ctrl = CancellationController()

        async def inner() -> CancellationController | None:
            bind_controller(ctrl)
            return current_controller()

        assert await asyncio.create_task(inner()) is ctrl
        assert current_controller() is None

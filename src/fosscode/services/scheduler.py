"""Background task scheduler with bounded concurrency.

Tasks wait in a priority queue ordered by (priority, arrival). A dispatch
step runs synchronously whenever a task is added, finishes, or the
concurrency ceiling is raised, so a freed slot is refilled without any
polling delay. Each running task gets its own asyncio.Task and a child
CancellationController: cancelling or timing out one task terminates only
that task's subprocesses, while a full cancellation on the root controller
reaches all of them.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable

from ..config import SchedulerConfig
from ..models import (
    BackgroundTask,
    CancellationLevel,
    CancellationToken,
    TaskOutput,
    TaskPriority,
    TaskStatus,
    make_id,
)
from .cancellation import CancellationController, bind_controller

logger = logging.getLogger(__name__)

OutputCallback = Callable[[TaskOutput], None]
Listener = Callable[[str, BackgroundTask], None]

CANCELLED_REASON = "Task cancelled"


class TaskContext:
    """Handle passed to an executor for reporting and cooperative cancellation."""

    def __init__(self, scheduler: BackgroundTaskScheduler, task: BackgroundTask, cancellation: CancellationController):
        self._scheduler = scheduler
        self.task = task
        self.cancellation = cancellation

    @property
    def token(self) -> CancellationToken:
        return self.cancellation.token

    def emit(self, type: str, content: str) -> None:
        self._scheduler.add_output(self.task.id, type, content)

    def update_progress(self, progress: int) -> bool:
        return self._scheduler.update_progress(self.task.id, progress)

    def register_process(self, proc: Any) -> Callable[[], None]:
        return self.cancellation.register_process(proc)


Executor = Callable[[TaskContext], Awaitable[Any]]


class BackgroundTaskScheduler:
    def __init__(
        self,
        max_concurrent: int = 3,
        max_history: int = 50,
        default_timeout: float | None = None,
        max_retries: int = 0,
        cancellation: CancellationController | None = None,
        default_executor: Executor | None = None,
    ) -> None:
        self.max_concurrent = max(1, max_concurrent)
        self.max_history = max_history
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.default_executor = default_executor
        self.cancellation = cancellation

        self._tasks: dict[str, BackgroundTask] = {}
        self._queue: list[tuple[int, int, str]] = []
        self._arrival = itertools.count()
        self._requeue = itertools.count(1)
        self._running: dict[str, asyncio.Task[None]] = {}
        self._controllers: dict[str, CancellationController] = {}
        self._executors: dict[str, Executor] = {}
        self._subscribers: dict[str, list[OutputCallback]] = {}
        self._listeners: list[Listener] = []
        self._history: deque[str] = deque()
        self._done: dict[str, asyncio.Event] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._dispatching = False
        self._remove_cancel_listener: Callable[[], None] | None = None
        if cancellation is not None:
            self._remove_cancel_listener = cancellation.add_listener(self._on_cancellation)

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        cancellation: CancellationController | None = None,
        default_executor: Executor | None = None,
    ) -> BackgroundTaskScheduler:
        return cls(
            max_concurrent=config.max_concurrent,
            max_history=config.max_history,
            default_timeout=config.default_timeout,
            max_retries=config.max_retries,
            cancellation=cancellation,
            default_executor=default_executor,
        )

    # -- events -----------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Lifecycle events: added, started, progress, completed, failed, cancelled, retried."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, event: str, task: BackgroundTask) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, task)
            except Exception:
                logger.exception("Task listener failed on %s", event)

    def subscribe(self, task_id: str, callback: OutputCallback) -> Callable[[], None]:
        """Receive a task's output events. Returns an unsubscribe callable."""
        self._subscribers.setdefault(task_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(task_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def add_output(self, task_id: str, type: str, content: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        output = TaskOutput(type=type, content=content)
        task.output.append(output)
        for callback in list(self._subscribers.get(task_id, ())):
            try:
                callback(output)
            except Exception:
                logger.exception("Output subscriber failed for task %s", task_id)
        return True

    # -- creation ---------------------------------------------------------

    def add_task(
        self,
        name: str,
        description: str,
        config: dict[str, Any] | None = None,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        parent_task_id: str | None = None,
        *,
        executor: Executor | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        subscriber: OutputCallback | None = None,
    ) -> BackgroundTask:
        task = BackgroundTask(
            id=make_id("task"),
            name=name,
            description=description,
            config=dict(config or {}),
            priority=TaskPriority(priority),
            timeout=timeout if timeout is not None else self.default_timeout,
            parent_task_id=parent_task_id,
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        self._tasks[task.id] = task
        self._done[task.id] = asyncio.Event()
        if executor is not None:
            self._executors[task.id] = executor
        if subscriber is not None:
            self.subscribe(task.id, subscriber)
        if parent_task_id is not None:
            parent = self._tasks.get(parent_task_id)
            if parent is not None:
                parent.child_task_ids.append(task.id)

        heapq.heappush(self._queue, (task.priority.rank, next(self._arrival), task.id))
        self._idle.clear()
        logger.debug("Queued task %s (%s, %s)", task.id, name, task.priority.value)
        self._notify("added", task)
        self._dispatch()
        return task

    def create_task(
        self,
        name: str,
        description: str,
        executor: Executor,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        **kwargs: Any,
    ) -> BackgroundTask:
        return self.add_task(name, description, priority=priority, executor=executor, **kwargs)

    def register_executor(self, task_id: str, executor: Executor) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.QUEUED:
            return False
        self._executors[task_id] = executor
        return True

    # -- dispatch ---------------------------------------------------------

    def _dispatch(self) -> None:
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while len(self._running) < self.max_concurrent and self._queue:
                _, _, task_id = heapq.heappop(self._queue)
                task = self._tasks.get(task_id)
                if task is None or task.status != TaskStatus.QUEUED:
                    continue  # cancelled or cleared while queued
                self._start(task)
        finally:
            self._dispatching = False
            self._update_idle()

    def _start(self, task: BackgroundTask) -> None:
        executor = self._executors.get(task.id) or self.default_executor
        task.status = TaskStatus.RUNNING
        task.started_at = time.time()
        if executor is None:
            self._finish(task, TaskStatus.FAILED, error=f"No executor registered for task {task.id}")
            return

        controller = self.cancellation.child() if self.cancellation is not None else CancellationController()
        self._controllers[task.id] = controller
        ctx = TaskContext(self, task, controller)
        self._running[task.id] = asyncio.get_running_loop().create_task(self._run(task, executor, ctx))
        logger.info("Started task %s (%s)", task.id, task.name)
        self._notify("started", task)

    async def _run(self, task: BackgroundTask, executor: Executor, ctx: TaskContext) -> None:
        bind_controller(ctx.cancellation)
        me = asyncio.current_task()
        try:
            if task.timeout is not None:
                result = await asyncio.wait_for(executor(ctx), timeout=task.timeout)
            else:
                result = await executor(ctx)
        except asyncio.CancelledError:
            if self._running.get(task.id) is me:
                self._finish(task, TaskStatus.CANCELLED, error=ctx.token.reason or CANCELLED_REASON)
            return
        except asyncio.TimeoutError:
            if self._running.get(task.id) is not me:
                return
            message = f"Task timed out after {int(task.timeout * 1000)}ms"
            ctx.cancellation.cancel(CancellationLevel.FULL, message)
            logger.warning("Task %s: %s", task.id, message)
            self._fail(task, message)
            return
        except Exception as e:
            if self._running.get(task.id) is not me:
                return
            logger.warning("Task %s failed: %s", task.id, e, exc_info=True)
            self._fail(task, str(e) or type(e).__name__)
            return

        if self._running.get(task.id) is not me:
            return
        if ctx.token.is_cancelled:
            self._finish(task, TaskStatus.CANCELLED, error=ctx.token.reason or CANCELLED_REASON)
        else:
            self._finish(task, TaskStatus.COMPLETED, result=result)

    def _release(self, task: BackgroundTask) -> None:
        self._running.pop(task.id, None)
        controller = self._controllers.pop(task.id, None)
        if controller is not None:
            controller.detach()

    def _fail(self, task: BackgroundTask, error: str) -> None:
        if task.retry_count < task.max_retries:
            task.retry_count += 1
            self._release(task)
            task.status = TaskStatus.QUEUED
            task.started_at = None
            task.progress = 0
            # Retries go to the head of their priority band.
            heapq.heappush(self._queue, (task.priority.rank, -next(self._requeue), task.id))
            logger.info("Retrying task %s (attempt %d/%d)", task.id, task.retry_count + 1, task.max_retries + 1)
            self._notify("retried", task)
            self._dispatch()
            return
        self._finish(task, TaskStatus.FAILED, error=error)

    def _finish(
        self, task: BackgroundTask, status: TaskStatus, error: str | None = None, result: Any = None
    ) -> None:
        if task.status.terminal:
            return
        self._release(task)
        task.status = status
        task.completed_at = time.time()
        task.error = error
        if status == TaskStatus.COMPLETED:
            task.progress = 100
            task.result = result
        self._executors.pop(task.id, None)
        self._record_history(task)
        logger.info("Task %s %s%s", task.id, status.value, f": {error}" if error else "")
        self._notify(status.value, task)
        done = self._done.get(task.id)
        if done is not None:
            done.set()
        self._dispatch()

    def _record_history(self, task: BackgroundTask) -> None:
        self._history.append(task.id)
        while len(self._history) > self.max_history:
            evicted = self._history.popleft()
            self._forget(evicted)

    def _forget(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)
        self._subscribers.pop(task_id, None)
        self._executors.pop(task_id, None)
        self._done.pop(task_id, None)

    def _update_idle(self) -> None:
        if not self._running and not any(
            t.status == TaskStatus.QUEUED for t in self._tasks.values()
        ):
            self._idle.set()
        else:
            self._idle.clear()

    # -- control ----------------------------------------------------------

    def cancel_task(self, task_id: str, reason: str = CANCELLED_REASON) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status.terminal:
            return False

        if task.status == TaskStatus.RUNNING:
            controller = self._controllers.get(task_id)
            if controller is not None:
                controller.cancel(CancellationLevel.FULL, reason)
            runner = self._running.get(task_id)
            self._finish(task, TaskStatus.CANCELLED, error=reason)
            if runner is not None:
                runner.cancel()
        else:
            self._finish(task, TaskStatus.CANCELLED, error=reason)

        for child_id in list(task.child_task_ids):
            self.cancel_task(child_id, reason)
        return True

    def cancel_child_tasks(self, parent_task_id: str) -> int:
        count = 0
        for child in self.get_child_tasks(parent_task_id):
            if child.status.terminal:
                count += self.cancel_child_tasks(child.id)
            elif self.cancel_task(child.id):
                count += 1
        return count

    def _on_cancellation(self, token: CancellationToken) -> None:
        if token.level != CancellationLevel.FULL:
            return
        reason = f"Cancelled: {token.reason}"
        pending = [t for t in self._tasks.values() if not t.status.terminal]
        for task in pending:
            self.cancel_task(task.id, reason)
        if pending:
            logger.warning("Full cancellation stopped %d background task(s)", len(pending))

    def update_progress(self, task_id: str, progress: int) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return False
        task.progress = max(0, min(100, int(progress)))
        self._notify("progress", task)
        return True

    def set_max_concurrent(self, value: int) -> None:
        self.max_concurrent = max(1, value)
        self._dispatch()

    def clear_queue(self) -> int:
        queued = [t for t in self._tasks.values() if t.status == TaskStatus.QUEUED]
        self._dispatching = True
        try:
            for task in queued:
                self._finish(task, TaskStatus.CANCELLED, error="Queue cleared")
        finally:
            self._dispatching = False
        self._queue.clear()
        self._update_idle()
        return len(queued)

    def clear_history(self) -> int:
        count = len(self._history)
        while self._history:
            self._forget(self._history.popleft())
        return count

    async def shutdown(self) -> None:
        """Cancel everything and wait for runners to unwind."""
        self.clear_queue()
        runners = list(self._running.values())
        for task_id in list(self._running):
            self.cancel_task(task_id, "Scheduler shut down")
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        if self._remove_cancel_listener is not None:
            self._remove_cancel_listener()
            self._remove_cancel_listener = None

    # -- queries ----------------------------------------------------------

    def get_task(self, task_id: str) -> BackgroundTask | None:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> list[BackgroundTask]:
        return list(self._tasks.values())

    def get_tasks_by_status(self, status: TaskStatus | str) -> list[BackgroundTask]:
        status = TaskStatus(status)
        tasks = [t for t in self._tasks.values() if t.status == status]
        if status == TaskStatus.QUEUED:
            order = {task_id: (rank, seq) for rank, seq, task_id in self._queue}
            tasks.sort(key=lambda t: order.get(t.id, (t.priority.rank, 0)))
        return tasks

    def get_child_tasks(self, parent_task_id: str) -> list[BackgroundTask]:
        return [t for t in self._tasks.values() if t.parent_task_id == parent_task_id]

    def get_task_output(self, task_id: str) -> list[TaskOutput]:
        task = self._tasks.get(task_id)
        return list(task.output) if task is not None else []

    @property
    def running_count(self) -> int:
        return len(self._running)

    def get_stats(self) -> dict[str, Any]:
        counts = {status: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status] += 1
        return {
            "total_queued": counts[TaskStatus.QUEUED],
            "total_running": counts[TaskStatus.RUNNING],
            "total_completed": counts[TaskStatus.COMPLETED],
            "total_failed": counts[TaskStatus.FAILED],
            "total_cancelled": counts[TaskStatus.CANCELLED],
            "max_concurrent": self.max_concurrent,
            "is_processing": bool(self._running) or counts[TaskStatus.QUEUED] > 0,
        }

    async def wait_for(self, task_id: str) -> BackgroundTask:
        """Wait until the task reaches a terminal status and return it."""
        task = self._tasks.get(task_id)
        done = self._done.get(task_id)
        if task is None or done is None:
            raise KeyError(task_id)
        await done.wait()
        return task

    async def wait_idle(self) -> None:
        await self._idle.wait()

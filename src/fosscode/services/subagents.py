"""Subagents: conversation orchestrators run as background tasks."""

from __future__ import annotations

import asyncio
import logging

from ..config import AgentConfig
from ..models import BackgroundTask, Message, Subagent, SubagentStatus, TaskPriority, TaskStatus, make_id
from ..tools import ToolRegistry
from .agent_loop import ConversationOrchestrator
from .ai_service import ModelBackend
from .scheduler import BackgroundTaskScheduler, Executor, OutputCallback, TaskContext

logger = logging.getLogger(__name__)

SUBAGENT_SYSTEM_PROMPT = (
    "You are a sub-agent executing a specific task. Follow these rules strictly:\n"
    "- Complete the task described in the user message. Do not deviate.\n"
    "- You have access to file and shell tools. Use them to accomplish your task.\n"
    "- All safety policies apply. Do not attempt to circumvent security controls.\n"
    "- Keep your response concise and focused on results."
)

DEFAULT_INSTRUCTIONS = "Work independently and report a short summary of what you did and found."


class SubagentManager:
    """Spawns subagents on a scheduler and keeps each one's conversation for follow-ups."""

    def __init__(
        self,
        scheduler: BackgroundTaskScheduler,
        backend: ModelBackend,
        registry: ToolRegistry,
        *,
        agent_config: AgentConfig | None = None,
        system_prompt: str = SUBAGENT_SYSTEM_PROMPT,
    ) -> None:
        self.scheduler = scheduler
        self.backend = backend
        self.registry = registry
        self.agent_config = agent_config
        self.system_prompt = system_prompt
        self._subagents: dict[str, Subagent] = {}
        self._orchestrators: dict[str, ConversationOrchestrator] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._by_task: dict[str, str] = {}
        self._terminated: set[str] = set()
        scheduler.add_listener(self._on_task_event)

    def _on_task_event(self, event: str, task: BackgroundTask) -> None:
        subagent_id = self._by_task.get(task.id)
        if subagent_id is None or subagent_id in self._terminated:
            return
        subagent = self._subagents[subagent_id]
        if task.id != subagent.task_id:
            return
        if event == "completed":
            subagent.status = SubagentStatus.COMPLETED
        elif event in ("failed", "cancelled"):
            subagent.status = SubagentStatus.FAILED
        elif event in ("added", "started", "retried"):
            subagent.status = SubagentStatus.ACTIVE

    def _executor(self, subagent: Subagent, message: str) -> Executor:
        orchestrator = self._orchestrators[subagent.id]

        async def run(ctx: TaskContext) -> str:
            ctx.emit("progress", "Subagent started processing...")
            result = None
            async for event in orchestrator.run_turn(message, token=ctx.token):
                if event.kind == "tool_call_start":
                    ctx.emit("progress", f"Running tool: {event.data['tool_name']}")
                elif event.kind == "tool_call_end" and event.data["status"] != "success":
                    ctx.emit("error", f"{event.data['tool_name']}: {event.data['output'].get('error', '')}")
                elif event.kind == "done":
                    result = event.data["result"]
            if result is None:
                raise RuntimeError("Subagent turn ended without a result")
            subagent.last_response = result.content
            ctx.emit("result", result.content)
            return result.content

        return run

    def spawn_subagent(
        self,
        name: str,
        description: str,
        instructions: str | None = None,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        timeout: float | None = None,
        parent_task_id: str | None = None,
        subscriber: OutputCallback | None = None,
    ) -> Subagent:
        """Create a subagent and queue its first turn (``description`` as the user message)."""
        subagent_id = make_id("subagent")
        instructions = instructions or DEFAULT_INSTRUCTIONS
        self._orchestrators[subagent_id] = ConversationOrchestrator(
            self.backend,
            self.registry,
            config=self.agent_config,
            system_prompt=self.system_prompt,
            initial_messages=(Message(role="system", content=instructions),),
        )
        subagent = Subagent(id=subagent_id, name=name, instructions=instructions, task_id="")
        self._subagents[subagent_id] = subagent
        self._locks[subagent_id] = asyncio.Lock()

        task = self.scheduler.add_task(
            f"Subagent: {name}",
            description,
            config={"subagent_id": subagent_id},
            priority=priority,
            parent_task_id=parent_task_id,
            executor=self._executor(subagent, description),
            timeout=timeout,
            subscriber=subscriber,
        )
        # add_task may already have started (or even failed) the task; mirror it here.
        subagent.task_id = task.id
        self._by_task[task.id] = subagent_id
        if task.status == TaskStatus.FAILED:
            subagent.status = SubagentStatus.FAILED
        logger.info("Spawned subagent %s as task %s", subagent_id, task.id)
        return subagent

    def _require(self, subagent_id: str) -> Subagent:
        subagent = self._subagents.get(subagent_id)
        if subagent is None:
            raise ValueError(f"Subagent {subagent_id} not found")
        return subagent

    def _check_usable(self, subagent: Subagent) -> None:
        if subagent.id in self._terminated or subagent.status == SubagentStatus.FAILED:
            raise ValueError(f"Subagent {subagent.id} is not active")

    async def send_to_subagent(self, subagent_id: str, message: str, timeout: float | None = None) -> str:
        """Run a follow-up turn on the subagent's conversation and return its answer.

        Waits for any turn still in flight. Raises ValueError if the subagent
        is unknown, failed or terminated, and RuntimeError if the turn fails.
        """
        subagent = self._require(subagent_id)
        self._check_usable(subagent)
        async with self._locks[subagent_id]:
            current = self.scheduler.get_task(subagent.task_id)
            if current is not None and not current.status.terminal:
                await self.scheduler.wait_for(current.id)
            self._check_usable(subagent)

            task = self.scheduler.add_task(
                f"Subagent: {subagent.name} (follow-up)",
                message,
                config={"subagent_id": subagent_id},
                executor=self._executor(subagent, message),
                timeout=timeout,
            )
            subagent.task_id = task.id
            self._by_task[task.id] = subagent_id
            subagent.status = SubagentStatus.ACTIVE
            finished = await self.scheduler.wait_for(task.id)

        if finished.status != TaskStatus.COMPLETED:
            raise RuntimeError(finished.error or f"Subagent {subagent_id} {finished.status.value}")
        return str(finished.result)

    def get_subagent(self, subagent_id: str) -> Subagent | None:
        return self._subagents.get(subagent_id)

    def get_history(self, subagent_id: str) -> tuple[Message, ...]:
        self._require(subagent_id)
        return self._orchestrators[subagent_id].history

    def list_subagents(self) -> list[Subagent]:
        return list(self._subagents.values())

    def get_active_subagents(self) -> list[Subagent]:
        return [s for s in self._subagents.values() if s.status == SubagentStatus.ACTIVE]

    def terminate_subagent(self, subagent_id: str) -> bool:
        subagent = self._subagents.get(subagent_id)
        if subagent is None or subagent_id in self._terminated:
            return False
        self._terminated.add(subagent_id)
        self.scheduler.cancel_task(subagent.task_id, f"Subagent {subagent_id} terminated")
        subagent.status = SubagentStatus.COMPLETED
        logger.info("Terminated subagent %s", subagent_id)
        return True

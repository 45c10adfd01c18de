"""Interactive REPL: prompt_toolkit input fed through the message queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import AppConfig
from ..models import CancellationLevel, CancellationToken, QueuedMessage, TaskStatus
from ..services.agent_loop import ProviderError, TurnResult
from ..services.ai_service import ModelBackend
from ..services.message_queue import MessageQueue
from . import renderer
from .session import CliSession, build_session

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:
  /tasks               list background tasks
  /spawn <description> start a subagent in the background
  /send <id> <msg>     send a follow-up message to a subagent
  /cancel <task id>    cancel a background task
  /clear               reset the conversation
  /quit                exit
Ctrl-C or Esc cancels the running command; press twice quickly to cancel everything."""


class Repl:
    """Owns the queue and command handling for one interactive session."""

    def __init__(self, session: CliSession) -> None:
        self.session = session
        self.queue = MessageQueue(self._process, session.cancellation)
        self.queue.add_listener(self._on_message_event)
        self._background: set[asyncio.Task[Any]] = set()
        self.exit_requested = False

    @property
    def busy(self) -> bool:
        return self.queue.get_stats()["is_processing"] or self.session.scheduler.running_count > 0

    async def _process(self, message: QueuedMessage, token: CancellationToken | None) -> str:
        result: TurnResult | None = None
        try:
            async for event in self.session.orchestrator.run_turn(message.message, token=token):
                if event.kind == "done":
                    result = event.data["result"]
                else:
                    renderer.render_event(event)
        except ProviderError as e:
            renderer.render_error(str(e))
            raise
        if result is None:
            raise RuntimeError("Turn ended without a result")
        renderer.render_result(result)
        return result.content

    def _on_message_event(self, event: str, message: QueuedMessage) -> None:
        if event == "added" and self.queue.get_stats()["is_processing"]:
            renderer.render_info(f"Message queued ({self.queue.get_stats()['total_queued']} waiting)")
        elif event == "failed" and message.error == "Queue cleared":
            renderer.render_info(f"Dropped queued message: {message.message[:60]}")

    def interrupt(self) -> CancellationLevel:
        level = self.session.cancellation.trigger()
        if level == CancellationLevel.FULL:
            renderer.render_info("Cancelling everything (queued messages and background tasks)")
        else:
            renderer.render_info("Cancelling current command (press again to cancel everything)")
        return level

    def _spawn_in_background(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_to_subagent(self, subagent_id: str, message: str) -> None:
        try:
            answer = await self.session.subagents.send_to_subagent(subagent_id, message)
        except (ValueError, RuntimeError) as e:
            renderer.render_error(str(e))
            return
        renderer.render_info(f"[{subagent_id}] {answer}")

    def handle_command(self, text: str) -> bool:
        """Run a slash command. Returns False if ``text`` is not a command."""
        if not text.startswith("/"):
            return False
        command, _, rest = text.partition(" ")
        rest = rest.strip()
        session = self.session

        if command in ("/quit", "/exit"):
            self.exit_requested = True
        elif command == "/help":
            renderer.render_info(HELP_TEXT)
        elif command == "/tasks":
            renderer.render_tasks(session.scheduler.get_all_tasks())
        elif command == "/spawn":
            if not rest:
                renderer.render_error("Usage: /spawn <description>")
                return True
            name = rest if len(rest) <= 40 else rest[:37] + "..."
            subagent = session.subagents.spawn_subagent(
                name,
                rest,
                subscriber=lambda output: renderer.render_task_output(name, output),
            )
            renderer.render_info(f"Spawned {subagent.id} (task {subagent.task_id})")
        elif command == "/send":
            subagent_id, _, message = rest.partition(" ")
            if not subagent_id or not message.strip():
                renderer.render_error("Usage: /send <id> <message>")
                return True
            self._spawn_in_background(self._send_to_subagent(subagent_id, message.strip()))
        elif command == "/cancel":
            if not rest:
                renderer.render_error("Usage: /cancel <task id>")
            elif session.scheduler.cancel_task(rest):
                renderer.render_info(f"Cancelled {rest}")
            else:
                renderer.render_error(f"No active task {rest}")
        elif command == "/clear":
            if session.orchestrator.is_running:
                renderer.render_error("Cannot clear while a message is being processed")
            else:
                session.orchestrator.reset()
                renderer.render_info("Conversation cleared")
        else:
            renderer.render_error(f"Unknown command {command}. Type /help for a list.")
        return True

    def submit(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if not self.handle_command(text):
            self.queue.add_message(text)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.queue.close()
        await self.session.close()


async def run_repl(config: AppConfig, backend: ModelBackend | None = None) -> None:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.filters import Condition
    from prompt_toolkit.key_binding import KeyBindings
    from prompt_toolkit.patch_stdout import patch_stdout

    repl = Repl(build_session(config, backend=backend))
    kb = KeyBindings()

    @kb.add("c-c")
    def _ctrl_c(event: Any) -> None:
        if repl.busy:
            repl.interrupt()
        else:
            event.app.current_buffer.reset()

    @kb.add("escape", filter=Condition(lambda: repl.busy))
    def _escape(event: Any) -> None:
        repl.interrupt()

    prompt_session: PromptSession[str] = PromptSession(key_bindings=kb)
    renderer.render_info(f"fosscode in {repl.session.sandbox.working_dir}. Type /help for commands.")

    with patch_stdout():
        renderer.use_stdout_console()
        try:
            while not repl.exit_requested:
                try:
                    text = await prompt_session.prompt_async("> ")
                except EOFError:
                    break
                except KeyboardInterrupt:
                    continue
                repl.submit(text)
        finally:
            running = repl.session.scheduler.get_tasks_by_status(TaskStatus.RUNNING)
            if running:
                logger.info("Cancelling %d background tasks on exit", len(running))
            await repl.close()

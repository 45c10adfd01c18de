"""Wires the services one CLI session needs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import AppConfig
from ..services.agent_loop import ConversationOrchestrator
from ..services.ai_service import AIService, ModelBackend
from ..services.cancellation import CancellationController
from ..services.scheduler import BackgroundTaskScheduler
from ..services.subagents import SubagentManager
from ..tools import ToolRegistry, register_default_tools
from ..tools.security import SecuritySandbox

logger = logging.getLogger(__name__)


@dataclass
class CliSession:
    config: AppConfig
    sandbox: SecuritySandbox
    registry: ToolRegistry
    cancellation: CancellationController
    backend: ModelBackend
    orchestrator: ConversationOrchestrator
    scheduler: BackgroundTaskScheduler
    subagents: SubagentManager

    async def close(self) -> None:
        await self.scheduler.shutdown()
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()


def build_session(config: AppConfig, backend: ModelBackend | None = None) -> CliSession:
    """Build a session from config. ``backend`` defaults to an AIService for ``config.ai``."""
    sandbox = SecuritySandbox.from_config(config.sandbox, working_dir=config.working_dir)
    cancellation = CancellationController(escalation_window=config.cancellation.escalation_window)
    registry = ToolRegistry(read_only=config.read_only)
    register_default_tools(registry, sandbox, cancellation)
    if backend is None:
        backend = AIService(config.ai)

    orchestrator = ConversationOrchestrator(
        backend,
        registry,
        config=config.agent,
        system_prompt=config.ai.system_prompt,
        cancellation=cancellation,
        mode="plan" if config.read_only else "code",
    )
    scheduler = BackgroundTaskScheduler.from_config(config.scheduler, cancellation=cancellation)
    subagents = SubagentManager(scheduler, backend, registry, agent_config=config.agent)
    logger.debug(
        "Session ready: %d tools, working dir %s%s",
        registry.get_tool_count(),
        sandbox.working_dir,
        " (read-only)" if config.read_only else "",
    )
    return CliSession(
        config=config,
        sandbox=sandbox,
        registry=registry,
        cancellation=cancellation,
        backend=backend,
        orchestrator=orchestrator,
        scheduler=scheduler,
        subagents=subagents,
    )

"""Shell command execution tool."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ..models import ToolResult
from ..services.cancellation import current_controller
from . import ParameterSpec, Tool
from .security import SecuritySandbox, sanitize_command

if TYPE_CHECKING:
    from ..services.cancellation import CancellationController

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 100_000
_DEFAULT_TIMEOUT = 120
_MAX_TIMEOUT = 600


def _clip(text: str) -> str:
    if len(text) > _MAX_OUTPUT:
        return text[:_MAX_OUTPUT] + "\n... (truncated)"
    return text


class BashTool(Tool):
    name = "bash"
    description = (
        "Execute a shell command in the working directory and return stdout, stderr and exit code. "
        "Default timeout is 120 seconds."
    )
    parameters = (
        ParameterSpec("command", "string", "The shell command to execute", required=True),
        ParameterSpec("timeout", "number", "Timeout in seconds (max 600)", default=_DEFAULT_TIMEOUT),
    )

    def __init__(self, sandbox: SecuritySandbox, cancellation: CancellationController | None = None) -> None:
        self.sandbox = sandbox
        self.cancellation = cancellation

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        command, error = sanitize_command(params["command"])
        if error:
            return ToolResult.fail(error, exit_code=-1)
        if not command.strip():
            return ToolResult.fail("Command must not be empty", exit_code=-1)

        timeout = min(max(1, int(params["timeout"])), _MAX_TIMEOUT)
        controller = current_controller() or self.cancellation
        if controller is not None and controller.token.is_cancelled:
            return ToolResult.fail("Cancelled before the command started", exit_code=-1)

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.sandbox.working_dir,
            )
        except OSError as e:
            return ToolResult.fail(str(e), exit_code=-1)

        unregister = controller.register_process(proc) if controller is not None else None
        try:
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.info("Command timed out after %ds: %s", timeout, command[:100])
                return ToolResult.fail(f"Command timed out after {timeout}s", exit_code=-1)
            except asyncio.CancelledError:
                if proc.returncode is None:
                    proc.kill()
                raise
        finally:
            if unregister is not None:
                unregister()

        exit_code = proc.returncode if proc.returncode is not None else -1
        data = {
            "stdout": _clip(stdout.decode("utf-8", errors="replace")),
            "stderr": _clip(stderr.decode("utf-8", errors="replace")),
            "exit_code": exit_code,
        }
        if exit_code < 0:
            return ToolResult(success=False, data=data, error=f"Command terminated by signal {-exit_code}")
        if exit_code != 0:
            return ToolResult(success=False, data=data, error=f"Command exited with code {exit_code}")
        return ToolResult.ok(data)

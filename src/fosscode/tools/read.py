"""Read file contents tool."""

from __future__ import annotations

from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox

_MAX_OUTPUT = 100_000


class ReadTool(Tool):
    name = "read"
    description = "Read the contents of a file. Returns numbered lines."
    parameters = (
        ParameterSpec("path", "string", "File path (relative to working directory or absolute)", required=True),
        ParameterSpec("offset", "number", "Line number to start reading from (1-based)", default=1),
        ParameterSpec("limit", "number", "Maximum number of lines to read"),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        try:
            resolved = await self.sandbox.validate_file_operation(params["path"], "read")
        except SandboxError as e:
            return ToolResult.fail(str(e))

        try:
            with open(resolved, encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError as e:
            return ToolResult.fail(str(e))

        start = max(0, int(params["offset"]) - 1)
        limit = params["limit"]
        end = start + max(0, int(limit)) if limit is not None else len(lines)
        selected = lines[start:end]

        numbered = [f"{i:>6}\t{line.rstrip()}" for i, line in enumerate(selected, start=start + 1)]
        content = "\n".join(numbered)
        if len(content) > _MAX_OUTPUT:
            content = content[:_MAX_OUTPUT] + "\n... (truncated)"

        return ToolResult.ok(content, path=str(resolved), total_lines=len(lines), lines_shown=len(selected))

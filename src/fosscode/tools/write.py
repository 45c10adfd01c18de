"""Write/create file tool."""

from __future__ import annotations

import os
from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox


class WriteTool(Tool):
    name = "write"
    description = "Write content to a file. Creates parent directories if needed. Overwrites existing files."
    parameters = (
        ParameterSpec("path", "string", "File path (relative to working directory or absolute)", required=True),
        ParameterSpec("content", "string", "The content to write to the file", required=True),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        try:
            resolved = await self.sandbox.validate_file_operation(params["path"], "write")
        except SandboxError as e:
            return ToolResult.fail(str(e))

        content = params["content"]
        try:
            os.makedirs(resolved.parent, exist_ok=True)
            with open(resolved, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            return ToolResult.fail(str(e))
        return ToolResult.ok(f"Wrote {resolved}", path=str(resolved), bytes_written=len(content.encode("utf-8")))

"""File pattern matching tool using glob."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox

_MAX_RESULTS = 500


class GlobTool(Tool):
    name = "glob"
    description = "Find files matching a glob pattern. Results are sorted by modification time, newest first."
    parameters = (
        ParameterSpec("pattern", "string", 'Glob pattern (e.g. "**/*.py", "src/**/*.ts")', required=True),
        ParameterSpec("path", "string", "Directory to search in. Defaults to the working directory.", default="."),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        pattern = params["pattern"]
        if not pattern or "\x00" in pattern:
            return ToolResult.fail("Invalid glob pattern")
        if ".." in Path(pattern).parts or Path(pattern).is_absolute():
            return ToolResult.fail("Glob pattern must be relative and must not contain '..'")
        try:
            base = await self.sandbox.validate_directory_operation(params["path"])
        except SandboxError as e:
            return ToolResult.fail(str(e))

        try:
            matches = sorted(
                (m for m in base.glob(pattern) if m.is_file()),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
        except (OSError, ValueError):
            return ToolResult.fail("Search failed: unable to list directory contents")

        # Symlinks may point outside the sandbox.
        files = [str(m.relative_to(base)) for m in matches if self.sandbox.is_path_allowed(str(m))]
        return ToolResult.ok(
            {"files": files[:_MAX_RESULTS], "count": min(len(files), _MAX_RESULTS)},
            truncated=len(files) > _MAX_RESULTS,
        )

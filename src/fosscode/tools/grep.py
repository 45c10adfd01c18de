"""Regex file search tool."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox

_DEFAULT_MAX_RESULTS = 200


def _search_file(file_path: Path, regex: re.Pattern[str]) -> list[tuple[int, str]]:
    try:
        text = file_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [(i + 1, line) for i, line in enumerate(text.splitlines()) if regex.search(line)]


class GrepTool(Tool):
    name = "grep"
    description = "Search file contents with a regular expression. Returns file, line number and line text."
    parameters = (
        ParameterSpec("pattern", "string", "Regex pattern to search for", required=True),
        ParameterSpec("path", "string", "File or directory to search. Defaults to the working directory.", default="."),
        ParameterSpec("include", "string", 'Glob filter for file names (e.g. "*.py")'),
        ParameterSpec("case_sensitive", "boolean", "Match case exactly", default=True),
        ParameterSpec("max_results", "number", "Maximum matches to return", default=_DEFAULT_MAX_RESULTS),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        flags = 0 if params["case_sensitive"] else re.IGNORECASE
        try:
            regex = re.compile(params["pattern"], flags)
        except re.error as e:
            return ToolResult.fail(f"Invalid regex: {e}")
        max_results = max(1, int(params["max_results"]))

        try:
            base = self.sandbox.validate_path(params["path"])
            if base.is_file():
                base = await self.sandbox.validate_file_operation(str(base), "read")
                candidates = [base]
                root = base.parent
            else:
                base = await self.sandbox.validate_directory_operation(str(base))
                include = params["include"] or "*"
                if "\x00" in include or ".." in Path(include).parts:
                    return ToolResult.fail("Invalid include pattern")
                candidates = sorted(p for p in base.rglob(include) if p.is_file())
                root = base
        except SandboxError as e:
            return ToolResult.fail(str(e))

        matches: list[dict[str, Any]] = []
        for file_path in candidates:
            # Same extension, size and root gates as the read tool
            try:
                await self.sandbox.validate_file_operation(str(file_path), "read")
            except SandboxError:
                continue
            for line_number, line in _search_file(file_path, regex):
                matches.append({"file": str(file_path.relative_to(root)), "line": line_number, "text": line})
                if len(matches) >= max_results:
                    break
            if len(matches) >= max_results:
                break

        return ToolResult.ok(
            {"matches": matches, "total_matches": len(matches)},
            truncated=len(matches) >= max_results,
        )

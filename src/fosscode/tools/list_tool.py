"""Directory listing tool."""

from __future__ import annotations

import fnmatch
import os
from datetime import datetime, timezone
from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox

_MAX_ENTRIES = 1_000


class ListTool(Tool):
    name = "list"
    description = "List the entries of a directory with type, size and modification time."
    parameters = (
        ParameterSpec("path", "string", "Directory to list. Defaults to the working directory.", default="."),
        ParameterSpec("showHidden", "boolean", "Include entries starting with a dot", default=False),
        ParameterSpec("type", "string", "Filter by entry type: all, files or dirs", default="all"),
        ParameterSpec("pattern", "string", "Wildcard filter on entry names (* and ?)"),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        kind = params["type"]
        if kind not in ("all", "files", "dirs"):
            return ToolResult.fail("Parameter 'type' must be one of: all, files, dirs")
        try:
            resolved = await self.sandbox.validate_directory_operation(params["path"])
        except SandboxError as e:
            return ToolResult.fail(str(e))

        pattern = params["pattern"]
        items: list[dict[str, Any]] = []
        try:
            with os.scandir(resolved) as it:
                for entry in it:
                    if not params["showHidden"] and entry.name.startswith("."):
                        continue
                    is_dir = entry.is_dir()
                    if (kind == "files" and is_dir) or (kind == "dirs" and not is_dir):
                        continue
                    if pattern and not fnmatch.fnmatchcase(entry.name, pattern):
                        continue
                    try:
                        st = entry.stat()
                    except OSError:
                        continue
                    items.append(
                        {
                            "name": entry.name,
                            "type": "directory" if is_dir else "file",
                            "size": st.st_size,
                            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
                        }
                    )
        except OSError as e:
            return ToolResult.fail(str(e))

        items.sort(key=lambda i: (i["type"] != "directory", i["name"]))
        truncated = len(items) > _MAX_ENTRIES
        return ToolResult.ok(
            {
                "path": str(resolved),
                "items": items[:_MAX_ENTRIES],
                "totalCount": len(items),
                "filtered": {"showHidden": params["showHidden"], "type": kind, "pattern": pattern},
            },
            absolute_path=str(resolved),
            truncated=truncated,
        )

"""Edit file via exact string replacement."""

from __future__ import annotations

from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox


class EditTool(Tool):
    name = "edit"
    description = (
        "Edit a file by replacing an exact string with new text. "
        "old_string must appear exactly once unless replace_all is true."
    )
    parameters = (
        ParameterSpec("path", "string", "File path (relative to working directory or absolute)", required=True),
        ParameterSpec("old_string", "string", "The exact text to find", required=True),
        ParameterSpec("new_string", "string", "The replacement text", required=True),
        ParameterSpec("replace_all", "boolean", "Replace every occurrence", default=False),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        old, new = params["old_string"], params["new_string"]
        if not old:
            return ToolResult.fail("old_string must not be empty")
        try:
            resolved = await self.sandbox.validate_file_operation(params["path"], "read")
            await self.sandbox.validate_file_operation(str(resolved), "write")
        except SandboxError as e:
            return ToolResult.fail(str(e))

        try:
            with open(resolved, encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            return ToolResult.fail(str(e))

        count = content.count(old)
        if count == 0:
            return ToolResult.fail("old_string not found in file")
        if count > 1 and not params["replace_all"]:
            return ToolResult.fail(
                f"old_string matches {count} times. Use replace_all=true or provide more context to make it unique."
            )

        replaced = count if params["replace_all"] else 1
        new_content = content.replace(old, new) if params["replace_all"] else content.replace(old, new, 1)
        try:
            with open(resolved, "w", encoding="utf-8") as f:
                f.write(new_content)
        except OSError as e:
            return ToolResult.fail(str(e))

        return ToolResult.ok(f"Replaced {replaced} occurrence(s) in {resolved}", path=str(resolved), replacements=replaced)

"""Bulk find-and-replace across files matched by a glob pattern."""

from __future__ import annotations

import difflib
import logging
import re
from pathlib import Path
from typing import Any

from ..models import ToolResult
from . import ParameterSpec, Tool
from .security import SandboxError, SecuritySandbox

logger = logging.getLogger(__name__)

_DEFAULT_MAX_FILES = 100
_PREVIEW_LINES = 40


def _compile(find: str, *, regex: bool, case_sensitive: bool, whole_word: bool) -> re.Pattern[str]:
    source = find if regex else re.escape(find)
    if whole_word and not regex:
        source = rf"\b{source}\b"
    return re.compile(source, 0 if case_sensitive else re.IGNORECASE)


def _preview(original: str, updated: str, name: str) -> str:
    diff = list(
        difflib.unified_diff(
            original.splitlines(), updated.splitlines(), f"{name} (original)", f"{name} (modified)", lineterm=""
        )
    )
    if len(diff) > _PREVIEW_LINES:
        diff = diff[:_PREVIEW_LINES] + ["... (truncated)"]
    return "\n".join(diff)


class MultieditTool(Tool):
    """Apply one find/replace to every matching file, all or nothing.

    Every candidate is checked against the sandbox for both read and write
    before anything is written. If a write fails part way, files already
    written are restored to their original content.
    """

    name = "multiedit"
    description = (
        "Find and replace text across all files matching a glob pattern. "
        "Either every matching file is updated or none is. Use preview=true to see a diff first."
    )
    parameters = (
        ParameterSpec("pattern", "string", 'Glob pattern selecting files (e.g. "**/*.py")', required=True),
        ParameterSpec("find", "string", "Text (or regex when regex=true) to find", required=True),
        ParameterSpec("replace", "string", "Replacement text", required=True),
        ParameterSpec("path", "string", "Directory to search in. Defaults to the working directory.", default="."),
        ParameterSpec("exclude", "array", 'Glob patterns to skip (e.g. ["build/**"])'),
        ParameterSpec("max_files", "number", "Maximum number of files to change", default=_DEFAULT_MAX_FILES),
        ParameterSpec("preview", "boolean", "Show the changes without writing them", default=False),
        ParameterSpec("case_sensitive", "boolean", "Match case exactly", default=True),
        ParameterSpec("whole_word", "boolean", "Match whole words only (ignored when regex=true)", default=False),
        ParameterSpec("regex", "boolean", "Treat find as a regular expression", default=False),
    )

    def __init__(self, sandbox: SecuritySandbox) -> None:
        self.sandbox = sandbox

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        params, error = self.prepare(params)
        if error:
            return ToolResult.fail(error)
        pattern, find = params["pattern"], params["find"]
        if not pattern.strip() or "\x00" in pattern:
            return ToolResult.fail("Invalid glob pattern")
        if ".." in Path(pattern).parts or Path(pattern).is_absolute():
            return ToolResult.fail("Glob pattern must be relative and must not contain '..'")
        if not find:
            return ToolResult.fail("find must not be empty")
        try:
            regex = _compile(
                find, regex=params["regex"], case_sensitive=params["case_sensitive"], whole_word=params["whole_word"]
            )
        except re.error as e:
            return ToolResult.fail(f"Invalid regex: {e}")
        replacement = params["replace"]
        if not params["regex"]:
            replacement = replacement.replace("\\", "\\\\")

        try:
            base = await self.sandbox.validate_directory_operation(params["path"])
        except SandboxError as e:
            return ToolResult.fail(str(e))

        exclude = [str(p) for p in params["exclude"] or []]
        candidates = sorted(
            p for p in base.glob(pattern) if p.is_file() and not any(p.relative_to(base).match(x) for x in exclude)
        )

        planned: list[tuple[Path, str, str, int]] = []
        for file_path in candidates:
            try:
                await self.sandbox.validate_file_operation(str(file_path), "read")
            except SandboxError:
                continue
            try:
                original = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("Skipping %s: %s", file_path, e)
                continue
            updated, count = regex.subn(replacement, original)
            if count:
                planned.append((file_path, original, updated, count))

        max_files = max(1, int(params["max_files"]))
        if len(planned) > max_files:
            return ToolResult.fail(
                f"{len(planned)} files would change, more than max_files ({max_files}). "
                "Narrow the pattern or raise max_files."
            )

        changes: list[dict[str, Any]] = []
        for file_path, original, updated, count in planned:
            entry: dict[str, Any] = {"file": str(file_path.relative_to(base)), "replacements": count}
            if params["preview"]:
                entry["preview"] = _preview(original, updated, entry["file"])
            changes.append(entry)

        if not params["preview"]:
            for file_path, *_ in planned:
                try:
                    await self.sandbox.validate_file_operation(str(file_path), "write")
                except SandboxError as e:
                    return ToolResult.fail(str(e))
            error = self._write_all(planned)
            if error:
                return ToolResult.fail(error)

        total = sum(c["replacements"] for c in changes)
        return ToolResult.ok(
            {"changes": changes, "files_changed": len(changes), "total_replacements": total},
            mode="preview" if params["preview"] else "apply",
            files_scanned=len(candidates),
        )

    def _write_all(self, planned: list[tuple[Path, str, str, int]]) -> str | None:
        written: list[tuple[Path, str]] = []
        for file_path, original, updated, _ in planned:
            try:
                file_path.write_text(updated, encoding="utf-8")
            except OSError as e:
                for done_path, done_original in written:
                    try:
                        done_path.write_text(done_original, encoding="utf-8")
                    except OSError:
                        logger.warning("Failed to restore %s after aborted multiedit", done_path)
                return f"Write failed for {file_path}: {e}. No files were changed."
            written.append((file_path, original))
        return None

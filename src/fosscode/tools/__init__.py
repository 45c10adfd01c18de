"""Built-in tool contract and registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from ..models import ToolResult
from .security import SecuritySandbox
from .tiers import allowed_in_read_only

if TYPE_CHECKING:
    from ..services.cancellation import CancellationController

logger = logging.getLogger(__name__)

PARAMETER_TYPES = ("string", "number", "boolean", "array")


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: str  # string | number | boolean | array
    description: str = ""
    required: bool = False
    default: Any = None


def _matches_type(value: Any, type_name: str) -> bool:
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "array":
        return isinstance(value, list)
    return True


class Tool:
    """Base class for tools.

    Subclasses set ``name``, ``description`` and ``parameters`` and implement
    ``execute``. ``execute`` reports every failure through the returned
    ToolResult; raising is treated as a bug and converted by the registry.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    parameters: ClassVar[tuple[ParameterSpec, ...]] = ()

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        raise NotImplementedError

    def prepare(self, params: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
        """Check required parameters and types, and fill in defaults.

        Returns (params, error_message). Unknown keys are dropped.
        """
        prepared: dict[str, Any] = {}
        for spec in self.parameters:
            value = params.get(spec.name)
            if value is None:
                if spec.required:
                    return {}, f"Missing required parameter: {spec.name}"
                prepared[spec.name] = spec.default
                continue
            if not _matches_type(value, spec.type):
                return {}, f"Parameter '{spec.name}' must be of type {spec.type}"
            prepared[spec.name] = value
        return prepared, None

    def to_openai(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for spec in self.parameters:
            if spec.type not in PARAMETER_TYPES:
                continue
            prop: dict[str, Any] = {"type": spec.type, "description": spec.description}
            if spec.type == "array":
                prop["items"] = {"type": "string"}
            if spec.default is not None:
                prop["default"] = spec.default
            properties[spec.name] = prop
            if spec.required:
                required.append(spec.name)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {"type": "object", "properties": properties, "required": required},
            },
        }


class ToolRegistry:
    """Registry of tools with OpenAI function-call format.

    Safe to share between concurrently running orchestrators: after setup
    it is only read.
    """

    def __init__(self, read_only: bool = False, tier_overrides: dict[str, str] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self.read_only = read_only
        self._tier_overrides = tier_overrides

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool with name '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_tool_count(self) -> int:
        return len(self._tools)

    def clear(self) -> None:
        self._tools.clear()

    def _is_visible(self, name: str) -> bool:
        return not self.read_only or allowed_in_read_only(name, self._tier_overrides)

    def get_openai_tools(self) -> list[dict[str, Any]]:
        return [tool.to_openai() for name, tool in self._tools.items() if self._is_visible(name)]

    async def call_tool(self, name: str, arguments: Any) -> ToolResult:
        """Dispatch one call. Never raises: every failure becomes a failed ToolResult."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.fail(f"Unknown tool: {name}")
        if not self._is_visible(name):
            logger.info("Refused %s in read-only mode", name)
            return ToolResult.fail(f"Tool '{name}' is not available in read-only mode")
        if not isinstance(arguments, dict):
            return ToolResult.fail(f"Invalid arguments for tool '{name}': expected an object")

        try:
            result = await tool.execute(arguments)
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return ToolResult.fail(f"Tool '{name}' failed: {e}")

        if not isinstance(result, ToolResult):
            logger.error("Tool %s returned %s instead of ToolResult", name, type(result).__name__)
            return ToolResult.fail(f"Tool '{name}' returned an invalid result")
        return result


def register_default_tools(
    registry: ToolRegistry,
    sandbox: SecuritySandbox,
    cancellation: CancellationController | None = None,
) -> None:
    """Register all built-in tools."""
    from .bash import BashTool
    from .edit import EditTool
    from .glob_tool import GlobTool
    from .grep import GrepTool
    from .list_tool import ListTool
    from .multiedit import MultieditTool
    from .read import ReadTool
    from .webfetch import WebFetchTool
    from .write import WriteTool

    for tool in (
        ReadTool(sandbox),
        WriteTool(sandbox),
        EditTool(sandbox),
        MultieditTool(sandbox),
        ListTool(sandbox),
        GlobTool(sandbox),
        GrepTool(sandbox),
        BashTool(sandbox, cancellation),
        WebFetchTool(),
    ):
        registry.register(tool)

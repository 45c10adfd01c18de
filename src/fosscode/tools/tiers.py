"""Tool risk tiers and the read-only (plan) mode filter.

Pure functions, no I/O.
"""

from __future__ import annotations

from enum import IntEnum


class ToolTier(IntEnum):
    """Risk tier for tools. Higher value = more dangerous."""

    READ = 0
    WRITE = 1
    EXECUTE = 2


DEFAULT_TOOL_TIERS: dict[str, ToolTier] = {
    "read": ToolTier.READ,
    "list": ToolTier.READ,
    "glob": ToolTier.READ,
    "grep": ToolTier.READ,
    "write": ToolTier.WRITE,
    "edit": ToolTier.WRITE,
    "multiedit": ToolTier.WRITE,
    "bash": ToolTier.EXECUTE,
    # Network egress leaves the sandbox, so plan mode hides it
    "webfetch": ToolTier.EXECUTE,
}

# Tools registered by callers without a known tier
DEFAULT_UNKNOWN_TIER = ToolTier.EXECUTE


def get_tool_tier(tool_name: str, tier_overrides: dict[str, str] | None = None) -> ToolTier:
    """Look up the risk tier for a tool.

    Priority: overrides > DEFAULT_TOOL_TIERS > DEFAULT_UNKNOWN_TIER.
    """
    if tier_overrides and tool_name in tier_overrides:
        try:
            return ToolTier[tier_overrides[tool_name].upper()]
        except KeyError:
            pass
    return DEFAULT_TOOL_TIERS.get(tool_name, DEFAULT_UNKNOWN_TIER)


def allowed_in_read_only(tool_name: str, tier_overrides: dict[str, str] | None = None) -> bool:
    return get_tool_tier(tool_name, tier_overrides) == ToolTier.READ

"""Tests for tool risk tiers and the read-only filter."""

from __future__ import annotations

from fosscode.tools.tiers import (
    DEFAULT_TOOL_TIERS,
    DEFAULT_UNKNOWN_TIER,
    ToolTier,
    allowed_in_read_only,
    get_tool_tier,
)


class TestToolTier:
    def test_ordering(self) -> None:
        assert ToolTier.READ < ToolTier.WRITE < ToolTier.EXECUTE

    def test_every_builtin_has_a_tier(self) -> None:
        for name in ("read", "write", "edit", "multiedit", "list", "glob", "grep", "bash", "webfetch"):
            assert name in DEFAULT_TOOL_TIERS


class TestGetToolTier:
    def test_builtin_tiers(self) -> None:
        assert get_tool_tier("read") == ToolTier.READ
        assert get_tool_tier("edit") == ToolTier.WRITE
        assert get_tool_tier("bash") == ToolTier.EXECUTE
        assert get_tool_tier("multiedit") == ToolTier.WRITE
        assert get_tool_tier("webfetch") == ToolTier.EXECUTE

    def test_unknown_tool_defaults_to_execute(self) -> None:
        assert get_tool_tier("mystery") == DEFAULT_UNKNOWN_TIER == ToolTier.EXECUTE

    def test_override_wins(self) -> None:
        assert get_tool_tier("bash", {"bash": "read"}) == ToolTier.READ
        assert get_tool_tier("custom", {"custom": "WRITE"}) == ToolTier.WRITE

    def test_invalid_override_ignored(self) -> None:
        assert get_tool_tier("read", {"read": "dangerous"}) == ToolTier.READ


class TestReadOnlyFilter:
    def test_only_read_tier_allowed(self) -> None:
        assert allowed_in_read_only("grep")
        assert not allowed_in_read_only("write")
        assert not allowed_in_read_only("bash")
        assert not allowed_in_read_only("mystery")

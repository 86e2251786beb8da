"""Tests for per-agent transport handlers."""

from __future__ import annotations

import dataclasses

import pytest

from acp_agent_bridge.application.agents import (
    PERMISSION_POLICIES,
    TRANSPORT_HANDLERS,
    get_permission_policy,
    get_transport_handler,
)
from acp_agent_bridge.application.messages import StatusMessage
from acp_agent_bridge.application.models import StderrContext
from acp_agent_bridge.application.transport import filter_json_object_or_array_line

AGENTS = ("claude", "codex", "gemini", "opencode", "auggie", "kimi")


class TestFilterStdoutLine:
    """stdout フィルタのテスト."""

    @pytest.mark.parametrize(
        "line",
        ['{"jsonrpc":"2.0","id":1}', '  [{"a":1}]  ', "{}"],
    )
    def test_passes_json_like_lines(self, line: str) -> None:
        """JSON オブジェクト/配列らしい行は通過することを確認する."""
        assert filter_json_object_or_array_line(line) == line

    @pytest.mark.parametrize(
        "line",
        ["", "   ", "Loaded cached credentials.", "{incomplete", "[INFO] ready"],
    )
    def test_drops_other_lines(self, line: str) -> None:
        """それ以外の行は捨てられることを確認する."""
        assert filter_json_object_or_array_line(line) is None


class TestRegistry:
    """トランスポートとポリシーのレジストリのテスト."""

    def test_all_agents_registered(self) -> None:
        """すべてのエージェントが登録されていることを確認する."""
        for agent in AGENTS:
            assert TRANSPORT_HANDLERS[agent].agent_name == agent
            assert PERMISSION_POLICIES[agent].agent_name == agent

    def test_unknown_agent_gets_default(self) -> None:
        """未知のエージェントは汎用のトランスポートになることを確認する."""
        assert get_transport_handler("mystery").agent_name == "default"
        assert get_permission_policy("mystery").agent_name == "default"

    def test_lookup_is_case_insensitive(self) -> None:
        """エージェントIDの大文字小文字を区別しないことを確認する."""
        assert get_transport_handler("Gemini").agent_name == "gemini"

    def test_registry_is_immutable(self) -> None:
        """レジストリと値が変更できないことを確認する."""
        with pytest.raises(TypeError):
            TRANSPORT_HANDLERS["claude"] = TRANSPORT_HANDLERS["codex"]  # type: ignore[index]
        with pytest.raises(dataclasses.FrozenInstanceError):
            TRANSPORT_HANDLERS["claude"].agent_name = "x"  # type: ignore[misc]


class TestTimeouts:
    """タイムアウト値のテスト."""

    @pytest.mark.parametrize("agent", ["default", "claude", "codex", "opencode", "auggie", "kimi"])
    def test_standard_timeouts(self, agent: str) -> None:
        """標準のタイムアウト値を確認する."""
        transport = get_transport_handler(agent)
        assert transport.get_init_timeout() == 60_000
        assert transport.get_idle_timeout() == 500
        assert transport.get_tool_call_timeout("toolu_123") == 120_000
        assert transport.get_tool_call_timeout("toolu_123", "think") == 30_000

    def test_gemini_timeouts(self) -> None:
        """Gemini のタイムアウト値を確認する."""
        transport = get_transport_handler("gemini")
        assert transport.get_init_timeout() == 120_000
        assert transport.get_tool_call_timeout("codebase_investigator-1") == 600_000
        assert transport.get_tool_call_timeout("read_file-1") == 120_000

    def test_investigation_by_kind(self) -> None:
        """kind でも調査系ツールと判定されることを確認する."""
        transport = get_transport_handler("claude")
        assert transport.is_investigation_tool("toolu_1", "search")
        assert transport.get_tool_call_timeout("toolu_1", "search") == 300_000
        assert not transport.is_investigation_tool("toolu_1", "edit")


class TestHandleStderr:
    """stderr 分類のテスト."""

    def test_blank_is_suppressed(self) -> None:
        """空行は抑制されることを確認する."""
        result = get_transport_handler("claude").handle_stderr("  ", StderrContext())
        assert result.message is None
        assert result.suppress

    def test_gemini_rate_limit_is_log_only(self) -> None:
        """Gemini のレート制限はログのみになることを確認する."""
        result = get_transport_handler("gemini").handle_stderr(
            "Attempt 1 failed with status 429. Retrying...", StderrContext()
        )
        assert result.message is None
        assert not result.suppress

    def test_gemini_model_not_found(self) -> None:
        """Gemini のモデル未発見はエラー通知になることを確認する."""
        result = get_transport_handler("gemini").handle_stderr(
            'error: {"code":404,"message":"models/foo is not found"}', StderrContext()
        )
        assert isinstance(result.message, StatusMessage)
        assert result.message.status == "error"
        assert result.message.detail is not None
        assert "gemini-2.5-pro" in result.message.detail

    def test_kimi_authentication(self) -> None:
        """Kimi の認証エラーが通知されることを確認する."""
        result = get_transport_handler("kimi").handle_stderr(
            "Error: not logged in", StderrContext()
        )
        assert isinstance(result.message, StatusMessage)
        assert result.message.detail == 'Not authenticated. Please run "kimi login" first.'

    def test_kimi_model_not_found_requires_model_word(self) -> None:
        """Kimi のモデル未発見は "model" を含む場合のみ一致することを確認する."""
        transport = get_transport_handler("kimi")
        matched = transport.handle_stderr("model kimi-x not found", StderrContext())
        assert isinstance(matched.message, StatusMessage)
        unmatched = transport.handle_stderr("file not found", StderrContext())
        assert unmatched.message is None

    def test_opencode_rate_limit_case_insensitive(self) -> None:
        """OpenCode のレート制限は大文字小文字を区別しないことを確認する."""
        result = get_transport_handler("opencode").handle_stderr(
            "Rate Limit reached", StderrContext()
        )
        assert result.message is None
        assert not result.suppress

    def test_investigation_errors_are_log_only(self) -> None:
        """調査系ツール実行中のエラーはログのみになることを確認する."""
        context = StderrContext(
            active_tool_calls=frozenset({"search-1"}), has_active_investigation=True
        )
        result = get_transport_handler("claude").handle_stderr(
            "ripgrep: error reading file", context
        )
        assert result.message is None
        assert not result.suppress

    def test_other_text_passes_through(self) -> None:
        """一致しないテキストは診断用にそのまま扱われることを確認する."""
        result = get_transport_handler("codex").handle_stderr(
            "debug: connected", StderrContext()
        )
        assert result.message is None
        assert not result.suppress


class TestDetermineToolName:
    """ツール名決定のテスト."""

    def test_non_generic_name_unchanged(self) -> None:
        """具体的な名前はそのまま返されることを確認する."""
        transport = get_transport_handler("claude")
        assert transport.determine_tool_name("Edit", "toolu_change_title", {}) == "Edit"

    def test_longest_match_wins(self) -> None:
        """ID からの推定では最長一致が優先されることを確認する."""
        transport = get_transport_handler("claude")
        assert (
            transport.determine_tool_name("other", "toolu_01_change_title_abc", {})
            == "change_title"
        )
        assert transport.extract_tool_name_from_id("mcp__happy__change_title-edit") == (
            "change_title"
        )

    def test_input_fields_fallback(self) -> None:
        """ID から推定できない場合は入力のキーを使うことを確認する."""
        transport = get_transport_handler("opencode")
        result = transport.determine_tool_name(
            "other", "call_0001", {"oldString": "a", "newString": "b"}
        )
        assert result == "edit"

    def test_empty_input_default(self) -> None:
        """入力が空の "other" は空入力時のデフォルトになることを確認する."""
        for agent in ("gemini", "kimi"):
            transport = get_transport_handler(agent)
            assert transport.determine_tool_name("other", "call_0001", {}) == "change_title"

    def test_empty_input_default_only_for_other(self) -> None:
        """"Unknown tool" には空入力時のデフォルトを使わないことを確認する."""
        transport = get_transport_handler("kimi")
        assert (
            transport.determine_tool_name("Unknown tool", "call_0001", {})
            == "Unknown tool"
        )

    def test_unknown_keeps_original(self) -> None:
        """推定できなければ元の名前を返すことを確認する."""
        transport = get_transport_handler("claude")
        assert transport.determine_tool_name("other", "call_x", {"foo": 1}) == "other"

    def test_gemini_id_overrides_reported_name(self) -> None:
        """Gemini では ID から推定した名前が報告された名前より優先されることを確認する."""
        transport = get_transport_handler("gemini")
        assert (
            transport.determine_tool_name("execute", "read_file-1700000000", {})
            == "read"
        )
        # ID から推定できなければ報告された名前のまま
        assert transport.determine_tool_name("execute", "call_1", {"path": "a"}) == (
            "execute"
        )

    def test_patterns_view(self) -> None:
        """get_tool_patterns がテーブルを返すことを確認する."""
        transport = get_transport_handler("codex")
        names = [pattern.name for pattern in transport.get_tool_patterns()]
        assert "CodexReasoning" in names
        assert "change_title" in names

"""Tests for tool name inference."""

from __future__ import annotations

from acp_agent_bridge.application.models import ToolPattern
from acp_agent_bridge.application.tool_patterns import (
    find_empty_input_default_tool_name,
    find_tool_name_from_id,
    find_tool_name_from_input_fields,
    is_empty_tool_input,
)

PATTERNS = (
    ToolPattern(name="Edit", patterns=("edit",), input_fields=("old_string",)),
    ToolPattern(
        name="change_title",
        patterns=("change_title",),
        input_fields=("title",),
        empty_input_default=True,
    ),
    ToolPattern(name="Read", patterns=("read",), input_fields=("file_path",)),
)


class TestFindToolNameFromId:
    """find_tool_name_from_id のテスト."""

    def test_first_match_by_default(self) -> None:
        """デフォルトではテーブル順で最初に一致したものを返すことを確認する."""
        assert find_tool_name_from_id("edit_change_title_1", PATTERNS) == "Edit"

    def test_longest_match(self) -> None:
        """最長一致では具体的なパターンが優先されることを確認する."""
        result = find_tool_name_from_id(
            "edit_change_title_1", PATTERNS, prefer_longest_match=True
        )
        assert result == "change_title"

    def test_longest_match_tie_goes_to_table_order(self) -> None:
        """同じ長さの一致はテーブル順で先のものが採用されることを確認する."""
        patterns = (
            ToolPattern(name="first", patterns=("abcd",)),
            ToolPattern(name="second", patterns=("wxyz",)),
        )
        result = find_tool_name_from_id(
            "wxyz-abcd", patterns, prefer_longest_match=True
        )
        assert result == "first"

    def test_case_insensitive(self) -> None:
        """大文字小文字を区別しないことを確認する."""
        assert find_tool_name_from_id("TOOLU_READ_01", PATTERNS) == "Read"

    def test_no_match(self) -> None:
        """一致しない場合Noneを返すことを確認する."""
        assert find_tool_name_from_id("toolu_0123", PATTERNS) is None

    def test_empty_pattern_is_ignored(self) -> None:
        """空のパターンは何にでも一致しないことを確認する."""
        patterns = (ToolPattern(name="empty", patterns=("",)),)
        assert find_tool_name_from_id("anything", patterns) is None


class TestFindToolNameFromInputFields:
    """find_tool_name_from_input_fields のテスト."""

    def test_matches_by_key(self) -> None:
        """入力のキーからツール名を推定できることを確認する."""
        assert find_tool_name_from_input_fields({"title": "x"}, PATTERNS) == "change_title"

    def test_keys_are_case_insensitive(self) -> None:
        """キーの大文字小文字を区別しないことを確認する."""
        assert find_tool_name_from_input_fields({"FILE_PATH": "/a"}, PATTERNS) == "Read"

    def test_table_order(self) -> None:
        """複数一致する場合はテーブル順で先のものを返すことを確認する."""
        tool_input = {"file_path": "/a", "old_string": "x"}
        assert find_tool_name_from_input_fields(tool_input, PATTERNS) == "Edit"

    def test_non_mapping_input(self) -> None:
        """マッピング以外の入力ではNoneを返すことを確認する."""
        assert find_tool_name_from_input_fields(["title"], PATTERNS) is None
        assert find_tool_name_from_input_fields(None, PATTERNS) is None

    def test_empty_mapping(self) -> None:
        """空の入力ではNoneを返すことを確認する."""
        assert find_tool_name_from_input_fields({}, PATTERNS) is None


class TestEmptyInput:
    """空入力の判定とデフォルト名のテスト."""

    def test_is_empty_tool_input(self) -> None:
        """空とみなす入力を確認する."""
        assert is_empty_tool_input(None)
        assert is_empty_tool_input({})
        assert is_empty_tool_input([])
        assert is_empty_tool_input("")
        assert not is_empty_tool_input({"a": 1})
        assert not is_empty_tool_input(0)

    def test_empty_input_default(self) -> None:
        """empty_input_default が設定されたパターンの名前を返すことを確認する."""
        assert find_empty_input_default_tool_name(PATTERNS) == "change_title"
        assert find_empty_input_default_tool_name(PATTERNS[:1]) is None

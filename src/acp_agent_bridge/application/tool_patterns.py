"""Tool name inference from tool call ids and input shapes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from acp_agent_bridge.application.models import ToolPattern


def find_tool_name_from_id(
    tool_call_id: str,
    patterns: Sequence[ToolPattern],
    *,
    prefer_longest_match: bool = False,
) -> str | None:
    """
    toolCallId に含まれる部分文字列からツール名を推定する.

    大文字小文字は区別しない。prefer_longest_match が True の場合、
    マッチした部分文字列が最も長いパターンを採用する（同じ長さならテーブル順）。
    "edit" のような短いパターンが "change_title" のような具体的なパターンを
    覆い隠さないようにするため。

    Args:
        tool_call_id: ツール呼び出しID
        patterns: ツールパターンのテーブル
        prefer_longest_match: 最長一致を優先するか

    Returns:
        推定したツール名。見つからない場合はNone
    """
    lower_id = tool_call_id.lower()
    best_name: str | None = None
    best_length = 0

    for tool_pattern in patterns:
        for pattern in tool_pattern.patterns:
            needle = pattern.lower()
            if not needle or needle not in lower_id:
                continue
            if not prefer_longest_match:
                return tool_pattern.name
            # 同じ長さの場合は先に登録されたパターンを優先する
            if len(needle) > best_length:
                best_name = tool_pattern.name
                best_length = len(needle)

    return best_name


def find_tool_name_from_input_fields(
    tool_input: Any, patterns: Sequence[ToolPattern]
) -> str | None:
    """
    入力のキーからツール名を推定する.

    テーブル順に走査し、input_fields のいずれかを直接のキーとして持つ
    最初のパターンを返す（キーの大文字小文字は区別しない）.

    Args:
        tool_input: ツール入力（浅いマッピングを想定）
        patterns: ツールパターンのテーブル

    Returns:
        推定したツール名。見つからない場合はNone
    """
    if not isinstance(tool_input, Mapping):
        return None

    input_keys = {str(key).lower() for key in tool_input}
    if not input_keys:
        return None

    for tool_pattern in patterns:
        if any(field.lower() in input_keys for field in tool_pattern.input_fields):
            return tool_pattern.name
    return None


def is_empty_tool_input(tool_input: Any) -> bool:
    """入力が実質的に空かどうかを判定する."""
    if tool_input is None:
        return True
    if isinstance(tool_input, (Mapping, list, tuple, str)):
        return len(tool_input) == 0
    return False


def find_empty_input_default_tool_name(patterns: Sequence[ToolPattern]) -> str | None:
    """入力が空の場合に採用するツール名を返す."""
    for tool_pattern in patterns:
        if tool_pattern.empty_input_default:
            return tool_pattern.name
    return None

"""Per-agent transport strategy.

各エージェント CLI の stdout/stderr の癖、タイムアウト値、ツール名の推定規則を
データとして保持する。エージェントごとの違いは TransportHandler の値で表現し、
サブクラスは作らない。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from acp_agent_bridge.application.messages import StatusMessage
from acp_agent_bridge.application.models import (
    StderrContext,
    StderrResult,
    ToolNameContext,
    ToolPattern,
    TransportTimeouts,
)
from acp_agent_bridge.application.tool_patterns import (
    find_empty_input_default_tool_name,
    find_tool_name_from_id,
    find_tool_name_from_input_fields,
    is_empty_tool_input,
)
from acp_agent_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)

# エージェントが具体的なツール名を報告しない場合の名前
GENERIC_TOOL_NAMES: frozenset[str] = frozenset({"other", "Unknown tool"})

# 調査系ツール実行中に stderr に出ても UI には出さない語
_INVESTIGATION_ERROR_WORDS: tuple[str, ...] = ("timeout", "failed", "error")


def filter_json_object_or_array_line(line: str) -> str | None:
    """
    JSON オブジェクト/配列らしい行だけを通す.

    バナーやログなど、プロトコル以外の出力を取り除くための保守的なフィルタ。
    構文の厳密な検証は JSON-RPC 層で行う.

    Args:
        line: stdout の1行

    Returns:
        通過させる行。捨てる場合はNone
    """
    trimmed = line.strip()
    if not trimmed:
        return None
    if trimmed[0] == "{" and trimmed[-1] == "}":
        return line
    if trimmed[0] == "[" and trimmed[-1] == "]":
        return line
    return None


@dataclass(frozen=True)
class StderrRule:
    """
    stderr の分類規則.

    any_of のいずれかを含み、かつ all_of をすべて含む場合に一致する。
    detail が None の規則はログにのみ残し、UI には通知しない.
    """

    any_of: tuple[str, ...]
    detail: str | None = None
    all_of: tuple[str, ...] = ()
    case_sensitive: bool = True

    def matches(self, text: str) -> bool:
        """規則に一致するか判定する."""
        haystack = text if self.case_sensitive else text.lower()

        def normalize(needle: str) -> str:
            return needle if self.case_sensitive else needle.lower()

        if not any(normalize(needle) in haystack for needle in self.any_of):
            return False
        return all(normalize(needle) in haystack for needle in self.all_of)


@dataclass(frozen=True)
class TransportHandler:
    """
    エージェントごとのトランスポート戦略.

    Attributes:
        agent_name: エージェント識別子
        timeouts: タイムアウト値（ミリ秒）
        tool_patterns: ツール名推定用テーブル
        stderr_rules: stderr の分類規則（先に一致したものを採用）
        investigation_markers: 長時間実行ツールとみなす ID / kind の部分文字列
        id_overrides_reported_name: ID から推定した名前を報告された名前より優先するか
    """

    agent_name: str
    timeouts: TransportTimeouts = field(default_factory=TransportTimeouts)
    tool_patterns: tuple[ToolPattern, ...] = ()
    stderr_rules: tuple[StderrRule, ...] = ()
    investigation_markers: tuple[str, ...] = ()
    id_overrides_reported_name: bool = False

    def get_init_timeout(self) -> int:
        """初期化タイムアウト（ミリ秒）を返す."""
        return self.timeouts.init

    def get_idle_timeout(self) -> int:
        """アイドル判定までの時間（ミリ秒）を返す."""
        return self.timeouts.idle

    def is_investigation_tool(
        self, tool_call_id: str, tool_kind: str | None = None
    ) -> bool:
        """長時間実行される調査系ツールかどうかを判定する."""
        lower_id = tool_call_id.lower()
        lower_kind = tool_kind.lower() if isinstance(tool_kind, str) else ""
        return any(
            marker in lower_id or (lower_kind and marker in lower_kind)
            for marker in self.investigation_markers
        )

    def get_tool_call_timeout(
        self, tool_call_id: str, tool_kind: str | None = None
    ) -> int:
        """
        ツール呼び出しのタイムアウト（ミリ秒）を返す.

        調査系ツールは investigation、kind が "think" の場合は think、
        それ以外は tool_call の値を使う.
        """
        if self.is_investigation_tool(tool_call_id, tool_kind):
            return self.timeouts.investigation
        if tool_kind == "think":
            return self.timeouts.think
        return self.timeouts.tool_call

    def filter_stdout_line(self, line: str) -> str | None:
        """stdout の行をフィルタする."""
        return filter_json_object_or_array_line(line)

    def handle_stderr(self, text: str, context: StderrContext) -> StderrResult:
        """
        stderr を分類する.

        Args:
            text: stderr のテキスト
            context: 実行中のツール呼び出しなどのコンテキスト

        Returns:
            分類結果
        """
        trimmed = text.strip()
        if not trimmed:
            return StderrResult(message=None, suppress=True)

        for rule in self.stderr_rules:
            if rule.matches(trimmed):
                if rule.detail is None:
                    return StderrResult(message=None, suppress=False)
                return StderrResult(
                    message=StatusMessage(status="error", detail=rule.detail)
                )

        if context.has_active_investigation:
            lower = trimmed.lower()
            if any(word in lower for word in _INVESTIGATION_ERROR_WORDS):
                # 調査は回復することがあるのでログのみ
                return StderrResult(message=None, suppress=False)

        return StderrResult(message=None)

    def get_tool_patterns(self) -> Sequence[ToolPattern]:
        """ツールパターンのテーブルを返す."""
        return self.tool_patterns

    def extract_tool_name_from_id(self, tool_call_id: str) -> str | None:
        """toolCallId からツール名を推定する（最長一致）."""
        return find_tool_name_from_id(
            tool_call_id, self.tool_patterns, prefer_longest_match=True
        )

    def determine_tool_name(
        self,
        tool_name: str,
        tool_call_id: str,
        tool_input: Any,
        context: ToolNameContext | None = None,
    ) -> str:
        """
        実際のツール名を決定する.

        汎用的な名前（"other" / "Unknown tool"）が報告された場合、
        ID、入力のキー、空入力時のデフォルトの順に推定する。
        推定できなければ元の名前を返す.

        Args:
            tool_name: エージェントが報告したツール名
            tool_call_id: ツール呼び出しID
            tool_input: ツール入力
            context: 名前解決のコンテキスト

        Returns:
            ツール名
        """
        is_generic = tool_name in GENERIC_TOOL_NAMES
        if not is_generic and not self.id_overrides_reported_name:
            return tool_name

        id_tool_name = self.extract_tool_name_from_id(tool_call_id)
        if id_tool_name:
            return id_tool_name

        if not is_generic:
            return tool_name

        input_tool_name = find_tool_name_from_input_fields(
            tool_input, self.tool_patterns
        )
        if input_tool_name:
            return input_tool_name

        if tool_name == "other" and is_empty_tool_input(tool_input):
            default_tool_name = find_empty_input_default_tool_name(self.tool_patterns)
            if default_tool_name:
                return default_tool_name

        input_keys = list(tool_input) if isinstance(tool_input, Mapping) else []
        logger.debug(
            "Unknown tool pattern",
            agent=self.agent_name,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input_keys=input_keys,
            tool_call_count_since_prompt=(
                context.tool_call_count_since_prompt if context else None
            ),
        )
        return tool_name

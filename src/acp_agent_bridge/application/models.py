"""Data models shared by the transport and permission layers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from acp_agent_bridge.application.messages import AgentMessage


class PermissionMode(str, Enum):
    """セッション単位のパーミッションモード."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"
    YOLO = "yolo"
    SAFE_YOLO = "safe-yolo"
    READ_ONLY = "read-only"


class PermissionDecision(str, Enum):
    """パーミッション要求に対する決定."""

    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"
    # ターン全体の中断（拒否として扱い、中断コールバックを呼ぶ）
    ABORT = "abort"


@dataclass(frozen=True)
class PermissionResult:
    """パーミッション判定の結果."""

    decision: PermissionDecision

    @property
    def is_approved(self) -> bool:
        """承認された場合True."""
        return self.decision in {
            PermissionDecision.APPROVED,
            PermissionDecision.APPROVED_FOR_SESSION,
        }


@dataclass(frozen=True)
class ToolCall:
    """エージェントが要求したツール呼び出し."""

    tool_call_id: str
    tool_name: str
    input: Any = None


@dataclass(frozen=True)
class ToolPattern:
    """ツール名推定用のパターン定義.

    Attributes:
        name: 正規化されたツール名
        patterns: toolCallId に含まれうる部分文字列
        input_fields: 入力に含まれることが期待されるキー
        empty_input_default: 入力が空の場合にこのツールとみなすか
    """

    name: str
    patterns: tuple[str, ...] = ()
    input_fields: tuple[str, ...] = ()
    empty_input_default: bool = False


@dataclass(frozen=True)
class TransportTimeouts:
    """エージェントごとのタイムアウト値（ミリ秒）."""

    init: int = 60_000
    tool_call: int = 120_000
    investigation: int = 300_000
    think: int = 30_000
    idle: int = 500


@dataclass(frozen=True)
class StderrContext:
    """stderr 分類時のコンテキスト."""

    active_tool_calls: frozenset[str] = frozenset()
    has_active_investigation: bool = False


@dataclass(frozen=True)
class StderrResult:
    """stderr 分類結果.

    message が None でなければ上位に通知し、suppress が True ならログにも残さない.
    """

    message: AgentMessage | None = None
    suppress: bool = False


@dataclass(frozen=True)
class ToolNameContext:
    """ツール名解決時のコンテキスト."""

    tool_call_count_since_prompt: int = 0

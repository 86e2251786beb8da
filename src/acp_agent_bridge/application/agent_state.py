"""Externally visible agent state (pending and completed permission requests)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from acp_agent_bridge.application.models import PermissionDecision
from acp_agent_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

CompletedStatus = Literal["approved", "denied", "canceled"]


class PendingRequestEntry(BaseModel):
    """応答待ちのパーミッション要求."""

    tool: str
    arguments: Any = None
    created_at: datetime = Field(default_factory=datetime.now)


class CompletedRequestEntry(BaseModel):
    """完了したパーミッション要求（監査用）."""

    tool: str
    arguments: Any = None
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime = Field(default_factory=datetime.now)
    status: CompletedStatus
    decision: PermissionDecision | None = None
    reason: str | None = None
    allowed_tools: list[str] | None = None


class AgentState(BaseModel):
    """クライアントに公開するエージェント状態."""

    requests: dict[str, PendingRequestEntry] = Field(default_factory=dict)
    completed_requests: dict[str, CompletedRequestEntry] = Field(default_factory=dict)


AgentStateListener = Callable[[AgentState], None]


class AgentStateStore:
    """AgentState の保持と変更通知."""

    def __init__(
        self,
        initial: AgentState | None = None,
        on_change: AgentStateListener | None = None,
    ) -> None:
        """
        Initialize AgentStateStore.

        Args:
            initial: 初期状態（再接続時に以前の状態を引き継ぐ場合）
            on_change: 状態が変わるたびに呼ばれるコールバック
        """
        self._state = initial.model_copy(deep=True) if initial else AgentState()
        self._on_change = on_change

    def snapshot(self) -> AgentState:
        """現在の状態のコピーを返す."""
        return self._state.model_copy(deep=True)

    def update(self, updater: Callable[[AgentState], AgentState]) -> AgentState:
        """
        状態を更新する.

        Args:
            updater: 現在の状態のコピーを受け取り、新しい状態を返す関数

        Returns:
            更新後の状態
        """
        self._state = updater(self.snapshot())
        if self._on_change is not None:
            try:
                self._on_change(self.snapshot())
            except Exception:
                logger.exception("Error in agent state listener")
        return self._state

"""Normalized messages pushed from an agent session to the client."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

AgentStatus = Literal["starting", "running", "idle", "stopped", "error"]


class StatusMessage(BaseModel):
    """エージェントの状態通知."""

    type: Literal["status"] = "status"
    status: AgentStatus
    detail: str | None = None


class ModelOutputMessage(BaseModel):
    """モデル出力（テキストの差分）."""

    type: Literal["model-output"] = "model-output"
    text_delta: str


class ToolCallMessage(BaseModel):
    """ツール呼び出し開始."""

    type: Literal["tool-call"] = "tool-call"
    tool_name: str
    args: Any = None
    call_id: str


class ToolResultMessage(BaseModel):
    """ツール呼び出し結果."""

    type: Literal["tool-result"] = "tool-result"
    tool_name: str
    result: Any = None
    call_id: str
    status: str = "completed"


class EventMessage(BaseModel):
    """その他のイベント（plan, thinking, session_found など）."""

    type: Literal["event"] = "event"
    name: str
    payload: Any = None


class PermissionRequestMessage(BaseModel):
    """パーミッション要求の通知."""

    type: Literal["permission-request"] = "permission-request"
    id: str
    reason: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PermissionResponseMessage(BaseModel):
    """パーミッション応答の通知."""

    type: Literal["permission-response"] = "permission-response"
    id: str
    approved: bool


AgentMessage = (
    StatusMessage
    | ModelOutputMessage
    | ToolCallMessage
    | ToolResultMessage
    | EventMessage
    | PermissionRequestMessage
    | PermissionResponseMessage
)

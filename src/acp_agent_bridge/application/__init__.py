"""Application layer."""

from acp_agent_bridge.application.models import (
    PermissionDecision,
    PermissionMode,
    PermissionResult,
    ToolCall,
)
from acp_agent_bridge.application.permission import (
    PermissionEngine,
    SessionTerminatedError,
)

__all__ = [
    "PermissionDecision",
    "PermissionEngine",
    "PermissionMode",
    "PermissionResult",
    "SessionTerminatedError",
    "ToolCall",
]

"""Application layer."""

from ai_cli.application.agent import AgentLoop
from ai_cli.application.permissions import (
    ApprovalType,
    PermissionDecision,
    PermissionManager,
)
from ai_cli.application.tool_handlers import ToolDispatcher

__all__ = [
    "AgentLoop",
    "ApprovalType",
    "PermissionDecision",
    "PermissionManager",
    "ToolDispatcher",
]

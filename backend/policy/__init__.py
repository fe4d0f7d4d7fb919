"""Tool access-control policy: the static tool table and the permission gate."""

from .gate import PermissionDecision, PermissionGate, format_permission_error
from .tool_table import (
    TOOL_POLICIES,
    UNGATED_TOOLS,
    Connector,
    PermissionLevel,
    ToolPolicy,
    ToolPolicyError,
    validate_tool_registry,
)

__all__ = [
    "Connector",
    "PermissionDecision",
    "PermissionGate",
    "PermissionLevel",
    "TOOL_POLICIES",
    "ToolPolicy",
    "ToolPolicyError",
    "UNGATED_TOOLS",
    "format_permission_error",
    "validate_tool_registry",
]

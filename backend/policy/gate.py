"""
Permission gate: the check every connector-backed tool call goes through.

The gate only reads permission state through an injected repository and
returns a decision; it never mutates state and never talks to a connector.
Denials are ordinary return values whose ``reason`` is meant to be shown to
the user verbatim.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .tool_table import (
    CONNECTOR_LABELS,
    CONNECTOR_PERMISSION_NAMES,
    Connector,
    PermissionLevel,
    get_tool_policy,
    level_name,
)

logger = logging.getLogger(__name__)


class PermissionRepository(Protocol):
    """Read side of the permission store that the gate depends on."""

    async def get_connector_permission(
        self, user_id: str, connector: Connector
    ) -> Optional[Dict[str, Any]]: ...

    async def get_global_permission_level(self, user_id: str) -> Optional[int]: ...

    async def get_vacation_mode_until(self, user_id: str) -> Optional[datetime]: ...


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_vacation_date(until: datetime) -> str:
    return until.strftime("%d/%m/%Y")


@dataclass
class PermissionDecision:
    allowed: bool
    required_level: Optional[int] = None
    current_level: Optional[int] = None
    connector: Optional[str] = None
    reason: Optional[str] = None
    is_vacation_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_permission_error(decision: PermissionDecision) -> str:
    """Message for a denied decision, falling back to a generic one."""
    if decision.is_vacation_mode:
        return decision.reason or "Vacation mode is active. Only read-only operations are allowed."
    return decision.reason or "Permission denied for this operation."


class PermissionGate:
    def __init__(
        self,
        store: PermissionRepository,
        clock: Callable[[], datetime] = _utc_now_naive,
    ):
        self.store = store
        self.clock = clock

    async def _active_vacation_until(self, user_id: str) -> Optional[datetime]:
        until = await self.store.get_vacation_mode_until(user_id)
        if until is not None and until > self.clock():
            return until
        return None

    async def get_connector_level(self, user_id: str, connector: Connector) -> int:
        """Stored connector level, else the legacy global level, else read-only."""
        record = await self.store.get_connector_permission(user_id, connector)
        if record is not None:
            return int(record["permission_level"])
        legacy = await self.store.get_global_permission_level(user_id)
        if legacy is not None:
            return int(legacy)
        return int(PermissionLevel.READ_ONLY)

    async def check_tool_permission(self, user_id: str, tool_name: str) -> PermissionDecision:
        policy = get_tool_policy(tool_name)
        if policy is None:
            return PermissionDecision(allowed=True)

        required = int(policy.required_level)
        connector = policy.connector

        vacation_until = await self._active_vacation_until(user_id)
        if vacation_until is not None and required > PermissionLevel.READ_ONLY:
            decision = PermissionDecision(
                allowed=False,
                required_level=required,
                current_level=int(PermissionLevel.READ_ONLY),
                connector=connector.value,
                reason=(
                    f"Vacation mode is active until {format_vacation_date(vacation_until)}. "
                    "Only read-only operations are allowed."
                ),
                is_vacation_mode=True,
            )
            logger.info("Denied %s for user=%s: vacation mode", tool_name, user_id)
            return decision

        current = await self.get_connector_level(user_id, connector)
        if current < required:
            logger.info(
                "Denied %s for user=%s: level %d < required %d",
                tool_name,
                user_id,
                current,
                required,
            )
            return PermissionDecision(
                allowed=False,
                required_level=required,
                current_level=current,
                connector=connector.value,
                reason=(
                    f'This operation requires "{level_name(required)}" permission. '
                    f'Your current level is "{level_name(current)}". '
                    "Enable higher permissions in settings if you want to allow this."
                ),
            )

        return PermissionDecision(
            allowed=True,
            required_level=required,
            current_level=current,
            connector=connector.value,
        )

    async def get_visible_tools(self, user_id: str, candidates: Iterable[str]) -> List[str]:
        """Filter ``candidates`` to what the user may run now, without running anything."""
        vacation = await self._active_vacation_until(user_id) is not None
        levels: Dict[Connector, int] = {}
        visible: List[str] = []
        for tool_name in candidates:
            policy = get_tool_policy(tool_name)
            if policy is None:
                visible.append(tool_name)
                continue
            if vacation:
                effective = int(PermissionLevel.READ_ONLY)
            else:
                if policy.connector not in levels:
                    levels[policy.connector] = await self.get_connector_level(
                        user_id, policy.connector
                    )
                effective = levels[policy.connector]
            if policy.required_level <= effective:
                visible.append(tool_name)
        return visible

    async def build_safety_rules(self, user_id: str) -> str:
        """Prompt-ready summary of what the assistant may do for this user."""
        rules = ["SAFETY RULES:"]
        for connector in Connector:
            level = await self.get_connector_level(user_id, connector)
            label = CONNECTOR_LABELS[connector]
            name = CONNECTOR_PERMISSION_NAMES[connector][PermissionLevel(level)]
            rules.append(f"- {label} permission level: {name.upper()}")
            rules.extend(_level_guidance(label, level))

        vacation_until = await self._active_vacation_until(user_id)
        if vacation_until is not None:
            rules.append(
                f"- VACATION MODE ACTIVE until {format_vacation_date(vacation_until)} - READ-ONLY only"
            )
        return "\n".join(rules)


def _level_guidance(label: str, level: int) -> List[str]:
    if level == PermissionLevel.READ_ONLY:
        return [
            f"  - You CANNOT modify any {label} data",
            "  - If the user asks for changes, explain they need to enable write permissions in settings first",
        ]
    if level == PermissionLevel.CREATE:
        return [
            f"  - You can create new {label} items (drafts) only",
            "  - You CANNOT approve, update, or delete anything",
        ]
    if level == PermissionLevel.UPDATE:
        return [
            f"  - You can create, approve, and update {label} items",
            "  - Each modification requires user confirmation",
            "  - You CANNOT void or delete items",
        ]
    return [
        f"  - Full {label} access enabled",
        "  - Destructive operations require explicit confirmation",
    ]

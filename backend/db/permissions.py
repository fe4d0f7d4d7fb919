"""
Permission storage: per-connector levels and per-user safety settings.

Reads never persist defaults; a user with no record is simply at level 0.
Writes are plain upserts, so concurrent level changes are last-write-wins.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from policy.tool_table import Connector, PermissionLevel
from .sqlite_client import ConnectorPermission, SQLiteClient, UserSettings, utc_now_naive

logger = logging.getLogger(__name__)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes are converted to UTC; naive ones are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _permission_to_dict(row: ConnectorPermission) -> Dict[str, Any]:
    return {
        "user_id": row.user_id,
        "connector": row.connector,
        "permission_level": row.permission_level,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class PermissionStore:
    """Repository for connector permissions and user settings."""

    def __init__(self, client: SQLiteClient):
        self.client = client

    # ------------------------------------------------------------------
    # Connector permissions
    # ------------------------------------------------------------------

    async def get_connector_permission(
        self, user_id: str, connector: Connector
    ) -> Optional[Dict[str, Any]]:
        connector = Connector.parse(connector)
        async with self.client.session() as session:
            row = await session.get(ConnectorPermission, (user_id, connector.value))
            return _permission_to_dict(row) if row is not None else None

    async def set_connector_permission(
        self, user_id: str, connector: Connector, level: int
    ) -> Dict[str, Any]:
        connector = Connector.parse(connector)
        level = PermissionLevel.parse(level)
        now = utc_now_naive()
        stmt = sqlite_insert(ConnectorPermission.__table__).values(
            user_id=user_id,
            connector=connector.value,
            permission_level=int(level),
            created_at=now,
            updated_at=now,
        )
        # created_at is kept from the first insert.
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "connector"],
            set_={"permission_level": int(level), "updated_at": now},
        )
        async with self.client.session() as session:
            await session.execute(stmt)
            row = await session.get(
                ConnectorPermission, (user_id, connector.value), populate_existing=True
            )
            payload = _permission_to_dict(row)
        logger.info(
            "Connector permission updated: user=%s connector=%s level=%d",
            user_id,
            connector.value,
            int(level),
        )
        return payload

    async def list_connector_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.client.session() as session:
            result = await session.execute(
                select(ConnectorPermission)
                .where(ConnectorPermission.user_id == user_id)
                .order_by(ConnectorPermission.connector)
            )
            return [_permission_to_dict(row) for row in result.scalars().all()]

    async def delete_connector_permission(self, user_id: str, connector: Connector) -> bool:
        """Reset a connector to the read-only default."""
        connector = Connector.parse(connector)
        async with self.client.session() as session:
            result = await session.execute(
                delete(ConnectorPermission).where(
                    ConnectorPermission.user_id == user_id,
                    ConnectorPermission.connector == connector.value,
                )
            )
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info(
                "Connector permission reset to default: user=%s connector=%s",
                user_id,
                connector.value,
            )
        return removed

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------

    async def get_user_settings(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.client.session() as session:
            row = await session.get(UserSettings, user_id)
            if row is None:
                return None
            return {
                "user_id": row.user_id,
                "permission_level": row.permission_level,
                "vacation_mode_until": row.vacation_mode_until,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
            }

    async def _upsert_settings(self, user_id: str, **fields) -> None:
        now = utc_now_naive()
        stmt = sqlite_insert(UserSettings.__table__).values(
            user_id=user_id, created_at=now, updated_at=now, **fields
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={**fields, "updated_at": now},
        )
        async with self.client.session() as session:
            await session.execute(stmt)

    async def set_global_permission_level(self, user_id: str, level: Optional[int]) -> None:
        """Set (or clear, with None) the legacy level used by connectors with no record."""
        value = int(PermissionLevel.parse(level)) if level is not None else None
        await self._upsert_settings(user_id, permission_level=value)
        logger.info("Global permission level for user=%s set to %s", user_id, value)

    async def get_global_permission_level(self, user_id: str) -> Optional[int]:
        settings = await self.get_user_settings(user_id)
        if settings is None:
            return None
        return settings["permission_level"]

    async def get_vacation_mode_until(self, user_id: str) -> Optional[datetime]:
        """Stored vacation end as naive UTC, whether or not it has passed."""
        settings = await self.get_user_settings(user_id)
        if settings is None:
            return None
        return settings["vacation_mode_until"]

    async def set_vacation_mode(self, user_id: str, until: Optional[datetime]) -> None:
        """Start (``until`` in the future) or end (``None``) vacation mode."""
        until = to_naive_utc(until)
        await self._upsert_settings(user_id, vacation_mode_until=until)
        if until is None:
            logger.info("Vacation mode cleared for user=%s", user_id)
        else:
            logger.info("Vacation mode for user=%s active until %s UTC", user_id, until.isoformat())

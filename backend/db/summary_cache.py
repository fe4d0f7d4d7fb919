"""
Cached prose summary of a scope's memory graph.

The summary text is produced elsewhere (typically by a model reading the
graph) and handed in. Staleness is a cheap drift signal: the entity and
observation counts stored at generation time are compared with live counts.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .memory_graph import KnowledgeGraphManager
from .scope import Scope
from .sqlite_client import MemorySummary, SQLiteClient, utc_now_naive
from .user_edits import UserEditLedger

logger = logging.getLogger(__name__)


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SummaryCache:
    def __init__(self, client: SQLiteClient, scope: Scope):
        self.client = client
        self.scope = scope
        self.graph = KnowledgeGraphManager(client, scope)

    async def save_summary(self, text: str) -> Dict[str, Any]:
        """Store ``text`` as the scope's summary, replacing any previous one."""
        stats = await self.graph.get_stats()
        now = utc_now_naive()
        values = {
            "summary": text,
            "generated_at": now,
            "entity_count": stats["entity_count"],
            "observation_count": stats["observation_count"],
        }
        async with self.client.session() as session:
            # Insert-or-ignore then update: concurrent saves end last-write-wins
            # instead of tripping the one-row-per-scope index.
            await session.execute(
                sqlite_insert(MemorySummary.__table__)
                .values(
                    user_id=self.scope.user_id,
                    project_id=self.scope.project_id,
                    **values,
                )
                .on_conflict_do_nothing()
            )
            await session.execute(
                update(MemorySummary)
                .where(*self.scope.entity_clause(MemorySummary))
                .values(**values)
            )
        logger.info(
            "Saved memory summary for scope %s (%d entities, %d observations)",
            self.scope.label,
            stats["entity_count"],
            stats["observation_count"],
        )
        return {
            "summary": text,
            "generated_at": now.isoformat(),
            "entity_count": stats["entity_count"],
            "observation_count": stats["observation_count"],
        }

    async def get_summary(self) -> Optional[Dict[str, Any]]:
        async with self.client.session() as session:
            result = await session.execute(
                select(MemorySummary).where(*self.scope.entity_clause(MemorySummary))
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return {
            "summary": row.summary,
            "generated_at": _isoformat(row.generated_at),
            "entity_count": row.entity_count,
            "observation_count": row.observation_count,
        }

    async def is_summary_stale(self) -> bool:
        cached = await self.get_summary()
        if cached is None:
            return True
        stats = await self.graph.get_stats()
        return (
            cached["entity_count"] != stats["entity_count"]
            or cached["observation_count"] != stats["observation_count"]
        )

    async def delete_summary(self) -> bool:
        async with self.client.session() as session:
            result = await session.execute(
                delete(MemorySummary).where(*self.scope.entity_clause(MemorySummary))
            )
        return (result.rowcount or 0) > 0

    async def get_overview(self) -> Dict[str, Any]:
        """Everything the "manage memory" screen shows in one payload."""
        cached = await self.get_summary()
        stats = await self.graph.get_stats()
        edit_count = await UserEditLedger(self.client, self.scope).count_edits()
        is_stale = cached is None or (
            cached["entity_count"] != stats["entity_count"]
            or cached["observation_count"] != stats["observation_count"]
        )
        return {
            "summary": cached["summary"] if cached else None,
            "summary_generated_at": cached["generated_at"] if cached else None,
            "is_stale": is_stale,
            "edit_count": edit_count,
            "entity_count": stats["entity_count"],
            "observation_count": stats["observation_count"],
        }

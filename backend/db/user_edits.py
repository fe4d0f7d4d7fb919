"""
User-edit ledger: the facts a user explicitly asked to be remembered.

A read/delete view over observations flagged ``is_user_edit``, joined to
their entity and restricted to one scope. Inferred facts never show up here.
"""

from typing import Any, Dict, List

from sqlalchemy import delete, func, select

from .memory_graph import DEFAULT_ENTITY_TYPE, GraphEntity, KnowledgeGraphManager
from .scope import Scope
from .sqlite_client import MemoryEntity, MemoryObservation, SQLiteClient


class UserEditLedger:
    def __init__(self, client: SQLiteClient, scope: Scope):
        self.client = client
        self.scope = scope

    def _scoped_entity_ids(self):
        return select(MemoryEntity.id).where(*self.scope.entity_clause(MemoryEntity))

    async def list_edits(self) -> List[Dict[str, Any]]:
        """User edits, newest first."""
        async with self.client.session() as session:
            result = await session.execute(
                select(
                    MemoryEntity.name,
                    MemoryObservation.observation,
                    MemoryObservation.created_at,
                )
                .join(MemoryEntity, MemoryObservation.entity_id == MemoryEntity.id)
                .where(
                    *self.scope.entity_clause(MemoryEntity),
                    MemoryObservation.is_user_edit.is_(True),
                )
                .order_by(MemoryObservation.created_at.desc(), MemoryObservation.id.desc())
            )
            rows = result.all()
        return [
            {
                "entity_name": name,
                "observation": observation,
                "created_at": created_at.isoformat() if created_at else None,
            }
            for name, observation, created_at in rows
        ]

    async def delete_edit(self, entity_name: str, observation: str) -> bool:
        async with self.client.session() as session:
            result = await session.execute(
                select(MemoryEntity.id).where(
                    *self.scope.entity_clause(MemoryEntity),
                    func.lower(MemoryEntity.name) == func.lower(entity_name),
                )
            )
            entity_id = result.scalar_one_or_none()
            if entity_id is None:
                return False
            deleted = await session.execute(
                delete(MemoryObservation).where(
                    MemoryObservation.entity_id == entity_id,
                    func.lower(MemoryObservation.observation) == func.lower(observation),
                    MemoryObservation.is_user_edit.is_(True),
                )
            )
        return (deleted.rowcount or 0) > 0

    async def delete_all_edits(self) -> int:
        async with self.client.session() as session:
            result = await session.execute(
                delete(MemoryObservation).where(
                    MemoryObservation.entity_id.in_(self._scoped_entity_ids()),
                    MemoryObservation.is_user_edit.is_(True),
                )
            )
        return int(result.rowcount or 0)

    async def count_edits(self) -> int:
        async with self.client.session() as session:
            count = await session.scalar(
                select(func.count(MemoryObservation.id)).where(
                    MemoryObservation.entity_id.in_(self._scoped_entity_ids()),
                    MemoryObservation.is_user_edit.is_(True),
                )
            )
        return int(count or 0)

    async def add_edit(self, entity_name: str, content: str) -> bool:
        """Remember ``content`` about ``entity_name`` at the user's request.

        The entity is created as a ``concept`` when missing. Returns False
        when the fact was already known.
        """
        graph = KnowledgeGraphManager(self.client, self.scope)
        await graph.create_entities(
            [GraphEntity(name=entity_name, entity_type=DEFAULT_ENTITY_TYPE)],
            is_user_edit=True,
        )
        added = await graph.add_observations(
            [{"entity_name": entity_name, "contents": [content]}], is_user_edit=True
        )
        return bool(added)

"""
Knowledge graph manager.

Entities, observations and relations for one scope. Every public method runs
in its own session (one unit of work). Unknown entity names are skipped
silently so that batch calls partially succeed; storage errors propagate.

Find-or-create never reads before writing: the insert is an
``ON CONFLICT DO NOTHING`` against the case-insensitive unique indexes built by
``SQLiteClient.init_db`` and the id is selected afterwards, so two concurrent
callers creating the same name converge on one row.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased

from .scope import Scope
from .sqlite_client import (
    MemoryEntity,
    MemoryObservation,
    MemoryRelation,
    SQLiteClient,
    utc_now_naive,
)

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_TYPE = "concept"


def _pick(item: Any, *keys: str, default: Any = None) -> Any:
    """Read the first present key from a mapping, accepting camelCase aliases."""
    if isinstance(item, Mapping):
        for key in keys:
            if key in item and item[key] is not None:
                return item[key]
        return default
    for key in keys:
        value = getattr(item, key, None)
        if value is not None:
            return value
    return default


def _as_text_list(values: Any) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return [str(value) for value in values]


@dataclass
class GraphEntity:
    name: str
    entity_type: str = DEFAULT_ENTITY_TYPE
    observations: List[str] = field(default_factory=list)

    @classmethod
    def coerce(cls, item: Union["GraphEntity", Mapping[str, Any]]) -> "GraphEntity":
        if isinstance(item, cls):
            return item
        return cls(
            name=str(_pick(item, "name", default="")),
            entity_type=str(
                _pick(item, "entity_type", "entityType", default=DEFAULT_ENTITY_TYPE)
            ),
            observations=_as_text_list(_pick(item, "observations", default=[])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entity_type": self.entity_type,
            "observations": list(self.observations),
        }


@dataclass
class GraphRelation:
    from_entity: str
    to_entity: str
    relation_type: str

    @classmethod
    def coerce(cls, item: Union["GraphRelation", Mapping[str, Any]]) -> "GraphRelation":
        if isinstance(item, cls):
            return item
        return cls(
            from_entity=str(_pick(item, "from_entity", "from", default="")),
            to_entity=str(_pick(item, "to_entity", "to", default="")),
            relation_type=str(_pick(item, "relation_type", "relationType", default="")),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "from": self.from_entity,
            "to": self.to_entity,
            "relation_type": self.relation_type,
        }


@dataclass
class KnowledgeGraph:
    entities: List[GraphEntity] = field(default_factory=list)
    relations: List[GraphRelation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [entity.to_dict() for entity in self.entities],
            "relations": [relation.to_dict() for relation in self.relations],
        }


class KnowledgeGraphManager:
    """Scoped CRUD, search and traversal over the memory graph."""

    def __init__(self, client: SQLiteClient, scope: Scope):
        self.client = client
        self.scope = scope

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _find_entity_id(self, session, name: str) -> Optional[int]:
        result = await session.execute(
            select(MemoryEntity.id).where(
                *self.scope.entity_clause(MemoryEntity),
                func.lower(MemoryEntity.name) == func.lower(name),
            )
        )
        return result.scalar_one_or_none()

    async def _find_entity(self, session, name: str) -> Optional[MemoryEntity]:
        result = await session.execute(
            select(MemoryEntity).where(
                *self.scope.entity_clause(MemoryEntity),
                func.lower(MemoryEntity.name) == func.lower(name),
            )
        )
        return result.scalar_one_or_none()

    async def _ensure_entity_id(self, session, name: str, entity_type: str) -> int:
        await session.execute(
            sqlite_insert(MemoryEntity.__table__)
            .values(
                user_id=self.scope.user_id,
                project_id=self.scope.project_id,
                name=name,
                entity_type=entity_type or DEFAULT_ENTITY_TYPE,
                created_at=utc_now_naive(),
            )
            .on_conflict_do_nothing()
        )
        entity_id = await self._find_entity_id(session, name)
        if entity_id is None:
            # Only reachable if the row vanished between insert and select.
            raise RuntimeError(f"Entity '{name}' could not be created")
        return entity_id

    async def _insert_observation(
        self, session, entity_id: int, content: str, is_user_edit: bool
    ) -> bool:
        now = utc_now_naive()
        result = await session.execute(
            sqlite_insert(MemoryObservation.__table__)
            .values(
                entity_id=entity_id,
                observation=content,
                created_at=now,
                updated_at=now,
                is_user_edit=is_user_edit,
            )
            .on_conflict_do_nothing()
        )
        return (result.rowcount or 0) > 0

    async def _observations_by_entity(
        self, session, entity_ids: Optional[List[int]] = None
    ) -> Dict[int, List[str]]:
        """Observation texts per entity id, in insertion order."""
        stmt = select(MemoryObservation.entity_id, MemoryObservation.observation)
        if entity_ids is None:
            stmt = stmt.join(
                MemoryEntity, MemoryObservation.entity_id == MemoryEntity.id
            ).where(*self.scope.entity_clause(MemoryEntity))
        elif not entity_ids:
            return {}
        else:
            stmt = stmt.where(MemoryObservation.entity_id.in_(entity_ids))
        result = await session.execute(stmt.order_by(MemoryObservation.id))

        grouped: Dict[int, List[str]] = {}
        for entity_id, text in result.all():
            grouped.setdefault(entity_id, []).append(text)
        return grouped

    def _relation_rows_stmt(self):
        source = aliased(MemoryEntity)
        target = aliased(MemoryEntity)
        return (
            select(
                MemoryRelation.from_entity_id,
                MemoryRelation.to_entity_id,
                MemoryRelation.relation_type,
                source.name,
                target.name,
            )
            .join(source, MemoryRelation.from_entity_id == source.id)
            .join(target, MemoryRelation.to_entity_id == target.id)
            .where(*self.scope.relation_clause(MemoryRelation))
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_entities(
        self,
        entities: Iterable[Union[GraphEntity, Mapping[str, Any]]],
        is_user_edit: bool = False,
    ) -> List[GraphEntity]:
        """Find-or-create each entity and attach any new observations.

        Returns the whole input (minus nameless entries): the caller is told
        what is now ensured, not what was newly inserted.
        """
        ensured: List[GraphEntity] = []
        async with self.client.session() as session:
            for item in entities:
                entity = GraphEntity.coerce(item)
                if not entity.name.strip():
                    continue
                entity_id = await self._ensure_entity_id(
                    session, entity.name, entity.entity_type
                )
                for content in entity.observations:
                    await self._insert_observation(session, entity_id, content, is_user_edit)
                ensured.append(entity)
        return ensured

    async def create_relations(
        self, relations: Iterable[Union[GraphRelation, Mapping[str, Any]]]
    ) -> List[GraphRelation]:
        created: List[GraphRelation] = []
        async with self.client.session() as session:
            for item in relations:
                relation = GraphRelation.coerce(item)
                from_id = await self._find_entity_id(session, relation.from_entity)
                to_id = await self._find_entity_id(session, relation.to_entity)
                if from_id is None or to_id is None or not relation.relation_type:
                    continue
                result = await session.execute(
                    sqlite_insert(MemoryRelation.__table__)
                    .values(
                        user_id=self.scope.user_id,
                        project_id=self.scope.project_id,
                        from_entity_id=from_id,
                        to_entity_id=to_id,
                        relation_type=relation.relation_type,
                        created_at=utc_now_naive(),
                    )
                    .on_conflict_do_nothing()
                )
                if (result.rowcount or 0) > 0:
                    created.append(relation)
        return created

    async def add_observations(
        self, observations: Iterable[Mapping[str, Any]], is_user_edit: bool = False
    ) -> List[Dict[str, Any]]:
        """Append facts to existing entities.

        Each item is ``{"entity_name": ..., "contents": [...]}`` (``entityName``
        is accepted too). Only entities that gained something are reported.
        """
        results: List[Dict[str, Any]] = []
        async with self.client.session() as session:
            for item in observations:
                entity_name = str(_pick(item, "entity_name", "entityName", default=""))
                entity_id = await self._find_entity_id(session, entity_name)
                if entity_id is None:
                    continue
                added = []
                for content in _as_text_list(_pick(item, "contents", default=[])):
                    if await self._insert_observation(session, entity_id, content, is_user_edit):
                        added.append(content)
                if added:
                    results.append({"entity_name": entity_name, "added": added})
        return results

    async def delete_entities(self, names: Iterable[str]) -> List[str]:
        deleted: List[str] = []
        async with self.client.session() as session:
            for name in names:
                entity_id = await self._find_entity_id(session, name)
                if entity_id is None:
                    continue
                result = await session.execute(
                    delete(MemoryEntity).where(MemoryEntity.id == entity_id)
                )
                if (result.rowcount or 0) == 0:
                    continue
                # Foreign keys already cascade; this also covers databases
                # opened without the pragma.
                await session.execute(
                    delete(MemoryRelation).where(
                        *self.scope.relation_clause(MemoryRelation),
                        or_(
                            MemoryRelation.from_entity_id == entity_id,
                            MemoryRelation.to_entity_id == entity_id,
                        ),
                    )
                )
                deleted.append(name)
        if deleted:
            logger.info(
                "Deleted %d entities in scope %s", len(deleted), self.scope.label
            )
        return deleted

    async def delete_observations(
        self, deletions: Iterable[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        async with self.client.session() as session:
            for item in deletions:
                entity_name = str(_pick(item, "entity_name", "entityName", default=""))
                entity_id = await self._find_entity_id(session, entity_name)
                if entity_id is None:
                    continue
                removed = []
                for text in _as_text_list(_pick(item, "observations", default=[])):
                    result = await session.execute(
                        delete(MemoryObservation).where(
                            MemoryObservation.entity_id == entity_id,
                            func.lower(MemoryObservation.observation) == func.lower(text),
                        )
                    )
                    if (result.rowcount or 0) > 0:
                        removed.append(text)
                if removed:
                    results.append({"entity_name": entity_name, "deleted": removed})
        return results

    async def delete_relations(
        self, relations: Iterable[Union[GraphRelation, Mapping[str, Any]]]
    ) -> List[GraphRelation]:
        deleted: List[GraphRelation] = []
        async with self.client.session() as session:
            for item in relations:
                relation = GraphRelation.coerce(item)
                from_id = await self._find_entity_id(session, relation.from_entity)
                to_id = await self._find_entity_id(session, relation.to_entity)
                if from_id is None or to_id is None:
                    continue
                result = await session.execute(
                    delete(MemoryRelation).where(
                        *self.scope.relation_clause(MemoryRelation),
                        MemoryRelation.from_entity_id == from_id,
                        MemoryRelation.to_entity_id == to_id,
                        func.lower(MemoryRelation.relation_type)
                        == func.lower(relation.relation_type),
                    )
                )
                if (result.rowcount or 0) > 0:
                    deleted.append(relation)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_graph(self) -> KnowledgeGraph:
        """Full snapshot of the scope, newest entities and relations first."""
        async with self.client.session() as session:
            result = await session.execute(
                select(MemoryEntity)
                .where(*self.scope.entity_clause(MemoryEntity))
                .order_by(MemoryEntity.created_at.desc(), MemoryEntity.id.desc())
            )
            rows = result.scalars().all()
            observations = await self._observations_by_entity(session)

            relation_result = await session.execute(
                self._relation_rows_stmt().order_by(
                    MemoryRelation.created_at.desc(), MemoryRelation.id.desc()
                )
            )
            relation_rows = relation_result.all()

        entities = [
            GraphEntity(
                name=row.name,
                entity_type=row.entity_type,
                observations=observations.get(row.id, []),
            )
            for row in rows
        ]
        relations = [
            GraphRelation(from_entity=from_name, to_entity=to_name, relation_type=rel_type)
            for _, _, rel_type, from_name, to_name in relation_rows
        ]
        return KnowledgeGraph(entities=entities, relations=relations)

    async def search_nodes(self, query: str, limit: int = 10) -> List[GraphEntity]:
        """Lexical relevance search.

        Full query: +10 name, +5 entity type, +8 any observation.
        Each token longer than two characters: +3 name, +2 any observation.
        Zero scores are dropped; ties keep store insertion order.
        """
        needle = (query or "").strip().lower()
        if not needle or limit <= 0:
            return []
        tokens = [token for token in needle.split() if len(token) > 2]

        async with self.client.session() as session:
            result = await session.execute(
                select(MemoryEntity)
                .where(*self.scope.entity_clause(MemoryEntity))
                .order_by(MemoryEntity.id)
            )
            rows = result.scalars().all()
            observations = await self._observations_by_entity(session)

        scored: List[Tuple[int, GraphEntity]] = []
        for row in rows:
            facts = observations.get(row.id, [])
            name = row.name.lower()
            entity_type = (row.entity_type or "").lower()
            lowered_facts = [fact.lower() for fact in facts]

            score = 0
            if needle in name:
                score += 10
            if needle in entity_type:
                score += 5
            if any(needle in fact for fact in lowered_facts):
                score += 8
            for token in tokens:
                if token in name:
                    score += 3
                if any(token in fact for fact in lowered_facts):
                    score += 2
            if score > 0:
                scored.append(
                    (score, GraphEntity(name=row.name, entity_type=row.entity_type, observations=facts))
                )

        # sorted() is stable, so equal scores stay in id order.
        scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
        return [entity for _, entity in scored[:limit]]

    async def open_nodes(self, names: Iterable[str]) -> KnowledgeGraph:
        """Named entities in input order plus every relation touching them."""
        found: List[MemoryEntity] = []
        seen_ids = set()
        relations: List[GraphRelation] = []
        seen_edges = set()

        async with self.client.session() as session:
            for name in names:
                row = await self._find_entity(session, name)
                if row is None or row.id in seen_ids:
                    continue
                seen_ids.add(row.id)
                found.append(row)

                result = await session.execute(
                    self._relation_rows_stmt()
                    .where(
                        or_(
                            MemoryRelation.from_entity_id == row.id,
                            MemoryRelation.to_entity_id == row.id,
                        )
                    )
                    .order_by(MemoryRelation.id)
                )
                for from_id, to_id, rel_type, from_name, to_name in result.all():
                    edge = (from_id, rel_type, to_id)
                    if edge in seen_edges:
                        continue
                    seen_edges.add(edge)
                    relations.append(
                        GraphRelation(
                            from_entity=from_name, to_entity=to_name, relation_type=rel_type
                        )
                    )

            observations = await self._observations_by_entity(
                session, [row.id for row in found]
            )

        entities = [
            GraphEntity(
                name=row.name,
                entity_type=row.entity_type,
                observations=observations.get(row.id, []),
            )
            for row in found
        ]
        return KnowledgeGraph(entities=entities, relations=relations)

    async def get_stats(self) -> Dict[str, int]:
        """Live entity and observation counts for the scope."""
        async with self.client.session() as session:
            entity_count = await session.scalar(
                select(func.count(MemoryEntity.id)).where(
                    *self.scope.entity_clause(MemoryEntity)
                )
            )
            observation_count = await session.scalar(
                select(func.count(MemoryObservation.id))
                .join(MemoryEntity, MemoryObservation.entity_id == MemoryEntity.id)
                .where(*self.scope.entity_clause(MemoryEntity))
            )
        return {
            "entity_count": int(entity_count or 0),
            "observation_count": int(observation_count or 0),
        }

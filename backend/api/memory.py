"""
Memory API - the "manage memory" surface over one scope's graph.

The scope comes from the ``X-User-Id`` header and the optional
``project_id`` query parameter. Writes go through the per-scope write lane.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from db import get_sqlite_client
from db.memory_graph import KnowledgeGraphManager
from db.scope import Scope
from db.summary_cache import SummaryCache
from db.user_edits import UserEditLedger
from runtime_state import runtime_state
from .auth import get_scope, require_api_key

router = APIRouter(
    prefix="/memory",
    tags=["memory"],
    dependencies=[Depends(require_api_key)],
)


class EntityIn(BaseModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(default="concept", min_length=1)
    observations: List[str] = Field(default_factory=list)


class CreateEntitiesRequest(BaseModel):
    entities: List[EntityIn]
    is_user_edit: bool = False


class RelationIn(BaseModel):
    from_entity: str = Field(min_length=1)
    to_entity: str = Field(min_length=1)
    relation_type: str = Field(min_length=1)


class RelationsRequest(BaseModel):
    relations: List[RelationIn]


class ObservationAdd(BaseModel):
    entity_name: str = Field(min_length=1)
    contents: List[str]


class AddObservationsRequest(BaseModel):
    observations: List[ObservationAdd]
    is_user_edit: bool = False


class ObservationDelete(BaseModel):
    entity_name: str = Field(min_length=1)
    observations: List[str]


class DeleteObservationsRequest(BaseModel):
    deletions: List[ObservationDelete]


class DeleteEntitiesRequest(BaseModel):
    entity_names: List[str]


class OpenNodesRequest(BaseModel):
    names: List[str]


class SummaryIn(BaseModel):
    summary: str = Field(min_length=1)


class UserEditIn(BaseModel):
    entity_name: str = Field(min_length=1)
    content: str = Field(min_length=1)


async def _write(scope: Scope, operation: str, task: Callable[[], Awaitable[Any]]) -> Any:
    return await runtime_state.write_lanes.run_write(
        lane=scope.lane_key, operation=operation, task=task
    )


def _payload(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [item.model_dump() for item in items]


@router.get("")
async def get_overview(scope: Scope = Depends(get_scope)):
    """Summary text, staleness and counts for the scope."""
    return await SummaryCache(get_sqlite_client(), scope).get_overview()


@router.get("/graph")
async def read_graph(scope: Scope = Depends(get_scope)):
    graph = await KnowledgeGraphManager(get_sqlite_client(), scope).read_graph()
    return graph.to_dict()


@router.get("/search")
async def search_nodes(
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    scope: Scope = Depends(get_scope),
):
    entities = await KnowledgeGraphManager(get_sqlite_client(), scope).search_nodes(q, limit=limit)
    return {"query": q, "results": [entity.to_dict() for entity in entities]}


@router.post("/open")
async def open_nodes(body: OpenNodesRequest, scope: Scope = Depends(get_scope)):
    graph = await KnowledgeGraphManager(get_sqlite_client(), scope).open_nodes(body.names)
    return graph.to_dict()


@router.post("/entities")
async def create_entities(body: CreateEntitiesRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    created = await _write(
        scope,
        "create_entities",
        lambda: graph.create_entities(_payload(body.entities), is_user_edit=body.is_user_edit),
    )
    return {"entities": [entity.to_dict() for entity in created]}


@router.post("/entities/delete")
async def delete_entities(body: DeleteEntitiesRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    deleted = await _write(scope, "delete_entities", lambda: graph.delete_entities(body.entity_names))
    return {"deleted": deleted}


@router.post("/relations")
async def create_relations(body: RelationsRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    created = await _write(
        scope, "create_relations", lambda: graph.create_relations(_payload(body.relations))
    )
    return {"relations": [relation.to_dict() for relation in created]}


@router.post("/relations/delete")
async def delete_relations(body: RelationsRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    deleted = await _write(
        scope, "delete_relations", lambda: graph.delete_relations(_payload(body.relations))
    )
    return {"deleted": [relation.to_dict() for relation in deleted]}


@router.post("/observations")
async def add_observations(body: AddObservationsRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    added = await _write(
        scope,
        "add_observations",
        lambda: graph.add_observations(
            _payload(body.observations), is_user_edit=body.is_user_edit
        ),
    )
    return {"added": added}


@router.post("/observations/delete")
async def delete_observations(body: DeleteObservationsRequest, scope: Scope = Depends(get_scope)):
    graph = KnowledgeGraphManager(get_sqlite_client(), scope)
    deleted = await _write(
        scope, "delete_observations", lambda: graph.delete_observations(_payload(body.deletions))
    )
    return {"deleted": deleted}


@router.get("/summary")
async def get_summary(scope: Scope = Depends(get_scope)):
    cache = SummaryCache(get_sqlite_client(), scope)
    summary = await cache.get_summary()
    return {"summary": summary, "is_stale": await cache.is_summary_stale()}


@router.put("/summary")
async def save_summary(body: SummaryIn, scope: Scope = Depends(get_scope)):
    cache = SummaryCache(get_sqlite_client(), scope)
    saved = await _write(scope, "save_memory_summary", lambda: cache.save_summary(body.summary))
    return {"summary": saved, "is_stale": False}


@router.delete("/summary")
async def delete_summary(scope: Scope = Depends(get_scope)):
    cache = SummaryCache(get_sqlite_client(), scope)
    deleted = await _write(scope, "delete_summary", cache.delete_summary)
    return {"deleted": deleted}


# =============================================================================
# User edits ("remember that ...")
# =============================================================================


@router.post("/edit")
async def add_user_edit(body: UserEditIn, scope: Scope = Depends(get_scope)):
    ledger = UserEditLedger(get_sqlite_client(), scope)
    added = await _write(
        scope, "add_user_edit", lambda: ledger.add_edit(body.entity_name, body.content)
    )
    if not added:
        raise HTTPException(status_code=400, detail="This memory already exists")
    return {"success": True, "entity_name": body.entity_name, "content": body.content}


@router.get("/edits")
async def list_user_edits(scope: Scope = Depends(get_scope)):
    edits = await UserEditLedger(get_sqlite_client(), scope).list_edits()
    return {"edits": edits, "count": len(edits)}


@router.delete("/edits/{entity_name}/{observation}")
async def delete_user_edit(
    entity_name: str,
    observation: str,
    scope: Scope = Depends(get_scope),
):
    ledger = UserEditLedger(get_sqlite_client(), scope)
    deleted = await _write(
        scope, "delete_user_edit", lambda: ledger.delete_edit(entity_name, observation)
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Memory not found")
    return {"success": True}


@router.delete("/edits")
async def delete_all_user_edits(scope: Scope = Depends(get_scope)):
    ledger = UserEditLedger(get_sqlite_client(), scope)
    deleted = await _write(scope, "delete_all_user_edits", ledger.delete_all_edits)
    return {"success": True, "deleted": deleted}

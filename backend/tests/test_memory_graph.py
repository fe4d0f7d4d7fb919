import asyncio
from pathlib import Path

import pytest

from db.memory_graph import GraphEntity, GraphRelation, KnowledgeGraphManager
from db.scope import Scope
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / "graph.db"))
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_create_entities_is_idempotent_and_case_insensitive(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    payload = [{"name": "Acme Corp", "entityType": "organization", "observations": ["B2B SaaS"]}]

    first = await graph.create_entities(payload)
    second = await graph.create_entities(payload)
    await graph.create_entities(
        [{"name": "acme corp", "entity_type": "organization", "observations": ["b2b saas"]}]
    )

    assert [entity.name for entity in first] == ["Acme Corp"]
    assert [entity.name for entity in second] == ["Acme Corp"]

    snapshot = await graph.read_graph()
    assert len(snapshot.entities) == 1
    assert snapshot.entities[0].name == "Acme Corp"
    assert snapshot.entities[0].entity_type == "organization"
    assert snapshot.entities[0].observations == ["B2B SaaS"]
    await client.close()


@pytest.mark.asyncio
async def test_create_entities_dedups_observations_within_one_input(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))

    await graph.create_entities(
        [
            {"name": "Bob", "observations": ["Likes tea", "likes TEA", "Runs marathons"]},
            {"name": "BOB", "observations": ["runs marathons"]},
        ]
    )

    snapshot = await graph.read_graph()
    assert len(snapshot.entities) == 1
    assert snapshot.entities[0].entity_type == "concept"
    assert snapshot.entities[0].observations == ["Likes tea", "Runs marathons"]
    await client.close()


@pytest.mark.asyncio
async def test_create_entities_skips_blank_names(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))

    created = await graph.create_entities([{"name": "   "}, {"name": "Real"}])

    assert [entity.name for entity in created] == ["Real"]
    assert (await graph.get_stats())["entity_count"] == 1
    await client.close()


@pytest.mark.asyncio
async def test_concurrent_find_or_create_converges_on_one_row(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    scope = Scope("u1", "p1")

    await asyncio.gather(
        *[
            KnowledgeGraphManager(client, scope).create_entities(
                [{"name": "Race", "observations": [f"fact {i % 2}"]}]
            )
            for i in range(6)
        ]
    )

    snapshot = await KnowledgeGraphManager(client, scope).read_graph()
    assert [entity.name for entity in snapshot.entities] == ["Race"]
    assert sorted(snapshot.entities[0].observations) == ["fact 0", "fact 1"]
    await client.close()


@pytest.mark.asyncio
async def test_scope_isolation_between_general_and_project(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    general = KnowledgeGraphManager(client, Scope("u1"))
    project = KnowledgeGraphManager(client, Scope("u1", "p1"))
    other_user = KnowledgeGraphManager(client, Scope("u2"))

    await general.create_entities([{"name": "Acme Corp", "observations": ["B2B SaaS"]}])

    assert await project.search_nodes("Acme Corp") == []
    assert await other_user.search_nodes("Acme Corp") == []
    assert (await project.open_nodes(["Acme Corp"])).entities == []
    assert [entity.name for entity in await general.search_nodes("Acme Corp")] == ["Acme Corp"]

    # The same name may exist independently in another scope.
    await project.create_entities([{"name": "Acme Corp", "observations": ["project fact"]}])
    general_graph = await general.read_graph()
    project_graph = await project.read_graph()
    assert general_graph.entities[0].observations == ["B2B SaaS"]
    assert project_graph.entities[0].observations == ["project fact"]
    await client.close()


@pytest.mark.asyncio
async def test_relations_cannot_cross_scopes(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    general = KnowledgeGraphManager(client, Scope("u1"))
    project = KnowledgeGraphManager(client, Scope("u1", "p1"))

    await general.create_entities([{"name": "Alice"}])
    await project.create_entities([{"name": "Acme"}])

    created = await general.create_relations(
        [{"from": "Alice", "to": "Acme", "relationType": "works_at"}]
    )

    assert created == []
    assert (await general.read_graph()).relations == []
    assert (await project.read_graph()).relations == []
    await client.close()


@pytest.mark.asyncio
async def test_delete_entity_cascades_observations_and_relations(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities(
        [
            {"name": "A", "observations": ["x", "y"]},
            {"name": "B", "observations": ["b1"]},
        ]
    )
    await graph.create_relations([{"from": "A", "to": "B", "relationType": "works_at"}])

    deleted = await graph.delete_entities(["a", "Missing"])

    assert deleted == ["a"]
    snapshot = await graph.read_graph()
    assert [entity.name for entity in snapshot.entities] == ["B"]
    assert snapshot.entities[0].observations == ["b1"]
    assert snapshot.relations == []
    assert await graph.get_stats() == {"entity_count": 1, "observation_count": 1}
    await client.close()


@pytest.mark.asyncio
async def test_dangling_relation_is_skipped(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities([{"name": "Acme Corp"}])

    created = await graph.create_relations(
        [{"from": "Ghost", "to": "Acme Corp", "relationType": "owns"}]
    )

    assert created == []
    assert (await graph.read_graph()).relations == []
    await client.close()


@pytest.mark.asyncio
async def test_create_relations_returns_only_new_edges(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities([{"name": "Alice"}, {"name": "Acme"}])

    first = await graph.create_relations(
        [GraphRelation(from_entity="Alice", to_entity="Acme", relation_type="works_at")]
    )
    second = await graph.create_relations(
        [
            {"from": "alice", "to": "ACME", "relationType": "WORKS_AT"},
            {"from": "Acme", "to": "Alice", "relationType": "employs"},
        ]
    )

    assert [relation.relation_type for relation in first] == ["works_at"]
    assert [relation.to_dict() for relation in second] == [
        {"from": "Acme", "to": "Alice", "relation_type": "employs"}
    ]
    snapshot = await graph.read_graph()
    assert len(snapshot.relations) == 2
    # Newest relation first, endpoint names as stored.
    assert snapshot.relations[0].relation_type == "employs"
    assert snapshot.relations[1].from_entity == "Alice"
    await client.close()


@pytest.mark.asyncio
async def test_add_and_delete_observations_report_actual_changes(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities([{"name": "Alice", "observations": ["likes tea"]}])

    added = await graph.add_observations(
        [
            {"entityName": "alice", "contents": ["Likes Tea", "plays chess"]},
            {"entity_name": "Nobody", "contents": ["ignored"]},
            {"entity_name": "Alice", "contents": ["likes tea"]},
        ]
    )
    assert added == [{"entity_name": "alice", "added": ["plays chess"]}]

    deleted = await graph.delete_observations(
        [
            {"entity_name": "Alice", "observations": ["PLAYS CHESS", "never stored"]},
            {"entity_name": "Nobody", "observations": ["x"]},
        ]
    )
    assert deleted == [{"entity_name": "Alice", "deleted": ["PLAYS CHESS"]}]

    snapshot = await graph.read_graph()
    assert snapshot.entities[0].observations == ["likes tea"]
    await client.close()


@pytest.mark.asyncio
async def test_delete_relations_matches_type_case_insensitively(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities([{"name": "Alice"}, {"name": "Acme"}])
    await graph.create_relations([{"from": "Alice", "to": "Acme", "relationType": "works_at"}])

    missing = await graph.delete_relations(
        [{"from": "Alice", "to": "Acme", "relationType": "founded"}]
    )
    deleted = await graph.delete_relations(
        [{"from": "alice", "to": "acme", "relationType": "Works_At"}]
    )

    assert missing == []
    assert len(deleted) == 1
    assert (await graph.read_graph()).relations == []
    await client.close()


@pytest.mark.asyncio
async def test_read_graph_lists_newest_entities_first(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    for name in ("first", "second", "third"):
        await graph.create_entities([{"name": name}])

    snapshot = await graph.read_graph()

    assert [entity.name for entity in snapshot.entities] == ["third", "second", "first"]
    assert snapshot.to_dict()["entities"][0] == {
        "name": "third",
        "entity_type": "concept",
        "observations": [],
    }
    await client.close()


@pytest.mark.asyncio
async def test_search_scoring_prefers_name_then_observation_then_type(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities(
        [
            {"name": "Typed", "entityType": "acme-partner", "observations": []},
            {"name": "Noted", "entityType": "person", "observations": ["works with ACME"]},
            {"name": "Acme Corp", "entityType": "organization", "observations": []},
            {"name": "Unrelated", "entityType": "person", "observations": ["nothing"]},
        ]
    )

    results = await graph.search_nodes("acme")

    assert [entity.name for entity in results] == ["Acme Corp", "Noted", "Typed"]
    await client.close()


@pytest.mark.asyncio
async def test_search_token_boosts_and_tie_order(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities(
        [
            {"name": "Blue Widget", "observations": []},
            {"name": "Widget Blue", "observations": []},
            {"name": "Blue Gadget Widget", "observations": []},
        ]
    )

    results = await graph.search_nodes("blue widget")
    # "Blue Widget" matches the full query (10) plus two tokens (6).
    assert results[0].name == "Blue Widget"
    # The other two score on tokens only; equal scores keep insertion order.
    assert [entity.name for entity in results[1:]] == ["Widget Blue", "Blue Gadget Widget"]

    assert [entity.name for entity in await graph.search_nodes("blue widget", limit=1)] == [
        "Blue Widget"
    ]
    await client.close()


@pytest.mark.asyncio
async def test_search_short_tokens_do_not_score(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities([{"name": "AI lab"}, {"name": "Go club"}])

    assert await graph.search_nodes("ai go") == []
    assert await graph.search_nodes("   ") == []
    assert await graph.search_nodes("lab", limit=0) == []
    await client.close()


@pytest.mark.asyncio
async def test_open_nodes_returns_entities_in_input_order_with_touching_relations(
    tmp_path: Path,
) -> None:
    client = await _client(tmp_path)
    graph = KnowledgeGraphManager(client, Scope("u1"))
    await graph.create_entities(
        [
            {"name": "Alice", "observations": ["engineer"]},
            {"name": "Acme"},
            {"name": "Bob"},
            {"name": "Carol"},
        ]
    )
    await graph.create_relations(
        [
            {"from": "Alice", "to": "Acme", "relationType": "works_at"},
            {"from": "Bob", "to": "Acme", "relationType": "works_at"},
            {"from": "Carol", "to": "Bob", "relationType": "knows"},
        ]
    )

    opened = await graph.open_nodes(["Acme", "alice", "ACME", "Ghost"])

    assert [entity.name for entity in opened.entities] == ["Acme", "Alice"]
    assert opened.entities[1].observations == ["engineer"]
    edges = {(r.from_entity, r.relation_type, r.to_entity) for r in opened.relations}
    assert edges == {("Alice", "works_at", "Acme"), ("Bob", "works_at", "Acme")}
    assert len(opened.relations) == 2
    await client.close()


def test_graph_entity_coerce_accepts_camel_case_keys() -> None:
    entity = GraphEntity.coerce(
        {"name": "Acme", "entityType": "organization", "observations": "single fact"}
    )
    relation = GraphRelation.coerce({"from": "A", "to": "B", "relationType": "owns"})

    assert entity == GraphEntity("Acme", "organization", ["single fact"])
    assert relation.to_dict() == {"from": "A", "to": "B", "relation_type": "owns"}

from pathlib import Path

import pytest

from db.memory_graph import KnowledgeGraphManager
from db.scope import Scope
from db.sqlite_client import SQLiteClient
from db.user_edits import UserEditLedger


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / "edits.db"))
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_ledger_lists_only_user_edits_newest_first(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    scope = Scope("u1")
    graph = KnowledgeGraphManager(client, scope)
    ledger = UserEditLedger(client, scope)

    await graph.create_entities([{"name": "Alice", "observations": ["inferred fact"]}])
    await graph.create_entities(
        [{"name": "Alice", "observations": ["prefers email"]}], is_user_edit=True
    )
    await graph.add_observations(
        [{"entity_name": "Alice", "contents": ["lives in Lisbon"]}], is_user_edit=True
    )

    edits = await ledger.list_edits()

    assert [(edit["entity_name"], edit["observation"]) for edit in edits] == [
        ("Alice", "lives in Lisbon"),
        ("Alice", "prefers email"),
    ]
    assert all(edit["created_at"] for edit in edits)
    assert await ledger.count_edits() == 2
    await client.close()


@pytest.mark.asyncio
async def test_ledger_is_scoped(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    general = UserEditLedger(client, Scope("u1"))
    project = UserEditLedger(client, Scope("u1", "p1"))

    assert await general.add_edit("Alice", "prefers email") is True

    assert await project.list_edits() == []
    assert await project.count_edits() == 0
    assert await project.delete_all_edits() == 0
    assert await general.count_edits() == 1
    await client.close()


@pytest.mark.asyncio
async def test_add_edit_creates_concept_entity_and_rejects_duplicates(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    scope = Scope("u1")
    ledger = UserEditLedger(client, scope)

    assert await ledger.add_edit("Project Falcon", "launches in May") is True
    assert await ledger.add_edit("project falcon", "Launches in May") is False

    snapshot = await KnowledgeGraphManager(client, scope).read_graph()
    assert len(snapshot.entities) == 1
    assert snapshot.entities[0].entity_type == "concept"
    assert snapshot.entities[0].observations == ["launches in May"]
    await client.close()


@pytest.mark.asyncio
async def test_delete_edit_leaves_inferred_facts(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    scope = Scope("u1")
    graph = KnowledgeGraphManager(client, scope)
    ledger = UserEditLedger(client, scope)

    await graph.create_entities([{"name": "Alice", "observations": ["inferred fact"]}])
    await ledger.add_edit("Alice", "prefers email")

    assert await ledger.delete_edit("alice", "PREFERS EMAIL") is True
    assert await ledger.delete_edit("Alice", "prefers email") is False
    assert await ledger.delete_edit("Alice", "inferred fact") is False
    assert await ledger.delete_edit("Nobody", "anything") is False

    snapshot = await graph.read_graph()
    assert snapshot.entities[0].observations == ["inferred fact"]
    await client.close()


@pytest.mark.asyncio
async def test_delete_all_edits_returns_count(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    scope = Scope("u1", "p1")
    graph = KnowledgeGraphManager(client, scope)
    ledger = UserEditLedger(client, scope)

    await graph.create_entities([{"name": "Alice", "observations": ["inferred fact"]}])
    await ledger.add_edit("Alice", "one")
    await ledger.add_edit("Bob", "two")

    assert await ledger.delete_all_edits() == 2
    assert await ledger.count_edits() == 0
    assert (await graph.get_stats())["observation_count"] == 1
    await client.close()

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

from db.permissions import PermissionStore
from db.sqlite_client import SQLiteClient, utc_now_naive
from dispatcher import ToolDispatcher
from policy.tool_table import Connector, ToolPolicyError
from runtime_state import RuntimeState


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _RecordingHandler:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any], str]] = []

    async def __call__(self, tool_name: str, arguments: Dict[str, Any], user_id: str) -> Any:
        self.calls.append((tool_name, dict(arguments), user_id))
        return {"handled": tool_name}


async def _dispatcher(tmp_path: Path) -> Tuple[ToolDispatcher, SQLiteClient, RuntimeState]:
    client = SQLiteClient(_sqlite_url(tmp_path / "dispatch.db"))
    await client.init_db()
    runtime = RuntimeState()
    return ToolDispatcher(client, runtime=runtime), client, runtime


@pytest.mark.asyncio
async def test_memory_tools_are_never_gated_and_are_scoped(tmp_path: Path) -> None:
    dispatcher, client, runtime = await _dispatcher(tmp_path)
    await PermissionStore(client).set_vacation_mode("u1", utc_now_naive() + timedelta(days=2))

    created = await dispatcher.dispatch(
        "create_entities",
        {"entities": [{"name": "Acme", "entityType": "organization", "observations": ["B2B"]}]},
        "u1",
        "p1",
    )
    assert created["ok"] is True
    assert created["result"] == [
        {"name": "Acme", "entity_type": "organization", "observations": ["B2B"]}
    ]

    in_project = await dispatcher.dispatch("search_nodes", {"query": "acme"}, "u1", "p1")
    in_general = await dispatcher.dispatch("search_nodes", {"query": "acme"}, "u1")
    assert [entity["name"] for entity in in_project["result"]] == ["Acme"]
    assert in_general["result"] == []

    status = await runtime.write_lanes.status()
    assert status["completed_writes"] == {"create_entities": 1}
    assert (await runtime.gate_tracker.summary())["total_events"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_memory_tool_argument_errors_return_ok_false(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)

    missing = await dispatcher.dispatch("create_entities", {}, "u1")
    wrong_type = await dispatcher.dispatch("open_nodes", {"names": "Acme"}, "u1")
    empty_summary = await dispatcher.dispatch("save_memory_summary", {"summary": "  "}, "u1")
    no_user = await dispatcher.dispatch("read_graph", {}, "  ")

    assert missing["ok"] is False
    assert "entities" in missing["message"]
    assert wrong_type["ok"] is False
    assert "must be a list" in wrong_type["message"]
    assert empty_summary["ok"] is False
    assert no_user["ok"] is False
    assert "user_id" in no_user["message"]
    await client.close()


@pytest.mark.asyncio
async def test_search_nodes_honours_explicit_limit_including_zero(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)
    await dispatcher.dispatch(
        "create_entities",
        {
            "entities": [
                {"name": "Acme Corp", "entity_type": "organization"},
                {"name": "Acme Labs", "entity_type": "organization"},
                {"name": "Acme Foods", "entity_type": "organization"},
            ]
        },
        "u1",
    )

    zero = await dispatcher.dispatch("search_nodes", {"query": "acme", "limit": 0}, "u1")
    two = await dispatcher.dispatch("search_nodes", {"query": "acme", "limit": 2}, "u1")
    default = await dispatcher.dispatch("search_nodes", {"query": "acme"}, "u1")
    via_execute = await dispatcher.dispatch(
        "execute_tool",
        {"tool_name": "search_nodes", "arguments": {"query": "acme", "limit": 0}},
        "u1",
    )

    assert zero["ok"] is True
    assert zero["result"] == []
    assert len(two["result"]) == 2
    assert len(default["result"]) == 3
    assert via_execute["result"] == []
    await client.close()


@pytest.mark.asyncio
async def test_summary_tools_report_staleness(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)

    before = await dispatcher.dispatch("get_memory_summary", {}, "u1")
    assert before["result"] == {"summary": None, "is_stale": True}

    await dispatcher.dispatch("create_entities", {"entities": [{"name": "Alice"}]}, "u1")
    saved = await dispatcher.dispatch("save_memory_summary", {"summary": "Alice."}, "u1")
    after = await dispatcher.dispatch("get_memory_summary", {}, "u1")

    assert saved["result"]["entity_count"] == 1
    assert after["result"]["summary"]["summary"] == "Alice."
    assert after["result"]["is_stale"] is False
    await client.close()


@pytest.mark.asyncio
async def test_connector_tool_denied_surfaces_gate_reason(tmp_path: Path) -> None:
    dispatcher, client, runtime = await _dispatcher(tmp_path)
    handler = _RecordingHandler()
    dispatcher.register_connector(Connector.XERO, handler)

    result = await dispatcher.dispatch("approve_invoice", {"invoice_id": "INV-1"}, "u1")

    assert result["ok"] is False
    assert result["message"].startswith('This operation requires "Approve & Update" permission.')
    assert result["permission"]["current_level"] == 0
    assert result["permission"]["required_level"] == 2
    assert handler.calls == []

    summary = await runtime.gate_tracker.summary()
    assert summary["denied_events"] == 1
    assert summary["top_denied_tools"] == [{"tool": "approve_invoice", "count": 1}]
    await client.close()


@pytest.mark.asyncio
async def test_connector_tool_allowed_reaches_handler(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)
    handler = _RecordingHandler()
    dispatcher.register_connector("xero", handler)
    await PermissionStore(client).set_connector_permission("u1", "xero", 2)

    result = await dispatcher.dispatch("approve_invoice", {"invoice_id": "INV-1"}, "u1")

    assert result["ok"] is True
    assert result["result"] == {"handled": "approve_invoice"}
    assert result["requires_confirmation"] is True
    assert handler.calls == [("approve_invoice", {"invoice_id": "INV-1"}, "u1")]
    await client.close()


@pytest.mark.asyncio
async def test_vacation_mode_blocks_writes_but_not_reads(tmp_path: Path) -> None:
    dispatcher, client, runtime = await _dispatcher(tmp_path)
    handler = _RecordingHandler()
    dispatcher.register_connector(Connector.XERO, handler)
    store = PermissionStore(client)
    await store.set_connector_permission("u1", "xero", 3)
    await store.set_vacation_mode("u1", utc_now_naive() + timedelta(days=1))

    denied = await dispatcher.dispatch("void_invoice", {}, "u1")
    allowed = await dispatcher.dispatch("get_invoices", {}, "u1")

    assert denied["ok"] is False
    assert denied["permission"]["is_vacation_mode"] is True
    assert denied["message"].startswith("Vacation mode is active until ")
    assert allowed["ok"] is True
    assert [call[0] for call in handler.calls] == ["get_invoices"]
    assert (await runtime.gate_tracker.summary())["vacation_denials"] == 1
    await client.close()


@pytest.mark.asyncio
async def test_unknown_and_unconnected_tools(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)

    unknown = await dispatcher.dispatch("send_fax", {}, "u1")
    unconnected = await dispatcher.dispatch("search_gmail", {"query": "x"}, "u1")

    assert unknown == {"ok": False, "message": "Unknown tool: send_fax", "tool": "send_fax"}
    assert unconnected["ok"] is False
    assert unconnected["message"] == "Gmail is not connected"
    await client.close()


@pytest.mark.asyncio
async def test_execute_tool_routes_through_the_gate(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)
    handler = _RecordingHandler()
    dispatcher.register_connector(Connector.GOOGLE_SHEETS, handler)

    denied = await dispatcher.dispatch(
        "execute_tool", {"tool_name": "delete_sheet", "arguments": {"sheet": "A"}}, "u1"
    )
    read = await dispatcher.dispatch(
        "execute_tool", {"toolName": "read_sheet_range", "arguments": {"range": "A1:B2"}}, "u1"
    )
    memory = await dispatcher.dispatch(
        "execute_tool", {"tool_name": "read_graph"}, "u1", "p1"
    )
    nested = await dispatcher.dispatch("execute_tool", {"tool_name": "execute_tool"}, "u1")
    bad_arguments = await dispatcher.dispatch(
        "execute_tool", {"tool_name": "read_sheet_range", "arguments": ["A1"]}, "u1"
    )

    assert denied["ok"] is False
    assert read["ok"] is True
    assert handler.calls == [("read_sheet_range", {"range": "A1:B2"}, "u1")]
    assert memory["ok"] is True
    assert memory["result"] == {"entities": [], "relations": []}
    assert nested["ok"] is False
    assert bad_arguments["ok"] is False
    await client.close()


@pytest.mark.asyncio
async def test_get_tools_in_category_filters_by_level(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)
    dispatcher.register_connector(Connector.XERO, _RecordingHandler(), tools=["get_invoices"])
    await PermissionStore(client).set_connector_permission("u1", "xero", 1)

    invoices = await dispatcher.dispatch("get_tools_in_category", {"category": "Invoices"}, "u1")
    memory = await dispatcher.dispatch("get_tools_in_category", {"category": "memory"}, "u1")
    unknown = await dispatcher.dispatch("get_tools_in_category", {"category": "fax"}, "u1")

    names = [tool["name"] for tool in invoices["tools"]]
    assert "create_invoice_draft" in names
    assert "approve_invoice" not in names
    assert invoices["hidden_count"] == 4
    connected = {tool["name"]: tool["connected"] for tool in invoices["tools"]}
    assert connected["get_invoices"] is True
    assert connected["create_invoice_draft"] is False

    assert all(tool["connector"] is None for tool in memory["tools"])
    assert memory["hidden_count"] == 0
    assert unknown["ok"] is False
    assert "Available:" in unknown["message"]
    await client.close()


@pytest.mark.asyncio
async def test_register_connector_rejects_foreign_tools(tmp_path: Path) -> None:
    dispatcher, client, _ = await _dispatcher(tmp_path)

    with pytest.raises(ToolPolicyError):
        dispatcher.register_connector(Connector.GMAIL, _RecordingHandler(), tools=["get_invoices"])
    with pytest.raises(ToolPolicyError):
        dispatcher.register_connector(Connector.GMAIL, _RecordingHandler(), tools=["send_email"])
    assert "search_gmail" not in dispatcher.routable_tools()
    await client.close()

"""
MCP server exposing the scoped memory graph and gated connector tools.

Memory tools act on the caller's scope. ``user_id`` defaults to
MCP_DEFAULT_USER_ID; leaving ``project_id`` empty selects the general
(non-project) scope.

Connector tools are not registered one by one. Clients discover them with
get_tools_in_category (filtered by the user's permission levels) and run
them through execute_tool, which always passes the permission gate.

Every tool returns a JSON string with an ``ok`` flag.
"""

import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP

from config import load_config
from db.sqlite_client import get_sqlite_client
from dispatcher import ConnectorHandler, ToolDispatcher
from policy.tool_table import Connector

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("Scoped Memory Graph")

# Connector handlers registered by the hosting process.
_connector_handlers: Dict[Connector, ConnectorHandler] = {}


def register_connector_handler(connector: Connector, handler: ConnectorHandler) -> None:
    """Make ``connector``'s tools executable through execute_tool."""
    _connector_handlers[Connector.parse(connector)] = handler


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _resolve_user_id(user_id: Optional[str]) -> str:
    if user_id is not None and not isinstance(user_id, str):
        raise ValueError("user_id must be a string.")
    value = (user_id or "").strip()
    return value or load_config().mcp.default_user_id


def _build_dispatcher() -> ToolDispatcher:
    dispatcher = ToolDispatcher(get_sqlite_client())
    for connector, handler in _connector_handlers.items():
        dispatcher.register_connector(connector, handler)
    return dispatcher


async def _dispatch(
    tool_name: str,
    arguments: Dict[str, Any],
    user_id: Optional[str],
    project_id: Optional[str],
) -> str:
    try:
        resolved_user = _resolve_user_id(user_id)
        result = await _build_dispatcher().dispatch(
            tool_name, arguments, resolved_user, project_id
        )
        return _to_json(result)
    except ValueError as e:
        return _tool_response(ok=False, message=f"Error: {str(e)}", tool=tool_name, error=str(e))
    except Exception as e:
        logger.exception("Tool %s failed", tool_name)
        return _tool_response(ok=False, message=f"Error: {str(e)}", tool=tool_name, error=str(e))


# =============================================================================
# Memory tools
# =============================================================================


@mcp.tool()
async def create_entities(
    entities: List[Dict[str, Any]],
    is_user_edit: bool = False,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Create entities in the memory graph, or extend existing ones.

    Names are matched case-insensitively within the scope, so re-sending an
    entity only adds the observations it does not already have.

    Args:
        entities: [{"name": ..., "entityType": ..., "observations": [...]}]
        is_user_edit: True when the user explicitly asked you to remember this.
        user_id: Whose memory to write (defaults to the server's user).
        project_id: Project scope; empty means the general scope.
    """
    return await _dispatch(
        "create_entities",
        {"entities": entities, "is_user_edit": is_user_edit},
        user_id,
        project_id,
    )


@mcp.tool()
async def create_relations(
    relations: List[Dict[str, Any]],
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Create directed relations between existing entities.

    Relations whose endpoints do not exist, and relations already stored, are
    skipped. Only the newly stored ones are returned.

    Args:
        relations: [{"from": ..., "to": ..., "relationType": ...}]
    """
    return await _dispatch("create_relations", {"relations": relations}, user_id, project_id)


@mcp.tool()
async def add_observations(
    observations: List[Dict[str, Any]],
    is_user_edit: bool = False,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Add facts to existing entities.

    Args:
        observations: [{"entityName": ..., "contents": [...]}]
        is_user_edit: True when the user explicitly asked you to remember this.
    """
    return await _dispatch(
        "add_observations",
        {"observations": observations, "is_user_edit": is_user_edit},
        user_id,
        project_id,
    )


@mcp.tool()
async def delete_entities(
    entity_names: List[str],
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """Delete entities with their observations and every relation touching them."""
    return await _dispatch("delete_entities", {"entity_names": entity_names}, user_id, project_id)


@mcp.tool()
async def delete_observations(
    deletions: List[Dict[str, Any]],
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Delete specific facts from entities.

    Args:
        deletions: [{"entityName": ..., "observations": [...]}]
    """
    return await _dispatch("delete_observations", {"deletions": deletions}, user_id, project_id)


@mcp.tool()
async def delete_relations(
    relations: List[Dict[str, Any]],
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """Delete relations; the relation type is matched case-insensitively."""
    return await _dispatch("delete_relations", {"relations": relations}, user_id, project_id)


@mcp.tool()
async def read_graph(
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """Read the whole memory graph of the scope, newest first."""
    return await _dispatch("read_graph", {}, user_id, project_id)


@mcp.tool()
async def search_nodes(
    query: str,
    limit: int = 10,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Search entities by name, type and observations.

    Results are ranked: a name match beats an observation match, which beats
    a type match. Individual query words add smaller boosts.
    """
    if not isinstance(query, str):
        return _tool_response(ok=False, message="Error: query must be a string.", error="query must be a string.")
    return await _dispatch("search_nodes", {"query": query, "limit": limit}, user_id, project_id)


@mcp.tool()
async def open_nodes(
    names: List[str],
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """Fetch named entities plus every relation that touches any of them."""
    return await _dispatch("open_nodes", {"names": names}, user_id, project_id)


@mcp.tool()
async def get_memory_summary(
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Get the cached prose summary of the memory graph.

    ``is_stale`` is true when no summary exists or the graph has grown or
    shrunk since it was written; regenerate it with save_memory_summary.
    """
    return await _dispatch("get_memory_summary", {}, user_id, project_id)


@mcp.tool()
async def save_memory_summary(
    summary: str,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """Store a prose summary of the memory graph, replacing the previous one."""
    return await _dispatch("save_memory_summary", {"summary": summary}, user_id, project_id)


# =============================================================================
# Discovery tools
# =============================================================================


@mcp.tool()
async def get_tools_in_category(
    category: str,
    user_id: Optional[str] = None,
) -> str:
    """
    List the tools of a category that the user's permission levels allow.

    Categories: invoices, reports, banking, contacts, organisation, payments,
    email, spreadsheets, memory.
    """
    return await _dispatch("get_tools_in_category", {"category": category}, user_id, None)


@mcp.tool()
async def execute_tool(
    tool_name: str,
    arguments: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> str:
    """
    Execute a tool by name.

    Connector tools are checked against the user's permission level for that
    connector and against vacation mode. A denial returns ok=false with a
    reason to show the user as-is.
    """
    return await _dispatch(
        "execute_tool",
        {"tool_name": tool_name, "arguments": arguments or {}},
        user_id,
        project_id,
    )


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the database on startup."""
    client = get_sqlite_client()
    await client.init_db()


if __name__ == "__main__":
    import asyncio

    from config import setup_logging

    setup_logging(stream=sys.stderr)
    asyncio.run(startup())
    mcp.run()

"""
Tool dispatcher.

Routes a tool call made on behalf of ``(user_id, project_id)``:

- memory tools run against the scoped graph, summary cache and ledger and are
  never permission-gated;
- connector tools go through the permission gate and, when allowed, to the
  async handler registered for their connector;
- discovery tools (``get_tools_in_category``, ``execute_tool``) are ungated
  but only ever reveal or run what the gate permits.

Every result is a dict with ``ok`` and ``message``. Bad arguments and policy
denials come back as ``ok=False``; storage errors propagate to the caller.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from db.memory_graph import KnowledgeGraphManager
from db.permissions import PermissionStore
from db.scope import Scope
from db.sqlite_client import SQLiteClient
from db.summary_cache import SummaryCache
from policy.gate import PermissionGate, format_permission_error
from policy.tool_table import (
    CONNECTOR_LABELS,
    MEMORY_TOOLS,
    META_TOOLS,
    TOOL_POLICIES,
    Connector,
    ToolPolicyError,
    get_tool_policy,
    requires_confirmation,
    tool_categories,
    tools_in_category,
    validate_tool_registry,
)
from runtime_state import RuntimeState, runtime_state as default_runtime_state

logger = logging.getLogger(__name__)

# (tool_name, arguments, user_id) -> connector result
ConnectorHandler = Callable[[str, Dict[str, Any], str], Awaitable[Any]]

MEMORY_WRITE_TOOLS = frozenset(
    {
        "create_entities",
        "create_relations",
        "add_observations",
        "delete_entities",
        "delete_observations",
        "delete_relations",
        "save_memory_summary",
    }
)


def _require(arguments: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = arguments.get(key)
        if value is not None:
            return value
    raise ValueError(f"Missing required argument '{keys[0]}'")


def _as_list(value: Any, name: str) -> List[Any]:
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Iterable):
        raise ValueError(f"Argument '{name}' must be a list")
    return list(value)


async def execute_memory_tool(
    client: SQLiteClient, scope: Scope, tool_name: str, arguments: Mapping[str, Any]
) -> Any:
    """Run one memory tool and return a JSON-friendly result."""
    graph = KnowledgeGraphManager(client, scope)
    is_user_edit = bool(arguments.get("is_user_edit") or arguments.get("isUserEdit"))

    if tool_name == "create_entities":
        entities = _as_list(_require(arguments, "entities"), "entities")
        created = await graph.create_entities(entities, is_user_edit=is_user_edit)
        return [entity.to_dict() for entity in created]
    if tool_name == "create_relations":
        relations = _as_list(_require(arguments, "relations"), "relations")
        return [relation.to_dict() for relation in await graph.create_relations(relations)]
    if tool_name == "add_observations":
        observations = _as_list(_require(arguments, "observations"), "observations")
        return await graph.add_observations(observations, is_user_edit=is_user_edit)
    if tool_name == "delete_entities":
        names = _as_list(_require(arguments, "entity_names", "entityNames"), "entity_names")
        return await graph.delete_entities([str(name) for name in names])
    if tool_name == "delete_observations":
        deletions = _as_list(_require(arguments, "deletions"), "deletions")
        return await graph.delete_observations(deletions)
    if tool_name == "delete_relations":
        relations = _as_list(_require(arguments, "relations"), "relations")
        return [relation.to_dict() for relation in await graph.delete_relations(relations)]
    if tool_name == "read_graph":
        return (await graph.read_graph()).to_dict()
    if tool_name == "search_nodes":
        query = str(_require(arguments, "query"))
        limit = arguments.get("limit")
        limit = 10 if limit is None else int(limit)
        return [entity.to_dict() for entity in await graph.search_nodes(query, limit=limit)]
    if tool_name == "open_nodes":
        names = _as_list(_require(arguments, "names"), "names")
        return (await graph.open_nodes([str(name) for name in names])).to_dict()

    cache = SummaryCache(client, scope)
    if tool_name == "get_memory_summary":
        summary = await cache.get_summary()
        return {"summary": summary, "is_stale": await cache.is_summary_stale()}
    if tool_name == "save_memory_summary":
        text = str(_require(arguments, "summary")).strip()
        if not text:
            raise ValueError("Summary text must not be empty")
        return await cache.save_summary(text)

    raise ValueError(f"Unknown memory tool: {tool_name}")


class ToolDispatcher:
    def __init__(
        self,
        client: SQLiteClient,
        *,
        gate: Optional[PermissionGate] = None,
        runtime: Optional[RuntimeState] = None,
    ):
        self.client = client
        self.gate = gate or PermissionGate(PermissionStore(client))
        self.runtime = runtime or default_runtime_state
        self._handlers: Dict[Connector, ConnectorHandler] = {}
        self._connector_tools: Dict[str, Connector] = {}
        validate_tool_registry(self.routable_tools())

    def register_connector(
        self,
        connector: Connector,
        handler: ConnectorHandler,
        tools: Optional[Iterable[str]] = None,
    ) -> None:
        """Attach the handler that executes ``connector``'s tools.

        ``tools`` defaults to every table entry for the connector. Names the
        table does not map to this connector raise ToolPolicyError.
        """
        connector = Connector.parse(connector)
        if tools is None:
            tools = [
                name for name, policy in TOOL_POLICIES.items()
                if policy.connector is connector
            ]
        tools = list(tools)
        validate_tool_registry(tools)
        for name in tools:
            policy = get_tool_policy(name)
            if policy is None or policy.connector is not connector:
                raise ToolPolicyError(
                    f"Tool '{name}' is not a {connector.value} tool in the policy table"
                )
        self._handlers[connector] = handler
        for name in tools:
            self._connector_tools[name] = connector
        logger.info("Registered %s handler for %d tools", connector.value, len(tools))

    def routable_tools(self) -> List[str]:
        return sorted(MEMORY_TOOLS | META_TOOLS | set(self._connector_tools))

    async def dispatch(
        self,
        tool_name: str,
        arguments: Optional[Mapping[str, Any]],
        user_id: str,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        arguments = dict(arguments or {})
        tool_name = (tool_name or "").strip()
        try:
            scope = Scope(user_id, project_id)
        except ValueError as exc:
            return {"ok": False, "message": f"Error: {exc}", "tool": tool_name}

        if tool_name in MEMORY_TOOLS:
            return await self._dispatch_memory(scope, tool_name, arguments)
        if tool_name == "get_tools_in_category":
            return await self._tools_in_category(scope, arguments)
        if tool_name == "execute_tool":
            inner = str(arguments.get("tool_name") or arguments.get("toolName") or "").strip()
            if not inner or inner in META_TOOLS:
                return {
                    "ok": False,
                    "message": "Error: execute_tool needs the name of a memory or connector tool",
                    "tool": tool_name,
                }
            inner_arguments = arguments.get("arguments") or {}
            if not isinstance(inner_arguments, Mapping):
                return {
                    "ok": False,
                    "message": "Error: Argument 'arguments' must be an object",
                    "tool": inner,
                }
            return await self.dispatch(inner, inner_arguments, scope.user_id, scope.project_id)

        policy = get_tool_policy(tool_name)
        if policy is None:
            return {"ok": False, "message": f"Unknown tool: {tool_name}", "tool": tool_name}

        decision = await self.gate.check_tool_permission(scope.user_id, tool_name)
        await self.runtime.gate_tracker.record_event(
            tool_name=tool_name,
            connector=decision.connector,
            allowed=decision.allowed,
            is_vacation_mode=decision.is_vacation_mode,
        )
        if not decision.allowed:
            return {
                "ok": False,
                "message": format_permission_error(decision),
                "tool": tool_name,
                "permission": decision.to_dict(),
            }

        handler = self._handlers.get(policy.connector)
        if handler is None or tool_name not in self._connector_tools:
            return {
                "ok": False,
                "message": f"{CONNECTOR_LABELS[policy.connector]} is not connected",
                "tool": tool_name,
                "permission": decision.to_dict(),
            }

        logger.debug("Routing %s to %s for user=%s", tool_name, policy.connector.value, scope.user_id)
        result = await handler(tool_name, arguments, scope.user_id)
        return {
            "ok": True,
            "message": "Success",
            "tool": tool_name,
            "result": result,
            "requires_confirmation": requires_confirmation(tool_name),
        }

    async def _dispatch_memory(
        self, scope: Scope, tool_name: str, arguments: Dict[str, Any]
    ) -> Dict[str, Any]:
        async def _run():
            return await execute_memory_tool(self.client, scope, tool_name, arguments)

        try:
            if tool_name in MEMORY_WRITE_TOOLS:
                result = await self.runtime.write_lanes.run_write(
                    lane=scope.lane_key, operation=tool_name, task=_run
                )
            else:
                result = await _run()
        except (TypeError, ValueError) as exc:
            return {"ok": False, "message": f"Error: {exc}", "tool": tool_name}
        return {"ok": True, "message": "Success", "tool": tool_name, "result": result}

    async def _tools_in_category(self, scope: Scope, arguments: Dict[str, Any]) -> Dict[str, Any]:
        category = str(arguments.get("category") or "").strip().lower()
        if category not in tool_categories():
            return {
                "ok": False,
                "message": f"Unknown category '{category}'. Available: {', '.join(tool_categories())}",
                "tool": "get_tools_in_category",
            }
        candidates = tools_in_category(category)
        visible = await self.gate.get_visible_tools(scope.user_id, candidates)
        tools = []
        for name in visible:
            policy = get_tool_policy(name)
            tools.append(
                {
                    "name": name,
                    "connector": policy.connector.value if policy else None,
                    "required_level": int(policy.required_level) if policy else None,
                    "connected": policy is None or name in self._connector_tools,
                }
            )
        return {
            "ok": True,
            "message": "Success",
            "tool": "get_tools_in_category",
            "category": category,
            "tools": tools,
            "hidden_count": len(candidates) - len(visible),
        }

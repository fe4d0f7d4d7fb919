"""
Settings API - connector permission levels, vacation mode and tool checks.

Levels: 0 read-only (default), 1 create drafts, 2 approve & update,
3 delete & void. A connector with no stored level falls back to the user's
legacy global level, then to read-only.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from db import get_sqlite_client
from db.permissions import PermissionStore, to_naive_utc
from db.sqlite_client import utc_now_naive
from policy.gate import PermissionGate
from policy.tool_table import (
    CONNECTOR_PERMISSION_NAMES,
    Connector,
    PermissionLevel,
    TOOL_POLICIES,
    UNGATED_TOOLS,
)
from .auth import get_user_id, require_api_key


router = APIRouter(
    prefix="/settings",
    tags=["settings"],
    dependencies=[Depends(require_api_key)],
)


class ConnectorPermissionUpdate(BaseModel):
    permission_level: int


class GlobalPermissionUpdate(BaseModel):
    permission_level: Optional[int] = None


class VacationModeUpdate(BaseModel):
    until: datetime


class VisibleToolsRequest(BaseModel):
    tools: Optional[List[str]] = None


def _store() -> PermissionStore:
    return PermissionStore(get_sqlite_client())


def _gate() -> PermissionGate:
    return PermissionGate(_store())


def _parse_connector(connector: str) -> Connector:
    try:
        return Connector.parse(connector)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _parse_level(level) -> PermissionLevel:
    try:
        return PermissionLevel.parse(level)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _available_levels(connector: Connector):
    return {int(level): name for level, name in CONNECTOR_PERMISSION_NAMES[connector].items()}


@router.get("/connectors")
async def list_connector_permissions(user_id: str = Depends(get_user_id)):
    """Every connector with its effective level; unset connectors show the fallback."""
    stored = {row["connector"]: row for row in await _store().list_connector_permissions(user_id)}
    gate = _gate()
    permissions = {}
    for connector in Connector:
        level = await gate.get_connector_level(user_id, connector)
        record = stored.get(connector.value)
        permissions[connector.value] = {
            "permission_level": level,
            "level_name": CONNECTOR_PERMISSION_NAMES[connector][PermissionLevel(level)],
            "is_default": record is None,
            "updated_at": record["updated_at"] if record else None,
        }
    return {
        "connector_permissions": permissions,
        "available_levels": {
            connector.value: _available_levels(connector) for connector in Connector
        },
    }


@router.get("/connectors/{connector}")
async def get_connector_permission(connector: str, user_id: str = Depends(get_user_id)):
    parsed = _parse_connector(connector)
    record = await _store().get_connector_permission(user_id, parsed)
    level = await _gate().get_connector_level(user_id, parsed)
    return {
        "connector": parsed.value,
        "permission_level": level,
        "level_name": CONNECTOR_PERMISSION_NAMES[parsed][PermissionLevel(level)],
        "available_levels": _available_levels(parsed),
        "is_default": record is None,
        "updated_at": record["updated_at"] if record else None,
    }


@router.put("/connectors/{connector}")
async def set_connector_permission(
    connector: str,
    body: ConnectorPermissionUpdate,
    user_id: str = Depends(get_user_id),
):
    parsed = _parse_connector(connector)
    level = _parse_level(body.permission_level)
    record = await _store().set_connector_permission(user_id, parsed, level)
    return {
        "connector": parsed.value,
        "permission_level": record["permission_level"],
        "level_name": CONNECTOR_PERMISSION_NAMES[parsed][level],
        "available_levels": _available_levels(parsed),
        "updated_at": record["updated_at"],
    }


@router.delete("/connectors/{connector}")
async def reset_connector_permission(connector: str, user_id: str = Depends(get_user_id)):
    parsed = _parse_connector(connector)
    await _store().delete_connector_permission(user_id, parsed)
    return {
        "connector": parsed.value,
        "permission_level": int(PermissionLevel.READ_ONLY),
        "level_name": CONNECTOR_PERMISSION_NAMES[parsed][PermissionLevel.READ_ONLY],
        "message": "Permission reset to read-only (default)",
    }


@router.get("/permission-level")
async def get_global_permission_level(user_id: str = Depends(get_user_id)):
    return {"permission_level": await _store().get_global_permission_level(user_id)}


@router.put("/permission-level")
async def set_global_permission_level(
    body: GlobalPermissionUpdate, user_id: str = Depends(get_user_id)
):
    level = _parse_level(body.permission_level) if body.permission_level is not None else None
    await _store().set_global_permission_level(user_id, level)
    return {"permission_level": int(level) if level is not None else None}


# =============================================================================
# Vacation mode
# =============================================================================


@router.get("/vacation")
async def get_vacation_mode(user_id: str = Depends(get_user_id)):
    until = await _store().get_vacation_mode_until(user_id)
    active = until is not None and until > utc_now_naive()
    return {"active": active, "until": until.isoformat() if active else None}


@router.put("/vacation")
async def set_vacation_mode(body: VacationModeUpdate, user_id: str = Depends(get_user_id)):
    until = to_naive_utc(body.until)
    if until <= utc_now_naive():
        raise HTTPException(status_code=400, detail="Vacation end must be in the future")
    await _store().set_vacation_mode(user_id, until)
    return {"active": True, "until": until.isoformat()}


@router.delete("/vacation")
async def clear_vacation_mode(user_id: str = Depends(get_user_id)):
    await _store().set_vacation_mode(user_id, None)
    return {"active": False, "until": None}


# =============================================================================
# Tool checks
# =============================================================================


@router.get("/tools/{tool_name}/check")
async def check_tool_permission(tool_name: str, user_id: str = Depends(get_user_id)):
    decision = await _gate().check_tool_permission(user_id, tool_name)
    return decision.to_dict()


@router.post("/tools/visible")
async def get_visible_tools(body: VisibleToolsRequest, user_id: str = Depends(get_user_id)):
    candidates = body.tools
    if candidates is None:
        candidates = sorted(UNGATED_TOOLS) + list(TOOL_POLICIES)
    visible = await _gate().get_visible_tools(user_id, candidates)
    return {"visible": visible, "hidden": [name for name in candidates if name not in visible]}


@router.get("/safety-rules")
async def get_safety_rules(user_id: str = Depends(get_user_id)):
    return {"rules": await _gate().build_safety_rules(user_id)}

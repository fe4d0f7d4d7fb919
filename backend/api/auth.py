"""
Request authentication and identity for the REST and SSE surfaces.

Callers authenticate with the shared MCP_API_KEY (``X-MCP-API-Key`` header or
``Authorization: Bearer``). With no key configured every request is refused,
unless MCP_API_KEY_ALLOW_INSECURE_LOCAL is set and the client is loopback.

End users are not authenticated here: the caller vouches for ``X-User-Id``.
"""

import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Query, Request, status

from config import env_bool
from db.scope import Scope

_MCP_API_KEY_ENV = "MCP_API_KEY"
MCP_API_KEY_HEADER = "X-MCP-API-Key"
USER_ID_HEADER = "X-User-Id"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}
AUTH_CHALLENGE_HEADERS = {"WWW-Authenticate": "Bearer"}


def get_configured_api_key() -> str:
    return str(os.getenv(_MCP_API_KEY_ENV) or "").strip()


def allow_insecure_local_without_api_key() -> bool:
    return env_bool(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV, False)


def is_loopback_host(host: Optional[str]) -> bool:
    return str(host or "").strip().lower() in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def api_key_failure_reason(
    *, client_host: Optional[str], header_key: Optional[str], authorization: Optional[str]
) -> Optional[str]:
    """None when the request may pass, otherwise the 401 reason code."""
    configured = get_configured_api_key()
    if not configured:
        if allow_insecure_local_without_api_key():
            if is_loopback_host(client_host):
                return None
            return "insecure_local_override_requires_loopback"
        return "api_key_not_configured"

    provided = str(header_key or "").strip() or extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None


async def require_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    client = getattr(request, "client", None)
    reason = api_key_failure_reason(
        client_host=getattr(client, "host", None),
        header_key=x_mcp_api_key,
        authorization=authorization,
    )
    if reason is not None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "api_auth_failed", "reason": reason},
            headers=dict(AUTH_CHALLENGE_HEADERS),
        )


async def get_user_id(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    value = str(x_user_id or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"{USER_ID_HEADER} header is required")
    return value


async def get_scope(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    project_id: Optional[str] = Query(default=None),
) -> Scope:
    user_id = await get_user_id(x_user_id)
    return Scope(user_id, project_id)

import asyncio
import logging
import os
import sys
from typing import Awaitable, Callable

import uvicorn
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.auth import AUTH_CHALLENGE_HEADERS, MCP_API_KEY_HEADER, api_key_failure_reason
from config import load_config, setup_logging
from db.sqlite_client import close_sqlite_client
from mcp_server import mcp, startup

logger = logging.getLogger(__name__)


def apply_mcp_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        client = getattr(request, "client", None)
        reason = api_key_failure_reason(
            client_host=getattr(client, "host", None),
            header_key=request.headers.get(MCP_API_KEY_HEADER),
            authorization=request.headers.get("Authorization"),
        )
        if reason is not None:
            logger.warning("Rejected SSE request from %s: %s", getattr(client, "host", "?"), reason)
            return JSONResponse(
                status_code=401,
                content={"error": "mcp_sse_auth_failed", "reason": reason},
                headers=dict(AUTH_CHALLENGE_HEADERS),
            )
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app("/sse")
    return apply_mcp_api_key_middleware(app)


async def _prepare_database() -> None:
    await startup()
    # The serving loop opens its own engine.
    await close_sqlite_client()


def main():
    """
    Run the memory graph MCP server over SSE (Server-Sent Events).
    Used by clients that cannot spawn a stdio server.
    """
    config = load_config()
    setup_logging(config)
    logger.info("Initializing memory graph SSE server...")
    asyncio.run(_prepare_database())

    app = create_sse_app()
    logger.info("SSE endpoint: http://%s:%d/sse", config.server.host, config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()

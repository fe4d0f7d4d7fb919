import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import memory_router, settings_router
from config import load_config, setup_logging
from db import close_sqlite_client, get_sqlite_client
from runtime_state import runtime_state

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: initialize storage on startup, release it on shutdown."""
    setup_logging(load_config())
    logger.info("Memory graph API starting...")

    try:
        sqlite_client = get_sqlite_client()
        await sqlite_client.init_db()
    except Exception as e:
        logger.error("Failed to initialize SQLite: %s", e)
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    yield

    logger.info("Closing database connections...")
    await close_sqlite_client()


app = FastAPI(
    title="Scoped Memory Graph API",
    description="Per-user, per-project memory graph with tiered connector permissions",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)
app.include_router(settings_router)


@app.get("/")
async def root():
    return {
        "message": "Scoped Memory Graph API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check: database round-trip plus write-lane and gate counters."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        payload["database"] = {"reachable": await get_sqlite_client().ping()}
    except Exception as e:
        logger.warning("Health check database ping failed: %s", e)
        payload["status"] = "degraded"
        payload["database"] = {"reachable": False, "reason": str(e)}

    payload["runtime"] = await runtime_state.status()
    return payload


if __name__ == "__main__":
    import uvicorn

    config = load_config()
    uvicorn.run(app, host=config.server.host, port=config.server.port)

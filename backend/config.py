"""
Configuration and logging setup for the memory graph / access-control backend.

Values come from environment variables (optionally via a .env file found from
the current working directory). Malformed numeric values fall back to the
defaults rather than failing at import time.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, TextIO

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


@dataclass
class DatabaseConfig:
    """SQLite storage settings."""
    url: Optional[str]
    busy_timeout_sec: float


@dataclass
class ServerConfig:
    """HTTP listener settings shared by the REST app and the SSE transport."""
    host: str
    port: int


@dataclass
class MCPConfig:
    """Settings for the MCP tool surface."""
    default_user_id: str
    write_lane_queue: bool


@dataclass
class AppConfig:
    """Main application configuration."""
    log_level: str
    database: DatabaseConfig
    server: ServerConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    database = DatabaseConfig(
        url=(os.getenv("DATABASE_URL") or "").strip() or None,
        busy_timeout_sec=env_float("SQLITE_BUSY_TIMEOUT_SEC", 30.0, minimum=1.0),
    )
    server = ServerConfig(
        host=os.getenv("HOST", "0.0.0.0"),
        port=env_int("PORT", 8000, minimum=1),
    )
    mcp = MCPConfig(
        default_user_id=(os.getenv("MCP_DEFAULT_USER_ID") or "").strip() or "default",
        write_lane_queue=env_bool("RUNTIME_WRITE_LANE_QUEUE", True),
    )
    return AppConfig(
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        database=database,
        server=server,
        mcp=mcp,
    )


def setup_logging(config: Optional[AppConfig] = None, stream: Optional[TextIO] = None) -> None:
    """Configure the root logger once for the whole process.

    The stdio MCP transport owns stdout, so it passes ``sys.stderr``.
    """
    if config is None:
        config = load_config()
    level = getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        handlers=[logging.StreamHandler(stream or sys.stdout)],
    )

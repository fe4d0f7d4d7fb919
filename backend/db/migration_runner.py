"""
SQLite migration runner for the memory graph database.

Migrations are SQL files under backend/db/migrations with names like:
    0001_description.sql

They bring databases created by older releases (before project scopes,
before the user-edit flag) up to the current layout. Fresh databases get the
columns from ORM metadata first, so re-adding a column is tolerated.

Applied versions are tracked in `schema_migrations` together with a checksum
of the file that was applied.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

from config import env_float

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$",
    re.IGNORECASE | re.DOTALL,
)
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class MigrationFile:
    """A normalized migration file descriptor."""

    version: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """
    Extract a local file path from a sqlite SQLAlchemy URL.

    Returns None for in-memory databases. Raises ValueError for non-sqlite URLs.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = unquote(raw_path.split("?", 1)[0].split("#", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def checksum_sql(content: bytes) -> str:
    """Checksum with line endings normalized, so CRLF checkouts still match."""
    try:
        normalized = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n")
        payload = normalized.encode("utf-8")
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quotes, dropping comment-only parts."""
    statements: List[str] = []
    buffer: List[str] = []
    quote: Optional[str] = None

    for char in script:
        if char in ("'", '"'):
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        if char == ";" and quote is None:
            statements.append("".join(buffer))
            buffer = []
        else:
            buffer.append(char)
    statements.append("".join(buffer))

    cleaned: List[str] = []
    for statement in statements:
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        if lines:
            cleaned.append("\n".join(lines).strip())
    return cleaned


class MigrationRunner:
    """Discover and apply SQL migrations with version tracking."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        self.lock_file_path = self._resolve_lock_path(
            lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "").strip() or None
        )
        if lock_timeout_seconds is None:
            lock_timeout_seconds = env_float("DB_MIGRATION_LOCK_TIMEOUT_SEC", 10.0)
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _resolve_lock_path(self, configured: Optional[Union[Path, str]]) -> Optional[Path]:
        if configured is not None:
            candidate = Path(str(configured)).expanduser()
            if not candidate.is_absolute() and self.database_file is not None:
                candidate = self.database_file.parent / candidate
            return candidate.resolve()
        if self.database_file is None:
            return None
        return self.database_file.with_name(self.database_file.name + ".migrate.lock")

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        discovered: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            discovered.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=checksum_sql(path.read_bytes()),
                )
            )
        return discovered

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from current metadata on every boot.
        if not migrations or self.database_file is None:
            return []

        if self.lock_file_path is None:
            return self._apply_unlocked(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply_unlocked(migrations)
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for migration lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply_unlocked(self, migrations: List[MigrationFile]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied_versions: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL,
                    checksum TEXT NOT NULL
                )
                """
            )
            conn.commit()
            recorded = self._recorded_checksums(conn)

            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise RuntimeError(
                            "Checksum mismatch for migration "
                            f"{migration.version}: recorded={previous} "
                            f"current={migration.checksum}"
                        )
                    continue

                script = migration.path.read_text(encoding="utf-8")
                for statement in split_sql_statements(script):
                    self._execute(conn, statement)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                logger.debug("Applied migration %s (%s)", migration.version, migration.path.name)
                applied_versions.append(migration.version)
        return applied_versions

    @staticmethod
    def _recorded_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        cursor = conn.execute("SELECT version, checksum FROM schema_migrations")
        return {str(row["version"]): str(row["checksum"]) for row in cursor.fetchall()}

    @staticmethod
    def _execute(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as exc:
            duplicate_column = "duplicate column name" in str(exc).lower()
            if duplicate_column and _ADD_COLUMN_PATTERN.match(statement):
                return
            raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLite client startup."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()

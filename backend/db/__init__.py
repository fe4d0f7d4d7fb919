"""Storage layer: SQLite client, scoped memory graph and permission store."""

from .memory_graph import GraphEntity, GraphRelation, KnowledgeGraph, KnowledgeGraphManager
from .permissions import PermissionStore
from .scope import Scope
from .sqlite_client import SQLiteClient, close_sqlite_client, get_sqlite_client
from .summary_cache import SummaryCache
from .user_edits import UserEditLedger

__all__ = [
    "GraphEntity",
    "GraphRelation",
    "KnowledgeGraph",
    "KnowledgeGraphManager",
    "PermissionStore",
    "SQLiteClient",
    "Scope",
    "SummaryCache",
    "UserEditLedger",
    "close_sqlite_client",
    "get_sqlite_client",
]

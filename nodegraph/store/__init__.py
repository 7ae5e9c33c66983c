"""
nodegraph Node Stores

- NodeBackend: the shared contract
- SQLiteNodeBackend: relational EAV tables (aiosqlite)
- GraphNodeBackend: in-memory typed graph with JSON snapshots
- migrate: copy one backend into another
"""

from nodegraph.store.base import NodeBackend
from nodegraph.store.graph_store import GraphNodeBackend
from nodegraph.store.migration import MigrationResult, migrate
from nodegraph.store.sqlite_store import SQLiteNodeBackend

__all__ = ["NodeBackend", "SQLiteNodeBackend", "GraphNodeBackend", "MigrationResult", "migrate"]

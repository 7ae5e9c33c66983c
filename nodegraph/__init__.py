"""
nodegraph - Node-Graph Store and Query Engine

A schema-less entity-attribute-value store where everything is a node:
- Supertags with inheritance (field defaults flow down `extends` chains)
- Ordered, multi-valued properties holding scalars or node references
- A composable filter/query algebra with sorting and limits
- Live query subscriptions and reactive computed aggregates
- Interchangeable relational (SQLite) and native graph backends
"""

__version__ = "0.1.0"

from nodegraph.config import NodeGraphConfig
from nodegraph.context import NodeGraph, create_backend
from nodegraph.events import MutationEvent, MutationEventBus, MutationType
from nodegraph.exceptions import (
    BackendNotInitializedError,
    NodeGraphError,
    NotFoundError,
    ValidationError,
)
from nodegraph.query.filters import QueryDefinition
from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS
from nodegraph.store.base import NodeBackend
from nodegraph.store.graph_store import GraphNodeBackend
from nodegraph.store.migration import MigrationResult, migrate
from nodegraph.store.sqlite_store import SQLiteNodeBackend
from nodegraph.types import AssembledNode, CreateNodeOptions, Reference, Scalar

__all__ = [
    # Context
    "NodeGraph",
    "NodeGraphConfig",
    "create_backend",
    # Backends
    "NodeBackend",
    "SQLiteNodeBackend",
    "GraphNodeBackend",
    "migrate",
    "MigrationResult",
    # Data model
    "AssembledNode",
    "CreateNodeOptions",
    "Scalar",
    "Reference",
    "QueryDefinition",
    "SYSTEM_FIELDS",
    "SYSTEM_SUPERTAGS",
    # Events
    "MutationEvent",
    "MutationEventBus",
    "MutationType",
    # Errors
    "NodeGraphError",
    "NotFoundError",
    "ValidationError",
    "BackendNotInitializedError",
    "__version__",
]

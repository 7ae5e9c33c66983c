"""
nodegraph Types

Dataclasses for the node-graph data model:
- Node records and lifecycle timestamps
- Tagged property values (scalar vs. node reference)
- Property and supertag edges
- Assembled read views and query results
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# =============================================================================
# Property Values
# =============================================================================

class ValueKind(str, Enum):
    """Storage discriminator for property values."""
    SCALAR = "scalar"
    REFERENCE = "reference"


@dataclass(frozen=True)
class Scalar:
    """Any JSON-serializable value (string, number, bool, list, dict, None)."""
    value: Any

    @property
    def kind(self) -> ValueKind:
        return ValueKind.SCALAR

    @property
    def plain(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Reference:
    """A pointer to another node."""
    node_id: str

    @property
    def kind(self) -> ValueKind:
        return ValueKind.REFERENCE

    @property
    def plain(self) -> Any:
        return self.node_id


PropertyValue = Union[Scalar, Reference]


def as_property_value(value: Any) -> PropertyValue:
    """Wrap a raw Python value as a Scalar unless it is already tagged."""
    if isinstance(value, (Scalar, Reference)):
        return value
    return Scalar(value)


def encode_value(value: PropertyValue) -> Tuple[str, str]:
    """Encode a tagged value as (kind, json text) for storage."""
    if isinstance(value, Reference):
        return ValueKind.REFERENCE.value, json.dumps(value.node_id)
    return ValueKind.SCALAR.value, json.dumps(value.value)


def decode_value(kind: str, raw: Optional[str]) -> PropertyValue:
    """Inverse of encode_value."""
    decoded = json.loads(raw) if raw is not None else None
    if kind == ValueKind.REFERENCE.value:
        return Reference(str(decoded))
    return Scalar(decoded)


# =============================================================================
# Field Types
# =============================================================================

class FieldType(str, Enum):
    """Declared value type of a field (display and validation hint only)."""
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    SELECT = "select"
    URL = "url"
    EMAIL = "email"
    NODE = "node"
    NODES = "nodes"
    JSON = "json"


# =============================================================================
# Stored Records
# =============================================================================

@dataclass
class NodeRecord:
    """A row of the nodes table (or a node vertex in the graph backend)."""
    id: str
    content: str
    created_at: datetime
    updated_at: datetime
    content_plain: str = ""
    system_id: Optional[str] = None
    owner_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class PropertyEdge:
    """has_field edge: node -> field, carrying one value."""
    node_id: str
    field_node_id: str
    value: PropertyValue
    order: int
    created_at: datetime
    updated_at: datetime


@dataclass
class SupertagEdge:
    """has_supertag edge: node -> supertag node."""
    node_id: str
    supertag_id: str
    order: int
    created_at: Optional[datetime] = None


# =============================================================================
# Read Views
# =============================================================================

@dataclass
class PropertyEntry:
    """One value of a property as seen on an assembled node."""
    data: PropertyValue
    field_node_id: str
    field_name: str
    field_system_id: Optional[str]
    order: int = 0
    inherited: bool = False

    @property
    def value(self) -> Any:
        return self.data.plain

    @property
    def is_reference(self) -> bool:
        return isinstance(self.data, Reference)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "kind": self.data.kind.value,
            "fieldNodeId": self.field_node_id,
            "fieldName": self.field_name,
            "fieldSystemId": self.field_system_id,
            "order": self.order,
            "inherited": self.inherited,
        }


@dataclass(frozen=True)
class SupertagInfo:
    id: str
    system_id: Optional[str]
    name: str


@dataclass
class FieldDefinition:
    """A field declared on a supertag, with its default value if any."""
    field_node_id: str
    field_name: str
    default_value: Any = None
    default_data: Optional[PropertyValue] = None


@dataclass
class AssembledNode:
    """Materialized read view: node + ordered properties + supertags."""
    id: str
    content: str
    system_id: Optional[str]
    owner_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    properties: Dict[str, List[PropertyEntry]] = field(default_factory=dict)
    supertags: List[SupertagInfo] = field(default_factory=list)

    def values(self, field_key: str) -> List[Any]:
        """Plain values for a field, looked up by system id or display name."""
        return [entry.value for entry in self.entries(field_key)]

    def entries(self, field_key: str) -> List[PropertyEntry]:
        if field_key in self.properties:
            return list(self.properties[field_key])
        for entries in self.properties.values():
            if entries and entries[0].field_system_id == field_key:
                return list(entries)
        return []

    def first(self, field_key: str, default: Any = None) -> Any:
        found = self.values(field_key)
        return found[0] if found else default

    def has_supertag(self, system_id: str) -> bool:
        return any(st.system_id == system_id for st in self.supertags)

    def signature(self) -> str:
        """Stable fingerprint of content, properties and supertags."""
        props = {
            name: [[e.data.kind.value, e.value, e.order] for e in entries]
            for name, entries in sorted(self.properties.items())
        }
        return json.dumps(
            [self.content, props, [st.id for st in self.supertags]],
            sort_keys=True,
            default=str,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "systemId": self.system_id,
            "ownerId": self.owner_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "deletedAt": self.deleted_at.isoformat() if self.deleted_at else None,
            "properties": {
                name: [e.to_dict() for e in entries]
                for name, entries in self.properties.items()
            },
            "supertags": [
                {"id": st.id, "systemId": st.system_id, "name": st.name}
                for st in self.supertags
            ],
        }


@dataclass
class CreateNodeOptions:
    """Options accepted by NodeBackend.create_node."""
    content: str
    system_id: Optional[str] = None
    owner_id: Optional[str] = None
    supertag_system_id: Optional[str] = None
    # field system id -> value, written with set_property semantics
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryEvaluationResult:
    nodes: List[AssembledNode]
    total_count: int
    evaluated_at: datetime
    # Every matching id, before the limit
    matched_ids: List[str] = field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [n.id for n in self.nodes]

"""
nodegraph Backend Migration

Copies a node store from one backend into another, typically from the
relational SQLite store into the native graph store.

- Node ids, timestamps, owners and soft-delete markers are kept
- System nodes (fields, supertags) that already exist in the target are
  matched by system id instead of copied; edges and references are
  rewritten to the target's ids
- Writes go through the storage primitives, so no mutation events fire
- Edges the target rejects are reported per node and do not stop the run
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from nodegraph.exceptions import NodeGraphError
from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS
from nodegraph.store.base import NodeBackend
from nodegraph.types import AssembledNode, PropertyValue, Reference, SupertagEdge

logger = structlog.get_logger(__name__)

_META_SUPERTAGS = (SYSTEM_SUPERTAGS.SUPERTAG, SYSTEM_SUPERTAGS.FIELD)


@dataclass
class MigrationError:
    node_id: str
    error: str


@dataclass
class ValidationDiff:
    node_id: str
    diff: str


@dataclass
class MigrationResult:
    """Result of a backend-to-backend migration."""
    nodes_count: int = 0
    properties_count: int = 0
    supertags_count: int = 0
    extends_count: int = 0
    matched_system_nodes: int = 0
    errors: List[MigrationError] = field(default_factory=list)
    validation_diffs: List[ValidationDiff] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and not self.validation_diffs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodesCount": self.nodes_count,
            "propertiesCount": self.properties_count,
            "supertagsCount": self.supertags_count,
            "extendsCount": self.extends_count,
            "matchedSystemNodes": self.matched_system_nodes,
            "errors": [{"nodeId": e.node_id, "error": e.error} for e in self.errors],
            "validationDiffs": [{"nodeId": d.node_id, "diff": d.diff} for d in self.validation_diffs],
        }


async def migrate(
    source: NodeBackend,
    target: NodeBackend,
    validate: bool = False,
) -> MigrationResult:
    """
    Copy every node and edge of `source` into `target`.

    Both backends must be initialized. The source is only read. The target
    may already be bootstrapped; its system nodes are reused.

    Args:
        source: Backend to read from
        target: Backend to write into
        validate: Compare every copied node in both backends afterwards

    Returns:
        MigrationResult with counts, per-node errors and validation diffs
    """
    source._ensure_initialized()
    target._ensure_initialized()

    snapshot = await source.load_snapshot()
    result = MigrationResult()
    records = snapshot.all_nodes()
    logger.info(
        f"Migrating {len(records)} nodes: {source.backend_type} -> {target.backend_type}"
    )

    # Step 1: nodes
    id_map: Dict[str, str] = {}
    copied: List[str] = []
    matched: Set[str] = set()

    for record in records:
        existing = None
        if record.system_id and record.deleted_at is None:
            existing = await target._get_record_by_system_id(record.system_id)
        if existing is not None:
            id_map[record.id] = existing.id
            matched.add(record.id)
            result.matched_system_nodes += 1
            continue

        if await target._get_record(record.id) is not None:
            result.errors.append(MigrationError(record.id, "Node already exists in target"))
            continue

        await target._insert_record(replace(record))
        id_map[record.id] = record.id
        copied.append(record.id)
        result.nodes_count += 1

    # Step 2: supertag edges, meta tags first so the graph target can type
    # supertag and field nodes before anything points at them
    meta_ids = {snapshot.by_system_id(s).id for s in _META_SUPERTAGS if snapshot.by_system_id(s)}
    st_edges: List[SupertagEdge] = []
    for record in records:
        if record.id in id_map:
            st_edges.extend(snapshot.supertag_edges(record.id))
    st_edges.sort(key=lambda e: e.supertag_id not in meta_ids)

    for edge in st_edges:
        node_id = id_map[edge.node_id]
        supertag_id = id_map.get(edge.supertag_id)
        if supertag_id is None:
            result.errors.append(MigrationError(edge.node_id, f"Unknown supertag {edge.supertag_id}"))
            continue
        if edge.node_id in matched and any(
            e.supertag_id == supertag_id for e in await target._get_supertag_edges(node_id)
        ):
            continue
        try:
            await target._insert_supertag_edge(replace(edge, node_id=node_id, supertag_id=supertag_id))
        except NodeGraphError as e:
            result.errors.append(MigrationError(edge.node_id, f"Supertag edge rejected: {e}"))
            continue
        result.supertags_count += 1

    # Step 3: property edges
    extends_field = snapshot.by_system_id(SYSTEM_FIELDS.EXTENDS)
    for record in records:
        if record.id not in id_map:
            continue
        node_id = id_map[record.id]
        edges = snapshot.property_edges(record.id)

        if record.id in matched:
            # Bootstrapped system nodes keep their own values; only fields
            # the target lacks are copied (e.g. user-set supertag defaults)
            present = {e.field_node_id for e in await target._get_property_edges(node_id)}
            edges = [e for e in edges if id_map.get(e.field_node_id) not in present]

        for edge in edges:
            field_node_id = id_map.get(edge.field_node_id)
            if field_node_id is None:
                result.errors.append(MigrationError(record.id, f"Unknown field {edge.field_node_id}"))
                continue
            try:
                await target._insert_property_edge(replace(
                    edge,
                    node_id=node_id,
                    field_node_id=field_node_id,
                    value=_remap_value(edge.value, id_map),
                ))
            except NodeGraphError as e:
                result.errors.append(MigrationError(record.id, f"Property edge rejected: {e}"))
                continue
            if extends_field is not None and edge.field_node_id == extends_field.id:
                result.extends_count += 1
            else:
                result.properties_count += 1

    await target.save()

    for error in result.errors:
        logger.warning(f"Migration error for {error.node_id}: {error.error}")

    if validate:
        result.validation_diffs = await validate_migration(source, target, copied, id_map)

    logger.info(
        f"Migration complete: {result.nodes_count} nodes, {result.properties_count} properties, "
        f"{result.supertags_count} supertags, {result.extends_count} extends, "
        f"{len(result.errors)} errors, {len(result.validation_diffs)} diffs"
    )
    return result


async def validate_migration(
    source: NodeBackend,
    target: NodeBackend,
    node_ids: List[str],
    id_map: Optional[Dict[str, str]] = None,
) -> List[ValidationDiff]:
    """
    Compare assembled nodes across two backends.

    Content, owner, timestamps, properties (by field name, references
    mapped through id_map) and supertags are compared. Soft-deleted nodes
    are included.
    """
    id_map = id_map or {}
    source_snapshot = await source.load_snapshot()
    target_snapshot = await target.load_snapshot()

    diffs: List[ValidationDiff] = []
    for node_id in node_ids:
        before = source_snapshot.assemble(node_id)
        after = target_snapshot.assemble(id_map.get(node_id, node_id))
        if before is None or after is None:
            diffs.append(ValidationDiff(node_id, "missing in " + ("source" if before is None else "target")))
            continue

        expected = _fingerprint(before, id_map)
        actual = _fingerprint(after)
        for key, value in expected.items():
            if actual[key] != value:
                diffs.append(ValidationDiff(node_id, f"{key}: {value!r} != {actual[key]!r}"))
    return diffs


def _remap_value(value: PropertyValue, id_map: Dict[str, str]) -> PropertyValue:
    if isinstance(value, Reference):
        return Reference(id_map.get(value.node_id, value.node_id))
    return value


def _fingerprint(node: AssembledNode, id_map: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    remap = id_map or {}
    properties: Dict[str, List[Tuple[str, Any, int]]] = {}
    for name, entries in node.properties.items():
        properties[name] = [
            (
                e.data.kind.value,
                remap.get(e.value, e.value) if e.is_reference else e.value,
                e.order,
            )
            for e in entries
        ]
    return {
        "content": node.content,
        "system_id": node.system_id,
        "owner_id": remap.get(node.owner_id, node.owner_id) if node.owner_id else None,
        "created_at": node.created_at,
        "updated_at": node.updated_at,
        "deleted_at": node.deleted_at,
        "properties": properties,
        "supertags": [remap.get(st.id, st.id) for st in node.supertags],
    }

"""
nodegraph Inheritance Resolver

Supertags form a DAG through `field:extends` edges (a supertag may extend
several parents). Field defaults are declared as property edges on the
supertag node itself. Everything here is a pure function of a
GraphSnapshot; nothing is cached between calls.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional, Set

from nodegraph.schema import SYSTEM_FIELDS
from nodegraph.snapshot import GraphSnapshot
from nodegraph.types import AssembledNode, FieldDefinition, PropertyEntry, Scalar

DEFAULT_MAX_DEPTH = 20

# Fields on a supertag node that describe the supertag, not defaults
_NON_DEFAULT_FIELDS = frozenset({
    SYSTEM_FIELDS.SUPERTAG,
    SYSTEM_FIELDS.EXTENDS,
    SYSTEM_FIELDS.FIELD_TYPE,
})


def ancestor_supertags(
    snapshot: GraphSnapshot,
    supertag_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> List[str]:
    """
    Walk `extends` edges breadth-first from a supertag.

    Returns ancestor ids closest-first, excluding the start node. Stops on
    revisits and at max_depth levels; truncation is silent.
    """
    visited: Set[str] = {supertag_id}
    ancestors: List[str] = []
    queue = deque([(supertag_id, 0)])

    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for parent_id in snapshot.extends_of(current):
            if parent_id in visited or snapshot.live(parent_id) is None:
                continue
            visited.add(parent_id)
            ancestors.append(parent_id)
            queue.append((parent_id, depth + 1))

    return ancestors


def descendant_supertags(
    snapshot: GraphSnapshot,
    supertag_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> List[str]:
    """Inverse of ancestor_supertags: every supertag that extends supertag_id."""
    children: Dict[str, List[str]] = {}
    for record in snapshot.live_nodes():
        for parent_id in snapshot.extends_of(record.id):
            children.setdefault(parent_id, []).append(record.id)

    visited: Set[str] = {supertag_id}
    descendants: List[str] = []
    queue = deque([(supertag_id, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for child_id in children.get(current, []):
            if child_id in visited:
                continue
            visited.add(child_id)
            descendants.append(child_id)
            queue.append((child_id, depth + 1))
    return descendants


def supertag_field_definitions(
    snapshot: GraphSnapshot,
    supertag_id: str,
) -> Dict[str, FieldDefinition]:
    """
    Fields declared directly on a supertag, keyed by field system id
    (or field node id for fields without one).
    """
    definitions: Dict[str, FieldDefinition] = {}
    for edge in snapshot.property_edges(supertag_id):
        field_node = snapshot.live(edge.field_node_id)
        if field_node is None or field_node.system_id in _NON_DEFAULT_FIELDS:
            continue
        key = field_node.system_id or field_node.id
        if key in definitions:
            continue
        definitions[key] = FieldDefinition(
            field_node_id=field_node.id,
            field_name=snapshot.field_name(field_node.id),
            default_value=edge.value.plain,
            default_data=edge.value,
        )
    return definitions


def resolution_order(
    snapshot: GraphSnapshot,
    node_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> List[str]:
    """
    Supertags to consult for defaults, closest first.

    Direct supertags come first in assignment order, then their parents
    level by level. A supertag reachable along several paths is consulted
    at its shallowest depth.
    """
    direct = snapshot.supertag_ids(node_id)
    order: List[str] = []
    seen: Set[str] = set()
    queue = deque((st_id, 0) for st_id in direct)

    while queue:
        current, depth = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        order.append(current)
        if depth >= max_depth:
            continue
        for parent_id in snapshot.extends_of(current):
            if parent_id not in seen and snapshot.live(parent_id) is not None:
                queue.append((parent_id, depth + 1))

    return order


def assemble_with_inheritance(
    snapshot: GraphSnapshot,
    node_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Optional[AssembledNode]:
    """Assemble a node and merge inherited field defaults (closest wins)."""
    node = snapshot.assemble(node_id)
    if node is None:
        return None

    present: Set[str] = set()
    for entries in node.properties.values():
        for entry in entries:
            present.add(entry.field_system_id or entry.field_node_id)

    for st_id in resolution_order(snapshot, node_id, max_depth):
        for key, definition in supertag_field_definitions(snapshot, st_id).items():
            if key in present or definition.default_value is None:
                continue
            field_node = snapshot.node(definition.field_node_id)
            node.properties.setdefault(definition.field_name, []).append(
                PropertyEntry(
                    data=definition.default_data or Scalar(definition.default_value),
                    field_node_id=definition.field_node_id,
                    field_name=definition.field_name,
                    field_system_id=field_node.system_id if field_node else None,
                    order=0,
                    inherited=True,
                )
            )
            present.add(key)

    node.properties = dict(sorted(node.properties.items()))
    return node

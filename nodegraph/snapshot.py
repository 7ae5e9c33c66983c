"""
nodegraph Graph Snapshot

Read model shared by every backend. A backend loads its rows into a
GraphSnapshot; node assembly, inheritance resolution and query
evaluation then run synchronously against it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Optional, Set

from nodegraph.schema import SYSTEM_FIELDS
from nodegraph.types import (
    AssembledNode,
    NodeRecord,
    PropertyEdge,
    PropertyEntry,
    Reference,
    SupertagEdge,
    SupertagInfo,
)


class GraphSnapshot:
    """
    Point-in-time view of nodes, property edges and supertag edges.

    A snapshot may be partial (loaded for a handful of node ids plus the
    field and supertag nodes they point at); `complete` tells callers
    whether graph-wide questions such as descendants can be answered.
    """

    def __init__(
        self,
        nodes: Iterable[NodeRecord],
        property_edges: Iterable[PropertyEdge],
        supertag_edges: Iterable[SupertagEdge],
        complete: bool = True,
    ):
        self.complete = complete
        self._nodes: Dict[str, NodeRecord] = {}
        self._by_system_id: Dict[str, str] = {}
        self._properties: Dict[str, List[PropertyEdge]] = defaultdict(list)
        self._supertags: Dict[str, List[SupertagEdge]] = defaultdict(list)
        self._tagged_with: Dict[str, Set[str]] = defaultdict(set)

        for record in nodes:
            self._nodes[record.id] = record
            if record.system_id and record.deleted_at is None:
                self._by_system_id[record.system_id] = record.id

        for edge in property_edges:
            self._properties[edge.node_id].append(edge)
        for edges in self._properties.values():
            edges.sort(key=lambda e: e.order)

        for st_edge in supertag_edges:
            self._supertags[st_edge.node_id].append(st_edge)
            self._tagged_with[st_edge.supertag_id].add(st_edge.node_id)
        for st_edges in self._supertags.values():
            st_edges.sort(key=lambda e: e.order)

    # ==========================================================================
    # Lookup
    # ==========================================================================

    def node(self, node_id: str) -> Optional[NodeRecord]:
        return self._nodes.get(node_id)

    def live(self, node_id: Optional[str]) -> Optional[NodeRecord]:
        if node_id is None:
            return None
        record = self._nodes.get(node_id)
        if record is None or record.deleted_at is not None:
            return None
        return record

    def by_system_id(self, system_id: str) -> Optional[NodeRecord]:
        node_id = self._by_system_id.get(system_id)
        return self._nodes.get(node_id) if node_id else None

    def resolve(self, ref: str) -> Optional[NodeRecord]:
        """Resolve a system id or a node id to a live record."""
        return self.by_system_id(ref) or self.live(ref)

    def live_nodes(self) -> List[NodeRecord]:
        """All non-deleted nodes, ordered by (created_at, id)."""
        live = [r for r in self._nodes.values() if r.deleted_at is None]
        live.sort(key=lambda r: (r.created_at, r.id))
        return live

    def all_nodes(self) -> List[NodeRecord]:
        """Every node including soft-deleted ones, ordered by (created_at, id)."""
        return sorted(self._nodes.values(), key=lambda r: (r.created_at, r.id))

    def property_edges(self, node_id: str, field_node_id: Optional[str] = None) -> List[PropertyEdge]:
        edges = self._properties.get(node_id, [])
        if field_node_id is None:
            return list(edges)
        return [e for e in edges if e.field_node_id == field_node_id]

    def supertag_edges(self, node_id: str) -> List[SupertagEdge]:
        return list(self._supertags.get(node_id, []))

    def supertag_ids(self, node_id: str) -> List[str]:
        return [
            e.supertag_id for e in self._supertags.get(node_id, [])
            if self.live(e.supertag_id) is not None
        ]

    def nodes_tagged_with(self, supertag_id: str) -> Set[str]:
        return set(self._tagged_with.get(supertag_id, set()))

    def referencing(self, target_id: str) -> Iterator[str]:
        """Ids of nodes holding a Reference edge to target_id."""
        for node_id, edges in self._properties.items():
            if any(isinstance(e.value, Reference) and e.value.node_id == target_id for e in edges):
                yield node_id

    def extends_of(self, supertag_id: str) -> List[str]:
        """Direct parents of a supertag, in declared order."""
        extends_field = self.by_system_id(SYSTEM_FIELDS.EXTENDS)
        if extends_field is None:
            return []
        return [
            e.value.node_id
            for e in self.property_edges(supertag_id, extends_field.id)
            if isinstance(e.value, Reference)
        ]

    # ==========================================================================
    # Assembly
    # ==========================================================================

    def field_name(self, field_node_id: str) -> str:
        field_node = self._nodes.get(field_node_id)
        return field_node.content if field_node and field_node.content else field_node_id

    def supertag_infos(self, node_id: str) -> List[SupertagInfo]:
        infos = []
        for st_id in self.supertag_ids(node_id):
            st = self._nodes[st_id]
            infos.append(SupertagInfo(id=st.id, system_id=st.system_id, name=st.content))
        return infos

    def assemble(self, node_id: str) -> Optional[AssembledNode]:
        """
        Build the AssembledNode read view.

        Properties are keyed by field display name, ordered by field name
        then by edge order. Deleted nodes are assembled too; callers that
        hide deleted nodes check `deleted_at`.
        """
        record = self._nodes.get(node_id)
        if record is None:
            return None

        entries: Dict[str, List[PropertyEntry]] = defaultdict(list)
        for edge in self._properties.get(node_id, []):
            field_node = self._nodes.get(edge.field_node_id)
            name = self.field_name(edge.field_node_id)
            entries[name].append(
                PropertyEntry(
                    data=edge.value,
                    field_node_id=edge.field_node_id,
                    field_name=name,
                    field_system_id=field_node.system_id if field_node else None,
                    order=edge.order,
                )
            )

        properties = {
            name: sorted(values, key=lambda e: e.order)
            for name, values in sorted(entries.items())
        }

        return AssembledNode(
            id=record.id,
            content=record.content,
            system_id=record.system_id,
            owner_id=record.owner_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            deleted_at=record.deleted_at,
            properties=properties,
            supertags=self.supertag_infos(node_id),
        )

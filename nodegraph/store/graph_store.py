"""
nodegraph Graph Node Store

Native graph model held in memory:
- node vertices keyed by id
- has_field relations (node -> field) with typed endpoints
- has_supertag relations (node -> supertag) with typed endpoints
State is buffered in memory and written as a JSON snapshot on save().
"""

from __future__ import annotations

import json
import os
from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog

from nodegraph.events import MutationEventBus
from nodegraph.exceptions import ValidationError
from nodegraph.ids import from_iso, to_iso
from nodegraph.inheritance import DEFAULT_MAX_DEPTH
from nodegraph.query.engine import DEFAULT_QUERY_LIMIT
from nodegraph.schema import SYSTEM_SUPERTAGS
from nodegraph.snapshot import GraphSnapshot
from nodegraph.store.base import NodeBackend
from nodegraph.types import (
    NodeRecord,
    PropertyEdge,
    SupertagEdge,
    decode_value,
    encode_value,
)

logger = structlog.get_logger(__name__)

SNAPSHOT_VERSION = 1


class GraphNodeBackend(NodeBackend):
    """
    In-memory graph storage with typed relations.

    Relation endpoint rules:
    - has_field: out-vertex must be a field (system id `field:*`, or
      tagged #Field)
    - has_supertag: out-vertex must be a supertag (system id `supertag:*`,
      or tagged #Supertag)

    Features:
    - O(1) vertex lookup, O(k) edge lookup per vertex
    - Optional JSON snapshot persistence (explicit save(), or autosave)
    """

    backend_type = "graph"

    def __init__(
        self,
        snapshot_path: Optional[str] = None,
        autosave: bool = False,
        events: Optional[MutationEventBus] = None,
        default_limit: int = DEFAULT_QUERY_LIMIT,
        max_depth: int = DEFAULT_MAX_DEPTH,
        auto_bootstrap: bool = True,
    ):
        super().__init__(
            events=events,
            default_limit=default_limit,
            max_depth=max_depth,
            auto_bootstrap=auto_bootstrap,
        )
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.autosave = autosave

        # Vertices
        self._nodes: Dict[str, NodeRecord] = {}
        self._system_index: Dict[str, str] = {}  # system_id -> node id (live only)

        # Relations, keyed by in-vertex
        self._has_field: Dict[str, List[PropertyEdge]] = defaultdict(list)
        self._has_supertag: Dict[str, List[SupertagEdge]] = defaultdict(list)

        self._dirty = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def _open(self) -> None:
        if self.snapshot_path and self.snapshot_path.exists():
            self._load_file(self.snapshot_path)
            logger.info(f"Graph node store loaded: {self.snapshot_path} ({len(self._nodes)} nodes)")
        else:
            logger.info("Graph node store initialized")

    async def _close(self) -> None:
        if self._dirty:
            await self.save()
        self._nodes.clear()
        self._system_index.clear()
        self._has_field.clear()
        self._has_supertag.clear()
        logger.info("Graph node store shutdown")

    async def save(self) -> None:
        """Write the JSON snapshot (atomic replace). No-op without a snapshot path."""
        if self.snapshot_path is None:
            self._dirty = False
            return

        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.snapshot_path.with_suffix(self.snapshot_path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._to_dict(), f)
        os.replace(tmp_path, self.snapshot_path)

        self._dirty = False
        logger.info(f"Graph snapshot saved: {self.snapshot_path}")

    async def _after_mutation(self) -> None:
        self._dirty = True
        if self.autosave:
            await self.save()

    async def health_check(self) -> Dict[str, Any]:
        """Check store health."""
        health = await super().health_check()
        health.update({
            "snapshot_path": str(self.snapshot_path) if self.snapshot_path else None,
            "dirty": self._dirty,
            "has_field_count": sum(len(v) for v in self._has_field.values()),
            "has_supertag_count": sum(len(v) for v in self._has_supertag.values()),
        })
        return health

    # ==========================================================================
    # Serialization
    # ==========================================================================

    def _to_dict(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "nodes": [
                {
                    "id": n.id,
                    "content": n.content,
                    "content_plain": n.content_plain,
                    "system_id": n.system_id,
                    "owner_id": n.owner_id,
                    "created_at": to_iso(n.created_at),
                    "updated_at": to_iso(n.updated_at),
                    "deleted_at": to_iso(n.deleted_at),
                }
                for n in self._nodes.values()
            ],
            "has_field": [
                {
                    "in": e.node_id,
                    "out": e.field_node_id,
                    "kind": encode_value(e.value)[0],
                    "value": encode_value(e.value)[1],
                    "order": e.order,
                    "created_at": to_iso(e.created_at),
                    "updated_at": to_iso(e.updated_at),
                }
                for edges in self._has_field.values()
                for e in edges
            ],
            "has_supertag": [
                {
                    "in": e.node_id,
                    "out": e.supertag_id,
                    "order": e.order,
                    "created_at": to_iso(e.created_at),
                }
                for edges in self._has_supertag.values()
                for e in edges
            ],
        }

    def _load_file(self, path: Path) -> None:
        with open(path, "r") as f:
            data = json.load(f)

        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValidationError(
                f"Unsupported graph snapshot version: {version}",
                details={"path": str(path)},
            )

        for raw in data.get("nodes", []):
            self._put_record(NodeRecord(
                id=raw["id"],
                content=raw["content"],
                content_plain=raw.get("content_plain") or raw["content"].lower(),
                system_id=raw.get("system_id"),
                owner_id=raw.get("owner_id"),
                created_at=from_iso(raw["created_at"]),
                updated_at=from_iso(raw["updated_at"]),
                deleted_at=from_iso(raw.get("deleted_at")),
            ))

        # Endpoint types were checked when the edges were first written
        for raw in data.get("has_supertag", []):
            self._link_supertag(SupertagEdge(
                node_id=raw["in"],
                supertag_id=raw["out"],
                order=raw["order"],
                created_at=from_iso(raw.get("created_at")),
            ))
        for raw in data.get("has_field", []):
            self._link_field(PropertyEdge(
                node_id=raw["in"],
                field_node_id=raw["out"],
                value=decode_value(raw["kind"], raw["value"]),
                order=raw["order"],
                created_at=from_iso(raw["created_at"]),
                updated_at=from_iso(raw["updated_at"]),
            ))

    # ==========================================================================
    # Vertex Helpers
    # ==========================================================================

    def _put_record(self, record: NodeRecord) -> None:
        previous = self._nodes.get(record.id)
        if previous and previous.system_id and self._system_index.get(previous.system_id) == record.id:
            del self._system_index[previous.system_id]
        self._nodes[record.id] = replace(record)
        if record.system_id and record.deleted_at is None:
            self._system_index[record.system_id] = record.id

    def _is_typed(self, node_id: str, prefix: str, meta_system_id: str) -> bool:
        record = self._nodes.get(node_id)
        if record is None or record.deleted_at is not None:
            return False
        if record.system_id and record.system_id.startswith(prefix):
            return True
        meta_id = self._system_index.get(meta_system_id)
        return meta_id is not None and any(e.supertag_id == meta_id for e in self._has_supertag.get(node_id, []))

    def _check_endpoints(self, in_id: str, out_id: str, relation: str) -> None:
        if in_id not in self._nodes:
            raise ValidationError(f"{relation}: unknown in-vertex {in_id}")
        if relation == "has_field":
            ok = self._is_typed(out_id, "field:", SYSTEM_SUPERTAGS.FIELD)
        else:
            ok = self._is_typed(out_id, "supertag:", SYSTEM_SUPERTAGS.SUPERTAG)
        if not ok:
            kind = "field" if relation == "has_field" else "supertag"
            raise ValidationError(
                f"{relation}: out-vertex {out_id} is not a {kind}",
                details={"relation": relation, "in": in_id, "out": out_id},
            )

    def _link_field(self, edge: PropertyEdge) -> None:
        self._has_field[edge.node_id].append(replace(edge))
        self._has_field[edge.node_id].sort(key=lambda e: e.order)

    def _link_supertag(self, edge: SupertagEdge) -> None:
        self._has_supertag[edge.node_id].append(replace(edge))
        self._has_supertag[edge.node_id].sort(key=lambda e: e.order)

    # ==========================================================================
    # Node Records
    # ==========================================================================

    async def _get_record(self, node_id: str) -> Optional[NodeRecord]:
        record = self._nodes.get(node_id)
        return replace(record) if record else None

    async def _get_record_by_system_id(self, system_id: str) -> Optional[NodeRecord]:
        node_id = self._system_index.get(system_id)
        return await self._get_record(node_id) if node_id else None

    async def _insert_record(self, record: NodeRecord) -> None:
        self._put_record(record)

    async def _update_record(self, record: NodeRecord) -> None:
        self._put_record(record)

    async def _count_nodes(self) -> int:
        return sum(1 for n in self._nodes.values() if n.deleted_at is None)

    # ==========================================================================
    # Relations
    # ==========================================================================

    async def _get_property_edges(
        self,
        node_id: str,
        field_node_id: Optional[str] = None,
    ) -> List[PropertyEdge]:
        return [
            replace(e) for e in self._has_field.get(node_id, [])
            if field_node_id is None or e.field_node_id == field_node_id
        ]

    async def _insert_property_edge(self, edge: PropertyEdge) -> None:
        self._check_endpoints(edge.node_id, edge.field_node_id, "has_field")
        self._link_field(edge)

    async def _delete_property_edges(self, node_id: str, field_node_id: str) -> int:
        edges = self._has_field.get(node_id, [])
        kept = [e for e in edges if e.field_node_id != field_node_id]
        removed = len(edges) - len(kept)
        if removed:
            self._has_field[node_id] = kept
        return removed

    async def _get_supertag_edges(self, node_id: str) -> List[SupertagEdge]:
        return [replace(e) for e in self._has_supertag.get(node_id, [])]

    async def _insert_supertag_edge(self, edge: SupertagEdge) -> None:
        self._check_endpoints(edge.node_id, edge.supertag_id, "has_supertag")
        if any(e.supertag_id == edge.supertag_id for e in self._has_supertag.get(edge.node_id, [])):
            return
        self._link_supertag(edge)

    async def _delete_supertag_edge(self, node_id: str, supertag_id: str) -> bool:
        edges = self._has_supertag.get(node_id, [])
        kept = [e for e in edges if e.supertag_id != supertag_id]
        if len(kept) == len(edges):
            return False
        self._has_supertag[node_id] = kept
        return True

    # ==========================================================================
    # Snapshot
    # ==========================================================================

    async def load_snapshot(self, node_ids: Optional[Iterable[str]] = None) -> GraphSnapshot:
        # Everything is already in memory, so partial requests get the full view
        return GraphSnapshot(
            nodes=list(self._nodes.values()),
            property_edges=[e for edges in self._has_field.values() for e in edges],
            supertag_edges=[e for edges in self._has_supertag.values() for e in edges],
            complete=True,
        )

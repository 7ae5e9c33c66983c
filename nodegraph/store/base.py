"""
nodegraph Node Store - Abstract Base

Defines the NodeBackend contract shared by every storage engine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from nodegraph import inheritance
from nodegraph.events import MutationEvent, MutationEventBus, MutationType
from nodegraph.exceptions import BackendNotInitializedError, NotFoundError, ValidationError
from nodegraph.ids import Clock, IdGenerator
from nodegraph.query.engine import DEFAULT_QUERY_LIMIT, QueryEngine
from nodegraph.query.filters import QueryDefinition, parse_query_definition
from nodegraph.schema import bootstrap as run_bootstrap
from nodegraph.snapshot import GraphSnapshot
from nodegraph.types import (
    AssembledNode,
    CreateNodeOptions,
    FieldDefinition,
    NodeRecord,
    PropertyEdge,
    QueryEvaluationResult,
    Reference,
    Scalar,
    SupertagEdge,
    SupertagInfo,
    as_property_value,
)

logger = structlog.get_logger(__name__)


class NodeBackend(ABC):
    """
    Abstract base class for node storage backends.

    Implementations must provide the storage primitives:
    - Node record reads and writes
    - Property edge (has_field) reads, inserts and deletes
    - Supertag edge (has_supertag) reads, inserts and deletes
    - Snapshot loading for the read model

    Everything else (the public contract, event emission, inheritance and
    query evaluation) is implemented here once, on top of those
    primitives, so every backend behaves identically.
    """

    backend_type = "abstract"

    def __init__(
        self,
        events: Optional[MutationEventBus] = None,
        default_limit: int = DEFAULT_QUERY_LIMIT,
        max_depth: int = inheritance.DEFAULT_MAX_DEPTH,
        auto_bootstrap: bool = True,
    ):
        self.events = events or MutationEventBus()
        self.engine = QueryEngine(default_limit=default_limit, max_depth=max_depth)
        self.max_depth = max_depth
        self.auto_bootstrap = auto_bootstrap

        self._ids = IdGenerator()
        self._clock = Clock()
        self._system_cache: Dict[str, str] = {}  # system_id -> node id
        self._initialized = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def init(self) -> None:
        """Open storage and (optionally) bootstrap system nodes. Idempotent."""
        if self._initialized:
            return
        await self._open()
        self._initialized = True
        if self.auto_bootstrap:
            await self.bootstrap()

    async def close(self) -> None:
        """Release storage resources."""
        if not self._initialized:
            return
        await self._close()
        self._system_cache.clear()
        self._initialized = False

    async def save(self) -> None:
        """Flush buffered state to durable storage. No-op by default."""

    async def bootstrap(self) -> Dict[str, str]:
        """Create (or re-confirm) all system fields and supertags."""
        self._ensure_initialized()
        ids = await run_bootstrap(self)
        self._system_cache.update(ids)
        return ids

    async def health_check(self) -> Dict[str, Any]:
        """Check backend health."""
        if not self._initialized:
            return {"status": "error", "message": "Not initialized"}
        return {
            "status": "ok",
            "type": self.backend_type,
            "node_count": await self._count_nodes(),
        }

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise BackendNotInitializedError(type(self).__name__)

    # ==========================================================================
    # Storage Primitives
    # ==========================================================================

    @abstractmethod
    async def _open(self) -> None:
        """Open connections / load persisted state and create schema."""

    @abstractmethod
    async def _close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def _get_record(self, node_id: str) -> Optional[NodeRecord]:
        """Node record by id, deleted or not."""

    @abstractmethod
    async def _get_record_by_system_id(self, system_id: str) -> Optional[NodeRecord]:
        """Live node record by system id."""

    @abstractmethod
    async def _insert_record(self, record: NodeRecord) -> None:
        pass

    @abstractmethod
    async def _update_record(self, record: NodeRecord) -> None:
        """Persist content, owner and timestamps of an existing record."""

    @abstractmethod
    async def _get_property_edges(
        self,
        node_id: str,
        field_node_id: Optional[str] = None,
    ) -> List[PropertyEdge]:
        """Property edges of a node ordered by `order`, optionally for one field."""

    @abstractmethod
    async def _insert_property_edge(self, edge: PropertyEdge) -> None:
        pass

    @abstractmethod
    async def _delete_property_edges(self, node_id: str, field_node_id: str) -> int:
        """Delete all edges for (node, field); returns the number removed."""

    @abstractmethod
    async def _get_supertag_edges(self, node_id: str) -> List[SupertagEdge]:
        pass

    @abstractmethod
    async def _insert_supertag_edge(self, edge: SupertagEdge) -> None:
        pass

    @abstractmethod
    async def _delete_supertag_edge(self, node_id: str, supertag_id: str) -> bool:
        pass

    @abstractmethod
    async def _count_nodes(self) -> int:
        """Number of live nodes."""

    @abstractmethod
    async def load_snapshot(self, node_ids: Optional[Iterable[str]] = None) -> GraphSnapshot:
        """
        Load the read model.

        Args:
            node_ids: If given, a partial snapshot holding these nodes,
                their edges, and the field/supertag nodes they point at.
                None loads everything.

        Returns:
            A GraphSnapshot
        """

    async def _after_mutation(self) -> None:
        """Hook run after every public mutation (before the event is emitted)."""

    # ==========================================================================
    # Resolution Helpers
    # ==========================================================================

    async def _resolve_system_node(self, system_id: Optional[str]) -> Optional[NodeRecord]:
        """Live node by system id, served from the per-backend cache when possible."""
        if not system_id:
            return None
        cached = self._system_cache.get(system_id)
        if cached is not None:
            record = await self._get_record(cached)
            if record is not None and record.deleted_at is None:
                return record
            self._system_cache.pop(system_id, None)

        record = await self._get_record_by_system_id(system_id)
        if record is not None:
            self._system_cache[system_id] = record.id
        return record

    async def _resolve_ref(self, ref: str) -> Optional[NodeRecord]:
        """Resolve a system id or node id to a live record."""
        record = await self._resolve_system_node(ref)
        if record is None:
            record = await self._get_record(ref)
            if record is not None and record.deleted_at is not None:
                record = None
        return record

    async def _require_node(self, node_id: str) -> NodeRecord:
        record = await self._get_record(node_id)
        if record is None or record.deleted_at is not None:
            raise NotFoundError("node", node_id)
        return record

    async def _require_field(self, field_ref: str) -> NodeRecord:
        record = await self._resolve_ref(field_ref)
        if record is None:
            raise NotFoundError("field", field_ref)
        return record

    async def _require_supertag(self, supertag_ref: str) -> NodeRecord:
        record = await self._resolve_ref(supertag_ref)
        if record is None:
            raise NotFoundError("supertag", supertag_ref)
        return record

    async def _touch(self, record: NodeRecord) -> None:
        record.updated_at = self._clock.now()
        await self._update_record(record)

    async def _emit(self, event: MutationEvent) -> None:
        await self._after_mutation()
        await self.events.emit(event)

    # ==========================================================================
    # Node Operations
    # ==========================================================================

    async def find_node_by_id(self, node_id: str) -> Optional[AssembledNode]:
        """Assembled live node, or None."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot([node_id])
        if snapshot.live(node_id) is None:
            return None
        return snapshot.assemble(node_id)

    async def find_node_by_system_id(self, system_id: str) -> Optional[AssembledNode]:
        self._ensure_initialized()
        record = await self._resolve_system_node(system_id)
        if record is None:
            return None
        return await self.find_node_by_id(record.id)

    async def create_node(
        self,
        options: Optional[CreateNodeOptions] = None,
        **kwargs: Any,
    ) -> str:
        """
        Create a node, optionally with an initial supertag and properties.

        Args:
            options: CreateNodeOptions, or pass its fields as keyword arguments

        Returns:
            The new node id

        Raises:
            ValidationError: A referenced supertag or field does not exist
                (usually because bootstrap has not run), or the system id
                is already taken
        """
        self._ensure_initialized()
        options = options or CreateNodeOptions(**kwargs)

        supertag = None
        if options.supertag_system_id:
            supertag = await self._resolve_ref(options.supertag_system_id)
            if supertag is None:
                raise ValidationError(
                    f"Supertag {options.supertag_system_id!r} does not exist; has bootstrap run?",
                    details={"supertag": options.supertag_system_id},
                )

        for field_ref in options.properties:
            if await self._resolve_ref(field_ref) is None:
                raise ValidationError(
                    f"Field {field_ref!r} does not exist; has bootstrap run?",
                    details={"field": field_ref},
                )

        if options.system_id and await self._get_record_by_system_id(options.system_id):
            raise ValidationError(
                f"System id already in use: {options.system_id}",
                details={"system_id": options.system_id},
            )

        now = self._clock.now()
        record = NodeRecord(
            id=self._ids.new_id(),
            content=options.content,
            content_plain=(options.content or "").lower(),
            system_id=options.system_id,
            owner_id=options.owner_id,
            created_at=now,
            updated_at=now,
        )
        await self._insert_record(record)
        if record.system_id:
            self._system_cache[record.system_id] = record.id

        logger.debug(f"Created node: {record.content!r} ({record.id})")
        await self._emit(MutationEvent(
            type=MutationType.NODE_CREATED,
            node_id=record.id,
            after_value=record.content,
        ))

        if supertag is not None:
            await self.add_node_supertag(record.id, supertag.id)
        for field_ref, value in options.properties.items():
            await self.set_property(record.id, field_ref, value)

        return record.id

    async def update_node_content(self, node_id: str, content: str) -> None:
        self._ensure_initialized()
        record = await self._require_node(node_id)
        before = record.content
        record.content = content
        record.content_plain = (content or "").lower()
        await self._touch(record)
        await self._emit(MutationEvent(
            type=MutationType.NODE_UPDATED,
            node_id=node_id,
            before_value=before,
            after_value=content,
        ))

    async def delete_node(self, node_id: str) -> None:
        """Soft delete. Edges are kept; the node just stops being visible."""
        self._ensure_initialized()
        record = await self._require_node(node_id)
        now = self._clock.now()
        record.deleted_at = now
        record.updated_at = now
        await self._update_record(record)
        if record.system_id:
            self._system_cache.pop(record.system_id, None)

        logger.debug(f"Deleted node: {node_id}")
        await self._emit(MutationEvent(type=MutationType.NODE_DELETED, node_id=node_id))

    # ==========================================================================
    # Node Assembly
    # ==========================================================================

    async def assemble_node(self, node_id: str) -> Optional[AssembledNode]:
        """Full read view of a node (deleted nodes included, with deleted_at set)."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot([node_id])
        return snapshot.assemble(node_id)

    async def assemble_node_with_inheritance(self, node_id: str) -> Optional[AssembledNode]:
        """Read view with supertag field defaults merged in (own values win)."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        return inheritance.assemble_with_inheritance(snapshot, node_id, self.max_depth)

    # ==========================================================================
    # Property Operations
    # ==========================================================================

    async def set_property(self, node_id: str, field_ref: str, value: Any, order: int = 0) -> None:
        """Replace all values of a field with a single value."""
        self._ensure_initialized()
        record = await self._require_node(node_id)
        field_node = await self._require_field(field_ref)
        data = as_property_value(value)

        existing = await self._get_property_edges(node_id, field_node.id)
        await self._delete_property_edges(node_id, field_node.id)

        now = self._clock.now()
        await self._insert_property_edge(PropertyEdge(
            node_id=node_id,
            field_node_id=field_node.id,
            value=data,
            order=order,
            created_at=now,
            updated_at=now,
        ))
        await self._touch(record)

        await self._emit(MutationEvent(
            type=MutationType.PROPERTY_SET,
            node_id=node_id,
            field_system_id=field_node.system_id or field_node.id,
            before_value=existing[0].value.plain if existing else None,
            after_value=data.plain,
        ))

    async def add_property_value(self, node_id: str, field_ref: str, value: Any) -> None:
        """Append a value after the existing ones (order = max + 1)."""
        self._ensure_initialized()
        record = await self._require_node(node_id)
        field_node = await self._require_field(field_ref)
        data = as_property_value(value)

        existing = await self._get_property_edges(node_id, field_node.id)
        next_order = max((e.order for e in existing), default=-1) + 1

        now = self._clock.now()
        await self._insert_property_edge(PropertyEdge(
            node_id=node_id,
            field_node_id=field_node.id,
            value=data,
            order=next_order,
            created_at=now,
            updated_at=now,
        ))
        await self._touch(record)

        await self._emit(MutationEvent(
            type=MutationType.PROPERTY_ADDED,
            node_id=node_id,
            field_system_id=field_node.system_id or field_node.id,
            after_value=data.plain,
        ))

    async def clear_property(self, node_id: str, field_ref: str) -> None:
        """Remove every value of a field. Unknown fields are a no-op."""
        self._ensure_initialized()
        record = await self._require_node(node_id)
        field_node = await self._resolve_ref(field_ref)
        if field_node is None:
            return

        existing = await self._get_property_edges(node_id, field_node.id)
        if not existing:
            return
        await self._delete_property_edges(node_id, field_node.id)
        await self._touch(record)

        for edge in existing:
            await self._emit(MutationEvent(
                type=MutationType.PROPERTY_REMOVED,
                node_id=node_id,
                field_system_id=field_node.system_id or field_node.id,
                before_value=edge.value.plain,
            ))

    async def link_nodes(self, from_id: str, field_ref: str, to_id: str, append: bool = False) -> None:
        """Store a Reference to `to_id` under a field (replace, or append)."""
        self._ensure_initialized()
        await self._require_node(to_id)
        if append:
            await self.add_property_value(from_id, field_ref, Reference(to_id))
        else:
            await self.set_property(from_id, field_ref, Reference(to_id))

    # ==========================================================================
    # Supertag Operations
    # ==========================================================================

    async def add_node_supertag(self, node_id: str, supertag_ref: str) -> bool:
        """
        Tag a node.

        Returns:
            False (and writes nothing) if the node already has the supertag

        Raises:
            NotFoundError: The node or the supertag does not exist
        """
        self._ensure_initialized()
        record = await self._require_node(node_id)
        supertag = await self._require_supertag(supertag_ref)

        edges = await self._get_supertag_edges(node_id)
        if any(e.supertag_id == supertag.id for e in edges):
            return False

        next_order = max((e.order for e in edges), default=-1) + 1
        await self._insert_supertag_edge(SupertagEdge(
            node_id=node_id,
            supertag_id=supertag.id,
            order=next_order,
            created_at=self._clock.now(),
        ))
        await self._touch(record)

        await self._emit(MutationEvent(
            type=MutationType.SUPERTAG_ADDED,
            node_id=node_id,
            supertag_system_id=supertag.system_id or supertag.id,
        ))
        return True

    async def remove_node_supertag(self, node_id: str, supertag_ref: str) -> bool:
        """Untag a node. Returns False if the node, supertag or edge is missing."""
        self._ensure_initialized()
        record = await self._get_record(node_id)
        supertag = await self._resolve_ref(supertag_ref)
        if record is None or record.deleted_at is not None or supertag is None:
            return False

        if not await self._delete_supertag_edge(node_id, supertag.id):
            return False
        await self._touch(record)

        await self._emit(MutationEvent(
            type=MutationType.SUPERTAG_REMOVED,
            node_id=node_id,
            supertag_system_id=supertag.system_id or supertag.id,
        ))
        return True

    async def get_node_supertags(self, node_id: str) -> List[SupertagInfo]:
        self._ensure_initialized()
        snapshot = await self.load_snapshot([node_id])
        return snapshot.supertag_infos(node_id)

    async def get_nodes_by_supertags(
        self,
        supertag_refs: List[str],
        match_all: bool = False,
    ) -> List[AssembledNode]:
        """
        Nodes carrying the given supertags.

        Args:
            supertag_refs: Supertag system ids or node ids
            match_all: False = at least one (OR), True = all of them (AND)

        Returns:
            Assembled live nodes ordered by creation time
        """
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        resolved = [snapshot.resolve(ref) for ref in supertag_refs]
        wanted = {r.id for r in resolved if r is not None}
        # With match_all one unresolved ref means nothing can match
        if not wanted or (match_all and any(r is None for r in resolved)):
            return []

        results = []
        for record in snapshot.live_nodes():
            tags = set(snapshot.supertag_ids(record.id))
            hit = wanted <= tags if match_all else bool(wanted & tags)
            if hit:
                results.append(snapshot.assemble(record.id))
        return results

    async def get_nodes_by_supertag_with_inheritance(self, supertag_ref: str) -> List[AssembledNode]:
        """Nodes tagged with a supertag or any descendant, with defaults merged in."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        supertag = snapshot.resolve(supertag_ref)
        if supertag is None:
            return []
        wanted = {supertag.id, *inheritance.descendant_supertags(snapshot, supertag.id, self.max_depth)}
        return [
            inheritance.assemble_with_inheritance(snapshot, record.id, self.max_depth)
            for record in snapshot.live_nodes()
            if wanted & set(snapshot.supertag_ids(record.id))
        ]

    # ==========================================================================
    # Inheritance
    # ==========================================================================

    async def get_ancestor_supertags(self, supertag_ref: str, max_depth: Optional[int] = None) -> List[str]:
        """Ancestor supertag ids, closest first. Cycles and depth cap truncate silently."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        supertag = snapshot.resolve(supertag_ref)
        if supertag is None:
            return []
        return inheritance.ancestor_supertags(snapshot, supertag.id, max_depth or self.max_depth)

    async def get_descendant_supertags(self, supertag_ref: str) -> List[str]:
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        supertag = snapshot.resolve(supertag_ref)
        if supertag is None:
            return []
        return inheritance.descendant_supertags(snapshot, supertag.id, self.max_depth)

    async def get_supertag_field_definitions(self, supertag_ref: str) -> Dict[str, FieldDefinition]:
        """Fields declared directly on one supertag (not merged with ancestors)."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        supertag = snapshot.resolve(supertag_ref)
        if supertag is None:
            return {}
        return inheritance.supertag_field_definitions(snapshot, supertag.id)

    # ==========================================================================
    # Graph Queries
    # ==========================================================================

    async def get_backlinks(self, node_id: str) -> List[AssembledNode]:
        """Live nodes holding a Reference to node_id."""
        self._ensure_initialized()
        snapshot = await self.load_snapshot()
        sources = set(snapshot.referencing(node_id))
        return [snapshot.assemble(r.id) for r in snapshot.live_nodes() if r.id in sources]

    async def evaluate_query(
        self,
        definition: Union[QueryDefinition, Dict[str, Any]],
    ) -> QueryEvaluationResult:
        """Evaluate a query definition against this backend's data."""
        self._ensure_initialized()
        parsed = parse_query_definition(definition)
        snapshot = await self.load_snapshot()
        return self.engine.evaluate(parsed, snapshot)

    # ==========================================================================
    # Bootstrap Primitives (no events)
    # ==========================================================================

    async def _upsert_system_node(self, system_id: str, content: str) -> str:
        record = await self._get_record_by_system_id(system_id)
        if record is not None:
            return record.id
        now = self._clock.now()
        record = NodeRecord(
            id=self._ids.new_id(),
            content=content,
            content_plain=content.lower(),
            system_id=system_id,
            created_at=now,
            updated_at=now,
        )
        await self._insert_record(record)
        return record.id

    async def _ensure_supertag_edge(self, node_id: str, supertag_id: str) -> None:
        edges = await self._get_supertag_edges(node_id)
        if any(e.supertag_id == supertag_id for e in edges):
            return
        await self._insert_supertag_edge(SupertagEdge(
            node_id=node_id,
            supertag_id=supertag_id,
            order=max((e.order for e in edges), default=-1) + 1,
            created_at=self._clock.now(),
        ))

    async def _replace_value(self, node_id: str, field_id: str, data: Union[Scalar, Reference]) -> None:
        existing = await self._get_property_edges(node_id, field_id)
        if len(existing) == 1 and existing[0].value == data:
            return
        await self._delete_property_edges(node_id, field_id)
        now = self._clock.now()
        await self._insert_property_edge(PropertyEdge(
            node_id=node_id,
            field_node_id=field_id,
            value=data,
            order=0,
            created_at=now,
            updated_at=now,
        ))

    async def _replace_scalar(self, node_id: str, field_id: str, value: Any) -> None:
        await self._replace_value(node_id, field_id, Scalar(value))

    async def _replace_reference(self, node_id: str, field_id: str, target_id: str) -> None:
        await self._replace_value(node_id, field_id, Reference(target_id))

"""
nodegraph Query Subscriptions

Live queries: a subscription remembers the last result set of a query
and, on every store mutation, decides whether the mutation could affect
it. If so the query is re-evaluated and the callback receives a diff.

The relevance check may be over-eager (extra re-evaluations) but never
misses a change:
- the mutated node matched before the limit was applied, or
- the mutated node is a relation target named by the query, or
- the mutated node is a supertag the query filters on (or a descendant), or
- the mutated node is schema (a field or supertag), or
- the query now matches the mutated node, or
- the query has a target-less linkedFrom filter and a property changed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Union

import structlog

from nodegraph.events import MutationEvent, MutationType
from nodegraph.ids import IdGenerator
from nodegraph.inheritance import descendant_supertags
from nodegraph.query.filters import (
    QueryDefinition,
    RelationFilter,
    RelationType,
    SupertagFilter,
    iter_filters,
    parse_query_definition,
)
from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS, is_schema_system_id
from nodegraph.snapshot import GraphSnapshot
from nodegraph.types import AssembledNode, QueryEvaluationResult

if TYPE_CHECKING:
    from nodegraph.store.base import NodeBackend

logger = structlog.get_logger(__name__)

_PROPERTY_EVENTS = frozenset({
    MutationType.PROPERTY_SET,
    MutationType.PROPERTY_ADDED,
    MutationType.PROPERTY_REMOVED,
})

_SCHEMA_SUPERTAGS = frozenset({SYSTEM_SUPERTAGS.SUPERTAG, SYSTEM_SUPERTAGS.FIELD})


@dataclass
class QueryResultChangeEvent:
    """Diff between two evaluations of a subscribed query."""
    subscription_id: str
    added: List[AssembledNode]
    removed: List[AssembledNode]
    changed: List[AssembledNode]
    total_count: int
    evaluated_at: datetime
    reordered: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed or self.reordered)


ResultCallback = Callable[[QueryResultChangeEvent], Any]


@dataclass
class _Subscription:
    id: str
    definition: QueryDefinition
    callback: ResultCallback
    nodes: List[AssembledNode] = field(default_factory=list)
    signatures: Dict[str, str] = field(default_factory=dict)
    total_count: int = 0
    matched_ids: Set[str] = field(default_factory=set)
    watched_ids: Set[str] = field(default_factory=set)
    watched_supertags: Set[str] = field(default_factory=set)
    supertag_refs: Set[str] = field(default_factory=set)
    watches_backlinks: bool = False

    @property
    def ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def set_baseline(self, result: QueryEvaluationResult, snapshot: GraphSnapshot, max_depth: int) -> None:
        self.nodes = list(result.nodes)
        self.signatures = {n.id: n.signature() for n in result.nodes}
        self.total_count = result.total_count
        self.matched_ids = set(result.matched_ids)

        # Supertags are not always tagged #Supertag, so watch them by id
        self.watched_supertags = set()
        for f in iter_filters(self.definition.filters):
            if not isinstance(f, SupertagFilter):
                continue
            record = snapshot.resolve(f.supertag_system_id)
            if record is None:
                continue
            self.watched_supertags.add(record.id)
            if f.include_inherited:
                self.watched_supertags.update(descendant_supertags(snapshot, record.id, max_depth))


class SubscriptionHandle:
    """Caller-side view of a live query."""

    def __init__(self, service: "QuerySubscriptionService", subscription: _Subscription):
        self._service = service
        self._subscription = subscription

    @property
    def id(self) -> str:
        return self._subscription.id

    @property
    def definition(self) -> QueryDefinition:
        return self._subscription.definition

    def unsubscribe(self) -> None:
        self._service._remove(self._subscription.id)

    def get_last_results(self) -> List[AssembledNode]:
        return list(self._subscription.nodes)

    def get_last_total_count(self) -> int:
        return self._subscription.total_count


class QuerySubscriptionService:
    """
    Keeps subscribed query results fresh as the store mutates.

    Re-evaluation happens inline with the mutation that triggered it (no
    batching), so a burst of N mutations may cause N re-evaluations.
    """

    def __init__(self, backend: "NodeBackend"):
        self.backend = backend
        self._subscriptions: Dict[str, _Subscription] = {}
        self._ids = IdGenerator()
        self._detach: Optional[Callable[[], None]] = None
        self._generation = 0

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def attach(self) -> None:
        """Start listening to the backend's mutation events. Idempotent."""
        if self._detach is None:
            self._detach = self.backend.events.subscribe(self._on_mutation)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    # ==========================================================================
    # Subscriptions
    # ==========================================================================

    async def subscribe(
        self,
        definition: Union[QueryDefinition, Dict[str, Any]],
        callback: ResultCallback,
    ) -> SubscriptionHandle:
        """
        Evaluate a query once and keep its results live.

        Args:
            definition: Query definition (model or JSON dict)
            callback: Called with a QueryResultChangeEvent whenever the
                result set changes; may be sync or async

        Returns:
            A SubscriptionHandle
        """
        parsed = parse_query_definition(definition)
        self.attach()

        subscription = _Subscription(
            id=self._ids.new_id(),
            definition=parsed,
            callback=callback,
        )
        for f in iter_filters(parsed.filters):
            if isinstance(f, RelationFilter):
                if f.target_node_id is not None:
                    subscription.watched_ids.add(f.target_node_id)
                elif f.relation_type == RelationType.LINKED_FROM:
                    subscription.watches_backlinks = True
            elif isinstance(f, SupertagFilter):
                subscription.supertag_refs.add(f.supertag_system_id)

        result = await self.backend.evaluate_query(parsed)
        subscription.set_baseline(result, await self.backend.load_snapshot(), self.backend.max_depth)
        self._subscriptions[subscription.id] = subscription

        logger.debug(f"Query subscription registered: {subscription.id} ({subscription.total_count} results)")
        return SubscriptionHandle(self, subscription)

    def _remove(self, subscription_id: str) -> None:
        if self._subscriptions.pop(subscription_id, None) is not None:
            logger.debug(f"Query subscription removed: {subscription_id}")

    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def get_active_subscriptions(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": sub.id,
                "definition": sub.definition.to_json(),
                "result_count": len(sub.nodes),
                "total_count": sub.total_count,
            }
            for sub in self._subscriptions.values()
        ]

    def clear(self) -> None:
        self._subscriptions.clear()

    async def refresh_all(self) -> None:
        """Re-evaluate every subscription (e.g. for time-relative filters)."""
        for sub in list(self._subscriptions.values()):
            if sub.id in self._subscriptions:
                await self._reevaluate(sub, await self.backend.load_snapshot())

    # ==========================================================================
    # Change Detection
    # ==========================================================================

    async def _on_mutation(self, event: MutationEvent) -> None:
        self._generation += 1
        if not self._subscriptions:
            return

        snapshot: Optional[GraphSnapshot] = None
        loaded_at = -1

        for sub in list(self._subscriptions.values()):
            if sub.id not in self._subscriptions:
                continue
            # Callbacks may mutate the store; never reuse a stale snapshot
            if snapshot is None or loaded_at != self._generation:
                snapshot = await self.backend.load_snapshot()
                loaded_at = self._generation
            if self._may_affect(sub, event, snapshot):
                await self._reevaluate(sub, snapshot)

    def _may_affect(self, sub: _Subscription, event: MutationEvent, snapshot: GraphSnapshot) -> bool:
        if event.node_id in sub.matched_ids or event.node_id in sub.watched_ids:
            return True
        if event.node_id in sub.watched_supertags:
            return True
        record = snapshot.node(event.node_id)
        if record is not None and record.system_id in sub.supertag_refs:
            return True
        if self._is_schema_event(event, snapshot):
            return True
        if sub.watches_backlinks and event.type in _PROPERTY_EVENTS:
            return True
        return self.backend.engine.matches(sub.definition.filters, event.node_id, snapshot)

    @staticmethod
    def _is_schema_event(event: MutationEvent, snapshot: GraphSnapshot) -> bool:
        if event.field_system_id == SYSTEM_FIELDS.EXTENDS:
            return True
        record = snapshot.node(event.node_id)
        if record is None:
            return False
        if is_schema_system_id(record.system_id):
            return True
        return any(st.system_id in _SCHEMA_SUPERTAGS for st in snapshot.supertag_infos(record.id))

    async def _reevaluate(self, sub: _Subscription, snapshot: GraphSnapshot) -> None:
        result = self.backend.engine.evaluate(sub.definition, snapshot)

        old_ids = sub.ids
        old_set = set(old_ids)
        new_set = set(result.ids)

        added = [n for n in result.nodes if n.id not in old_set]
        removed = [n for n in sub.nodes if n.id not in new_set]
        changed = [
            n for n in result.nodes
            if n.id in old_set and sub.signatures.get(n.id) != n.signature()
        ]
        reordered = sub.definition.sort is not None and (
            [i for i in result.ids if i in old_set] != [i for i in old_ids if i in new_set]
        )
        count_changed = result.total_count != sub.total_count

        sub.set_baseline(result, snapshot, self.backend.max_depth)

        change = QueryResultChangeEvent(
            subscription_id=sub.id,
            added=added,
            removed=removed,
            changed=changed,
            total_count=result.total_count,
            evaluated_at=result.evaluated_at,
            reordered=reordered,
        )
        if not (change.has_changes or count_changed):
            return

        try:
            outcome = sub.callback(change)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Query subscription callback error ({sub.id}): {e}", exc_info=True)

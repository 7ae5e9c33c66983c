"""
nodegraph Query Engine

Evaluates a QueryDefinition against a GraphSnapshot:
- Candidate selection (all live nodes, or a supertag index lookup)
- Per-candidate predicate evaluation over the filter tree
- Deterministic sort, then limit (total_count is pre-limit)
"""

from __future__ import annotations

import functools
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import structlog

from nodegraph.ids import from_iso, utc_now
from nodegraph.inheritance import DEFAULT_MAX_DEPTH, descendant_supertags
from nodegraph.query.filters import (
    AndFilter,
    ContentFilter,
    HasFieldFilter,
    NotFilter,
    OrFilter,
    PropertyFilter,
    PropertyOp,
    QueryDefinition,
    QueryFilter,
    QuerySort,
    RelationFilter,
    RelationType,
    SupertagFilter,
    TemporalField,
    TemporalFilter,
    TemporalOp,
)
from nodegraph.snapshot import GraphSnapshot
from nodegraph.types import AssembledNode, NodeRecord, QueryEvaluationResult, Reference

logger = structlog.get_logger(__name__)

DEFAULT_QUERY_LIMIT = 500

_NODE_SORT_FIELDS = {
    "content": "content",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
    "systemId": "system_id",
    "system_id": "system_id",
}


@dataclass
class _EvalContext:
    """Per-evaluation memo of lookups shared by all candidates."""
    snapshot: GraphSnapshot
    now: datetime
    max_depth: int
    supertag_sets: Dict[str, Set[str]] = field(default_factory=dict)
    link_targets: Dict[tuple, Set[str]] = field(default_factory=dict)
    referenced_ids: Optional[Set[str]] = None

    def field_id(self, field_system_id: Optional[str]) -> Optional[str]:
        if field_system_id is None:
            return None
        record = self.snapshot.resolve(field_system_id)
        return record.id if record else None

    def supertag_set(self, f: SupertagFilter) -> Set[str]:
        key = f"{f.supertag_system_id}|{f.include_inherited}"
        if key not in self.supertag_sets:
            record = self.snapshot.resolve(f.supertag_system_id)
            ids: Set[str] = set()
            if record is not None:
                ids.add(record.id)
                if f.include_inherited:
                    ids.update(descendant_supertags(self.snapshot, record.id, self.max_depth))
            self.supertag_sets[key] = ids
        return self.supertag_sets[key]


class QueryEngine:
    """
    Stateless evaluator for the filter algebra.

    Predicates never raise on odd data: a comparison between
    incompatible values is simply a non-match.
    """

    def __init__(
        self,
        default_limit: int = DEFAULT_QUERY_LIMIT,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.default_limit = default_limit
        self.max_depth = max_depth

    # ==========================================================================
    # Public API
    # ==========================================================================

    def evaluate(
        self,
        definition: QueryDefinition,
        snapshot: GraphSnapshot,
        now: Optional[datetime] = None,
    ) -> QueryEvaluationResult:
        """
        Evaluate a query.

        Args:
            definition: Parsed query definition
            snapshot: Complete graph snapshot to evaluate against
            now: Reference time for relative temporal filters

        Returns:
            Sorted, limited nodes plus the pre-limit match count
        """
        now = now or utc_now()
        try:
            ctx = _EvalContext(snapshot=snapshot, now=now, max_depth=self.max_depth)
            matched = [
                record for record in self._candidates(definition.filters, ctx)
                if self._all(definition.filters, record, ctx)
            ]

            nodes = [snapshot.assemble(record.id) for record in matched]
            if definition.sort is not None:
                nodes = self._sort(nodes, definition.sort)

            limit = definition.limit if definition.limit is not None else self.default_limit
            return QueryEvaluationResult(
                nodes=nodes[:limit],
                total_count=len(nodes),
                evaluated_at=now,
                matched_ids=[n.id for n in nodes],
            )
        except Exception as e:
            logger.error(f"Query execution error: {e}")
            raise

    def matches(
        self,
        filters: List[QueryFilter],
        node_id: str,
        snapshot: GraphSnapshot,
        now: Optional[datetime] = None,
    ) -> bool:
        """Would a single (live) node satisfy the filters?"""
        record = snapshot.live(node_id)
        if record is None:
            return False
        ctx = _EvalContext(snapshot=snapshot, now=now or utc_now(), max_depth=self.max_depth)
        return self._all(filters, record, ctx)

    # ==========================================================================
    # Candidates
    # ==========================================================================

    def _candidates(self, filters: List[QueryFilter], ctx: _EvalContext) -> List[NodeRecord]:
        """Use the supertag index when a top-level supertag filter exists."""
        live = ctx.snapshot.live_nodes()
        for f in filters:
            if isinstance(f, SupertagFilter):
                tagged: Set[str] = set()
                for st_id in ctx.supertag_set(f):
                    tagged |= ctx.snapshot.nodes_tagged_with(st_id)
                return [r for r in live if r.id in tagged]
        return live

    # ==========================================================================
    # Predicates
    # ==========================================================================

    def _all(self, filters: List[QueryFilter], record: NodeRecord, ctx: _EvalContext) -> bool:
        return all(self._test(f, record, ctx) for f in filters)

    def _test(self, f: QueryFilter, record: NodeRecord, ctx: _EvalContext) -> bool:
        match f:
            case AndFilter(filters=subs):
                return self._all(subs, record, ctx)
            case OrFilter(filters=subs):
                if not subs:
                    return True
                return any(self._test(s, record, ctx) for s in subs)
            case NotFilter(filters=subs):
                if not subs:
                    return False
                return not self._all(subs, record, ctx)
            case SupertagFilter():
                wanted = ctx.supertag_set(f)
                return any(st_id in wanted for st_id in ctx.snapshot.supertag_ids(record.id))
            case PropertyFilter():
                return self._test_property(f, record, ctx)
            case ContentFilter():
                return self._test_content(f, record)
            case RelationFilter():
                return self._test_relation(f, record, ctx)
            case TemporalFilter():
                return self._test_temporal(f, record, ctx)
            case HasFieldFilter():
                field_id = ctx.field_id(f.field_system_id)
                if field_id is None:
                    return f.negate
                has = bool(ctx.snapshot.property_edges(record.id, field_id))
                return not has if f.negate else has
            case _:
                raise TypeError(f"Unsupported filter: {type(f).__name__}")

    def _test_property(self, f: PropertyFilter, record: NodeRecord, ctx: _EvalContext) -> bool:
        field_id = ctx.field_id(f.field_system_id)
        if field_id is None:
            return False
        values = [e.value.plain for e in ctx.snapshot.property_edges(record.id, field_id)]

        if f.op == PropertyOp.IS_EMPTY:
            return all(_is_empty(v) for v in values)
        if f.op == PropertyOp.IS_NOT_EMPTY:
            return any(not _is_empty(v) for v in values)
        return any(compare_values(v, f.op, f.value) for v in values)

    @staticmethod
    def _test_content(f: ContentFilter, record: NodeRecord) -> bool:
        if not f.query:
            return True
        if f.case_sensitive:
            return f.query in (record.content or "")
        return f.query.lower() in (record.content_plain or "")

    def _test_relation(self, f: RelationFilter, record: NodeRecord, ctx: _EvalContext) -> bool:
        snapshot = ctx.snapshot
        if f.target_node_id is not None and snapshot.live(f.target_node_id) is None:
            return False

        if f.relation_type in (RelationType.CHILD_OF, RelationType.OWNED_BY):
            if f.target_node_id is None:
                return record.owner_id is not None
            return record.owner_id == f.target_node_id

        field_id = ctx.field_id(f.field_system_id)
        if f.field_system_id is not None and field_id is None:
            return False

        if f.relation_type == RelationType.LINKS_TO:
            for edge in snapshot.property_edges(record.id, field_id):
                if isinstance(edge.value, Reference):
                    if f.target_node_id is None or edge.value.node_id == f.target_node_id:
                        return True
            return False

        # linkedFrom
        if f.target_node_id is None:
            if ctx.referenced_ids is None:
                ctx.referenced_ids = {
                    e.value.node_id
                    for r in snapshot.live_nodes()
                    for e in snapshot.property_edges(r.id)
                    if isinstance(e.value, Reference)
                }
            return record.id in ctx.referenced_ids

        key = (f.target_node_id, field_id)
        if key not in ctx.link_targets:
            ctx.link_targets[key] = {
                e.value.node_id
                for e in snapshot.property_edges(f.target_node_id, field_id)
                if isinstance(e.value, Reference)
            }
        return record.id in ctx.link_targets[key]

    @staticmethod
    def _test_temporal(f: TemporalFilter, record: NodeRecord, ctx: _EvalContext) -> bool:
        stamp = record.created_at if f.field == TemporalField.CREATED_AT else record.updated_at

        if f.op == TemporalOp.WITHIN:
            if f.days is None:
                return True
            return stamp >= ctx.now - timedelta(days=f.days)

        if f.date is None:
            return True
        try:
            boundary = from_iso(f.date)
        except ValueError:
            return False
        if f.op == TemporalOp.BEFORE:
            return stamp < boundary
        return stamp > boundary

    # ==========================================================================
    # Sorting
    # ==========================================================================

    def _sort(self, nodes: List[AssembledNode], sort: QuerySort) -> List[AssembledNode]:
        """Sort by a node attribute or property; missing values go last."""
        keyed = [(node, self._sort_value(node, sort.field)) for node in nodes]
        present = [pair for pair in keyed if pair[1] is not None]
        missing = [pair[0] for pair in keyed if pair[1] is None]

        if (
            nodes
            and sort.field not in _NODE_SORT_FIELDS
            and not any(node.entries(sort.field) for node in nodes)
        ):
            logger.warning(f"Unknown sort field {sort.field!r}; keeping match order")

        present.sort(
            key=functools.cmp_to_key(lambda a, b: _compare_sort_values(a[1], b[1])),
            reverse=sort.direction == "desc",
        )
        return [pair[0] for pair in present] + missing

    @staticmethod
    def _sort_value(node: AssembledNode, sort_field: str) -> Any:
        attr = _NODE_SORT_FIELDS.get(sort_field)
        if attr is not None:
            return getattr(node, attr)
        return node.first(sort_field)


# =============================================================================
# Value comparison
# =============================================================================

def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, list) and not value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if _is_number(a) != _is_number(b):
        return False
    return a == b


def _as_date(value: str) -> Optional[datetime]:
    try:
        return from_iso(value)
    except ValueError:
        return None


def _ordering_pair(actual: Any, target: Any) -> Optional[tuple]:
    """Comparable (actual, target) pair, or None when the types don't line up."""
    if _is_number(actual) and _is_number(target):
        if isinstance(actual, float) and math.isnan(actual):
            return None
        return actual, target
    if isinstance(actual, str) and isinstance(target, str):
        a_date, t_date = _as_date(actual), _as_date(target)
        if a_date is not None and t_date is not None:
            return a_date, t_date
        return actual, target
    return None


def compare_values(actual: Any, op: PropertyOp, target: Any) -> bool:
    """Apply a property operator to one stored value. Fails closed."""
    if op == PropertyOp.EQ:
        return _strict_equal(actual, target)
    if op == PropertyOp.NEQ:
        return not _strict_equal(actual, target)

    if op in (PropertyOp.GT, PropertyOp.GTE, PropertyOp.LT, PropertyOp.LTE):
        pair = _ordering_pair(actual, target)
        if pair is None:
            return False
        a, t = pair
        if op == PropertyOp.GT:
            return a > t
        if op == PropertyOp.GTE:
            return a >= t
        if op == PropertyOp.LT:
            return a < t
        return a <= t

    if not (isinstance(actual, str) and isinstance(target, str)):
        return False
    a, t = actual.lower(), target.lower()
    if op == PropertyOp.CONTAINS:
        return t in a
    if op == PropertyOp.STARTS_WITH:
        return a.startswith(t)
    if op == PropertyOp.ENDS_WITH:
        return a.endswith(t)
    return False


def _compare_sort_values(a: Any, b: Any) -> int:
    if _is_number(a) and _is_number(b):
        return (a > b) - (a < b)
    if isinstance(a, datetime) and isinstance(b, datetime):
        return (a > b) - (a < b)
    a_text, b_text = str(a).casefold(), str(b).casefold()
    return (a_text > b_text) - (a_text < b_text)

"""
nodegraph Computed Fields

Named numeric aggregates (COUNT, SUM, AVG, MIN, MAX) over a live query.

A computed field is a node tagged #ComputedField holding its definition
and the last cached value. While active, a query subscription keeps the
value current and listeners are told about real value changes only.
Active state is process memory; call initialize() on startup to rebuild it.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from nodegraph.exceptions import NodeGraphError, NotFoundError, ValidationError
from nodegraph.ids import from_iso, to_iso, utc_now
from nodegraph.query.filters import QueryDefinition
from nodegraph.reactive.subscriptions import (
    QueryResultChangeEvent,
    QuerySubscriptionService,
    SubscriptionHandle,
)
from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS
from nodegraph.types import AssembledNode

if TYPE_CHECKING:
    from nodegraph.store.base import NodeBackend

logger = structlog.get_logger(__name__)

Number = Union[int, float]


class AggregationType(str, Enum):
    COUNT = "COUNT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"


class ComputedFieldDefinition(BaseModel):
    """`{query, aggregation, fieldId?}` as stored on the computed-field node."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query: QueryDefinition
    aggregation: AggregationType
    field_id: Optional[str] = None

    @field_validator("aggregation", mode="before")
    @classmethod
    def normalize_aggregation(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_computed_definition(
    data: Union[ComputedFieldDefinition, Dict[str, Any]],
) -> ComputedFieldDefinition:
    if isinstance(data, ComputedFieldDefinition):
        return data
    try:
        return ComputedFieldDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid computed field definition: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
        ) from e


# =============================================================================
# Aggregation
# =============================================================================

def extract_numeric(node: AssembledNode, field_id: str) -> Optional[Number]:
    """
    First value of a field as a finite number, or None.

    The field is matched by node id, system id or display name. Numeric
    strings are parsed; booleans, other types and NaN/inf are skipped.
    """
    entries = node.entries(field_id)
    if not entries:
        for candidates in node.properties.values():
            if candidates and candidates[0].field_node_id == field_id:
                entries = candidates
                break
    if not entries:
        return None

    value = entries[0].value
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return value


def compute_aggregation(
    nodes: List[AssembledNode],
    aggregation: AggregationType,
    field_id: Optional[str] = None,
    total_count: Optional[int] = None,
) -> Optional[Number]:
    """
    Aggregate a result set.

    COUNT is the matched-node count (total_count when given, so a query
    limit does not cap it) and never None. The other kinds need field_id
    and return None, not 0, when no node has a usable numeric value.
    """
    if aggregation == AggregationType.COUNT:
        return total_count if total_count is not None else len(nodes)

    if not field_id:
        logger.warning(f"{aggregation.value} aggregation requires a fieldId; result is null")
        return None

    values = []
    for node in nodes:
        value = extract_numeric(node, field_id)
        if value is not None:
            values.append(value)
    if not values:
        return None

    if aggregation == AggregationType.SUM:
        return sum(values)
    if aggregation == AggregationType.AVG:
        return sum(values) / len(values)
    if aggregation == AggregationType.MIN:
        return min(values)
    return max(values)


# =============================================================================
# Service
# =============================================================================

@dataclass
class ComputedValueChange:
    computed_field_id: str
    value: Optional[Number]
    previous_value: Optional[Number]
    updated_at: datetime


@dataclass
class ComputedField:
    """Persisted view of a computed field."""
    id: str
    name: str
    definition: Optional[ComputedFieldDefinition]
    value: Optional[Number]
    updated_at: Optional[datetime]
    active: bool = False


ValueListener = Callable[[ComputedValueChange], Any]


@dataclass
class _ActiveField:
    handle: SubscriptionHandle
    definition: ComputedFieldDefinition
    last_value: Optional[Number]


class ComputedFieldService:
    """Keeps computed-field values in step with their queries."""

    def __init__(self, backend: "NodeBackend", subscriptions: QuerySubscriptionService):
        self.backend = backend
        self.subscriptions = subscriptions
        self._active: Dict[str, _ActiveField] = {}
        self._listeners: Dict[str, List[ValueListener]] = {}

    async def create(
        self,
        name: str,
        definition: Union[ComputedFieldDefinition, Dict[str, Any]],
        owner_id: Optional[str] = None,
    ) -> str:
        """
        Create a computed field, activate it and persist its first value.

        Args:
            name: Display name (node content)
            definition: `{query, aggregation, fieldId?}`
            owner_id: Optional owning node

        Returns:
            The computed-field node id
        """
        parsed = parse_computed_definition(definition)
        node_id = await self.backend.create_node(
            content=name,
            owner_id=owner_id,
            supertag_system_id=SYSTEM_SUPERTAGS.COMPUTED_FIELD,
            properties={SYSTEM_FIELDS.COMPUTED_FIELD_DEFINITION: parsed.to_json()},
        )

        active = await self._activate(node_id, parsed)
        await self._persist(node_id, active.last_value)

        logger.info(f"Computed field created: {name!r} ({node_id}) = {active.last_value}")
        return node_id

    async def get_value(self, computed_field_id: str) -> Optional[Number]:
        """Live value when active, else the last persisted value."""
        active = self._active.get(computed_field_id)
        if active is not None:
            return active.last_value
        node = await self.backend.find_node_by_id(computed_field_id)
        if node is None:
            return None
        return node.first(SYSTEM_FIELDS.COMPUTED_FIELD_VALUE)

    async def recompute(self, computed_field_id: str) -> Optional[Number]:
        """Force a recompute, activating the field first if needed."""
        active = self._active.get(computed_field_id)
        if active is None:
            active = await self._load_and_activate(computed_field_id)

        value = self._aggregate(active)
        node = await self.backend.find_node_by_id(computed_field_id)
        stored = node.first(SYSTEM_FIELDS.COMPUTED_FIELD_VALUE) if node else None

        previous = active.last_value
        active.last_value = value
        if value != stored:
            updated_at = await self._persist(computed_field_id, value)
            if value != previous:
                await self._notify(ComputedValueChange(computed_field_id, value, previous, updated_at))
        return value

    async def get_all(self) -> List[ComputedField]:
        nodes = await self.backend.get_nodes_by_supertags([SYSTEM_SUPERTAGS.COMPUTED_FIELD])
        return [self._describe(node) for node in nodes]

    async def delete(self, computed_field_id: str) -> None:
        """Deactivate, drop listeners and soft-delete the node."""
        self._deactivate(computed_field_id)
        self._listeners.pop(computed_field_id, None)
        await self.backend.delete_node(computed_field_id)
        logger.info(f"Computed field deleted: {computed_field_id}")

    def on_value_change(self, computed_field_id: str, callback: ValueListener) -> Callable[[], None]:
        """
        Register a listener for one field. Returns an unsubscribe function.

        Listeners behave as a set: registering the same callable again is a no-op.
        """
        listeners = self._listeners.setdefault(computed_field_id, [])
        if callback not in listeners:
            listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    async def initialize(self) -> int:
        """
        Activate every live computed field.

        Fields whose definition no longer loads are logged and skipped.

        Returns:
            Number of active fields
        """
        nodes = await self.backend.get_nodes_by_supertags([SYSTEM_SUPERTAGS.COMPUTED_FIELD])
        for node in nodes:
            if node.id in self._active:
                continue
            try:
                active = await self._activate(node.id, self._definition_of(node))
                if active.last_value != node.first(SYSTEM_FIELDS.COMPUTED_FIELD_VALUE):
                    await self._persist(node.id, active.last_value)
            except NodeGraphError as e:
                logger.warning(f"Computed field {node.id} not activated: {e}")

        logger.info(f"Computed fields initialized: {len(self._active)} active")
        return len(self._active)

    def active_count(self) -> int:
        return len(self._active)

    def clear(self) -> None:
        """Drop in-memory state (subscriptions, listeners). Persisted values stay."""
        for computed_field_id in list(self._active):
            self._deactivate(computed_field_id)
        self._listeners.clear()

    # ==========================================================================
    # Internals
    # ==========================================================================

    @staticmethod
    def _aggregate(active: _ActiveField) -> Optional[Number]:
        return compute_aggregation(
            active.handle.get_last_results(),
            active.definition.aggregation,
            active.definition.field_id,
            active.handle.get_last_total_count(),
        )

    @staticmethod
    def _definition_of(node: AssembledNode) -> ComputedFieldDefinition:
        raw = node.first(SYSTEM_FIELDS.COMPUTED_FIELD_DEFINITION)
        if raw is None:
            raise ValidationError(
                f"Computed field {node.id} has no definition",
                details={"computed_field_id": node.id},
            )
        return parse_computed_definition(raw)

    def _describe(self, node: AssembledNode) -> ComputedField:
        try:
            definition = self._definition_of(node)
        except ValidationError:
            definition = None
        active = self._active.get(node.id)
        return ComputedField(
            id=node.id,
            name=node.content,
            definition=definition,
            value=active.last_value if active else node.first(SYSTEM_FIELDS.COMPUTED_FIELD_VALUE),
            updated_at=from_iso(node.first(SYSTEM_FIELDS.COMPUTED_FIELD_UPDATED_AT)),
            active=active is not None,
        )

    async def _load_and_activate(self, computed_field_id: str) -> _ActiveField:
        node = await self.backend.find_node_by_id(computed_field_id)
        if node is None or not node.has_supertag(SYSTEM_SUPERTAGS.COMPUTED_FIELD):
            raise NotFoundError("computed_field", computed_field_id)
        return await self._activate(computed_field_id, self._definition_of(node))

    async def _activate(self, computed_field_id: str, definition: ComputedFieldDefinition) -> _ActiveField:
        async def on_change(change: QueryResultChangeEvent) -> None:
            await self._on_results_changed(computed_field_id)

        handle = await self.subscriptions.subscribe(definition.query, on_change)
        active = _ActiveField(handle=handle, definition=definition, last_value=None)
        active.last_value = self._aggregate(active)
        self._active[computed_field_id] = active
        return active

    def _deactivate(self, computed_field_id: str) -> None:
        active = self._active.pop(computed_field_id, None)
        if active is not None:
            active.handle.unsubscribe()

    async def _on_results_changed(self, computed_field_id: str) -> None:
        active = self._active.get(computed_field_id)
        if active is None:
            return
        value = self._aggregate(active)
        if value == active.last_value:
            return

        previous = active.last_value
        active.last_value = value
        updated_at = await self._persist(computed_field_id, value)
        logger.debug(f"Computed field {computed_field_id}: {previous} -> {value}")
        await self._notify(ComputedValueChange(computed_field_id, value, previous, updated_at))

    async def _persist(self, computed_field_id: str, value: Optional[Number]) -> datetime:
        updated_at = utc_now()
        if value is None:
            await self.backend.clear_property(computed_field_id, SYSTEM_FIELDS.COMPUTED_FIELD_VALUE)
        else:
            await self.backend.set_property(computed_field_id, SYSTEM_FIELDS.COMPUTED_FIELD_VALUE, value)
        await self.backend.set_property(
            computed_field_id, SYSTEM_FIELDS.COMPUTED_FIELD_UPDATED_AT, to_iso(updated_at)
        )
        return updated_at

    async def _notify(self, change: ComputedValueChange) -> None:
        for listener in list(self._listeners.get(change.computed_field_id, [])):
            try:
                outcome = listener(change)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Computed field listener error ({change.computed_field_id}): {e}", exc_info=True)

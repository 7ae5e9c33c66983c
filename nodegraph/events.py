"""
nodegraph Mutation Events

Every backend mutation is published on a MutationEventBus. The query
subscription layer listens here to learn when cached results may be stale.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Optional, Tuple

import structlog

from nodegraph.ids import utc_now

logger = structlog.get_logger(__name__)

MAX_SUBSCRIBERS = 50


class MutationType(str, Enum):
    NODE_CREATED = "node:created"
    NODE_UPDATED = "node:updated"
    NODE_DELETED = "node:deleted"
    PROPERTY_SET = "property:set"
    PROPERTY_ADDED = "property:added"
    PROPERTY_REMOVED = "property:removed"
    SUPERTAG_ADDED = "supertag:added"
    SUPERTAG_REMOVED = "supertag:removed"


@dataclass
class MutationEvent:
    """A single logical change to the node store."""
    type: MutationType
    node_id: str
    field_system_id: Optional[str] = None
    supertag_system_id: Optional[str] = None
    before_value: Any = None
    after_value: Any = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "nodeId": self.node_id,
            "fieldSystemId": self.field_system_id,
            "supertagSystemId": self.supertag_system_id,
            "beforeValue": self.before_value,
            "afterValue": self.after_value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class EventFilter:
    """Restricts which events a listener receives. Empty sets match everything."""
    types: FrozenSet[MutationType] = frozenset()
    node_ids: FrozenSet[str] = frozenset()
    field_system_ids: FrozenSet[str] = frozenset()
    supertag_system_ids: FrozenSet[str] = frozenset()

    def matches(self, event: MutationEvent) -> bool:
        if self.types and event.type not in self.types:
            return False
        if self.node_ids and event.node_id not in self.node_ids:
            return False
        if self.field_system_ids and event.field_system_id not in self.field_system_ids:
            return False
        if self.supertag_system_ids and event.supertag_system_id not in self.supertag_system_ids:
            return False
        return True


Listener = Callable[[MutationEvent], Any]


class MutationEventBus:
    """
    In-process publish/subscribe for mutation events.

    Listeners may be plain callables or coroutine functions. They run in
    subscription order and are isolated from each other: one failing
    listener is logged and the rest still run.
    """

    def __init__(self):
        self._listeners: List[Tuple[int, Listener, Optional[EventFilter]]] = []
        self._next_token = 0

    def subscribe(
        self,
        listener: Listener,
        event_filter: Optional[EventFilter] = None,
    ) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A function that removes the listener (safe to call twice)
        """
        token = self._next_token
        self._next_token += 1
        self._listeners.append((token, listener, event_filter))

        if len(self._listeners) > MAX_SUBSCRIBERS:
            logger.warning(
                f"Mutation event bus has {len(self._listeners)} listeners; "
                "possible subscription leak"
            )

        def unsubscribe() -> None:
            self._listeners = [entry for entry in self._listeners if entry[0] != token]

        return unsubscribe

    async def emit(self, event: MutationEvent) -> None:
        """Deliver an event to every matching listener."""
        for _, listener, event_filter in list(self._listeners):
            if event_filter is not None and not event_filter.matches(event):
                continue
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Mutation listener error for {event.type.value}: {e}", exc_info=True)

    def listener_count(self) -> int:
        return len(self._listeners)

    def clear(self) -> None:
        self._listeners.clear()

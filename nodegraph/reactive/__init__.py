"""
nodegraph Reactive Layer

Live query subscriptions and the computed fields built on them.
"""

from nodegraph.reactive.computed import (
    AggregationType,
    ComputedFieldDefinition,
    ComputedFieldService,
    ComputedValueChange,
    compute_aggregation,
)
from nodegraph.reactive.subscriptions import (
    QueryResultChangeEvent,
    QuerySubscriptionService,
    SubscriptionHandle,
)

__all__ = [
    "QuerySubscriptionService",
    "SubscriptionHandle",
    "QueryResultChangeEvent",
    "ComputedFieldService",
    "ComputedFieldDefinition",
    "ComputedValueChange",
    "AggregationType",
    "compute_aggregation",
]

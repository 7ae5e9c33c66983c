"""
nodegraph Query Layer

Filter definitions, the evaluation engine and saved queries.
"""

from nodegraph.query.engine import QueryEngine, compare_values
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
    TemporalFilter,
    parse_query_definition,
)
from nodegraph.query.saved import SavedQuery, SavedQueryService

__all__ = [
    "QueryEngine",
    "compare_values",
    "QueryDefinition",
    "QueryFilter",
    "QuerySort",
    "parse_query_definition",
    "SupertagFilter",
    "PropertyFilter",
    "PropertyOp",
    "ContentFilter",
    "RelationFilter",
    "RelationType",
    "TemporalFilter",
    "HasFieldFilter",
    "AndFilter",
    "OrFilter",
    "NotFilter",
    "SavedQuery",
    "SavedQueryService",
]

"""
nodegraph Query Filters

QueryDefinition and the filter sum type. Filters are a pydantic
discriminated union keyed on `type`; JSON uses camelCase keys
(`supertagSystemId`), Python code may use snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from nodegraph.exceptions import ValidationError


class PropertyOp(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"


class RelationType(str, Enum):
    CHILD_OF = "childOf"
    OWNED_BY = "ownedBy"
    LINKS_TO = "linksTo"
    LINKED_FROM = "linkedFrom"


class TemporalField(str, Enum):
    CREATED_AT = "createdAt"
    UPDATED_AT = "updatedAt"


class TemporalOp(str, Enum):
    WITHIN = "within"
    BEFORE = "before"
    AFTER = "after"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Filter Variants
# =============================================================================

class SupertagFilter(_WireModel):
    """Node carries the supertag (or, if include_inherited, a descendant of it)."""
    type: Literal["supertag"] = "supertag"
    supertag_system_id: str
    include_inherited: bool = True


class PropertyFilter(_WireModel):
    """Compare the node's values for a field; any value may satisfy the op."""
    type: Literal["property"] = "property"
    field_system_id: str
    op: PropertyOp
    value: Any = None


class ContentFilter(_WireModel):
    type: Literal["content"] = "content"
    query: str = ""
    case_sensitive: bool = False


class RelationFilter(_WireModel):
    """
    Structural predicate. Without target_node_id, tests for "any relation
    of this type". field_system_id restricts linksTo/linkedFrom to one field.
    """
    type: Literal["relation"] = "relation"
    relation_type: RelationType
    target_node_id: Optional[str] = None
    field_system_id: Optional[str] = None


class TemporalFilter(_WireModel):
    type: Literal["temporal"] = "temporal"
    field: TemporalField
    op: TemporalOp
    days: Optional[float] = None
    date: Optional[str] = None


class HasFieldFilter(_WireModel):
    type: Literal["hasField"] = "hasField"
    field_system_id: str
    negate: bool = False


class AndFilter(_WireModel):
    type: Literal["and"] = "and"
    filters: List[QueryFilter] = Field(default_factory=list)


class OrFilter(_WireModel):
    type: Literal["or"] = "or"
    filters: List[QueryFilter] = Field(default_factory=list)


class NotFilter(_WireModel):
    """NOT (f1 AND f2 AND ...)."""
    type: Literal["not"] = "not"
    filters: List[QueryFilter] = Field(default_factory=list)


QueryFilter = Annotated[
    Union[
        SupertagFilter,
        PropertyFilter,
        ContentFilter,
        RelationFilter,
        TemporalFilter,
        HasFieldFilter,
        AndFilter,
        OrFilter,
        NotFilter,
    ],
    Field(discriminator="type"),
]

AndFilter.model_rebuild()
OrFilter.model_rebuild()
NotFilter.model_rebuild()


# =============================================================================
# Definition
# =============================================================================

class QuerySort(_WireModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class QueryDefinition(_WireModel):
    """Top-level filters are ANDed. No filters matches every live node."""
    filters: List[QueryFilter] = Field(default_factory=list)
    sort: Optional[QuerySort] = None
    limit: Optional[int] = Field(default=None, ge=0)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_query_definition(data: Union[QueryDefinition, dict[str, Any]]) -> QueryDefinition:
    """Validate a definition, raising nodegraph's ValidationError on bad input."""
    if isinstance(data, QueryDefinition):
        return data
    try:
        return QueryDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid query definition: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
        ) from e


def iter_filters(filters: List[QueryFilter]) -> Iterator[QueryFilter]:
    """Depth-first walk over a filter tree, including group nodes."""
    for f in filters:
        yield f
        if isinstance(f, (AndFilter, OrFilter, NotFilter)):
            yield from iter_filters(f.filters)

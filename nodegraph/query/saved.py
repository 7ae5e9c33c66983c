"""
nodegraph Saved Queries

Queries persisted as #Query nodes. The filter list, sort and limit live
in separate fields, and the last executed result ids can be cached on
the node alongside the evaluation time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import structlog

from nodegraph.exceptions import NotFoundError
from nodegraph.ids import from_iso, to_iso
from nodegraph.query.filters import QueryDefinition, parse_query_definition
from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS
from nodegraph.types import AssembledNode, QueryEvaluationResult

if TYPE_CHECKING:
    from nodegraph.store.base import NodeBackend

logger = structlog.get_logger(__name__)


@dataclass
class SavedQuery:
    id: str
    name: str
    definition: QueryDefinition
    created_at: datetime
    updated_at: datetime
    owner_id: Optional[str] = None
    result_cache: List[str] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "definition": self.definition.to_json(),
            "ownerId": self.owner_id,
            "resultCache": list(self.result_cache),
            "evaluatedAt": to_iso(self.evaluated_at),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


class SavedQueryService:
    """CRUD and execution for saved queries."""

    def __init__(self, backend: "NodeBackend"):
        self.backend = backend

    async def create(
        self,
        name: str,
        definition: Union[QueryDefinition, Dict[str, Any]],
        owner_id: Optional[str] = None,
    ) -> str:
        parsed = parse_query_definition(definition)
        query_id = await self.backend.create_node(
            content=name,
            owner_id=owner_id,
            supertag_system_id=SYSTEM_SUPERTAGS.QUERY,
        )
        await self._write_definition(query_id, parsed)
        logger.info(f"Saved query created: {name!r} ({query_id})")
        return query_id

    async def get(self, query_id: str) -> Optional[SavedQuery]:
        node = await self.backend.find_node_by_id(query_id)
        if node is None or not node.has_supertag(SYSTEM_SUPERTAGS.QUERY):
            return None
        return self._from_node(node)

    async def list(self) -> List[SavedQuery]:
        """All live saved queries, newest first."""
        nodes = await self.backend.get_nodes_by_supertags([SYSTEM_SUPERTAGS.QUERY])
        queries = [self._from_node(node) for node in nodes]
        queries.sort(key=lambda q: (q.created_at, q.id), reverse=True)
        return queries

    async def update(
        self,
        query_id: str,
        name: Optional[str] = None,
        definition: Union[QueryDefinition, Dict[str, Any], None] = None,
    ) -> SavedQuery:
        """
        Rename and/or redefine a saved query.

        A new definition invalidates the cached results.

        Raises:
            NotFoundError: The query does not exist or was deleted
        """
        await self._require(query_id)

        if name is not None:
            await self.backend.update_node_content(query_id, name)
        if definition is not None:
            await self._write_definition(query_id, parse_query_definition(definition))
            await self.backend.clear_property(query_id, SYSTEM_FIELDS.QUERY_RESULT_CACHE)
            await self.backend.clear_property(query_id, SYSTEM_FIELDS.QUERY_EVALUATED_AT)

        return await self._require(query_id)

    async def delete(self, query_id: str) -> None:
        await self._require(query_id)
        await self.backend.delete_node(query_id)
        logger.info(f"Saved query deleted: {query_id}")

    async def execute(self, query_id: str, cache_results: bool = False) -> QueryEvaluationResult:
        """Evaluate a saved query, optionally caching the result ids on the node."""
        saved = await self._require(query_id)
        result = await self.backend.evaluate_query(saved.definition)

        if cache_results:
            await self.backend.set_property(query_id, SYSTEM_FIELDS.QUERY_RESULT_CACHE, result.ids)
            await self.backend.set_property(
                query_id, SYSTEM_FIELDS.QUERY_EVALUATED_AT, to_iso(result.evaluated_at)
            )
        return result

    async def _require(self, query_id: str) -> SavedQuery:
        saved = await self.get(query_id)
        if saved is None:
            raise NotFoundError("query", query_id)
        return saved

    async def _write_definition(self, query_id: str, definition: QueryDefinition) -> None:
        wire = definition.to_json()
        await self.backend.set_property(
            query_id, SYSTEM_FIELDS.QUERY_DEFINITION, {"filters": wire.get("filters", [])}
        )
        if definition.sort is not None:
            await self.backend.set_property(query_id, SYSTEM_FIELDS.QUERY_SORT, wire["sort"])
        else:
            await self.backend.clear_property(query_id, SYSTEM_FIELDS.QUERY_SORT)
        if definition.limit is not None:
            await self.backend.set_property(query_id, SYSTEM_FIELDS.QUERY_LIMIT, definition.limit)
        else:
            await self.backend.clear_property(query_id, SYSTEM_FIELDS.QUERY_LIMIT)

    @staticmethod
    def _from_node(node: AssembledNode) -> SavedQuery:
        raw = node.first(SYSTEM_FIELDS.QUERY_DEFINITION) or {}
        data: Dict[str, Any] = {"filters": raw.get("filters", [])}
        sort = node.first(SYSTEM_FIELDS.QUERY_SORT)
        if sort is not None:
            data["sort"] = sort
        limit = node.first(SYSTEM_FIELDS.QUERY_LIMIT)
        if limit is not None:
            data["limit"] = limit

        return SavedQuery(
            id=node.id,
            name=node.content,
            definition=parse_query_definition(data),
            created_at=node.created_at,
            updated_at=node.updated_at,
            owner_id=node.owner_id,
            result_cache=list(node.first(SYSTEM_FIELDS.QUERY_RESULT_CACHE) or []),
            evaluated_at=from_iso(node.first(SYSTEM_FIELDS.QUERY_EVALUATED_AT)),
        )

"""
nodegraph Service Boundary

Thin wrappers for UI-style callers: domain errors come back as
`ServiceResult(success=False, error=...)` instead of raising. Storage
failures are not domain errors and still propagate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Union

import structlog

from nodegraph.context import NodeGraph
from nodegraph.exceptions import NodeGraphError
from nodegraph.query.filters import QueryDefinition
from nodegraph.types import CreateNodeOptions

logger = structlog.get_logger(__name__)


@dataclass
class ServiceResult:
    """Outcome of a service-boundary call."""
    success: bool
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result


async def safe_call(awaitable: Awaitable[Any]) -> ServiceResult:
    """Await a call, mapping NodeGraphError to a failed result."""
    try:
        return ServiceResult(success=True, data=await awaitable)
    except NodeGraphError as e:
        logger.warning(f"Operation failed: {e}")
        return ServiceResult(success=False, error=str(e))


async def create_node_op(
    graph: NodeGraph,
    options: Optional[CreateNodeOptions] = None,
    **kwargs: Any,
) -> ServiceResult:
    return await safe_call(graph.backend.create_node(options, **kwargs))


async def delete_node_op(graph: NodeGraph, node_id: str) -> ServiceResult:
    return await safe_call(graph.backend.delete_node(node_id))


async def update_saved_query_op(
    graph: NodeGraph,
    query_id: str,
    name: Optional[str] = None,
    definition: Union[QueryDefinition, Dict[str, Any], None] = None,
) -> ServiceResult:
    result = await safe_call(graph.saved_queries.update(query_id, name=name, definition=definition))
    if result.success:
        result.data = result.data.to_dict()
    return result


async def evaluate_query_op(
    graph: NodeGraph,
    definition: Union[QueryDefinition, Dict[str, Any]],
) -> ServiceResult:
    """Evaluate a query; data is `{nodes, totalCount, evaluatedAt}` in wire form."""
    result = await safe_call(graph.evaluate_query(definition))
    if result.success:
        evaluation = result.data
        result.data = {
            "nodes": [node.to_dict() for node in evaluation.nodes],
            "totalCount": evaluation.total_count,
            "evaluatedAt": evaluation.evaluated_at.isoformat(),
        }
    return result

"""
nodegraph Context

NodeGraph is the explicit service context: one event bus, one backend
and the services built on top of it. Independent instances share no
state, so tests and embedded hosts can run several side by side.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Union

import structlog

from nodegraph.config import NodeGraphConfig
from nodegraph.events import MutationEventBus
from nodegraph.query.filters import QueryDefinition
from nodegraph.query.saved import SavedQueryService
from nodegraph.reactive.computed import ComputedFieldService
from nodegraph.reactive.subscriptions import QuerySubscriptionService
from nodegraph.store.base import NodeBackend
from nodegraph.store.graph_store import GraphNodeBackend
from nodegraph.store.sqlite_store import SQLiteNodeBackend
from nodegraph.types import QueryEvaluationResult

logger = structlog.get_logger(__name__)


def create_backend(
    config: NodeGraphConfig,
    events: Optional[MutationEventBus] = None,
) -> NodeBackend:
    """Build the backend selected by config.backend (not yet initialized)."""
    if config.backend == "graph":
        return GraphNodeBackend(
            snapshot_path=str(config.get_snapshot_path()),
            autosave=config.autosave,
            events=events,
            default_limit=config.query.default_limit,
            max_depth=config.query.max_ancestor_depth,
            auto_bootstrap=config.auto_bootstrap,
        )
    return SQLiteNodeBackend(
        db_path=str(config.get_database_path()),
        enable_wal=config.sqlite.enable_wal,
        cache_size_kb=config.sqlite.cache_size_kb,
        events=events,
        default_limit=config.query.default_limit,
        max_depth=config.query.max_ancestor_depth,
        auto_bootstrap=config.auto_bootstrap,
    )


class NodeGraph:
    """
    Owns the backend and the query/computed-field services.

    Usage:
        async with NodeGraph(config) as graph:
            node_id = await graph.backend.create_node(content="ripgrep")
            result = await graph.evaluate_query({"filters": []})
    """

    def __init__(
        self,
        config: Optional[NodeGraphConfig] = None,
        backend: Optional[NodeBackend] = None,
    ):
        self.config = config or NodeGraphConfig()
        if backend is None:
            self.events = MutationEventBus()
            self.backend = create_backend(self.config, self.events)
        else:
            self.events = backend.events
            self.backend = backend

        self.subscriptions = QuerySubscriptionService(self.backend)
        self.computed_fields = ComputedFieldService(self.backend, self.subscriptions)
        self.saved_queries = SavedQueryService(self.backend)

        self._started = False
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "NodeGraph":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Initialize the backend, attach subscriptions and rehydrate computed fields."""
        async with self._lock:
            if self._started:
                return

            logger.info(f"Starting node graph ({self.backend.backend_type} backend)")
            await self.backend.init()
            self.subscriptions.attach()
            try:
                await self.computed_fields.initialize()
            except Exception as e:
                logger.error(f"Failed to start node graph: {e}")
                self.subscriptions.detach()
                await self.backend.close()
                raise
            self._started = True

    async def close(self) -> None:
        """Drop live state, flush and close the backend."""
        async with self._lock:
            if not self._started:
                return

            self.computed_fields.clear()
            self.subscriptions.clear()
            self.subscriptions.detach()
            await self.backend.save()
            await self.backend.close()

            self._started = False
            logger.info("Node graph shutdown complete")

    async def evaluate_query(
        self,
        definition: Union[QueryDefinition, Dict[str, Any]],
    ) -> QueryEvaluationResult:
        return await self.backend.evaluate_query(definition)

    async def get_status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "backend": await self.backend.health_check(),
            "subscriptions": self.subscriptions.subscription_count(),
            "computed_fields": self.computed_fields.active_count(),
            "event_listeners": self.events.listener_count(),
        }

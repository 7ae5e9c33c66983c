"""
nodegraph SQLite Node Store

Relational EAV storage on SQLite:
- nodes: one row per node, system_id uniquely indexed among live nodes
- node_properties: has_field edges, indexed on (node, field)
- node_supertags: has_supertag edges
Every write is committed immediately, so save() has nothing to flush.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import aiosqlite
import structlog

from nodegraph.events import MutationEventBus
from nodegraph.ids import from_iso, to_iso
from nodegraph.inheritance import DEFAULT_MAX_DEPTH
from nodegraph.query.engine import DEFAULT_QUERY_LIMIT
from nodegraph.snapshot import GraphSnapshot
from nodegraph.store.base import NodeBackend
from nodegraph.types import (
    NodeRecord,
    PropertyEdge,
    SupertagEdge,
    decode_value,
    encode_value,
)

logger = structlog.get_logger(__name__)


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


class SQLiteNodeBackend(NodeBackend):
    """
    SQLite-based node storage.

    Schema:
    - nodes: Node rows with lifecycle timestamps
    - node_properties: (node, field, value) edges with kind tag and order
    - node_supertags: (node, supertag) edges with assignment order

    Performance settings:
    - WAL mode for concurrent readers
    - Partial indices that skip soft-deleted rows
    """

    backend_type = "sqlite"

    def __init__(
        self,
        db_path: str = "./data/nodegraph.db",
        enable_wal: bool = True,
        cache_size_kb: int = 16000,
        events: Optional[MutationEventBus] = None,
        default_limit: int = DEFAULT_QUERY_LIMIT,
        max_depth: int = DEFAULT_MAX_DEPTH,
        auto_bootstrap: bool = True,
    ):
        super().__init__(
            events=events,
            default_limit=default_limit,
            max_depth=max_depth,
            auto_bootstrap=auto_bootstrap,
        )
        self.db_path = Path(db_path)
        self.enable_wal = enable_wal
        self.cache_size_kb = cache_size_kb

        self._connection: Optional[aiosqlite.Connection] = None

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def _open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            str(self.db_path),
            isolation_level=None,  # Autocommit: every statement is durable on return
        )
        self._connection.row_factory = aiosqlite.Row

        if self.enable_wal:
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._connection.execute(f"PRAGMA cache_size=-{int(self.cache_size_kb)}")
        await self._connection.execute("PRAGMA temp_store=MEMORY")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()
        logger.info(f"SQLite node store initialized: {self.db_path}")

    async def _close(self) -> None:
        if self._connection:
            if self.enable_wal:
                await self._connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            await self._connection.close()
            self._connection = None
        logger.info("SQLite node store shutdown")

    async def _create_schema(self) -> None:
        """Create tables and indices."""
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL DEFAULT '',
                content_plain TEXT NOT NULL DEFAULT '',
                system_id TEXT,
                owner_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT
            );

            CREATE TABLE IF NOT EXISTS node_properties (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT NOT NULL,
                field_node_id TEXT NOT NULL,
                value_kind TEXT NOT NULL DEFAULT 'scalar'
                    CHECK (value_kind IN ('scalar', 'reference')),
                value TEXT,
                sort_order INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (node_id) REFERENCES nodes(id),
                FOREIGN KEY (field_node_id) REFERENCES nodes(id)
            );

            CREATE TABLE IF NOT EXISTS node_supertags (
                node_id TEXT NOT NULL,
                supertag_id TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0,
                created_at TEXT,
                PRIMARY KEY (node_id, supertag_id),
                FOREIGN KEY (node_id) REFERENCES nodes(id),
                FOREIGN KEY (supertag_id) REFERENCES nodes(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_system_id
                ON nodes(system_id) WHERE system_id IS NOT NULL AND deleted_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_nodes_owner ON nodes(owner_id) WHERE deleted_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_nodes_created ON nodes(created_at, id);

            CREATE INDEX IF NOT EXISTS idx_properties_node_field
                ON node_properties(node_id, field_node_id);
            CREATE INDEX IF NOT EXISTS idx_properties_field ON node_properties(field_node_id);
            CREATE INDEX IF NOT EXISTS idx_properties_reference
                ON node_properties(value) WHERE value_kind = 'reference';

            CREATE INDEX IF NOT EXISTS idx_supertags_supertag ON node_supertags(supertag_id);
        """)

    async def health_check(self):
        """Check store health."""
        health = await super().health_check()
        health["db_path"] = str(self.db_path)
        return health

    # ==========================================================================
    # Row Conversion
    # ==========================================================================

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> NodeRecord:
        return NodeRecord(
            id=row["id"],
            content=row["content"],
            content_plain=row["content_plain"],
            system_id=row["system_id"],
            owner_id=row["owner_id"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            deleted_at=from_iso(row["deleted_at"]),
        )

    @staticmethod
    def _row_to_property(row: aiosqlite.Row) -> PropertyEdge:
        return PropertyEdge(
            node_id=row["node_id"],
            field_node_id=row["field_node_id"],
            value=decode_value(row["value_kind"], row["value"]),
            order=row["sort_order"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_supertag(row: aiosqlite.Row) -> SupertagEdge:
        return SupertagEdge(
            node_id=row["node_id"],
            supertag_id=row["supertag_id"],
            order=row["sort_order"],
            created_at=from_iso(row["created_at"]),
        )

    async def _fetch_all(self, query: str, params: Sequence = ()) -> List[aiosqlite.Row]:
        cursor = await self._connection.execute(query, params)
        return list(await cursor.fetchall())

    # ==========================================================================
    # Node Records
    # ==========================================================================

    async def _get_record(self, node_id: str) -> Optional[NodeRecord]:
        cursor = await self._connection.execute("SELECT * FROM nodes WHERE id = ?", (node_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def _get_record_by_system_id(self, system_id: str) -> Optional[NodeRecord]:
        cursor = await self._connection.execute(
            "SELECT * FROM nodes WHERE system_id = ? AND deleted_at IS NULL",
            (system_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def _insert_record(self, record: NodeRecord) -> None:
        await self._connection.execute(
            """
            INSERT INTO nodes (id, content, content_plain, system_id, owner_id,
                               created_at, updated_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.content,
                record.content_plain,
                record.system_id,
                record.owner_id,
                to_iso(record.created_at),
                to_iso(record.updated_at),
                to_iso(record.deleted_at),
            ),
        )
        await self._connection.commit()

    async def _update_record(self, record: NodeRecord) -> None:
        await self._connection.execute(
            """
            UPDATE nodes SET
                content = ?, content_plain = ?, owner_id = ?,
                updated_at = ?, deleted_at = ?
            WHERE id = ?
            """,
            (
                record.content,
                record.content_plain,
                record.owner_id,
                to_iso(record.updated_at),
                to_iso(record.deleted_at),
                record.id,
            ),
        )
        await self._connection.commit()

    async def _count_nodes(self) -> int:
        cursor = await self._connection.execute("SELECT COUNT(*) FROM nodes WHERE deleted_at IS NULL")
        return (await cursor.fetchone())[0]

    # ==========================================================================
    # Property Edges
    # ==========================================================================

    async def _get_property_edges(
        self,
        node_id: str,
        field_node_id: Optional[str] = None,
    ) -> List[PropertyEdge]:
        query = "SELECT * FROM node_properties WHERE node_id = ?"
        params: list = [node_id]
        if field_node_id is not None:
            query += " AND field_node_id = ?"
            params.append(field_node_id)
        query += " ORDER BY sort_order, id"
        return [self._row_to_property(row) for row in await self._fetch_all(query, params)]

    async def _insert_property_edge(self, edge: PropertyEdge) -> None:
        kind, raw = encode_value(edge.value)
        await self._connection.execute(
            """
            INSERT INTO node_properties (node_id, field_node_id, value_kind, value,
                                         sort_order, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                edge.node_id,
                edge.field_node_id,
                kind,
                raw,
                edge.order,
                to_iso(edge.created_at),
                to_iso(edge.updated_at),
            ),
        )
        await self._connection.commit()

    async def _delete_property_edges(self, node_id: str, field_node_id: str) -> int:
        cursor = await self._connection.execute(
            "DELETE FROM node_properties WHERE node_id = ? AND field_node_id = ?",
            (node_id, field_node_id),
        )
        await self._connection.commit()
        return cursor.rowcount

    # ==========================================================================
    # Supertag Edges
    # ==========================================================================

    async def _get_supertag_edges(self, node_id: str) -> List[SupertagEdge]:
        rows = await self._fetch_all(
            "SELECT * FROM node_supertags WHERE node_id = ? ORDER BY sort_order",
            (node_id,),
        )
        return [self._row_to_supertag(row) for row in rows]

    async def _insert_supertag_edge(self, edge: SupertagEdge) -> None:
        await self._connection.execute(
            """
            INSERT OR IGNORE INTO node_supertags (node_id, supertag_id, sort_order, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (edge.node_id, edge.supertag_id, edge.order, to_iso(edge.created_at)),
        )
        await self._connection.commit()

    async def _delete_supertag_edge(self, node_id: str, supertag_id: str) -> bool:
        cursor = await self._connection.execute(
            "DELETE FROM node_supertags WHERE node_id = ? AND supertag_id = ?",
            (node_id, supertag_id),
        )
        await self._connection.commit()
        return cursor.rowcount > 0

    # ==========================================================================
    # Snapshot
    # ==========================================================================

    async def load_snapshot(self, node_ids: Optional[Iterable[str]] = None) -> GraphSnapshot:
        if node_ids is None:
            nodes = [self._row_to_record(r) for r in await self._fetch_all("SELECT * FROM nodes")]
            props = [
                self._row_to_property(r)
                for r in await self._fetch_all("SELECT * FROM node_properties ORDER BY sort_order, id")
            ]
            supertags = [
                self._row_to_supertag(r)
                for r in await self._fetch_all("SELECT * FROM node_supertags ORDER BY sort_order")
            ]
            return GraphSnapshot(nodes, props, supertags, complete=True)

        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return GraphSnapshot([], [], [], complete=False)

        marks = _placeholders(len(ids))
        nodes = [
            self._row_to_record(r)
            for r in await self._fetch_all(f"SELECT * FROM nodes WHERE id IN ({marks})", ids)
        ]
        props = [
            self._row_to_property(r)
            for r in await self._fetch_all(
                f"SELECT * FROM node_properties WHERE node_id IN ({marks}) ORDER BY sort_order, id",
                ids,
            )
        ]
        supertags = [
            self._row_to_supertag(r)
            for r in await self._fetch_all(
                f"SELECT * FROM node_supertags WHERE node_id IN ({marks}) ORDER BY sort_order",
                ids,
            )
        ]

        known = {n.id for n in nodes}
        related = list(
            ({p.field_node_id for p in props} | {s.supertag_id for s in supertags}) - known
        )
        if related:
            nodes.extend(
                self._row_to_record(r)
                for r in await self._fetch_all(
                    f"SELECT * FROM nodes WHERE id IN ({_placeholders(len(related))})",
                    related,
                )
            )
        return GraphSnapshot(nodes, props, supertags, complete=False)

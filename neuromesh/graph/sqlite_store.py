"""SQLite persistence backend for the capability graph.

Used both as a station's durable local store and as the shared primary
store that stations replicate through directly when it is reachable
(e.g. a database file on a network mount). Every operation opens its
own connection, so an unreachable file surfaces as StoreUnavailableError
on the call that hit it and the next call simply tries again.
"""

from __future__ import annotations

import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite
import orjson

from neuromesh.exceptions import StoreUnavailableError
from neuromesh.graph.models import (
    EvolutionEvent,
    EvolutionProposal,
    ExecutionRecord,
    GraphEdge,
    GraphNode,
)
from neuromesh.graph.store import GraphStore
from neuromesh.types import ApprovalStatus

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS graph_nodes (
        node_id TEXT PRIMARY KEY,
        node_type TEXT NOT NULL,
        name TEXT DEFAULT '',
        description TEXT DEFAULT '',
        owner_station_id TEXT NOT NULL,
        status TEXT NOT NULL,
        maturation_phase TEXT NOT NULL,
        fitness_score REAL DEFAULT 50.0,
        capabilities TEXT DEFAULT '[]',
        activation_count INTEGER DEFAULT 0,
        total_latency_ms REAL DEFAULT 0.0,
        success_count INTEGER DEFAULT 0,
        failure_count INTEGER DEFAULT 0,
        last_activated TEXT,
        created_at TEXT NOT NULL,
        metadata TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_edges (
        edge_id TEXT PRIMARY KEY,
        source_node_id TEXT NOT NULL,
        target_node_id TEXT NOT NULL,
        edge_type TEXT NOT NULL,
        weight REAL DEFAULT 0.5,
        myelinated INTEGER DEFAULT 0,
        activation_count INTEGER DEFAULT 0,
        co_activation_count INTEGER DEFAULT 0,
        avg_latency_ms REAL DEFAULT 0.0,
        owner_station_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        metadata TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evolution_events (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        previous_state TEXT DEFAULT '{}',
        new_state TEXT DEFAULT '{}',
        reason TEXT DEFAULT '',
        triggered_by TEXT DEFAULT '',
        requires_approval INTEGER DEFAULT 0,
        approval_status TEXT NOT NULL,
        station_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        proposal TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_records (
        id TEXT PRIMARY KEY,
        thread_id TEXT DEFAULT '',
        task_type TEXT DEFAULT '',
        task_description TEXT DEFAULT '',
        nodes_visited TEXT DEFAULT '[]',
        edges_traversed TEXT DEFAULT '[]',
        success INTEGER DEFAULT 1,
        total_latency_ms REAL DEFAULT 0.0,
        node_latencies TEXT DEFAULT '{}',
        station_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_nodes_station ON graph_nodes(owner_station_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_station ON graph_edges(owner_station_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_source ON graph_edges(source_node_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON graph_edges(target_node_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_station ON evolution_events(station_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_status ON evolution_events(approval_status)",
    "CREATE INDEX IF NOT EXISTS idx_exec_station ON execution_records(station_id)",
]


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


class SqliteGraphStore(GraphStore):
    """Graph store backed by a single SQLite file."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._initialized = False

    @property
    def db_path(self) -> str:
        return self._db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"graph store {self._db_path} unavailable: {e}") from e

    async def initialize(self) -> None:
        async with self._connect() as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
        self._initialized = True

    async def ping(self) -> bool:
        """Reachable and usable. Creates the schema on first contact."""
        try:
            if not self._initialized:
                await self.initialize()
                return True
            async with self._connect() as db:
                async with db.execute("SELECT 1"):
                    pass
        except StoreUnavailableError:
            return False
        return True

    # ── Nodes ──

    async def list_nodes(self, station_id: str | None = None) -> list[GraphNode]:
        sql = "SELECT * FROM graph_nodes"
        params: list = []
        if station_id is not None:
            sql += " WHERE owner_station_id = ?"
            params.append(station_id)
        sql += " ORDER BY rowid"
        return [self._row_to_node(row) for row in await self._fetch_all(sql, params)]

    async def get_node(self, node_id: str) -> GraphNode | None:
        rows = await self._fetch_all("SELECT * FROM graph_nodes WHERE node_id = ?", [node_id])
        return self._row_to_node(rows[0]) if rows else None

    async def upsert_node(self, node: GraphNode) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO graph_nodes "
                "(node_id, node_type, name, description, owner_station_id, status, "
                "maturation_phase, fitness_score, capabilities, activation_count, "
                "total_latency_ms, success_count, failure_count, last_activated, "
                "created_at, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    node.node_id,
                    node.node_type.value,
                    node.name,
                    node.description,
                    node.owner_station_id,
                    node.status.value,
                    node.maturation_phase.value,
                    node.fitness_score,
                    _dumps(node.capabilities),
                    node.activation_count,
                    node.total_latency_ms,
                    node.success_count,
                    node.failure_count,
                    node.last_activated.isoformat() if node.last_activated else None,
                    node.created_at.isoformat(),
                    _dumps(node.metadata),
                ),
            )
            await db.commit()

    async def remove_node(self, node_id: str) -> bool:
        return await self._delete("DELETE FROM graph_nodes WHERE node_id = ?", node_id)

    # ── Edges ──

    async def list_edges(self, station_id: str | None = None) -> list[GraphEdge]:
        sql = "SELECT * FROM graph_edges"
        params: list = []
        if station_id is not None:
            sql += " WHERE owner_station_id = ?"
            params.append(station_id)
        sql += " ORDER BY rowid"
        return [self._row_to_edge(row) for row in await self._fetch_all(sql, params)]

    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        rows = await self._fetch_all("SELECT * FROM graph_edges WHERE edge_id = ?", [edge_id])
        return self._row_to_edge(rows[0]) if rows else None

    async def upsert_edge(self, edge: GraphEdge) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO graph_edges "
                "(edge_id, source_node_id, target_node_id, edge_type, weight, myelinated, "
                "activation_count, co_activation_count, avg_latency_ms, owner_station_id, "
                "created_at, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    edge.edge_id,
                    edge.source_node_id,
                    edge.target_node_id,
                    edge.edge_type.value,
                    edge.weight,
                    int(edge.myelinated),
                    edge.activation_count,
                    edge.co_activation_count,
                    edge.avg_latency_ms,
                    edge.owner_station_id,
                    edge.created_at.isoformat(),
                    _dumps(edge.metadata),
                ),
            )
            await db.commit()

    async def remove_edge(self, edge_id: str) -> bool:
        return await self._delete("DELETE FROM graph_edges WHERE edge_id = ?", edge_id)

    # ── Evolution events ──

    async def record_event(self, event: EvolutionEvent) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO evolution_events "
                "(id, event_type, target_id, previous_state, new_state, reason, "
                "triggered_by, requires_approval, approval_status, station_id, "
                "created_at, proposal) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.event_type.value,
                    event.target_id,
                    _dumps(event.previous_state),
                    _dumps(event.new_state),
                    event.reason,
                    event.triggered_by,
                    int(event.requires_approval),
                    event.approval_status.value,
                    event.station_id,
                    event.created_at.isoformat(),
                    _dumps(event.proposal.model_dump(mode="json")) if event.proposal else None,
                ),
            )
            await db.commit()

    async def get_event(self, event_id: str) -> EvolutionEvent | None:
        rows = await self._fetch_all("SELECT * FROM evolution_events WHERE id = ?", [event_id])
        return self._row_to_event(rows[0]) if rows else None

    async def list_events(
        self, station_id: str | None = None, limit: int = 50,
    ) -> list[EvolutionEvent]:
        sql = "SELECT * FROM evolution_events"
        params: list = []
        if station_id is not None:
            sql += " WHERE station_id = ?"
            params.append(station_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_event(row) for row in await self._fetch_all(sql, params)]

    async def list_pending_events(self, station_id: str | None = None) -> list[EvolutionEvent]:
        sql = "SELECT * FROM evolution_events WHERE approval_status = ?"
        params: list = [ApprovalStatus.PENDING.value]
        if station_id is not None:
            sql += " AND station_id = ?"
            params.append(station_id)
        sql += " ORDER BY created_at DESC"
        return [self._row_to_event(row) for row in await self._fetch_all(sql, params)]

    async def update_event_status(self, event_id: str, status: ApprovalStatus) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE evolution_events SET approval_status = ? WHERE id = ?",
                (status.value, event_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # ── Execution records ──

    async def record_execution(self, record: ExecutionRecord) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO execution_records "
                "(id, thread_id, task_type, task_description, nodes_visited, "
                "edges_traversed, success, total_latency_ms, node_latencies, "
                "station_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.thread_id,
                    record.task_type,
                    record.task_description,
                    _dumps(record.nodes_visited),
                    _dumps(record.edges_traversed),
                    int(record.success),
                    record.total_latency_ms,
                    _dumps(record.node_latencies),
                    record.station_id,
                    record.created_at.isoformat(),
                ),
            )
            await db.commit()

    async def list_executions(
        self, station_id: str | None = None, limit: int = 100,
    ) -> list[ExecutionRecord]:
        sql = "SELECT * FROM execution_records"
        params: list = []
        if station_id is not None:
            sql += " WHERE station_id = ?"
            params.append(station_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_execution(row) for row in await self._fetch_all(sql, params)]

    async def count_executions(self, station_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM execution_records"
        params: list = []
        if station_id is not None:
            sql += " WHERE station_id = ?"
            params.append(station_id)
        rows = await self._fetch_all(sql, params)
        return rows[0][0] if rows else 0

    # ── Helpers ──

    async def _fetch_all(self, sql: str, params: list) -> list[aiosqlite.Row]:
        async with self._connect() as db:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _delete(self, sql: str, key: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(sql, (key,))
            await db.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_node(row) -> GraphNode:
        return GraphNode(
            node_id=row["node_id"],
            node_type=row["node_type"],
            name=row["name"],
            description=row["description"],
            owner_station_id=row["owner_station_id"],
            status=row["status"],
            maturation_phase=row["maturation_phase"],
            fitness_score=row["fitness_score"],
            capabilities=orjson.loads(row["capabilities"]),
            activation_count=row["activation_count"],
            total_latency_ms=row["total_latency_ms"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            last_activated=row["last_activated"],
            created_at=row["created_at"],
            metadata=orjson.loads(row["metadata"]),
        )

    @staticmethod
    def _row_to_edge(row) -> GraphEdge:
        return GraphEdge(
            edge_id=row["edge_id"],
            source_node_id=row["source_node_id"],
            target_node_id=row["target_node_id"],
            edge_type=row["edge_type"],
            weight=row["weight"],
            myelinated=bool(row["myelinated"]),
            activation_count=row["activation_count"],
            co_activation_count=row["co_activation_count"],
            avg_latency_ms=row["avg_latency_ms"],
            owner_station_id=row["owner_station_id"],
            created_at=row["created_at"],
            metadata=orjson.loads(row["metadata"]),
        )

    @staticmethod
    def _row_to_event(row) -> EvolutionEvent:
        proposal = None
        if row["proposal"]:
            proposal = EvolutionProposal.model_validate(orjson.loads(row["proposal"]))
        return EvolutionEvent(
            id=row["id"],
            event_type=row["event_type"],
            target_id=row["target_id"],
            previous_state=orjson.loads(row["previous_state"]),
            new_state=orjson.loads(row["new_state"]),
            reason=row["reason"],
            triggered_by=row["triggered_by"],
            requires_approval=bool(row["requires_approval"]),
            approval_status=row["approval_status"],
            station_id=row["station_id"],
            created_at=row["created_at"],
            proposal=proposal,
        )

    @staticmethod
    def _row_to_execution(row) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            thread_id=row["thread_id"],
            task_type=row["task_type"],
            task_description=row["task_description"],
            nodes_visited=orjson.loads(row["nodes_visited"]),
            edges_traversed=orjson.loads(row["edges_traversed"]),
            success=bool(row["success"]),
            total_latency_ms=row["total_latency_ms"],
            node_latencies=orjson.loads(row["node_latencies"]),
            station_id=row["station_id"],
            created_at=row["created_at"],
        )

    def __repr__(self) -> str:
        return f"SqliteGraphStore({self._db_path!r})"

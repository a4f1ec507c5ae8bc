"""Graph store — the row-oriented persistence interface.

The maturation engine only talks to a GraphStore. Two implementations:
  - InMemoryGraphStore: a station's local view, always available
  - SqliteGraphStore (sqlite_store.py): durable backend, possibly shared
    between stations and possibly unreachable

Rows are partitioned by owning station. Stores hand out copies, so a
caller mutating a returned model never changes stored state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from neuromesh.graph.models import EvolutionEvent, ExecutionRecord, GraphEdge, GraphNode
from neuromesh.types import ApprovalStatus


class GraphStore(ABC):
    """CRUD over nodes, edges, evolution events and execution records."""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the backend can serve requests."""
        ...

    # ── Nodes ──

    @abstractmethod
    async def list_nodes(self, station_id: str | None = None) -> list[GraphNode]:
        ...

    @abstractmethod
    async def get_node(self, node_id: str) -> GraphNode | None:
        ...

    @abstractmethod
    async def upsert_node(self, node: GraphNode) -> None:
        ...

    @abstractmethod
    async def remove_node(self, node_id: str) -> bool:
        ...

    async def create_node(self, node: GraphNode) -> bool:
        """Insert a node unless one with the same ID exists."""
        if await self.get_node(node.node_id) is not None:
            return False
        await self.upsert_node(node)
        return True

    # ── Edges ──

    @abstractmethod
    async def list_edges(self, station_id: str | None = None) -> list[GraphEdge]:
        ...

    @abstractmethod
    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        ...

    @abstractmethod
    async def upsert_edge(self, edge: GraphEdge) -> None:
        ...

    @abstractmethod
    async def remove_edge(self, edge_id: str) -> bool:
        ...

    async def create_edge(self, edge: GraphEdge) -> bool:
        """Insert an edge unless one with the same ID exists."""
        if await self.get_edge(edge.edge_id) is not None:
            return False
        await self.upsert_edge(edge)
        return True

    # ── Evolution events ──

    @abstractmethod
    async def record_event(self, event: EvolutionEvent) -> None:
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> EvolutionEvent | None:
        ...

    @abstractmethod
    async def list_events(
        self, station_id: str | None = None, limit: int = 50,
    ) -> list[EvolutionEvent]:
        """Most recent first."""
        ...

    @abstractmethod
    async def update_event_status(self, event_id: str, status: ApprovalStatus) -> bool:
        ...

    async def list_pending_events(self, station_id: str | None = None) -> list[EvolutionEvent]:
        events = await self.list_events(station_id=station_id, limit=10_000)
        return [e for e in events if e.approval_status == ApprovalStatus.PENDING]

    # ── Execution records ──

    @abstractmethod
    async def record_execution(self, record: ExecutionRecord) -> None:
        ...

    @abstractmethod
    async def list_executions(
        self, station_id: str | None = None, limit: int = 100,
    ) -> list[ExecutionRecord]:
        """Most recent first."""
        ...

    @abstractmethod
    async def count_executions(self, station_id: str | None = None) -> int:
        ...


class InMemoryGraphStore(GraphStore):
    """Dict-backed store used as a station's local view of the graph."""

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, GraphEdge] = {}
        self._events: dict[str, EvolutionEvent] = {}
        self._executions: list[ExecutionRecord] = []

    async def ping(self) -> bool:
        return True

    async def list_nodes(self, station_id: str | None = None) -> list[GraphNode]:
        return [
            n.model_copy(deep=True) for n in self._nodes.values()
            if station_id is None or n.owner_station_id == station_id
        ]

    async def get_node(self, node_id: str) -> GraphNode | None:
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    async def upsert_node(self, node: GraphNode) -> None:
        self._nodes[node.node_id] = node.model_copy(deep=True)

    async def remove_node(self, node_id: str) -> bool:
        return self._nodes.pop(node_id, None) is not None

    async def list_edges(self, station_id: str | None = None) -> list[GraphEdge]:
        return [
            e.model_copy(deep=True) for e in self._edges.values()
            if station_id is None or e.owner_station_id == station_id
        ]

    async def get_edge(self, edge_id: str) -> GraphEdge | None:
        edge = self._edges.get(edge_id)
        return edge.model_copy(deep=True) if edge else None

    async def upsert_edge(self, edge: GraphEdge) -> None:
        self._edges[edge.edge_id] = edge.model_copy(deep=True)

    async def remove_edge(self, edge_id: str) -> bool:
        return self._edges.pop(edge_id, None) is not None

    async def record_event(self, event: EvolutionEvent) -> None:
        self._events[event.id] = event.model_copy(deep=True)

    async def get_event(self, event_id: str) -> EvolutionEvent | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def list_events(
        self, station_id: str | None = None, limit: int = 50,
    ) -> list[EvolutionEvent]:
        events = [
            e for e in self._events.values()
            if station_id is None or e.station_id == station_id
        ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in events[:limit]]

    async def update_event_status(self, event_id: str, status: ApprovalStatus) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        event.approval_status = status
        return True

    async def record_execution(self, record: ExecutionRecord) -> None:
        self._executions.append(record.model_copy(deep=True))

    async def list_executions(
        self, station_id: str | None = None, limit: int = 100,
    ) -> list[ExecutionRecord]:
        records = [
            r for r in self._executions
            if station_id is None or r.station_id == station_id
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def count_executions(self, station_id: str | None = None) -> int:
        if station_id is None:
            return len(self._executions)
        return sum(1 for r in self._executions if r.station_id == station_id)

    def __repr__(self) -> str:
        return f"InMemoryGraphStore(nodes={len(self._nodes)}, edges={len(self._edges)})"

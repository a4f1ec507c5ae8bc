"""Network replication — 3 modes based on connectivity.

  - direct:  the shared primary store is reachable; deltas are written
             to it and peers read them from there
  - relay:   the primary store is down but the hub is up; deltas are
             posted to the hub, which forwards them to peers
  - offline: nothing is reachable; deltas wait in a FIFO queue

The mode is re-detected on every call, so a station recovers on its own
once connectivity returns. Queued deltas are always replayed in order
and before any newer delta is sent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import orjson
import structlog
from pydantic import BaseModel, Field, ValidationError

from neuromesh.events.bus import EventBus
from neuromesh.exceptions import RelayError, StoreUnavailableError
from neuromesh.graph.models import EvolutionEvent, GraphEdge, GraphNode
from neuromesh.graph.store import GraphStore
from neuromesh.network.consensus import ConsensusRequest
from neuromesh.network.subgraph import Subgraph, SubgraphManager, extract_subgraph

logger = structlog.get_logger()


class ReplicationMode(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"
    OFFLINE = "offline"


class NodeChange(BaseModel):
    node_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class EdgeChange(BaseModel):
    edge_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class GraphDelta(BaseModel):
    """The unit of replication: every row a maturation pass touched."""

    nodes_added: list[GraphNode] = Field(default_factory=list)
    nodes_updated: list[NodeChange] = Field(default_factory=list)
    nodes_removed: list[str] = Field(default_factory=list)
    edges_added: list[GraphEdge] = Field(default_factory=list)
    edges_updated: list[EdgeChange] = Field(default_factory=list)
    edges_removed: list[str] = Field(default_factory=list)
    events: list[EvolutionEvent] = Field(default_factory=list)
    station_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return not any((
            self.nodes_added, self.nodes_updated, self.nodes_removed,
            self.edges_added, self.edges_updated, self.edges_removed,
            self.events,
        ))


class ReplicationResult(BaseModel):
    mode: ReplicationMode
    delivered: bool = False
    queued: bool = False
    flushed: int = 0
    error: str = ""


async def apply_delta(store: GraphStore, delta: GraphDelta) -> None:
    """Apply a delta to a store. Applying the same delta twice is a no-op."""
    for node in delta.nodes_added:
        await store.upsert_node(node)
    for change in delta.nodes_updated:
        node = await store.get_node(change.node_id)
        if node is not None:
            await store.upsert_node(GraphNode.model_validate({**node.model_dump(), **change.changes}))
    for node_id in delta.nodes_removed:
        await store.remove_node(node_id)
    for edge in delta.edges_added:
        await store.upsert_edge(edge)
    for change in delta.edges_updated:
        edge = await store.get_edge(change.edge_id)
        if edge is not None:
            await store.upsert_edge(GraphEdge.model_validate({**edge.model_dump(), **change.changes}))
    for edge_id in delta.edges_removed:
        await store.remove_edge(edge_id)
    for event in delta.events:
        await store.record_event(event)


# ── Reachability ─────────────────────────────────────────────────


class ReachabilityProbe(ABC):
    """Tells the driver which propagation paths are currently usable."""

    @abstractmethod
    async def is_primary_store_reachable(self) -> bool:
        ...

    @abstractmethod
    async def is_relay_reachable(self) -> bool:
        ...


class HttpReachabilityProbe(ReachabilityProbe):
    """Pings the primary store directly and the relay hub over HTTP."""

    def __init__(
        self,
        primary_store: GraphStore | None,
        relay_url: str = "",
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._primary = primary_store
        self._relay_url = relay_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def is_primary_store_reachable(self) -> bool:
        if self._primary is None:
            return False
        return await self._primary.ping()

    async def is_relay_reachable(self) -> bool:
        if not self._relay_url:
            return False
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(f"{self._relay_url}/health")
                return resp.is_success
        except httpx.HTTPError:
            return False


# ── Relay hub client ─────────────────────────────────────────────


class RelayClient:
    """HTTP client for the store-and-forward relay hub."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    async def push_delta(self, delta: GraphDelta) -> None:
        """POST a delta to the hub for forwarding."""
        await self._request("POST", "/api/neural/sync", delta.model_dump(mode="json"))

    async def fetch_subgraphs(self, exclude_station_id: str) -> list[Subgraph]:
        """Latest slices the hub holds for every other station."""
        data = await self._request(
            "GET", "/api/neural/subgraphs", params={"exclude": exclude_station_id},
        )
        try:
            return [Subgraph.model_validate(s) for s in data.get("subgraphs", [])]
        except (AttributeError, TypeError, ValidationError) as e:
            raise RelayError(f"relay returned a malformed subgraph list: {e}") from e

    async def announce_consensus(self, request: ConsensusRequest) -> None:
        """Forward a consensus request to the affected stations via the hub."""
        await self._request("POST", "/api/neural/consensus", request.model_dump(mode="json"))

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(
                    method,
                    url,
                    content=orjson.dumps(body) if body is not None else None,
                    headers={"Content-Type": "application/json"},
                    params=params,
                )
                resp.raise_for_status()
                return orjson.loads(resp.content) if resp.content else {}
        except (httpx.HTTPError, orjson.JSONDecodeError) as e:
            raise RelayError(f"relay {method} {path} failed: {e}") from e


# ── Offline queue ────────────────────────────────────────────────


class OfflineQueue:
    """FIFO of deltas waiting for connectivity.

    Persists to disk after every change when given a path, so queued
    deltas survive a station restart.
    """

    def __init__(self, state_path: Path | None = None) -> None:
        self._items: deque[GraphDelta] = deque()
        self._state_path = state_path
        if state_path and state_path.exists():
            self._load()

    def push(self, delta: GraphDelta) -> None:
        self._items.append(delta)
        self._save()

    def peek(self) -> GraphDelta | None:
        return self._items[0] if self._items else None

    def pop(self) -> GraphDelta:
        delta = self._items.popleft()
        self._save()
        return delta

    def snapshot(self) -> list[GraphDelta]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
        self._save()

    def __len__(self) -> int:
        return len(self._items)

    def _save(self) -> None:
        if not self._state_path:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        data = [d.model_dump(mode="json") for d in self._items]
        self._state_path.write_bytes(orjson.dumps(data))

    def _load(self) -> None:
        try:
            data = orjson.loads(self._state_path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning("offline_queue_load_failed", path=str(self._state_path), error=str(e))
            return
        self._items.extend(GraphDelta.model_validate(d) for d in data)


# ── Driver ───────────────────────────────────────────────────────


class ReplicationDriver:
    """Chooses a replication mode per call and drives the subgraph exchange."""

    def __init__(
        self,
        station_id: str,
        local_store: GraphStore,
        probe: ReachabilityProbe,
        primary_store: GraphStore | None = None,
        relay: RelayClient | None = None,
        queue: OfflineQueue | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._station_id = station_id
        self._local = local_store
        self._probe = probe
        self._primary = primary_store
        self._relay = relay
        self._queue = queue if queue is not None else OfflineQueue()
        self._event_bus = event_bus
        self._subgraphs = SubgraphManager(local_store, station_id)
        self._last_mode = ReplicationMode.OFFLINE
        # Foreign ids held by the primary at the last direct sync
        self._seen_nodes: set[str] = set()
        self._seen_edges: set[str] = set()

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def last_mode(self) -> ReplicationMode:
        return self._last_mode

    async def detect_mode(self) -> ReplicationMode:
        mode = ReplicationMode.OFFLINE
        if self._primary is not None and await self._safe_probe(self._probe.is_primary_store_reachable):
            mode = ReplicationMode.DIRECT
        elif self._relay is not None and await self._safe_probe(self._probe.is_relay_reachable):
            mode = ReplicationMode.RELAY

        if mode != self._last_mode:
            logger.info("replication_mode_changed", previous=self._last_mode.value, mode=mode.value)
            await self._emit("replication.mode_changed", {
                "previous": self._last_mode.value, "mode": mode.value,
            })
        self._last_mode = mode
        return mode

    async def replicate(self, delta: GraphDelta) -> ReplicationResult:
        """Propagate a delta. Unreachable peers never raise; the delta is queued."""
        mode = await self.detect_mode()
        if delta.is_empty:
            return ReplicationResult(mode=mode, delivered=True)

        if mode == ReplicationMode.OFFLINE:
            self._queue.push(delta)
            return ReplicationResult(mode=mode, queued=True)

        flushed = await self._flush(mode)
        if len(self._queue):
            # Backlog still blocked: keep FIFO order behind it
            self._queue.push(delta)
            return ReplicationResult(mode=mode, queued=True, flushed=flushed)

        try:
            await self._send(mode, delta)
        except (StoreUnavailableError, RelayError) as e:
            logger.warning("replication_send_failed", mode=mode.value, error=str(e))
            self._queue.push(delta)
            return ReplicationResult(mode=mode, queued=True, flushed=flushed, error=str(e))

        await self._emit("replication.delta_sent", {
            "mode": mode.value, "flushed": flushed, "timestamp": delta.timestamp.isoformat(),
        })
        return ReplicationResult(mode=mode, delivered=True, flushed=flushed)

    async def flush(self) -> int:
        """Replay queued deltas through whatever path is reachable now."""
        mode = await self.detect_mode()
        if mode == ReplicationMode.OFFLINE:
            return 0
        return await self._flush(mode)

    async def sync(self) -> dict[str, int]:
        """Exchange topology with peers. Returns merged, removed and pushed row counts.

        In direct mode this station first publishes its own rows to the
        primary, then pulls every other owner's slice from it.
        """
        mode = await self.detect_mode()
        totals = {"nodes": 0, "edges": 0, "removed": 0, "pushed": 0}
        try:
            if mode == ReplicationMode.DIRECT:
                await self._flush(mode)
                await self._sync_from_primary(totals)
            elif mode == ReplicationMode.RELAY:
                await self._flush(mode)
                for remote in await self._relay.fetch_subgraphs(self._station_id):
                    if remote.station_id == self._station_id:
                        continue
                    self._add(totals, await self._subgraphs.merge_remote(remote))
        except (StoreUnavailableError, RelayError) as e:
            logger.warning("replication_sync_failed", mode=mode.value, error=str(e))
        return totals

    async def outbound_subgraph(self) -> Subgraph:
        return await self._subgraphs.extract()

    async def announce(self, request: ConsensusRequest) -> bool:
        """Best-effort forward of a consensus request to peers through the hub.

        In direct mode peers see the pending evolution event in the shared
        store instead.
        """
        if self._relay is None or self._last_mode != ReplicationMode.RELAY:
            return False
        try:
            await self._relay.announce_consensus(request)
        except RelayError as e:
            logger.warning("consensus_announce_failed", proposal_id=request.proposal_id, error=str(e))
            return False
        return True

    async def _flush(self, mode: ReplicationMode) -> int:
        sent = 0
        while len(self._queue):
            delta = self._queue.peek()
            try:
                await self._send(mode, delta)
            except (StoreUnavailableError, RelayError) as e:
                logger.warning("offline_replay_stalled", mode=mode.value, remaining=len(self._queue), error=str(e))
                break
            self._queue.pop()
            sent += 1
        if sent:
            logger.info("offline_queue_replayed", mode=mode.value, count=sent)
        return sent

    async def _send(self, mode: ReplicationMode, delta: GraphDelta) -> None:
        if mode == ReplicationMode.DIRECT:
            await apply_delta(self._primary, delta)
        elif mode == ReplicationMode.RELAY:
            await self._relay.push_delta(delta)
        else:
            raise StoreUnavailableError("no replication path available")

    async def _sync_from_primary(self, totals: dict[str, int]) -> None:
        totals["pushed"] += await self._publish_owned()

        nodes = await self._primary.list_nodes()
        edges = await self._primary.list_edges()
        owners = {n.owner_station_id for n in nodes} | {e.owner_station_id for e in edges}
        owners.discard(self._station_id)

        # Each owner's slice is authoritative for that owner's rows
        for owner in sorted(owners):
            self._add(totals, await self._subgraphs.merge_remote(extract_subgraph(nodes, edges, owner)))

        # Only rows the primary held on an earlier sync and has since lost
        # were removed by their owner; rows it never held stay local
        primary_nodes = {n.node_id for n in nodes if n.owner_station_id != self._station_id}
        primary_edges = {e.edge_id for e in edges if e.owner_station_id != self._station_id}
        for edge in await self._local.list_edges():
            if (
                edge.owner_station_id != self._station_id
                and edge.edge_id in self._seen_edges
                and edge.edge_id not in primary_edges
            ):
                await self._local.remove_edge(edge.edge_id)
                totals["removed"] += 1
        for node in await self._local.list_nodes():
            if (
                node.owner_station_id != self._station_id
                and node.node_id in self._seen_nodes
                and node.node_id not in primary_nodes
            ):
                await self._local.remove_node(node.node_id)
                totals["removed"] += 1
        self._seen_nodes = primary_nodes
        self._seen_edges = primary_edges

    async def _publish_owned(self) -> int:
        """Upsert this station's own rows into the primary where they differ.

        A row the primary already records under another owner is left alone;
        the first station to publish an id owns it in the shared store.
        """
        written = 0
        primary_nodes = {n.node_id: n for n in await self._primary.list_nodes()}
        for node in await self._local.list_nodes(self._station_id):
            held = primary_nodes.get(node.node_id)
            if held is not None and held.owner_station_id != self._station_id:
                continue
            if held != node:
                await self._primary.upsert_node(node)
                written += 1
        primary_edges = {e.edge_id: e for e in await self._primary.list_edges()}
        for edge in await self._local.list_edges(self._station_id):
            held = primary_edges.get(edge.edge_id)
            if held is not None and held.owner_station_id != self._station_id:
                continue
            if held != edge:
                await self._primary.upsert_edge(edge)
                written += 1
        if written:
            logger.info("owned_rows_published", station_id=self._station_id, count=written)
        return written

    async def _safe_probe(self, check) -> bool:
        try:
            return bool(await check())
        except Exception as e:
            logger.warning("reachability_probe_failed", error=str(e))
            return False

    @staticmethod
    def _add(totals: dict[str, int], counts: dict[str, int]) -> None:
        for key, value in counts.items():
            totals[key] = totals.get(key, 0) + value

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source=self._station_id)

"""Local subgraph extraction and merge — for partitioned operation.

A station transmits the slice of the graph it owns, plus the foreign
nodes its edges point at, so every transmitted subgraph is edge-closed.
Incoming slices are merged into the local view with the station's own
rows always taking precedence over remote copies of them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, TypeVar

from pydantic import BaseModel, Field

from neuromesh.graph.models import GraphEdge, GraphNode
from neuromesh.graph.store import GraphStore

_logger = logging.getLogger(__name__)

_Row = TypeVar("_Row", GraphNode, GraphEdge)


class Subgraph(BaseModel):
    """A snapshot of one station's slice. Computed on demand, never persisted."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    station_id: str
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def node_ids(self) -> set[str]:
        return {n.node_id for n in self.nodes}

    def edge_ids(self) -> set[str]:
        return {e.edge_id for e in self.edges}

    def is_edge_closed(self) -> bool:
        ids = self.node_ids()
        return all(e.source_node_id in ids and e.target_node_id in ids for e in self.edges)


def extract_subgraph(
    all_nodes: Iterable[GraphNode],
    all_edges: Iterable[GraphEdge],
    station_id: str,
) -> Subgraph:
    """Owned nodes, every edge touching one, and the foreign endpoints of those edges."""
    node_index = {n.node_id: n for n in all_nodes}
    owned_ids = {nid for nid, n in node_index.items() if n.owner_station_id == station_id}

    edges: list[GraphEdge] = []
    foreign_ids: set[str] = set()
    for edge in all_edges:
        if edge.source_node_id not in owned_ids and edge.target_node_id not in owned_ids:
            continue
        # Drop edges whose far end is unknown so the slice stays edge-closed
        if edge.source_node_id not in node_index or edge.target_node_id not in node_index:
            _logger.debug("Skipping edge %s with unknown endpoint", edge.edge_id)
            continue
        edges.append(edge)
        for endpoint in (edge.source_node_id, edge.target_node_id):
            if endpoint not in owned_ids:
                foreign_ids.add(endpoint)

    nodes = [n for nid, n in node_index.items() if nid in owned_ids or nid in foreign_ids]
    return Subgraph(nodes=nodes, edges=edges, station_id=station_id)


def merge_subgraphs(local: Subgraph, remote: Subgraph) -> Subgraph:
    """Union of both slices, keyed by node_id / edge_id.

    On collision: the local station's own rows win; rows owned by the
    remote station come from the remote copy; anything else keeps the
    copy with more activations, ties going to local. Merging the same
    remote twice gives the same result as merging it once.
    """
    nodes = _merge_rows(
        local.nodes, remote.nodes, lambda n: n.node_id, local.station_id, remote.station_id,
    )
    edges = _merge_rows(
        local.edges, remote.edges, lambda e: e.edge_id, local.station_id, remote.station_id,
    )
    return Subgraph(
        nodes=nodes,
        edges=edges,
        station_id=local.station_id,
        extracted_at=max(local.extracted_at, remote.extracted_at),
    )


def _merge_rows(local_rows, remote_rows, key, local_station: str, remote_station: str):
    remote_index = {key(r): r for r in remote_rows}
    merged = {}
    for row in local_rows:
        other = remote_index.get(key(row))
        merged[key(row)] = row if other is None else _pick(row, other, local_station, remote_station)
    for row in remote_rows:
        merged.setdefault(key(row), row)
    return list(merged.values())


def _pick(local_row: _Row, remote_row: _Row, local_station: str, remote_station: str) -> _Row:
    if local_row.owner_station_id == local_station:
        return local_row
    if remote_row.owner_station_id == local_station:
        # A remote copy of our own row is informational only
        return local_row
    if remote_row.owner_station_id == remote_station:
        return remote_row
    if remote_row.activation_count > local_row.activation_count:
        return remote_row
    return local_row


class SubgraphManager:
    """Extract and merge subgraphs against a station's graph store."""

    def __init__(self, store: GraphStore, station_id: str) -> None:
        self._store = store
        self._station_id = station_id

    @property
    def station_id(self) -> str:
        return self._station_id

    async def local_view(self) -> Subgraph:
        """Everything the store holds, labelled as this station's view."""
        return Subgraph(
            nodes=await self._store.list_nodes(),
            edges=await self._store.list_edges(),
            station_id=self._station_id,
        )

    async def extract(self) -> Subgraph:
        """This station's edge-closed slice, ready for transmission."""
        return extract_subgraph(
            await self._store.list_nodes(), await self._store.list_edges(), self._station_id,
        )

    async def merge_remote(self, remote: Subgraph) -> dict[str, int]:
        """Merge a remote slice into the store. Returns counts of rows written."""
        local = await self.local_view()
        merged = merge_subgraphs(local, remote)
        local_nodes = {n.node_id: n for n in local.nodes}
        local_edges = {e.edge_id: e for e in local.edges}

        nodes_written = 0
        for node in merged.nodes:
            if local_nodes.get(node.node_id) != node:
                await self._store.upsert_node(node)
                nodes_written += 1

        edges_written = 0
        for edge in merged.edges:
            if local_edges.get(edge.edge_id) != edge:
                await self._store.upsert_edge(edge)
                edges_written += 1

        if nodes_written or edges_written:
            _logger.info(
                "Merged subgraph from %s: %d nodes, %d edges updated",
                remote.station_id, nodes_written, edges_written,
            )
        return {"nodes": nodes_written, "edges": edges_written}

"""Execution telemetry — the counters the fitness engine reads.

The task-execution layer reports one activation per traversal step
(record_activation) and one ExecutionRecord per finished task
(record_execution). Co-activation counts derived from execution
records drive synaptogenesis.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Iterable

from neuromesh.events.bus import EventBus
from neuromesh.graph.models import EvolutionProposal, ExecutionRecord, GraphEdge
from neuromesh.graph.store import GraphStore
from neuromesh.maturation.proposals import generate_reinforcement_proposals
from neuromesh.types import edge_id_for

_logger = logging.getLogger(__name__)


def build_co_activation_map(records: Iterable[ExecutionRecord]) -> dict[str, int]:
    """Count executions in which node a was visited before node b, keyed "a->b"."""
    counts: Counter[str] = Counter()
    for record in records:
        visited = list(dict.fromkeys(record.nodes_visited))
        pairs = {
            edge_id_for(visited[i], visited[j])
            for i in range(len(visited) - 1)
            for j in range(i + 1, len(visited))
        }
        counts.update(pairs)
    return dict(counts)


class TelemetryRecorder:
    """Applies execution telemetry to a station's graph store."""

    def __init__(
        self,
        store: GraphStore,
        station_id: str,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._station_id = station_id
        self._event_bus = event_bus
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record_activation(self, target_id: str, latency_ms: float, success: bool) -> bool:
        """Count one traversal of a node or edge. Returns False for unknown IDs."""
        edge = await self._store.get_edge(target_id)
        if edge is not None:
            count = edge.activation_count + 1
            edge.avg_latency_ms = (edge.avg_latency_ms * edge.activation_count + latency_ms) / count
            edge.activation_count = count
            await self._store.upsert_edge(edge)
            return True

        node = await self._store.get_node(target_id)
        if node is None:
            _logger.debug("Activation for unknown target %s ignored", target_id)
            return False

        node.activation_count += 1
        node.total_latency_ms += latency_ms
        if success:
            node.success_count += 1
        else:
            node.failure_count += 1
        node.last_activated = self._clock()
        await self._store.upsert_node(node)
        return True

    async def record_execution(self, record: ExecutionRecord) -> list[EvolutionProposal]:
        """Store a finished execution and fold it into node and edge counters.

        Returns the weight-reinforcement proposals that were applied.
        """
        await self._store.record_execution(record)

        for node_id in dict.fromkeys(record.nodes_visited):
            latency = record.node_latencies.get(node_id, 0.0)
            await self.record_activation(node_id, latency, record.success)

        for edge_id in record.edges_traversed:
            await self.record_activation(edge_id, 0.0, record.success)

        edges = await self._store.list_edges()
        await self._count_co_activations(edges, record.nodes_visited)

        edges = await self._store.list_edges()
        proposals = generate_reinforcement_proposals(edges, record.nodes_visited, record.success)
        by_id = {e.edge_id: e for e in edges}
        for proposal in proposals:
            edge = by_id[proposal.target_id]
            edge.weight = proposal.proposed_changes["weight"]
            await self._store.upsert_edge(edge)

        if self._event_bus:
            await self._event_bus.emit("graph.execution_recorded", {
                "execution_id": record.id,
                "nodes_visited": len(record.nodes_visited),
                "success": record.success,
                "weights_changed": len(proposals),
            }, source=self._station_id)
        return proposals

    async def _count_co_activations(self, edges: list[GraphEdge], visited: list[str]) -> None:
        visited_set = set(visited)
        for edge in edges:
            if edge.source_node_id in visited_set and edge.target_node_id in visited_set:
                edge.co_activation_count += 1
                await self._store.upsert_edge(edge)

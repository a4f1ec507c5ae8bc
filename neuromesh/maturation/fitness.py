"""Fitness scoring — 0 to 100 scale.

Weighted: success rate (40), latency (30), utilization (20), connectivity (10).

Node fitness is relative to the rest of the network, so every scoring
pass must start from a fresh calculate_global_stats() over the current
node set. score_graph() does both.
"""

from __future__ import annotations

import math
from typing import Iterable

from pydantic import BaseModel

from neuromesh.graph.models import GraphEdge, GraphNode
from neuromesh.types import FITNESS_WEIGHTS


class GlobalStats(BaseModel):
    """Network-wide reference values for relative fitness terms."""

    avg_latency_ms: float = 0.0
    max_activations: int = 0


def calculate_global_stats(nodes: Iterable[GraphNode]) -> GlobalStats:
    total_latency = 0.0
    max_activations = 0
    nodes_with_attempts = 0

    for node in nodes:
        if node.attempts > 0:
            total_latency += node.total_latency_ms / node.attempts
            nodes_with_attempts += 1
        max_activations = max(max_activations, node.activation_count)

    return GlobalStats(
        avg_latency_ms=total_latency / nodes_with_attempts if nodes_with_attempts else 0.0,
        max_activations=max_activations,
    )


def calculate_node_fitness(
    node: GraphNode,
    edges: Iterable[GraphEdge],
    stats: GlobalStats,
) -> float:
    attempts = node.attempts

    # Success rate (0–40): untried nodes sit at neutral
    success_rate = node.success_count / attempts if attempts > 0 else 0.5
    success_score = success_rate * FITNESS_WEIGHTS["success_rate"]

    # Latency (0–30): lower is better, relative to the network average
    if attempts > 0 and stats.avg_latency_ms > 0:
        node_latency = max(node.total_latency_ms / attempts, 1.0)
        latency_ratio = stats.avg_latency_ms / node_latency
        latency_score = min(1.0, latency_ratio) * FITNESS_WEIGHTS["latency"]
    else:
        latency_score = FITNESS_WEIGHTS["latency"] * 0.5

    # Utilization (0–20): activation count relative to the most-active node
    if stats.max_activations > 0:
        utilization_ratio = node.activation_count / stats.max_activations
        utilization_score = min(1.0, utilization_ratio) * FITNESS_WEIGHTS["utilization"]
    else:
        utilization_score = FITNESS_WEIGHTS["utilization"] * 0.5

    # Connectivity (0–10): mean weight of incident edges
    weights = [e.weight for e in edges if e.touches(node.node_id)]
    avg_weight = sum(weights) / len(weights) if weights else 0.0
    connectivity_score = avg_weight * FITNESS_WEIGHTS["connectivity"]

    total = success_score + latency_score + utilization_score + connectivity_score
    return _clamp(round(total, 1))


def calculate_edge_fitness(edge: GraphEdge) -> float:
    """weight * log2(activations + 1), with a 1.5x bonus for myelinated edges."""
    base = edge.weight * math.log2(max(edge.activation_count, 0) + 1)
    bonus = 1.5 if edge.myelinated else 1.0
    return _clamp(round(base * bonus, 1))


def score_graph(nodes: list[GraphNode], edges: list[GraphEdge]) -> dict[str, float]:
    """Fresh stats + fitness for every node. Returns node_id -> score."""
    stats = calculate_global_stats(nodes)
    return {node.node_id: calculate_node_fitness(node, edges, stats) for node in nodes}


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))

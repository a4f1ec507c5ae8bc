"""Mutation proposal generation — used by the maturation cycle.

Each pass scans a graph snapshot and returns candidate mutations without
applying them. Passes are independent and order-insensitive, and each
emits at most one proposal per target. Entities that would violate a
graph invariant (core nodes, reverse-duplicate edges) are filtered out
here rather than rejected later.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Mapping

from neuromesh.graph.models import EvolutionProposal, GraphEdge, GraphNode
from neuromesh.types import (
    CORE_NODE_IDS,
    EdgeType,
    MutationClass,
    MutationType,
    MyelinationThreshold,
    NodeStatus,
    NodeType,
    PruningThreshold,
    SynaptogenesisThreshold,
    edge_id_for,
    split_pair_key,
)

__all__ = [
    "EvolutionProposal",
    "generate_myelination_proposals",
    "generate_pruning_proposals",
    "generate_synaptogenesis_proposals",
    "generate_reinforcement_proposals",
    "generate_all",
]

REINFORCE_ON_SUCCESS = 0.02
WEAKEN_ON_FAILURE = -0.01


def generate_myelination_proposals(
    edges: Iterable[GraphEdge],
    threshold: MyelinationThreshold | None = None,
) -> list[EvolutionProposal]:
    threshold = threshold or MyelinationThreshold()
    proposals: list[EvolutionProposal] = []
    seen: set[str] = set()

    for edge in edges:
        if edge.myelinated or edge.edge_id in seen:
            continue
        if (
            edge.activation_count >= threshold.activation_count
            and edge.weight >= threshold.min_weight
        ):
            seen.add(edge.edge_id)
            proposals.append(EvolutionProposal(
                type=MutationType.EDGE_MYELINATED,
                target_id=edge.edge_id,
                reason=f"High-traffic: {edge.activation_count} activations, weight {edge.weight:.2f}",
                mutation_class=MutationClass.REINFORCING,
                proposed_changes={"myelinated": True},
            ))

    return proposals


def generate_pruning_proposals(
    nodes: Iterable[GraphNode],
    edges: Iterable[GraphEdge],
    threshold: PruningThreshold | None = None,
    core_node_ids: frozenset[str] = CORE_NODE_IDS,
    now: datetime | None = None,
) -> list[EvolutionProposal]:
    threshold = threshold or PruningThreshold()
    now = now or datetime.now(timezone.utc)
    proposals: list[EvolutionProposal] = []
    seen_nodes: set[str] = set()
    seen_edges: set[str] = set()

    # Node pruning: synthetic only, never core
    for node in nodes:
        if node.node_type != NodeType.SYNTHETIC:
            continue
        if node.node_id in core_node_ids or node.node_id in seen_nodes:
            continue
        if node.status == NodeStatus.PRUNED:
            continue

        days_inactive = _days_since(node.last_activated, now)
        if (
            node.fitness_score < threshold.min_fitness
            and days_inactive > threshold.inactivity_days
        ):
            seen_nodes.add(node.node_id)
            inactive = "never activated" if days_inactive == float("inf") else f"inactive {days_inactive:.0f}d"
            proposals.append(EvolutionProposal(
                type=MutationType.NODE_PRUNED,
                target_id=node.node_id,
                reason=f"Fitness {node.fitness_score:.1f}, {inactive}",
                mutation_class=MutationClass.DESTRUCTIVE,
                proposed_changes={"status": NodeStatus.PRUNED.value},
            ))

    # Edge pruning: cheap to recreate, so no approval
    for edge in edges:
        if edge.edge_id in seen_edges:
            continue
        if (
            edge.weight < threshold.min_edge_weight
            and edge.activation_count < threshold.min_edge_activations
        ):
            seen_edges.add(edge.edge_id)
            proposals.append(EvolutionProposal(
                type=MutationType.EDGE_PRUNED,
                target_id=edge.edge_id,
                reason=f"Weight {edge.weight:.2f}, {edge.activation_count} activations",
                mutation_class=MutationClass.REINFORCING,
                proposed_changes={},
            ))

    return proposals


def generate_synaptogenesis_proposals(
    nodes: Iterable[GraphNode],
    edges: Iterable[GraphEdge],
    co_activation_map: Mapping[str, int],
    threshold: SynaptogenesisThreshold | None = None,
) -> list[EvolutionProposal]:
    """Connect frequently co-activated nodes that lack a direct edge."""
    threshold = threshold or SynaptogenesisThreshold()
    node_index = {n.node_id: n for n in nodes}
    existing_pairs = {(e.source_node_id, e.target_node_id) for e in edges}
    proposed_pairs: set[frozenset[str]] = set()
    proposals: list[EvolutionProposal] = []

    for pair_key, count in co_activation_map.items():
        if count < threshold.min_co_activations:
            continue
        pair = split_pair_key(pair_key)
        if pair is None:
            continue
        source, target = pair
        if source == target:
            continue
        if (source, target) in existing_pairs or (target, source) in existing_pairs:
            continue
        if frozenset(pair) in proposed_pairs:
            continue

        source_node = node_index.get(source)
        target_node = node_index.get(target)
        if source_node is None or target_node is None:
            continue
        if source_node.is_pruned or target_node.is_pruned:
            continue

        proposed_pairs.add(frozenset(pair))
        weight = min(threshold.max_initial_weight, count / threshold.frequency_scale)
        proposals.append(EvolutionProposal(
            type=MutationType.EDGE_CREATED,
            target_id=edge_id_for(source, target),
            reason=f"Co-activated {count} times without direct edge",
            mutation_class=MutationClass.REINFORCING,
            proposed_changes={
                "source_node_id": source,
                "target_node_id": target,
                "edge_type": EdgeType.ACTIVATION.value,
                "weight": weight,
            },
        ))

    return proposals


def generate_reinforcement_proposals(
    edges: Iterable[GraphEdge],
    nodes_visited: list[str],
    success: bool,
) -> list[EvolutionProposal]:
    """Nudge weights of edges between nodes visited in one execution.

    Successful executions strengthen the edges they used, failed ones
    weaken them slightly. Either direction of the pair counts.
    """
    delta = REINFORCE_ON_SUCCESS if success else WEAKEN_ON_FAILURE
    by_pair = {(e.source_node_id, e.target_node_id): e for e in edges}
    seen: set[str] = set()
    proposals: list[EvolutionProposal] = []

    for i in range(len(nodes_visited) - 1):
        for j in range(i + 1, len(nodes_visited)):
            a, b = nodes_visited[i], nodes_visited[j]
            edge = by_pair.get((a, b)) or by_pair.get((b, a))
            if edge is None or edge.edge_id in seen:
                continue
            new_weight = round(max(0.0, min(1.0, edge.weight + delta)), 4)
            if new_weight == edge.weight:
                continue
            seen.add(edge.edge_id)
            proposals.append(EvolutionProposal(
                type=MutationType.EDGE_WEIGHT_CHANGED,
                target_id=edge.edge_id,
                reason=f"Co-activation in {'successful' if success else 'failed'} execution",
                mutation_class=MutationClass.REINFORCING,
                proposed_changes={"weight": new_weight},
            ))

    return proposals


def generate_all(
    nodes: list[GraphNode],
    edges: list[GraphEdge],
    co_activation_map: Mapping[str, int],
    myelination: MyelinationThreshold | None = None,
    pruning: PruningThreshold | None = None,
    synaptogenesis: SynaptogenesisThreshold | None = None,
    core_node_ids: frozenset[str] = CORE_NODE_IDS,
    now: datetime | None = None,
) -> list[EvolutionProposal]:
    """Run every structural pass over one snapshot, in a fixed order."""
    return [
        *generate_myelination_proposals(edges, myelination),
        *generate_pruning_proposals(nodes, edges, pruning, core_node_ids, now),
        *generate_synaptogenesis_proposals(nodes, edges, co_activation_map, synaptogenesis),
    ]


def _days_since(moment: datetime | None, now: datetime) -> float:
    if moment is None:
        return float("inf")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - moment).total_seconds() / 86_400

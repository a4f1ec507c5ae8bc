"""Core types shared across all neuromesh subsystems."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import TypeAlias

from pydantic import BaseModel

# ── ID Types ──────────────────────────────────────────────────────────────────

NodeId: TypeAlias = str
EdgeId: TypeAlias = str
StationId: TypeAlias = str
ProposalId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def edge_id_for(source_node_id: NodeId, target_node_id: NodeId) -> EdgeId:
    """Edge IDs are derived from the ordered endpoint pair."""
    return f"{source_node_id}->{target_node_id}"


def split_pair_key(pair_key: str) -> tuple[str, str] | None:
    """Parse an "a->b" key. Returns None for malformed keys."""
    parts = pair_key.split("->")
    if len(parts) != 2:
        return None
    source, target = parts
    if not source or not target:
        return None
    return source, target


# ── Graph Enums ───────────────────────────────────────────────────────────────


class NodeType(str, Enum):
    STATION = "station"
    CAPABILITY = "capability"
    MODEL = "model"
    SYNTHETIC = "synthetic"


class NodeStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    DORMANT = "dormant"
    PRUNED = "pruned"


class MaturationPhase(str, Enum):
    GENESIS = "genesis"
    GROWTH = "growth"
    MATURATION = "maturation"
    STABLE = "stable"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [
    MaturationPhase.GENESIS,
    MaturationPhase.GROWTH,
    MaturationPhase.MATURATION,
    MaturationPhase.STABLE,
]


class EdgeType(str, Enum):
    DATA_FLOW = "data_flow"
    DEPENDENCY = "dependency"
    ACTIVATION = "activation"
    FALLBACK = "fallback"
    INHIBITION = "inhibition"


# ── Evolution Enums ───────────────────────────────────────────────────────────


class MutationType(str, Enum):
    NODE_CREATED = "node_created"
    NODE_PRUNED = "node_pruned"
    EDGE_CREATED = "edge_created"
    EDGE_PRUNED = "edge_pruned"
    EDGE_WEIGHT_CHANGED = "edge_weight_changed"
    EDGE_MYELINATED = "edge_myelinated"
    PHASE_TRANSITION = "phase_transition"


class MutationClass(str, Enum):
    """Reinforcing mutations are additive or cheap to undo and apply
    immediately. Destructive ones need approval before they land."""

    REINFORCING = "reinforcing"
    DESTRUCTIVE = "destructive"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class Vote(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    TIMEOUT = "timeout"


# ── Thresholds ────────────────────────────────────────────────────────────────


class MyelinationThreshold(BaseModel):
    activation_count: int = 100
    min_weight: float = 0.7


class PruningThreshold(BaseModel):
    min_fitness: float = 30.0
    inactivity_days: float = 7.0
    min_edge_weight: float = 0.1
    min_edge_activations: int = 5


class SynaptogenesisThreshold(BaseModel):
    min_co_activations: int = 10
    max_initial_weight: float = 0.5
    frequency_scale: float = 100.0


class PhaseThresholds(BaseModel):
    growth: int = 100
    maturation: int = 500
    stable: int = 1000


# ── Constants ─────────────────────────────────────────────────────────────────

CORE_NODE_IDS: frozenset[NodeId] = frozenset({
    "meta-engine",
    "model-manager",
    "model-trainer",
    "memory-lancedb",
    "iot-hub",
    "julie",
})

FITNESS_WEIGHTS = {
    "success_rate": 40.0,
    "latency": 30.0,
    "utilization": 20.0,
    "connectivity": 10.0,
}

CONSENSUS_TIMEOUT_SECONDS = 5 * 60
EVOLUTION_INTERVAL_SECONDS = 15 * 60

"""Graph records — nodes, edges, evolution events and execution records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from neuromesh.types import (
    ApprovalStatus,
    EdgeType,
    MaturationPhase,
    MutationClass,
    MutationType,
    NodeStatus,
    NodeType,
    edge_id_for,
    new_id,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GraphNode(BaseModel):
    """A capability, station, model or synthetic entity in the graph."""

    node_id: str
    node_type: NodeType
    name: str = ""
    description: str = ""
    owner_station_id: str
    status: NodeStatus = NodeStatus.ACTIVE
    maturation_phase: MaturationPhase = MaturationPhase.GENESIS
    fitness_score: float = 50.0
    capabilities: list[str] = Field(default_factory=list)
    activation_count: int = 0
    total_latency_ms: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    last_activated: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def is_pruned(self) -> bool:
        return self.status == NodeStatus.PRUNED


class GraphEdge(BaseModel):
    """A directed relationship. At most one edge per ordered pair."""

    edge_id: str = ""
    source_node_id: str
    target_node_id: str
    edge_type: EdgeType = EdgeType.ACTIVATION
    weight: float = Field(default=0.5, ge=0.0, le=1.0)
    myelinated: bool = False
    activation_count: int = 0
    co_activation_count: int = 0
    avg_latency_ms: float = 0.0
    owner_station_id: str
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _derive_edge_id(self) -> "GraphEdge":
        expected = edge_id_for(self.source_node_id, self.target_node_id)
        if self.edge_id and self.edge_id != expected:
            raise ValueError(f"edge_id {self.edge_id!r} does not match endpoints {expected!r}")
        self.edge_id = expected
        return self

    def touches(self, node_id: str) -> bool:
        return self.source_node_id == node_id or self.target_node_id == node_id


class EvolutionProposal(BaseModel):
    """An immutable candidate mutation produced by the proposal generator."""

    model_config = ConfigDict(frozen=True)

    type: MutationType
    target_id: str
    reason: str = ""
    mutation_class: MutationClass = MutationClass.REINFORCING
    proposed_changes: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def requires_approval(self) -> bool:
        return self.mutation_class == MutationClass.DESTRUCTIVE

    @property
    def key(self) -> tuple[str, str]:
        return (self.type.value, self.target_id)


class EvolutionEvent(BaseModel):
    """Audit record of a mutation: applied, pending approval, or rejected."""

    id: str = Field(default_factory=new_id)
    event_type: MutationType
    target_id: str
    previous_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    triggered_by: str = "maturation_cycle"  # maturation_cycle | consensus | operator | stationId
    requires_approval: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.AUTO_APPROVED
    station_id: str
    created_at: datetime = Field(default_factory=utcnow)
    proposal: EvolutionProposal | None = None


class ExecutionRecord(BaseModel):
    """One traversal of the graph by the task-execution layer."""

    id: str = Field(default_factory=new_id)
    thread_id: str = ""
    task_type: str = ""
    task_description: str = ""
    nodes_visited: list[str] = Field(default_factory=list)
    edges_traversed: list[str] = Field(default_factory=list)
    success: bool = True
    total_latency_ms: float = 0.0
    node_latencies: dict[str, float] = Field(default_factory=dict)
    station_id: str
    created_at: datetime = Field(default_factory=utcnow)


"""Maturation lifecycle — phases, proposal application and the maturation cycle.

One pass of the cycle:
  1. Resolve consensus requests that are due and apply approved ones,
     re-tracking open requests of this station lost on restart
  2. Pull peer topology into the local view
  3. Recompute global stats and fitness for owned nodes
  4. Advance maturation phases from the execution count
  5. Generate proposals for entities this station owns
  6. Apply reinforcing proposals in generation order
  7. Route destructive proposals to consensus or the approval queue
  8. Record audit events and replicate the resulting delta

Only one pass runs at a time per station. Votes and read queries do not
take the pass lock and may interleave with a running pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from pydantic import BaseModel, Field

from neuromesh.events.bus import EventBus
from neuromesh.exceptions import NeuromeshError, ProposalApplyError
from neuromesh.graph.models import EvolutionEvent, EvolutionProposal, GraphEdge, GraphNode
from neuromesh.graph.store import GraphStore
from neuromesh.graph.telemetry import build_co_activation_map
from neuromesh.maturation.fitness import calculate_global_stats, calculate_node_fitness
from neuromesh.maturation.proposals import generate_all
from neuromesh.network.consensus import (
    ConsensusCoordinator,
    ConsensusRequest,
    ConsensusResolution,
    ConsensusStatus,
)
from neuromesh.network.replication import (
    EdgeChange,
    GraphDelta,
    NodeChange,
    ReplicationDriver,
    ReplicationResult,
)
from neuromesh.types import (
    CORE_NODE_IDS,
    ApprovalStatus,
    MaturationPhase,
    MutationClass,
    MutationType,
    MyelinationThreshold,
    NodeStatus,
    PhaseThresholds,
    PruningThreshold,
    SynaptogenesisThreshold,
    Vote,
    new_id,
    split_pair_key,
)

_logger = logging.getLogger(__name__)


# ── Phases ───────────────────────────────────────────────────────


def determine_phase(
    total_executions: int,
    thresholds: PhaseThresholds | None = None,
) -> MaturationPhase:
    thresholds = thresholds or PhaseThresholds()
    if total_executions >= thresholds.stable:
        return MaturationPhase.STABLE
    if total_executions >= thresholds.maturation:
        return MaturationPhase.MATURATION
    if total_executions >= thresholds.growth:
        return MaturationPhase.GROWTH
    return MaturationPhase.GENESIS


def advance_phase(current: MaturationPhase, target: MaturationPhase) -> MaturationPhase:
    """Phases only move forward. reset_phase() is the only way back."""
    return target if target.rank > current.rank else current


# ── Proposal application ─────────────────────────────────────────


class ApplyOutcome(BaseModel):
    """Result of applying one proposal.

    `changed` is False when the proposal was already in effect, which
    makes re-application a successful no-op.
    """

    proposal: EvolutionProposal
    applied: bool = False
    changed: bool = False
    error: str = ""
    previous_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)
    created_edge: GraphEdge | None = None


class ProposalApplier:
    """Applies proposals to a store, one at a time and idempotently."""

    def __init__(self, store: GraphStore, station_id: str) -> None:
        self._store = store
        self._station_id = station_id

    async def apply(self, proposal: EvolutionProposal) -> ApplyOutcome:
        handler = {
            MutationType.EDGE_MYELINATED: self._myelinate,
            MutationType.EDGE_PRUNED: self._prune_edge,
            MutationType.EDGE_CREATED: self._create_edge,
            MutationType.EDGE_WEIGHT_CHANGED: self._change_weight,
            MutationType.NODE_PRUNED: self._prune_node,
        }.get(proposal.type)
        if handler is None:
            return ApplyOutcome(proposal=proposal, error=f"unsupported mutation {proposal.type.value}")
        try:
            return await handler(proposal)
        except (NeuromeshError, ValueError) as e:
            _logger.warning("Failed to apply %s on %s: %s", proposal.type.value, proposal.target_id, e)
            return ApplyOutcome(proposal=proposal, error=str(e))

    async def _myelinate(self, proposal: EvolutionProposal) -> ApplyOutcome:
        edge = await self._require_edge(proposal.target_id)
        if edge.myelinated:
            return ApplyOutcome(proposal=proposal, applied=True)
        edge.myelinated = True
        await self._store.upsert_edge(edge)
        return ApplyOutcome(
            proposal=proposal, applied=True, changed=True,
            previous_state={"myelinated": False}, new_state={"myelinated": True},
        )

    async def _prune_edge(self, proposal: EvolutionProposal) -> ApplyOutcome:
        edge = await self._store.get_edge(proposal.target_id)
        if edge is None:
            return ApplyOutcome(proposal=proposal, applied=True)
        await self._store.remove_edge(edge.edge_id)
        return ApplyOutcome(
            proposal=proposal, applied=True, changed=True,
            previous_state={"weight": edge.weight, "activation_count": edge.activation_count},
        )

    async def _create_edge(self, proposal: EvolutionProposal) -> ApplyOutcome:
        changes = proposal.proposed_changes
        pair = split_pair_key(proposal.target_id)
        source = changes.get("source_node_id") or (pair[0] if pair else "")
        target = changes.get("target_node_id") or (pair[1] if pair else "")
        if not source or not target:
            raise ProposalApplyError(f"malformed edge target {proposal.target_id!r}")

        existing = await self._store.get_edge(f"{source}->{target}")
        reverse = await self._store.get_edge(f"{target}->{source}")
        if existing is not None or reverse is not None:
            return ApplyOutcome(proposal=proposal, applied=True)

        for node_id in (source, target):
            node = await self._store.get_node(node_id)
            if node is None or node.is_pruned:
                raise ProposalApplyError(f"endpoint {node_id} missing or pruned")

        edge = GraphEdge(
            source_node_id=source,
            target_node_id=target,
            edge_type=changes.get("edge_type", "activation"),
            weight=changes.get("weight", 0.5),
            owner_station_id=self._station_id,
        )
        await self._store.upsert_edge(edge)
        return ApplyOutcome(
            proposal=proposal, applied=True, changed=True,
            new_state={"weight": edge.weight, "edge_type": edge.edge_type.value},
            created_edge=edge,
        )

    async def _change_weight(self, proposal: EvolutionProposal) -> ApplyOutcome:
        edge = await self._require_edge(proposal.target_id)
        weight = float(proposal.proposed_changes["weight"])
        if edge.weight == weight:
            return ApplyOutcome(proposal=proposal, applied=True)
        previous = edge.weight
        edge.weight = weight
        await self._store.upsert_edge(GraphEdge.model_validate(edge.model_dump()))
        return ApplyOutcome(
            proposal=proposal, applied=True, changed=True,
            previous_state={"weight": previous}, new_state={"weight": weight},
        )

    async def _prune_node(self, proposal: EvolutionProposal) -> ApplyOutcome:
        if proposal.target_id in CORE_NODE_IDS:
            raise ProposalApplyError(f"{proposal.target_id} is a core node")
        node = await self._store.get_node(proposal.target_id)
        if node is None:
            raise ProposalApplyError(f"unknown node {proposal.target_id}")
        if node.is_pruned:
            return ApplyOutcome(proposal=proposal, applied=True)
        previous = node.status
        node.status = NodeStatus.PRUNED
        await self._store.upsert_node(node)
        return ApplyOutcome(
            proposal=proposal, applied=True, changed=True,
            previous_state={"status": previous.value, "fitness_score": node.fitness_score},
            new_state={"status": NodeStatus.PRUNED.value},
        )

    async def _require_edge(self, edge_id: str) -> GraphEdge:
        edge = await self._store.get_edge(edge_id)
        if edge is None:
            raise ProposalApplyError(f"unknown edge {edge_id}")
        return edge


def affected_stations(
    proposal: EvolutionProposal,
    nodes: Iterable[GraphNode],
    edges: Iterable[GraphEdge],
) -> list[str]:
    """Stations whose local subgraph a mutation touches.

    The target's owner comes first, followed by owners of incident edges
    and of the nodes at their far ends.
    """
    node_index = {n.node_id: n for n in nodes}
    edge_list = list(edges)
    owners: list[str] = []

    def _add_node(node_id: str) -> None:
        node = node_index.get(node_id)
        if node is not None:
            owners.append(node.owner_station_id)

    if proposal.target_id in node_index:
        _add_node(proposal.target_id)
        for edge in edge_list:
            if edge.touches(proposal.target_id):
                owners.append(edge.owner_station_id)
                _add_node(edge.source_node_id)
                _add_node(edge.target_node_id)
    else:
        edge = next((e for e in edge_list if e.edge_id == proposal.target_id), None)
        if edge is not None:
            owners.append(edge.owner_station_id)
            _add_node(edge.source_node_id)
            _add_node(edge.target_node_id)
        else:
            pair = split_pair_key(proposal.target_id)
            for node_id in pair or ():
                _add_node(node_id)

    return list(dict.fromkeys(owners))


# ── Maturation cycle ─────────────────────────────────────────────


class FailedProposal(BaseModel):
    type: MutationType
    target_id: str
    error: str


class MaturationReport(BaseModel):
    """Summary of one maturation pass. An empty pass is still a success."""

    id: str = Field(default_factory=new_id)
    station_id: str
    skipped: bool = False
    phase: MaturationPhase = MaturationPhase.GENESIS
    total_executions: int = 0
    phase_transition: bool = False
    nodes_updated: int = 0
    generated: list[EvolutionProposal] = Field(default_factory=list)
    applied: list[EvolutionProposal] = Field(default_factory=list)
    failed: list[FailedProposal] = Field(default_factory=list)
    pending_consensus: list[str] = Field(default_factory=list)
    awaiting_approval: list[str] = Field(default_factory=list)
    consensus_resolved: dict[str, str] = Field(default_factory=dict)
    replication: ReplicationResult | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0

    def __repr__(self) -> str:
        return (
            f"MaturationReport(phase={self.phase.value}, "
            f"generated={len(self.generated)}, applied={len(self.applied)}, "
            f"pending={len(self.pending_consensus) + len(self.awaiting_approval)})"
        )


class MaturationCycle:
    """Runs maturation passes for one station.

    Collaborators are injected; the coordinator, replication driver and
    event bus are optional, so a single isolated station works with just
    a store.
    """

    def __init__(
        self,
        store: GraphStore,
        station_id: str,
        coordinator: ConsensusCoordinator | None = None,
        driver: ReplicationDriver | None = None,
        event_bus: EventBus | None = None,
        myelination: MyelinationThreshold | None = None,
        pruning: PruningThreshold | None = None,
        synaptogenesis: SynaptogenesisThreshold | None = None,
        phases: PhaseThresholds | None = None,
        co_activation_window: int = 500,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._station_id = station_id
        self._coordinator = coordinator
        self._driver = driver
        self._event_bus = event_bus
        self._myelination = myelination or MyelinationThreshold()
        self._pruning = pruning or PruningThreshold()
        self._synaptogenesis = synaptogenesis or SynaptogenesisThreshold()
        self._phases = phases or PhaseThresholds()
        self._co_activation_window = co_activation_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._applier = ProposalApplier(store, station_id)
        self._lock = asyncio.Lock()

    @property
    def station_id(self) -> str:
        return self._station_id

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def run(self, skip_if_busy: bool = True) -> MaturationReport:
        """Run one pass. With skip_if_busy, a pass already in flight wins and
        this call returns a report marked skipped; otherwise it waits."""
        if skip_if_busy and self._lock.locked():
            _logger.info("Maturation pass already running on %s, skipping", self._station_id)
            return MaturationReport(station_id=self._station_id, skipped=True)
        async with self._lock:
            return await self._run_pass()

    async def _run_pass(self) -> MaturationReport:
        start = time.monotonic()
        report = MaturationReport(station_id=self._station_id)
        delta = GraphDelta(station_id=self._station_id)
        await self._emit("maturation.cycle_started", {"report_id": report.id})

        await self._restore_consensus()
        await self._resolve_consensus(report, delta)

        if self._driver is not None:
            await self._driver.sync()

        nodes = await self._store.list_nodes()
        edges = await self._store.list_edges()
        await self._score_and_advance(nodes, edges, report, delta)

        records = await self._store.list_executions(self._station_id, limit=self._co_activation_window)
        co_activation_map = build_co_activation_map(records)
        proposals = [
            p for p in generate_all(
                nodes, edges, co_activation_map,
                myelination=self._myelination,
                pruning=self._pruning,
                synaptogenesis=self._synaptogenesis,
                now=self._clock(),
            )
            if self._owns_target(p, nodes, edges)
        ]
        report.generated = proposals

        pending_keys = {
            (e.event_type.value, e.target_id)
            for e in await self._store.list_pending_events(self._station_id)
        }
        for proposal in proposals:
            if proposal.mutation_class == MutationClass.REINFORCING:
                await self._apply_reinforcing(proposal, report, delta)
            elif proposal.key not in pending_keys:
                await self._route_destructive(proposal, nodes, edges, report, delta)
                pending_keys.add(proposal.key)

        if self._driver is not None and not delta.is_empty:
            report.replication = await self._driver.replicate(delta)

        report.duration_ms = (time.monotonic() - start) * 1000
        _logger.info(
            "Maturation pass on %s: phase=%s generated=%d applied=%d failed=%d pending=%d",
            self._station_id, report.phase.value, len(report.generated), len(report.applied),
            len(report.failed), len(report.pending_consensus) + len(report.awaiting_approval),
        )
        await self._emit("maturation.cycle_completed", {
            "report_id": report.id,
            "phase": report.phase.value,
            "generated": len(report.generated),
            "applied": len(report.applied),
            "failed": len(report.failed),
            "pending_consensus": len(report.pending_consensus),
            "awaiting_approval": len(report.awaiting_approval),
        })
        return report

    # ── Steps ──

    async def _restore_consensus(self) -> None:
        """Re-track this station's open consensus events the coordinator has lost,
        e.g. after a restart. The window runs from the event's creation."""
        if self._coordinator is None:
            return
        orphans = [
            e for e in await self._store.list_pending_events(self._station_id)
            if e.triggered_by == "consensus" and e.proposal is not None
            and self._coordinator.get(e.id) is None
        ]
        if not orphans:
            return
        nodes = await self._store.list_nodes()
        edges = await self._store.list_edges()
        for event in orphans:
            stations = list(dict.fromkeys([*affected_stations(event.proposal, nodes, edges), self._station_id]))
            request = ConsensusRequest(
                proposal_id=event.id,
                proposal=event.proposal,
                proposer_station_id=self._station_id,
                affected_station_ids=stations,
                created_at=event.created_at,
                expires_at=event.created_at + self._coordinator.timeout,
            )
            self._coordinator.track(request)
            self._coordinator.cast_vote(event.id, self._station_id, Vote.APPROVE)
            _logger.info("Restored consensus request %s for %s", event.id, event.target_id)

    async def _resolve_consensus(self, report: MaturationReport, delta: GraphDelta) -> None:
        if self._coordinator is None:
            return
        for resolution in self._coordinator.resolve_all():
            report.consensus_resolved[resolution.proposal_id] = resolution.status.value
            await self._settle(resolution, report, delta)

    async def _settle(
        self,
        resolution: ConsensusResolution,
        report: MaturationReport,
        delta: GraphDelta,
    ) -> None:
        event = await self._store.get_event(resolution.proposal_id)
        # Requests adopted from peers are applied by their proposer
        if event is None or event.proposal is None or event.station_id != self._station_id:
            return
        await self._emit("consensus.resolved", {
            "proposal_id": resolution.proposal_id,
            "status": resolution.status.value,
            "reason": resolution.result.reason if resolution.result else "",
        })

        if resolution.status != ConsensusStatus.APPROVED:
            event.approval_status = ApprovalStatus.REJECTED
            await self._store.record_event(event)
            delta.events.append(event)
            return

        outcome = await self._applier.apply(event.proposal)
        if not outcome.applied:
            report.failed.append(FailedProposal(
                type=event.proposal.type, target_id=event.proposal.target_id, error=outcome.error,
            ))
            return
        event.approval_status = ApprovalStatus.APPROVED
        event.new_state = outcome.new_state or event.new_state
        await self._store.record_event(event)
        delta.events.append(event)
        self._add_to_delta(outcome, delta)
        report.applied.append(event.proposal)

    async def _score_and_advance(
        self,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
        report: MaturationReport,
        delta: GraphDelta,
    ) -> None:
        total = await self._store.count_executions(self._station_id)
        phase = determine_phase(total, self._phases)
        report.total_executions = total
        report.phase = phase

        owned = [n for n in nodes if n.owner_station_id == self._station_id and not n.is_pruned]
        previous_phase = MaturationPhase.GENESIS
        for node in owned:
            previous_phase = advance_phase(previous_phase, node.maturation_phase)

        stats = calculate_global_stats(n for n in nodes if not n.is_pruned)
        for node in owned:
            fitness = calculate_node_fitness(node, edges, stats)
            next_phase = advance_phase(node.maturation_phase, phase)
            changes: dict[str, Any] = {}
            if fitness != node.fitness_score:
                changes["fitness_score"] = fitness
            if next_phase != node.maturation_phase:
                changes["maturation_phase"] = next_phase.value
            if not changes:
                continue
            node.fitness_score = fitness
            node.maturation_phase = next_phase
            await self._store.upsert_node(node)
            delta.nodes_updated.append(NodeChange(node_id=node.node_id, changes=changes))
            report.nodes_updated += 1

        if owned and phase.rank > previous_phase.rank:
            report.phase_transition = True
            event = await self._record_event(
                MutationType.PHASE_TRANSITION,
                self._station_id,
                previous_state={"phase": previous_phase.value},
                new_state={"phase": phase.value},
                reason=f"{total} total executions reached {phase.value} threshold",
            )
            delta.events.append(event)
            await self._emit("maturation.phase_transition", {
                "previous": previous_phase.value, "phase": phase.value, "total_executions": total,
            })

    async def _apply_reinforcing(
        self,
        proposal: EvolutionProposal,
        report: MaturationReport,
        delta: GraphDelta,
    ) -> None:
        outcome = await self._applier.apply(proposal)
        if not outcome.applied:
            report.failed.append(FailedProposal(
                type=proposal.type, target_id=proposal.target_id, error=outcome.error,
            ))
            return
        report.applied.append(proposal)
        if not outcome.changed:
            return
        self._add_to_delta(outcome, delta)
        event = await self._record_event(
            proposal.type,
            proposal.target_id,
            previous_state=outcome.previous_state,
            new_state=outcome.new_state,
            reason=proposal.reason,
            proposal=proposal,
        )
        delta.events.append(event)

    async def _route_destructive(
        self,
        proposal: EvolutionProposal,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
        report: MaturationReport,
        delta: GraphDelta,
    ) -> None:
        stations = affected_stations(proposal, nodes, edges)

        if len(stations) > 1 and self._coordinator is not None:
            request = self._coordinator.propose(proposal, self._station_id, stations)
            self._coordinator.cast_vote(request.proposal_id, self._station_id, Vote.APPROVE)
            event = await self._record_event(
                proposal.type,
                proposal.target_id,
                new_state=dict(proposal.proposed_changes),
                reason=proposal.reason,
                proposal=proposal,
                event_id=request.proposal_id,
                triggered_by="consensus",
                approval_status=ApprovalStatus.PENDING,
            )
            delta.events.append(event)
            report.pending_consensus.append(request.proposal_id)
            if self._driver is not None:
                await self._driver.announce(request)
            await self._emit("consensus.requested", {
                "proposal_id": request.proposal_id,
                "type": proposal.type.value,
                "target_id": proposal.target_id,
                "affected_stations": request.affected_station_ids,
            })
            return

        event = await self._record_event(
            proposal.type,
            proposal.target_id,
            new_state=dict(proposal.proposed_changes),
            reason=proposal.reason,
            proposal=proposal,
            approval_status=ApprovalStatus.PENDING,
        )
        delta.events.append(event)
        report.awaiting_approval.append(event.id)
        await self._emit("maturation.approval_requested", {
            "event_id": event.id, "type": proposal.type.value, "target_id": proposal.target_id,
        })

    # ── Approval channel ──

    async def approve_event(self, event_id: str) -> bool:
        """Approve a pending mutation.

        For a consensus-backed event this casts this station's approve
        vote; otherwise the mutation is applied and replicated now.
        """
        if self._coordinator is not None and self._coordinator.get(event_id) is not None:
            return await self.cast_vote(event_id, self._station_id, Vote.APPROVE)

        async with self._lock:
            event = await self._pending_event(event_id)
            if event is None:
                return False
            outcome = await self._applier.apply(event.proposal)
            if not outcome.applied:
                return False
            event.approval_status = ApprovalStatus.APPROVED
            event.triggered_by = "operator"
            await self._store.record_event(event)

            delta = GraphDelta(station_id=self._station_id, events=[event])
            self._add_to_delta(outcome, delta)
            if self._driver is not None:
                await self._driver.replicate(delta)

        _logger.info("Approved %s on %s (event=%s)", event.event_type.value, event.target_id, event_id)
        await self._emit("maturation.approved", {"event_id": event_id, "target_id": event.target_id})
        return True

    async def reject_event(self, event_id: str) -> bool:
        """Reject a pending mutation, or vote reject on a consensus-backed one."""
        if self._coordinator is not None and self._coordinator.get(event_id) is not None:
            return await self.cast_vote(event_id, self._station_id, Vote.REJECT)

        event = await self._pending_event(event_id)
        if event is None:
            return False
        event.approval_status = ApprovalStatus.REJECTED
        event.triggered_by = "operator"
        await self._store.record_event(event)
        if self._driver is not None:
            await self._driver.replicate(GraphDelta(station_id=self._station_id, events=[event]))

        _logger.info("Rejected %s on %s (event=%s)", event.event_type.value, event.target_id, event_id)
        await self._emit("maturation.rejected", {"event_id": event_id, "target_id": event.target_id})
        return True

    async def cast_vote(self, proposal_id: str, station_id: str, vote: Vote | str) -> bool:
        if self._coordinator is None:
            return False
        accepted = self._coordinator.cast_vote(proposal_id, station_id, vote)
        if accepted:
            await self._emit("consensus.vote_cast", {
                "proposal_id": proposal_id, "station_id": station_id, "vote": Vote(vote).value,
            })
        return accepted

    def track_consensus(self, request: ConsensusRequest) -> bool:
        """Adopt a consensus request announced by a peer station."""
        if self._coordinator is None:
            return False
        return self._coordinator.track(request)

    async def reset_phase(
        self,
        node_id: str,
        phase: MaturationPhase = MaturationPhase.GENESIS,
    ) -> bool:
        """Explicitly move a node back to an earlier phase."""
        async with self._lock:
            node = await self._store.get_node(node_id)
            if node is None:
                return False
            previous = node.maturation_phase
            node.maturation_phase = phase
            await self._store.upsert_node(node)
            event = await self._record_event(
                MutationType.PHASE_TRANSITION,
                node_id,
                previous_state={"phase": previous.value},
                new_state={"phase": phase.value},
                reason="Phase reset by operator",
                triggered_by="operator",
            )
            if self._driver is not None:
                await self._driver.replicate(GraphDelta(
                    station_id=self._station_id,
                    nodes_updated=[NodeChange(node_id=node_id, changes={"maturation_phase": phase.value})],
                    events=[event],
                ))
        return True

    # ── Helpers ──

    def _owns_target(
        self,
        proposal: EvolutionProposal,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
    ) -> bool:
        if proposal.type == MutationType.EDGE_CREATED:
            owner_node = proposal.proposed_changes.get("source_node_id", "")
            return any(n.node_id == owner_node and n.owner_station_id == self._station_id for n in nodes)
        if proposal.type == MutationType.NODE_PRUNED:
            return any(n.node_id == proposal.target_id and n.owner_station_id == self._station_id for n in nodes)
        return any(e.edge_id == proposal.target_id and e.owner_station_id == self._station_id for e in edges)

    async def _pending_event(self, event_id: str) -> EvolutionEvent | None:
        event = await self._store.get_event(event_id)
        if event is None or event.approval_status != ApprovalStatus.PENDING or event.proposal is None:
            return None
        return event

    async def _record_event(
        self,
        event_type: MutationType,
        target_id: str,
        previous_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
        reason: str = "",
        proposal: EvolutionProposal | None = None,
        event_id: str | None = None,
        triggered_by: str = "maturation_cycle",
        approval_status: ApprovalStatus = ApprovalStatus.AUTO_APPROVED,
    ) -> EvolutionEvent:
        event = EvolutionEvent(
            id=event_id or new_id(),
            event_type=event_type,
            target_id=target_id,
            previous_state=previous_state or {},
            new_state=new_state or {},
            reason=reason,
            triggered_by=triggered_by,
            requires_approval=approval_status == ApprovalStatus.PENDING,
            approval_status=approval_status,
            station_id=self._station_id,
            created_at=self._clock(),
            proposal=proposal,
        )
        await self._store.record_event(event)
        return event

    @staticmethod
    def _add_to_delta(outcome: ApplyOutcome, delta: GraphDelta) -> None:
        if not outcome.changed:
            return
        proposal = outcome.proposal
        if proposal.type == MutationType.EDGE_CREATED and outcome.created_edge is not None:
            delta.edges_added.append(outcome.created_edge)
        elif proposal.type == MutationType.EDGE_PRUNED:
            delta.edges_removed.append(proposal.target_id)
        elif proposal.type == MutationType.NODE_PRUNED:
            delta.nodes_updated.append(NodeChange(node_id=proposal.target_id, changes=outcome.new_state))
        else:
            delta.edges_updated.append(EdgeChange(edge_id=proposal.target_id, changes=outcome.new_state))

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source=self._station_id)

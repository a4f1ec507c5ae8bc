"""Tests for phases, proposal application and the maturation cycle."""

import asyncio
from datetime import timedelta

import pytest

from neuromesh.events.bus import EventBus
from neuromesh.graph.models import EvolutionProposal, ExecutionRecord
from neuromesh.graph.store import InMemoryGraphStore
from neuromesh.maturation.lifecycle import (
    MaturationCycle,
    ProposalApplier,
    advance_phase,
    affected_stations,
    determine_phase,
)
from neuromesh.network.consensus import ConsensusCoordinator
from neuromesh.types import (
    ApprovalStatus,
    MaturationPhase,
    MutationClass,
    MutationType,
    NodeStatus,
    NodeType,
    Vote,
)


async def _seed_unfit_synthetic(store, make_node, last_activated):
    """A slow, always-failing synthetic node next to a fast healthy one.

    The pass rescores fitness before proposing, so the synthetic node
    has to be unfit by its counters: 0 success + 15 latency + 0 usage.
    """
    await store.upsert_node(make_node(
        "fast", success_count=10, total_latency_ms=10.0, activation_count=10,
    ))
    await store.upsert_node(make_node(
        "synth", node_type=NodeType.SYNTHETIC,
        failure_count=10, total_latency_ms=10_000.0,
        last_activated=last_activated,
    ))


# ── Phases ───────────────────────────────────────────────────────


@pytest.mark.parametrize("count,phase", [
    (0, MaturationPhase.GENESIS),
    (99, MaturationPhase.GENESIS),
    (100, MaturationPhase.GROWTH),
    (499, MaturationPhase.GROWTH),
    (500, MaturationPhase.MATURATION),
    (999, MaturationPhase.MATURATION),
    (1000, MaturationPhase.STABLE),
    (10**6, MaturationPhase.STABLE),
])
def test_determine_phase(count, phase):
    assert determine_phase(count) == phase


def test_phases_only_advance():
    assert advance_phase(MaturationPhase.GENESIS, MaturationPhase.GROWTH) == MaturationPhase.GROWTH
    assert advance_phase(MaturationPhase.STABLE, MaturationPhase.GENESIS) == MaturationPhase.STABLE
    assert advance_phase(MaturationPhase.GROWTH, MaturationPhase.GROWTH) == MaturationPhase.GROWTH


# ── Proposal application ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_myelination_applies_once(store, make_node, make_edge):
    await store.upsert_edge(make_edge("a", "b", activation_count=150, weight=0.8))
    applier = ProposalApplier(store, "iot-hub")
    proposal = EvolutionProposal(
        type=MutationType.EDGE_MYELINATED, target_id="a->b", proposed_changes={"myelinated": True},
    )

    first = await applier.apply(proposal)
    second = await applier.apply(proposal)

    assert first.applied and first.changed
    assert second.applied and not second.changed
    assert (await store.get_edge("a->b")).myelinated is True


@pytest.mark.asyncio
async def test_edge_creation_is_idempotent_and_owned_locally(store, make_node):
    await store.upsert_node(make_node("a"))
    await store.upsert_node(make_node("b", owner="scraper"))
    applier = ProposalApplier(store, "iot-hub")
    proposal = EvolutionProposal(
        type=MutationType.EDGE_CREATED,
        target_id="a->b",
        proposed_changes={"source_node_id": "a", "target_node_id": "b", "edge_type": "activation", "weight": 0.15},
    )

    first = await applier.apply(proposal)
    second = await applier.apply(proposal)

    assert first.changed and first.created_edge is not None
    assert not second.changed
    edge = await store.get_edge("a->b")
    assert edge.weight == 0.15
    assert edge.owner_station_id == "iot-hub"


@pytest.mark.asyncio
async def test_edge_creation_blocked_by_reverse_edge(store, make_node, make_edge):
    await store.upsert_node(make_node("a"))
    await store.upsert_node(make_node("b"))
    await store.upsert_edge(make_edge("b", "a"))
    outcome = await ProposalApplier(store, "iot-hub").apply(EvolutionProposal(
        type=MutationType.EDGE_CREATED, target_id="a->b",
        proposed_changes={"source_node_id": "a", "target_node_id": "b"},
    ))
    assert outcome.applied and not outcome.changed
    assert await store.get_edge("a->b") is None


@pytest.mark.asyncio
async def test_failed_application_reports_error(store):
    outcome = await ProposalApplier(store, "iot-hub").apply(EvolutionProposal(
        type=MutationType.EDGE_MYELINATED, target_id="missing->edge",
    ))
    assert not outcome.applied
    assert "unknown edge" in outcome.error


@pytest.mark.asyncio
async def test_edge_prune_is_idempotent(store, make_edge):
    await store.upsert_edge(make_edge("a", "b", weight=0.05))
    applier = ProposalApplier(store, "iot-hub")
    proposal = EvolutionProposal(type=MutationType.EDGE_PRUNED, target_id="a->b")

    assert (await applier.apply(proposal)).changed
    again = await applier.apply(proposal)
    assert again.applied and not again.changed


@pytest.mark.asyncio
async def test_core_node_prune_refused(store, make_node):
    await store.upsert_node(make_node("meta-engine", node_type=NodeType.SYNTHETIC))
    outcome = await ProposalApplier(store, "iot-hub").apply(EvolutionProposal(
        type=MutationType.NODE_PRUNED, target_id="meta-engine",
        mutation_class=MutationClass.DESTRUCTIVE,
    ))
    assert not outcome.applied
    assert (await store.get_node("meta-engine")).status == NodeStatus.ACTIVE


def test_affected_stations_for_node(make_node, make_edge):
    nodes = [
        make_node("synth", owner="iot-hub"),
        make_node("peer", owner="scraper"),
        make_node("other", owner="clerk"),
    ]
    edges = [
        make_edge("synth", "peer", owner="iot-hub"),
        make_edge("other", "synth", owner="clerk"),
    ]
    proposal = EvolutionProposal(type=MutationType.NODE_PRUNED, target_id="synth")
    assert affected_stations(proposal, nodes, edges) == ["iot-hub", "scraper", "clerk"]


def test_affected_stations_isolated_node(make_node):
    proposal = EvolutionProposal(type=MutationType.NODE_PRUNED, target_id="solo")
    assert affected_stations(proposal, [make_node("solo")], []) == ["iot-hub"]


# ── Maturation cycle ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_empty_graph_pass_succeeds(store):
    report = await MaturationCycle(store, "iot-hub").run()
    assert not report.skipped
    assert report.generated == []
    assert report.applied == []
    assert report.failed == []
    assert report.phase == MaturationPhase.GENESIS


@pytest.mark.asyncio
async def test_pass_applies_reinforcing_proposals_and_records_events(store, make_node, make_edge):
    await store.upsert_node(make_node("a"))
    await store.upsert_node(make_node("b"))
    await store.upsert_edge(make_edge("a", "b", activation_count=150, weight=0.8))

    report = await MaturationCycle(store, "iot-hub").run()

    assert [p.type for p in report.applied] == [MutationType.EDGE_MYELINATED]
    assert (await store.get_edge("a->b")).myelinated
    events = await store.list_events("iot-hub")
    assert any(
        e.event_type == MutationType.EDGE_MYELINATED and e.approval_status == ApprovalStatus.AUTO_APPROVED
        for e in events
    )

    # Nothing left to do on the next pass
    again = await MaturationCycle(store, "iot-hub").run()
    assert again.applied == []


@pytest.mark.asyncio
async def test_pass_ignores_foreign_entities(store, make_node, make_edge):
    await store.upsert_node(make_node("a", owner="scraper"))
    await store.upsert_node(make_node("b", owner="scraper"))
    await store.upsert_edge(make_edge("a", "b", owner="scraper", activation_count=150, weight=0.8))

    report = await MaturationCycle(store, "iot-hub").run()

    assert report.generated == []
    assert not (await store.get_edge("a->b")).myelinated


@pytest.mark.asyncio
async def test_pass_creates_edges_from_co_activation(store, make_node):
    await store.upsert_node(make_node("a"))
    await store.upsert_node(make_node("b"))
    for _ in range(12):
        await store.record_execution(ExecutionRecord(nodes_visited=["a", "b"], station_id="iot-hub"))

    report = await MaturationCycle(store, "iot-hub").run()

    assert [p.type for p in report.applied] == [MutationType.EDGE_CREATED]
    edge = await store.get_edge("a->b")
    assert edge.weight == pytest.approx(0.12)


@pytest.mark.asyncio
async def test_single_station_prune_waits_for_approval(store, make_node, now):
    await _seed_unfit_synthetic(store, make_node, now - timedelta(days=30))
    cycle = MaturationCycle(store, "iot-hub", clock=lambda: now)

    report = await cycle.run()

    assert len(report.awaiting_approval) == 1
    assert report.pending_consensus == []
    assert (await store.get_node("synth")).status == NodeStatus.ACTIVE

    # A second pass does not queue the same prune twice
    again = await cycle.run()
    assert again.awaiting_approval == []

    event_id = report.awaiting_approval[0]
    assert await cycle.approve_event(event_id) is True
    assert (await store.get_node("synth")).status == NodeStatus.PRUNED
    assert (await store.get_event(event_id)).approval_status == ApprovalStatus.APPROVED
    assert await cycle.approve_event(event_id) is False


@pytest.mark.asyncio
async def test_reject_leaves_node_alone(store, make_node, now):
    await _seed_unfit_synthetic(store, make_node, now - timedelta(days=30))
    cycle = MaturationCycle(store, "iot-hub", clock=lambda: now)
    report = await cycle.run()

    event_id = report.awaiting_approval[0]
    assert await cycle.reject_event(event_id) is True
    assert (await store.get_event(event_id)).approval_status == ApprovalStatus.REJECTED
    assert (await store.get_node("synth")).status == NodeStatus.ACTIVE
    assert await cycle.reject_event("nope") is False


@pytest.mark.asyncio
async def test_cross_station_prune_goes_to_consensus(store, make_node, make_edge, clock):
    await _seed_unfit_synthetic(store, make_node, clock() - timedelta(days=30))
    await store.upsert_node(make_node("peer-cap", owner="scraper"))
    await store.upsert_edge(make_edge("peer-cap", "synth", owner="scraper", weight=0.5, activation_count=10))
    coordinator = ConsensusCoordinator(clock=clock)
    cycle = MaturationCycle(store, "iot-hub", coordinator=coordinator, clock=clock)

    report = await cycle.run()

    assert len(report.pending_consensus) == 1
    proposal_id = report.pending_consensus[0]
    request = coordinator.get(proposal_id)
    assert request.affected_station_ids == ["iot-hub", "scraper"]
    assert coordinator.votes_for(proposal_id) == {"iot-hub": Vote.APPROVE}

    # The peer never answers; after the window the prune lands
    clock.advance(minutes=6)
    later = await cycle.run()

    assert later.consensus_resolved == {proposal_id: "approved"}
    assert (await store.get_node("synth")).status == NodeStatus.PRUNED
    assert (await store.get_event(proposal_id)).approval_status == ApprovalStatus.APPROVED


@pytest.mark.asyncio
async def test_open_consensus_survives_restart(store, make_node, make_edge, clock):
    await _seed_unfit_synthetic(store, make_node, clock() - timedelta(days=30))
    await store.upsert_node(make_node("peer-cap", owner="scraper"))
    await store.upsert_edge(make_edge("peer-cap", "synth", owner="scraper", weight=0.5, activation_count=10))
    before = MaturationCycle(store, "iot-hub", coordinator=ConsensusCoordinator(clock=clock), clock=clock)
    proposal_id = (await before.run()).pending_consensus[0]

    # Station restarts: same store, empty coordinator
    coordinator = ConsensusCoordinator(clock=clock)
    after = MaturationCycle(store, "iot-hub", coordinator=coordinator, clock=clock)
    clock.advance(minutes=10)
    report = await after.run()

    assert report.consensus_resolved == {proposal_id: "approved"}
    assert report.pending_consensus == []
    assert (await store.get_node("synth")).status == NodeStatus.PRUNED
    assert (await store.get_event(proposal_id)).approval_status == ApprovalStatus.APPROVED
    assert coordinator.get(proposal_id) is None


@pytest.mark.asyncio
async def test_restored_consensus_keeps_original_window(store, make_node, make_edge, clock):
    await _seed_unfit_synthetic(store, make_node, clock() - timedelta(days=30))
    await store.upsert_node(make_node("peer-cap", owner="scraper"))
    await store.upsert_edge(make_edge("peer-cap", "synth", owner="scraper", weight=0.5, activation_count=10))
    before = MaturationCycle(store, "iot-hub", coordinator=ConsensusCoordinator(clock=clock), clock=clock)
    proposal_id = (await before.run()).pending_consensus[0]

    coordinator = ConsensusCoordinator(clock=clock)
    after = MaturationCycle(store, "iot-hub", coordinator=coordinator, clock=clock)
    clock.advance(minutes=1)
    report = await after.run()

    assert report.consensus_resolved == {}
    request = coordinator.get(proposal_id)
    assert request.affected_station_ids == ["iot-hub", "scraper"]
    assert request.expires_at == request.created_at + timedelta(minutes=5)
    assert coordinator.votes_for(proposal_id) == {"iot-hub": Vote.APPROVE}
    assert await after.cast_vote(proposal_id, "scraper", "approve")


@pytest.mark.asyncio
async def test_consensus_rejection_discards_proposal(store, make_node, make_edge, clock):
    await _seed_unfit_synthetic(store, make_node, clock() - timedelta(days=30))
    await store.upsert_node(make_node("a", owner="scraper"))
    await store.upsert_node(make_node("b", owner="clerk"))
    await store.upsert_edge(make_edge("a", "synth", owner="scraper", activation_count=10))
    await store.upsert_edge(make_edge("b", "synth", owner="clerk", activation_count=10))
    coordinator = ConsensusCoordinator(clock=clock)
    cycle = MaturationCycle(store, "iot-hub", coordinator=coordinator, clock=clock)

    proposal_id = (await cycle.run()).pending_consensus[0]
    assert await cycle.cast_vote(proposal_id, "scraper", "reject")
    assert await cycle.cast_vote(proposal_id, "clerk", "reject")

    later = await cycle.run()

    assert later.consensus_resolved == {proposal_id: "rejected"}
    assert (await store.get_node("synth")).status == NodeStatus.ACTIVE
    assert (await store.get_event(proposal_id)).approval_status == ApprovalStatus.REJECTED


@pytest.mark.asyncio
async def test_phase_transition_recorded_and_monotone(store, make_node):
    await store.upsert_node(make_node("a"))
    for _ in range(100):
        await store.record_execution(ExecutionRecord(station_id="iot-hub"))
    cycle = MaturationCycle(store, "iot-hub")

    report = await cycle.run()

    assert report.phase == MaturationPhase.GROWTH
    assert report.phase_transition is True
    assert (await store.get_node("a")).maturation_phase == MaturationPhase.GROWTH
    events = await store.list_events("iot-hub")
    assert any(e.event_type == MutationType.PHASE_TRANSITION for e in events)

    # A node already further along is never moved back
    node = await store.get_node("a")
    node.maturation_phase = MaturationPhase.STABLE
    await store.upsert_node(node)
    await cycle.run()
    assert (await store.get_node("a")).maturation_phase == MaturationPhase.STABLE


@pytest.mark.asyncio
async def test_reset_phase(store, make_node):
    await store.upsert_node(make_node("a", maturation_phase=MaturationPhase.STABLE))
    cycle = MaturationCycle(store, "iot-hub")

    assert await cycle.reset_phase("a") is True
    assert (await store.get_node("a")).maturation_phase == MaturationPhase.GENESIS
    assert await cycle.reset_phase("missing") is False


@pytest.mark.asyncio
async def test_concurrent_pass_is_skipped(make_node):
    class SlowStore(InMemoryGraphStore):
        async def count_executions(self, station_id=None):
            await asyncio.sleep(0.05)
            return await super().count_executions(station_id)

    store = SlowStore()
    cycle = MaturationCycle(store, "iot-hub")

    first, second = await asyncio.gather(cycle.run(), cycle.run())

    assert not first.skipped
    assert second.skipped


@pytest.mark.asyncio
async def test_waiting_pass_runs_after_the_first(make_node):
    store = InMemoryGraphStore()
    cycle = MaturationCycle(store, "iot-hub")

    first, second = await asyncio.gather(cycle.run(), cycle.run(skip_if_busy=False))

    assert not first.skipped
    assert not second.skipped
    assert first.created_at <= second.created_at


@pytest.mark.asyncio
async def test_cycle_emits_events(store):
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event.topic)

    bus.subscribe("maturation.*", handler)
    await MaturationCycle(store, "iot-hub", event_bus=bus).run()

    assert received == ["maturation.cycle_started", "maturation.cycle_completed"]

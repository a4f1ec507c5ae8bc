"""Tests for the replication driver, relay client and offline queue."""

import httpx
import orjson
import pytest

from neuromesh.events.bus import EventBus
from neuromesh.exceptions import RelayError, StoreUnavailableError
from neuromesh.graph.genesis import seed_genesis
from neuromesh.graph.models import EvolutionEvent, EvolutionProposal
from neuromesh.graph.store import InMemoryGraphStore
from neuromesh.maturation.lifecycle import MaturationCycle
from neuromesh.network.consensus import ConsensusCoordinator
from neuromesh.network.replication import (
    EdgeChange,
    GraphDelta,
    HttpReachabilityProbe,
    NodeChange,
    OfflineQueue,
    ReachabilityProbe,
    RelayClient,
    ReplicationDriver,
    ReplicationMode,
    apply_delta,
)
from neuromesh.network.subgraph import extract_subgraph
from neuromesh.types import MutationClass, MutationType

from conftest import build_edge, build_node

RELAY_URL = "http://relay.test:8000"


class FakeProbe(ReachabilityProbe):
    def __init__(self, primary: bool = False, relay: bool = False) -> None:
        self.primary = primary
        self.relay = relay

    async def is_primary_store_reachable(self) -> bool:
        return self.primary

    async def is_relay_reachable(self) -> bool:
        return self.relay


class BrokenProbe(ReachabilityProbe):
    async def is_primary_store_reachable(self) -> bool:
        raise OSError("network is unreachable")

    async def is_relay_reachable(self) -> bool:
        raise OSError("network is unreachable")


class DownStore(InMemoryGraphStore):
    async def upsert_node(self, node):
        raise StoreUnavailableError("primary went away")


class FakeRelay:
    """Records what reaches the hub. Set `fail` to answer 500."""

    def __init__(self) -> None:
        self.deltas: list[dict] = []
        self.announced: list[dict] = []
        self.subgraphs: list[dict] = []
        self.subgraphs_body = None
        self.fail = False
        self.healthy = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/health":
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})
        if self.fail:
            return httpx.Response(500, json={"error": "hub overloaded"})
        if path == "/api/neural/sync":
            self.deltas.append(orjson.loads(request.content))
            return httpx.Response(200, json={"accepted": True})
        if path == "/api/neural/consensus":
            self.announced.append(orjson.loads(request.content))
            return httpx.Response(200, json={"accepted": True})
        if path == "/api/neural/subgraphs":
            if self.subgraphs_body is not None:
                return httpx.Response(200, json=self.subgraphs_body)
            return httpx.Response(200, json={"subgraphs": self.subgraphs})
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _delta(*node_ids: str, station: str = "iot-hub") -> GraphDelta:
    return GraphDelta(station_id=station, nodes_added=[build_node(n, owner=station) for n in node_ids])


@pytest.fixture
def relay():
    return FakeRelay()


def _relay_driver(relay: FakeRelay, local=None, queue=None, event_bus=None) -> ReplicationDriver:
    transport = relay.transport
    return ReplicationDriver(
        station_id="iot-hub",
        local_store=local or InMemoryGraphStore(),
        probe=HttpReachabilityProbe(None, RELAY_URL, transport=transport),
        relay=RelayClient(RELAY_URL, transport=transport),
        queue=queue,
        event_bus=event_bus,
    )


# ── Mode detection ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_detect_mode_prefers_direct():
    driver = ReplicationDriver(
        "iot-hub", InMemoryGraphStore(), FakeProbe(primary=True, relay=True),
        primary_store=InMemoryGraphStore(), relay=RelayClient(RELAY_URL),
    )
    assert await driver.detect_mode() == ReplicationMode.DIRECT


@pytest.mark.asyncio
async def test_detect_mode_falls_back_to_relay_then_offline():
    probe = FakeProbe(primary=False, relay=True)
    driver = ReplicationDriver(
        "iot-hub", InMemoryGraphStore(), probe,
        primary_store=InMemoryGraphStore(), relay=RelayClient(RELAY_URL),
    )
    assert await driver.detect_mode() == ReplicationMode.RELAY

    probe.relay = False
    assert await driver.detect_mode() == ReplicationMode.OFFLINE
    assert driver.last_mode == ReplicationMode.OFFLINE


@pytest.mark.asyncio
async def test_probe_failure_means_offline():
    driver = ReplicationDriver(
        "iot-hub", InMemoryGraphStore(), BrokenProbe(),
        primary_store=InMemoryGraphStore(), relay=RelayClient(RELAY_URL),
    )
    assert await driver.detect_mode() == ReplicationMode.OFFLINE


@pytest.mark.asyncio
async def test_mode_change_is_emitted():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event.data)

    bus.subscribe("replication.mode_changed", handler)
    probe = FakeProbe(primary=True)
    driver = ReplicationDriver(
        "iot-hub", InMemoryGraphStore(), probe, primary_store=InMemoryGraphStore(), event_bus=bus,
    )

    await driver.detect_mode()
    await driver.detect_mode()

    assert seen == [{"previous": "offline", "mode": "direct"}]


@pytest.mark.asyncio
async def test_http_probe_checks_relay_health(relay):
    probe = HttpReachabilityProbe(None, RELAY_URL, transport=relay.transport)
    assert await probe.is_primary_store_reachable() is False
    assert await probe.is_relay_reachable() is True

    relay.healthy = False
    assert await probe.is_relay_reachable() is False
    assert await HttpReachabilityProbe(None, "").is_relay_reachable() is False


# ── Replicate / offline queue ────────────────────────────────────


@pytest.mark.asyncio
async def test_offline_delta_is_queued():
    driver = ReplicationDriver("iot-hub", InMemoryGraphStore(), FakeProbe())
    result = await driver.replicate(_delta("a"))

    assert result.mode == ReplicationMode.OFFLINE
    assert result.queued and not result.delivered
    assert len(driver.queue) == 1


@pytest.mark.asyncio
async def test_empty_delta_is_not_queued():
    driver = ReplicationDriver("iot-hub", InMemoryGraphStore(), FakeProbe())
    result = await driver.replicate(GraphDelta(station_id="iot-hub"))
    assert result.delivered
    assert len(driver.queue) == 0


@pytest.mark.asyncio
async def test_queue_replays_in_order_when_primary_returns():
    primary = InMemoryGraphStore()
    probe = FakeProbe()
    driver = ReplicationDriver("iot-hub", InMemoryGraphStore(), probe, primary_store=primary)

    await driver.replicate(_delta("a"))
    await driver.replicate(GraphDelta(
        station_id="iot-hub", nodes_updated=[NodeChange(node_id="a", changes={"fitness_score": 77.0})],
    ))
    assert len(driver.queue) == 2

    probe.primary = True
    result = await driver.replicate(_delta("b"))

    assert result.delivered
    assert result.flushed == 2
    assert len(driver.queue) == 0
    # the update only lands if the add was replayed first
    assert (await primary.get_node("a")).fitness_score == 77.0
    assert await primary.get_node("b") is not None


@pytest.mark.asyncio
async def test_relay_receives_backlog_before_new_delta(relay):
    queue = OfflineQueue()
    queue.push(_delta("first"))
    queue.push(_delta("second"))
    driver = _relay_driver(relay, queue=queue)

    result = await driver.replicate(_delta("third"))

    assert result.mode == ReplicationMode.RELAY
    assert result.flushed == 2
    sent = [d["nodes_added"][0]["node_id"] for d in relay.deltas]
    assert sent == ["first", "second", "third"]
    assert all(d["station_id"] == "iot-hub" for d in relay.deltas)


@pytest.mark.asyncio
async def test_failed_send_falls_back_to_queue(relay):
    relay.fail = True
    driver = _relay_driver(relay)

    result = await driver.replicate(_delta("a"))

    assert result.queued
    assert "relay POST /api/neural/sync failed" in result.error
    assert len(driver.queue) == 1

    relay.fail = False
    assert await driver.flush() == 1
    assert len(driver.queue) == 0


@pytest.mark.asyncio
async def test_stalled_backlog_keeps_fifo(relay):
    queue = OfflineQueue()
    queue.push(_delta("old"))
    relay.fail = True
    driver = _relay_driver(relay, queue=queue)

    result = await driver.replicate(_delta("new"))

    assert result.queued
    assert [d.nodes_added[0].node_id for d in driver.queue.snapshot()] == ["old", "new"]


@pytest.mark.asyncio
async def test_direct_store_failure_is_queued():
    driver = ReplicationDriver(
        "iot-hub", InMemoryGraphStore(), FakeProbe(primary=True), primary_store=DownStore(),
    )
    result = await driver.replicate(_delta("a"))
    assert result.mode == ReplicationMode.DIRECT
    assert result.queued
    assert "primary went away" in result.error


@pytest.mark.asyncio
async def test_flush_offline_sends_nothing():
    driver = ReplicationDriver("iot-hub", InMemoryGraphStore(), FakeProbe())
    await driver.replicate(_delta("a"))
    assert await driver.flush() == 0
    assert len(driver.queue) == 1


def test_offline_queue_survives_restart(tmp_path):
    path = tmp_path / "state" / "queue.json"
    queue = OfflineQueue(path)
    queue.push(_delta("a"))
    queue.push(_delta("b"))
    queue.pop()

    restored = OfflineQueue(path)
    assert len(restored) == 1
    assert restored.peek().nodes_added[0].node_id == "b"


def test_offline_queue_ignores_corrupt_state(tmp_path):
    path = tmp_path / "queue.json"
    path.write_text("{not json")
    assert len(OfflineQueue(path)) == 0


# ── apply_delta ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_apply_delta_is_idempotent(store):
    await store.upsert_node(build_node("gone"))
    delta = GraphDelta(
        station_id="iot-hub",
        nodes_added=[build_node("a"), build_node("b")],
        nodes_removed=["gone"],
        edges_added=[build_edge("a", "b", weight=0.3)],
        edges_updated=[EdgeChange(edge_id="a->b", changes={"myelinated": True})],
        events=[EvolutionEvent(event_type=MutationType.EDGE_MYELINATED, target_id="a->b", station_id="iot-hub")],
    )

    await apply_delta(store, delta)
    nodes_once = await store.list_nodes()
    edges_once = await store.list_edges()
    await apply_delta(store, delta)

    assert await store.list_nodes() == nodes_once
    assert await store.list_edges() == edges_once
    assert (await store.get_edge("a->b")).myelinated is True
    assert await store.get_node("gone") is None
    assert len(await store.list_events()) == 1


@pytest.mark.asyncio
async def test_apply_delta_skips_updates_for_missing_rows(store):
    delta = GraphDelta(
        station_id="iot-hub",
        nodes_updated=[NodeChange(node_id="missing", changes={"fitness_score": 1.0})],
    )
    await apply_delta(store, delta)
    assert await store.list_nodes() == []


# ── Sync ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_direct_sync_publishes_own_rows_and_pulls_foreign_rows():
    local = InMemoryGraphStore()
    primary = InMemoryGraphStore()
    await local.upsert_node(build_node("mine", fitness_score=90.0))
    await local.upsert_node(build_node("unpublished", owner="scraper"))

    await primary.upsert_node(build_node("mine", fitness_score=10.0))
    await primary.upsert_node(build_node("theirs", owner="scraper"))
    await primary.upsert_edge(build_edge("theirs", "mine", owner="scraper"))

    driver = ReplicationDriver("iot-hub", local, FakeProbe(primary=True), primary_store=primary)
    totals = await driver.sync()

    assert totals == {"nodes": 1, "edges": 1, "removed": 0, "pushed": 1}
    assert (await primary.get_node("mine")).fitness_score == 90.0
    assert (await local.get_node("mine")).fitness_score == 90.0
    assert await local.get_node("theirs") is not None
    assert await local.get_edge("theirs->mine") is not None
    # never held by the primary, so nothing says its owner removed it
    assert await local.get_node("unpublished") is not None


@pytest.mark.asyncio
async def test_direct_sync_drops_rows_their_owner_removed():
    local = InMemoryGraphStore()
    primary = InMemoryGraphStore()
    await local.upsert_node(build_node("mine"))
    await primary.upsert_node(build_node("theirs", owner="scraper"))
    await primary.upsert_edge(build_edge("theirs", "mine", owner="scraper"))
    driver = ReplicationDriver("iot-hub", local, FakeProbe(primary=True), primary_store=primary)
    await driver.sync()

    await apply_delta(primary, GraphDelta(
        station_id="scraper", nodes_removed=["theirs"], edges_removed=["theirs->mine"],
    ))
    totals = await driver.sync()

    assert totals["removed"] == 2
    assert await local.get_node("theirs") is None
    assert await local.get_edge("theirs->mine") is None
    assert await local.get_node("mine") is not None


@pytest.mark.asyncio
async def test_direct_sync_leaves_rows_claimed_by_another_owner():
    local = InMemoryGraphStore()
    primary = InMemoryGraphStore()
    await local.upsert_node(build_node("meta-engine", owner="scraper", fitness_score=5.0))
    await primary.upsert_node(build_node("meta-engine", owner="iot-hub", fitness_score=70.0))
    driver = ReplicationDriver("scraper", local, FakeProbe(primary=True), primary_store=primary)

    totals = await driver.sync()

    assert totals["pushed"] == 0
    held = await primary.get_node("meta-engine")
    assert held.owner_station_id == "iot-hub"
    assert held.fitness_score == 70.0


@pytest.mark.asyncio
async def test_two_stations_converge_through_shared_primary():
    primary = InMemoryGraphStore()
    stations = {}
    for station_id in ("iot-hub", "scraper"):
        local = InMemoryGraphStore()
        await seed_genesis(local, station_id)
        driver = ReplicationDriver(station_id, local, FakeProbe(primary=True), primary_store=primary)
        stations[station_id] = (local, MaturationCycle(local, station_id, driver=driver))

    hub_local, hub_cycle = stations["iot-hub"]
    scraper_local, scraper_cycle = stations["scraper"]
    hub_node = await hub_local.get_node("iot-hub")
    hub_node.description = "Gateway station, relocated to rack 2"
    await hub_local.upsert_node(hub_node)

    await hub_cycle.run()
    hub_fitness = (await hub_local.get_node("iot-hub")).fitness_score
    await scraper_cycle.run()
    seen_by_scraper = await scraper_local.get_node("iot-hub")
    await hub_cycle.run()

    assert len(await hub_local.list_nodes()) == 12
    assert len(await scraper_local.list_nodes()) == 12
    assert await hub_local.get_node("julie") is not None
    assert await scraper_local.get_node("julie") is not None

    assert (await primary.get_node("iot-hub")).owner_station_id == "iot-hub"
    assert (await primary.get_node("scraper")).owner_station_id == "scraper"
    assert (await primary.get_node("scraper_intel")).owner_station_id == "scraper"

    assert seen_by_scraper.description == "Gateway station, relocated to rack 2"
    assert seen_by_scraper.fitness_score == hub_fitness
    assert (await hub_local.get_node("scraper")).owner_station_id == "scraper"


@pytest.mark.asyncio
async def test_relay_sync_merges_peer_subgraphs(relay):
    peer_nodes = [build_node("theirs", owner="scraper"), build_node("mine", fitness_score=1.0)]
    peer_edges = [build_edge("theirs", "mine", owner="scraper")]
    relay.subgraphs = [extract_subgraph(peer_nodes, peer_edges, "scraper").model_dump(mode="json")]

    local = InMemoryGraphStore()
    await local.upsert_node(build_node("mine", fitness_score=60.0))
    driver = _relay_driver(relay, local=local)

    totals = await driver.sync()

    assert totals["nodes"] == 1
    assert totals["edges"] == 1
    assert (await local.get_node("mine")).fitness_score == 60.0


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    [],
    {"subgraphs": [{"station_id": "scraper", "nodes": "not-a-list"}]},
    {"subgraphs": 7},
])
async def test_relay_client_rejects_malformed_subgraphs(relay, body):
    relay.subgraphs_body = body
    client = RelayClient(RELAY_URL, transport=relay.transport)
    with pytest.raises(RelayError, match="malformed subgraph list"):
        await client.fetch_subgraphs("iot-hub")


@pytest.mark.asyncio
async def test_relay_sync_survives_malformed_hub_reply(relay):
    relay.subgraphs_body = [{"station_id": "scraper"}]
    local = InMemoryGraphStore()
    await local.upsert_node(build_node("mine"))
    driver = _relay_driver(relay, local=local)

    totals = await driver.sync()

    assert totals == {"nodes": 0, "edges": 0, "removed": 0, "pushed": 0}
    assert await local.get_node("mine") is not None


@pytest.mark.asyncio
async def test_offline_sync_is_a_no_op():
    driver = ReplicationDriver("iot-hub", InMemoryGraphStore(), FakeProbe())
    assert await driver.sync() == {"nodes": 0, "edges": 0, "removed": 0, "pushed": 0}


@pytest.mark.asyncio
async def test_outbound_subgraph_is_edge_closed(store):
    await store.upsert_node(build_node("mine"))
    await store.upsert_node(build_node("theirs", owner="scraper"))
    await store.upsert_edge(build_edge("mine", "theirs"))
    driver = ReplicationDriver("iot-hub", store, FakeProbe())

    sub = await driver.outbound_subgraph()

    assert sub.is_edge_closed()
    assert sub.node_ids() == {"mine", "theirs"}


# ── Consensus announce ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_announce_only_in_relay_mode(relay):
    proposal = EvolutionProposal(
        type=MutationType.NODE_PRUNED, target_id="synth", mutation_class=MutationClass.DESTRUCTIVE,
    )
    request = ConsensusCoordinator().propose(proposal, "iot-hub", ["iot-hub", "scraper"])
    driver = _relay_driver(relay)

    assert await driver.announce(request) is False  # mode not detected yet

    await driver.detect_mode()
    assert await driver.announce(request) is True
    assert relay.announced[0]["proposal_id"] == request.proposal_id


@pytest.mark.asyncio
async def test_relay_client_wraps_http_errors(relay):
    relay.fail = True
    client = RelayClient(RELAY_URL, transport=relay.transport)
    with pytest.raises(RelayError):
        await client.push_delta(_delta("a"))

"""Station — one participant in the graph network, fully wired.

Every collaborator is passed in through the constructor so tests can
swap the store, probe or relay for fakes. from_settings() builds the
production wiring from NeuromeshSettings.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from neuromesh.config import NeuromeshSettings, settings as default_settings
from neuromesh.events.bus import EventBus
from neuromesh.exceptions import StoreUnavailableError
from neuromesh.graph.sqlite_store import SqliteGraphStore
from neuromesh.graph.store import GraphStore, InMemoryGraphStore
from neuromesh.graph.telemetry import TelemetryRecorder
from neuromesh.maturation.daemon import MaturationDaemon
from neuromesh.maturation.lifecycle import MaturationCycle
from neuromesh.network.consensus import ConsensusCoordinator
from neuromesh.network.replication import (
    HttpReachabilityProbe,
    OfflineQueue,
    ReachabilityProbe,
    RelayClient,
    ReplicationDriver,
)
from neuromesh.types import (
    MyelinationThreshold,
    PruningThreshold,
    SynaptogenesisThreshold,
)

_logger = logging.getLogger(__name__)


class Station:
    """Holds the store, coordinator, replication driver and maturation cycle
    of a single station."""

    def __init__(
        self,
        station_id: str,
        store: GraphStore | None = None,
        event_bus: EventBus | None = None,
        coordinator: ConsensusCoordinator | None = None,
        driver: ReplicationDriver | None = None,
        cycle: MaturationCycle | None = None,
        interval_seconds: float = 900,
        initial_delay: float = 0.0,
    ) -> None:
        self.station_id = station_id
        self.store = store if store is not None else InMemoryGraphStore()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.coordinator = coordinator if coordinator is not None else ConsensusCoordinator()
        self.driver = driver
        self.cycle = cycle or MaturationCycle(
            self.store,
            station_id,
            coordinator=self.coordinator,
            driver=driver,
            event_bus=self.event_bus,
        )
        self.telemetry = TelemetryRecorder(self.store, station_id, event_bus=self.event_bus)
        self.daemon = MaturationDaemon(
            self.cycle,
            interval_seconds=interval_seconds,
            initial_delay=initial_delay,
            event_bus=self.event_bus,
        )
        self._primary: GraphStore | None = None

    @classmethod
    def from_settings(
        cls,
        config: NeuromeshSettings | None = None,
        probe: ReachabilityProbe | None = None,
    ) -> Station:
        """Build a station backed by SQLite, with direct and relay replication
        enabled where configured."""
        config = config or default_settings
        bus = EventBus()
        store = SqliteGraphStore(str(config.db_path))
        primary = SqliteGraphStore(config.primary_db_path) if config.primary_db_path else None
        relay = (
            RelayClient(config.relay_url, timeout=config.relay_timeout_seconds)
            if config.relay_url
            else None
        )
        probe = probe or HttpReachabilityProbe(
            primary, config.relay_url, timeout=config.probe_timeout_seconds,
        )
        driver = ReplicationDriver(
            config.station_id,
            store,
            probe,
            primary_store=primary,
            relay=relay,
            queue=OfflineQueue(config.offline_queue_path),
            event_bus=bus,
        )
        coordinator = ConsensusCoordinator(timeout=timedelta(seconds=config.consensus_timeout_seconds))
        cycle = MaturationCycle(
            store,
            config.station_id,
            coordinator=coordinator,
            driver=driver,
            event_bus=bus,
            myelination=MyelinationThreshold(
                activation_count=config.myelination_activation_count,
                min_weight=config.myelination_min_weight,
            ),
            pruning=PruningThreshold(
                min_fitness=config.pruning_min_fitness,
                inactivity_days=config.pruning_inactivity_days,
                min_edge_weight=config.pruning_min_edge_weight,
                min_edge_activations=config.pruning_min_edge_activations,
            ),
            synaptogenesis=SynaptogenesisThreshold(
                min_co_activations=config.synaptogenesis_min_co_activations,
            ),
            co_activation_window=config.co_activation_window,
        )
        station = cls(
            config.station_id,
            store=store,
            event_bus=bus,
            coordinator=coordinator,
            driver=driver,
            cycle=cycle,
            interval_seconds=config.evolution_interval_seconds,
            initial_delay=config.evolution_initial_delay,
        )
        station._primary = primary
        return station

    async def initialize(self) -> None:
        """Create tables on the local store, and on the primary if reachable."""
        if isinstance(self.store, SqliteGraphStore):
            await self.store.initialize()
        if isinstance(self._primary, SqliteGraphStore):
            try:
                await self._primary.initialize()
            except StoreUnavailableError as e:
                _logger.warning("Primary store not initialized (%s); schema is created on next successful probe", e)

    async def start(self) -> None:
        await self.initialize()
        await self.daemon.start()

    async def stop(self) -> None:
        await self.daemon.stop()

    def __repr__(self) -> str:
        return f"Station(id={self.station_id!r}, store={self.store!r})"

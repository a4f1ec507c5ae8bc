"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class NeuromeshSettings(BaseSettings):
    station_id: str = "iot-hub"
    workspace_dir: Path = Path(".neuromesh")
    db_path: Path = Path(".neuromesh/graph.db")
    log_level: str = "INFO"

    # Shared primary store (direct replication). Empty = no shared store.
    primary_db_path: str = ""

    # Relay hub (store-and-forward replication)
    relay_url: str = "http://10.1.7.87:8000"
    relay_timeout_seconds: float = 10.0
    probe_timeout_seconds: float = 3.0

    # Offline replay queue, persisted so deltas survive restarts
    offline_queue_path: Path = Path(".neuromesh/offline_queue.json")

    # Maturation settings
    evolution_interval_seconds: int = 900  # 15 minutes
    evolution_initial_delay: int = 0  # Seconds to wait before first cycle (stagger stations)
    co_activation_window: int = 500  # Recent executions scanned for synaptogenesis
    consensus_timeout_seconds: int = 300  # 5 minutes

    # Threshold overrides
    myelination_activation_count: int = 100
    myelination_min_weight: float = 0.7
    pruning_min_fitness: float = 30.0
    pruning_inactivity_days: float = 7.0
    pruning_min_edge_weight: float = 0.1
    pruning_min_edge_activations: int = 5
    synaptogenesis_min_co_activations: int = 10

    model_config = {"env_prefix": "NEUROMESH_"}


settings = NeuromeshSettings()

"""Genesis — seed the graph with the known stations, capabilities and initial edges.

Stations own their own node and the peer capability node routed to
them; local capabilities belong to the seeding station. Edges belong to
the owner of their source node. Seeding is idempotent, so every station
can seed on first boot and converge on the same topology.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from neuromesh.graph.models import GraphEdge, GraphNode
from neuromesh.graph.store import GraphStore
from neuromesh.types import EdgeType, MaturationPhase, NodeStatus, NodeType

_logger = logging.getLogger(__name__)

NEUTRAL_FITNESS = 50.0
NEUTRAL_WEIGHT = 0.5


class GenesisNode(BaseModel):
    node_id: str
    node_type: NodeType
    name: str
    description: str
    capabilities: list[str] = Field(default_factory=list)
    owner: str = ""  # empty = the seeding station


class GenesisEdge(BaseModel):
    source: str
    target: str
    edge_type: EdgeType


GENESIS_NODES: list[GenesisNode] = [
    GenesisNode(
        node_id="meta-engine", node_type=NodeType.CAPABILITY, name="Meta-Engine",
        description="Task classification, model scoring, performance tracking, autonomous routing",
        capabilities=["task_classification", "model_scoring", "performance_tracking"],
    ),
    GenesisNode(
        node_id="model-manager", node_type=NodeType.CAPABILITY, name="Model Manager",
        description="Hardware detection, model discovery, lifecycle management",
        capabilities=["model_management", "hardware_detection", "huggingface_search"],
    ),
    GenesisNode(
        node_id="model-trainer", node_type=NodeType.CAPABILITY, name="Model Trainer",
        description="Dataset collection, training, adapter management, evaluation",
        capabilities=["model_training", "dataset_curation", "lora_adapters", "model_evaluation"],
    ),
    GenesisNode(
        node_id="memory-lancedb", node_type=NodeType.CAPABILITY, name="Memory (LanceDB)",
        description="Vector-based memory storage and semantic search",
        capabilities=["memory_search", "knowledge_retrieval"],
    ),
    GenesisNode(
        node_id="iot-hub", node_type=NodeType.STATION, name="IOT-HUB Station",
        description="Primary compute station: gateway, AI extensions, monitoring",
        capabilities=["iot", "smart_home", "sensors", "network_monitoring", "linux"],
        owner="iot-hub",
    ),
    GenesisNode(
        node_id="julie", node_type=NodeType.STATION, name="Julie Orchestrator",
        description="Central orchestrator and relay hub for the station network",
        capabilities=["orchestration", "station_management"],
        owner="julie",
    ),
    GenesisNode(
        node_id="scraper", node_type=NodeType.STATION, name="SCRAPER Station",
        description="Intelligence node: price scraping, anomaly detection, local LLM",
        capabilities=["price_monitoring", "hotel_scraping", "anomaly_detection", "local_llm", "web_scraping"],
        owner="scraper",
    ),
    GenesisNode(
        node_id="clerk", node_type=NodeType.STATION, name="CLERK Station",
        description="Learning node: inference, embeddings, summarization, analysis",
        capabilities=["hf_inference", "embeddings", "summarization", "analysis", "reporting"],
        owner="clerk",
    ),
    GenesisNode(
        node_id="social-intel", node_type=NodeType.STATION, name="SOCIAL-INTEL Station",
        description="Social intelligence node: messaging integration, sentiment analysis",
        capabilities=["social_monitoring", "telegram_integration", "sentiment_analysis"],
        owner="social-intel",
    ),
    GenesisNode(
        node_id="scraper_intel", node_type=NodeType.CAPABILITY, name="Scraper Intelligence",
        description="Routes pricing and anomaly tasks to the SCRAPER station",
        capabilities=["hotel_scraping", "price_monitoring", "anomaly_detection"],
        owner="scraper",
    ),
    GenesisNode(
        node_id="clerk_learning", node_type=NodeType.CAPABILITY, name="Clerk Learning",
        description="Routes inference, embedding and summarization tasks to the CLERK station",
        capabilities=["hf_inference", "embeddings", "summarization", "peer_inference"],
        owner="clerk",
    ),
    GenesisNode(
        node_id="social_intel", node_type=NodeType.CAPABILITY, name="Social Intelligence",
        description="Routes social monitoring and sentiment tasks to the SOCIAL-INTEL station",
        capabilities=["social_monitoring", "telegram_integration", "sentiment_analysis"],
        owner="social-intel",
    ),
]

GENESIS_EDGES: list[GenesisEdge] = [
    # Local capability data flows
    GenesisEdge(source="meta-engine", target="model-manager", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="meta-engine", target="model-trainer", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="meta-engine", target="memory-lancedb", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="model-manager", target="model-trainer", edge_type=EdgeType.DEPENDENCY),
    # IOT-HUB activates local capabilities
    GenesisEdge(source="iot-hub", target="meta-engine", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="iot-hub", target="model-manager", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="iot-hub", target="model-trainer", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="iot-hub", target="memory-lancedb", edge_type=EdgeType.ACTIVATION),
    # Julie orchestrates all stations
    GenesisEdge(source="julie", target="iot-hub", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="julie", target="meta-engine", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="julie", target="scraper", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="julie", target="clerk", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="julie", target="social-intel", edge_type=EdgeType.ACTIVATION),
    # Tandem connections to peer stations
    GenesisEdge(source="iot-hub", target="scraper", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="iot-hub", target="clerk", edge_type=EdgeType.DATA_FLOW),
    # Station -> capability activations
    GenesisEdge(source="scraper", target="scraper_intel", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="clerk", target="clerk_learning", edge_type=EdgeType.ACTIVATION),
    GenesisEdge(source="social-intel", target="social_intel", edge_type=EdgeType.ACTIVATION),
    # Meta-engine routes to peer capability nodes
    GenesisEdge(source="meta-engine", target="scraper_intel", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="meta-engine", target="clerk_learning", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="meta-engine", target="social_intel", edge_type=EdgeType.DATA_FLOW),
    GenesisEdge(source="scraper", target="clerk", edge_type=EdgeType.DATA_FLOW),
]


async def seed_genesis(store: GraphStore, station_id: str) -> dict[str, int]:
    """Create the genesis topology. Existing rows are left untouched."""
    owners: dict[str, str] = {}
    nodes_created = 0
    for seed in GENESIS_NODES:
        owner = seed.owner or station_id
        owners[seed.node_id] = owner
        created = await store.create_node(GraphNode(
            node_id=seed.node_id,
            node_type=seed.node_type,
            name=seed.name,
            description=seed.description,
            owner_station_id=owner,
            status=NodeStatus.ACTIVE,
            maturation_phase=MaturationPhase.GENESIS,
            fitness_score=NEUTRAL_FITNESS,
            capabilities=list(seed.capabilities),
        ))
        nodes_created += int(created)

    edges_created = 0
    for seed in GENESIS_EDGES:
        created = await store.create_edge(GraphEdge(
            source_node_id=seed.source,
            target_node_id=seed.target,
            edge_type=seed.edge_type,
            weight=NEUTRAL_WEIGHT,
            owner_station_id=owners[seed.source],
        ))
        edges_created += int(created)

    _logger.info(
        "Genesis seeded for %s: %d nodes, %d edges created",
        station_id, nodes_created, edges_created,
    )
    return {"nodes_created": nodes_created, "edges_created": edges_created}

"""Operator surface — neural:* handlers.

Each handler maps to one call into the station and returns a
JSON-serialisable dict, so the same functions back the CLI and any
HTTP adapter a deployment puts in front of them.
"""

from __future__ import annotations

from typing import Any

from neuromesh.graph.genesis import seed_genesis
from neuromesh.graph.models import ExecutionRecord
from neuromesh.maturation.lifecycle import determine_phase
from neuromesh.station import Station
from neuromesh.types import Vote


async def neural_status(station: Station) -> dict[str, Any]:
    nodes = await station.store.list_nodes()
    edges = await station.store.list_edges()
    executions = await station.store.count_executions(station.station_id)
    live = [n for n in nodes if not n.is_pruned]
    avg_fitness = sum(n.fitness_score for n in live) / len(live) if live else 0.0
    last_pass = station.event_bus.last("maturation.cycle_completed", source=station.station_id)

    return {
        "station_id": station.station_id,
        "phase": determine_phase(executions).value,
        "total_nodes": len(nodes),
        "owned_nodes": sum(1 for n in nodes if n.owner_station_id == station.station_id),
        "pruned_nodes": len(nodes) - len(live),
        "total_edges": len(edges),
        "myelinated_edges": sum(1 for e in edges if e.myelinated),
        "total_executions": executions,
        "avg_fitness": round(avg_fitness, 1),
        "store_connected": await station.store.ping(),
        "replication_mode": station.driver.last_mode.value if station.driver else "local",
        "queued_deltas": len(station.driver.queue) if station.driver else 0,
        "pending_consensus": len(station.coordinator),
        "daemon_running": station.daemon.is_running,
        "last_pass_at": last_pass.timestamp.isoformat() if last_pass else None,
    }


async def neural_topology(station: Station) -> dict[str, Any]:
    nodes = await station.store.list_nodes()
    edges = await station.store.list_edges()
    executions = await station.store.count_executions(station.station_id)
    return {
        "station_id": station.station_id,
        "nodes": [n.model_dump(mode="json") for n in nodes],
        "edges": [e.model_dump(mode="json") for e in edges],
        "phase": determine_phase(executions).value,
        "total_executions": executions,
    }


async def neural_evolve(station: Station) -> dict[str, Any]:
    """Run one maturation pass now. Nothing to evolve is still a success."""
    report = await station.cycle.run(skip_if_busy=True)
    return report.model_dump(mode="json")


async def neural_query(
    station: Station,
    capability: str = "",
    task: str = "",
    limit: int = 5,
) -> dict[str, Any]:
    """Nodes able to serve a capability or task, fittest first."""
    terms = {t.lower() for t in task.replace(",", " ").split() if len(t) > 2}
    wanted = capability.lower()
    matches = []
    for node in await station.store.list_nodes():
        if node.is_pruned:
            continue
        caps = {c.lower() for c in node.capabilities}
        if wanted and wanted not in caps:
            continue
        if terms:
            haystack = " ".join([node.name, node.description, *node.capabilities]).lower()
            if not any(t in haystack for t in terms):
                continue
        if not wanted and not terms:
            continue
        matches.append(node)

    matches.sort(key=lambda n: (-n.fitness_score, n.node_id))
    return {
        "station_id": station.station_id,
        "capability": capability,
        "task": task,
        "matches": [
            {
                "node_id": n.node_id,
                "name": n.name,
                "node_type": n.node_type.value,
                "owner_station_id": n.owner_station_id,
                "fitness_score": n.fitness_score,
                "capabilities": n.capabilities,
            }
            for n in matches[:limit]
        ],
    }


async def neural_pending(station: Station) -> dict[str, Any]:
    events = await station.store.list_pending_events()
    consensus = []
    for request in station.coordinator.pending():
        entry = request.model_dump(mode="json")
        entry["votes"] = {k: v.value for k, v in station.coordinator.votes_for(request.proposal_id).items()}
        consensus.append(entry)
    return {
        "events": [e.model_dump(mode="json") for e in events],
        "consensus": consensus,
    }


async def neural_vote(
    station: Station,
    proposal_id: str,
    vote: str,
    voter_station_id: str = "",
) -> dict[str, Any]:
    voter = voter_station_id or station.station_id
    accepted = await station.cycle.cast_vote(proposal_id, voter, vote)
    return {"proposal_id": proposal_id, "station_id": voter, "vote": vote, "accepted": accepted}


async def neural_approve(station: Station, event_id: str) -> dict[str, Any]:
    return {"event_id": event_id, "approved": await station.cycle.approve_event(event_id)}


async def neural_reject(station: Station, event_id: str) -> dict[str, Any]:
    return {"event_id": event_id, "rejected": await station.cycle.reject_event(event_id)}


async def neural_genesis(station: Station) -> dict[str, Any]:
    result = await seed_genesis(station.store, station.station_id)
    return {"station_id": station.station_id, **result}


async def neural_events(station: Station, limit: int = 50) -> dict[str, Any]:
    events = await station.store.list_events(station.station_id, limit=limit)
    return {"events": [e.model_dump(mode="json") for e in events]}


async def neural_executions(station: Station, limit: int = 100) -> dict[str, Any]:
    records = await station.store.list_executions(station.station_id, limit=limit)
    return {"executions": [r.model_dump(mode="json") for r in records]}


async def neural_record(station: Station, payload: dict[str, Any]) -> dict[str, Any]:
    """Ingest one execution record from the task-execution layer."""
    record = ExecutionRecord.model_validate({"station_id": station.station_id, **payload})
    proposals = await station.telemetry.record_execution(record)
    return {
        "execution_id": record.id,
        "weights_changed": [p.model_dump(mode="json") for p in proposals],
    }


def parse_vote(value: str) -> Vote | None:
    try:
        vote = Vote(value.lower())
    except ValueError:
        return None
    return None if vote == Vote.TIMEOUT else vote

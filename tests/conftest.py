"""Shared test fixtures: graph row factories and a fixed clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from neuromesh.graph.models import GraphEdge, GraphNode
from neuromesh.graph.store import InMemoryGraphStore
from neuromesh.types import NodeType

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def build_node(node_id: str, owner: str = "iot-hub", **overrides) -> GraphNode:
    fields = {
        "node_id": node_id,
        "node_type": NodeType.CAPABILITY,
        "name": node_id,
        "owner_station_id": owner,
    }
    fields.update(overrides)
    return GraphNode(**fields)


def build_edge(source: str, target: str, owner: str = "iot-hub", **overrides) -> GraphEdge:
    fields = {
        "source_node_id": source,
        "target_node_id": target,
        "owner_station_id": owner,
    }
    fields.update(overrides)
    return GraphEdge(**fields)


@pytest.fixture
def make_node():
    return build_node


@pytest.fixture
def make_edge():
    return build_edge


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    return InMemoryGraphStore()


class FakeClock:
    """Manually advanced clock for timeout tests."""

    def __init__(self, start: datetime = NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()

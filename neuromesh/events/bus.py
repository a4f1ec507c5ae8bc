"""Station event bus — in-process pub/sub with wildcard topics.

Topics emitted by a station, grouped by prefix:

  graph.execution_recorded       telemetry ingested an execution record
  maturation.cycle_started       a maturation pass began
  maturation.cycle_completed     a pass finished (carries its counts)
  maturation.phase_transition    the station reached a new maturation phase
  maturation.approval_requested  a destructive mutation awaits the operator
  consensus.requested            a cross-station vote was opened
  consensus.vote_cast            a vote was accepted
  consensus.resolved             a vote was decided
  replication.mode_changed       direct / relay / offline switched
  replication.delta_sent         a delta reached the primary store or hub

Subscribing to "consensus.*" receives the whole consensus family. Every
event carries the emitting station in `source`, so one bus can be shared
by several stations hosted in the same process.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Awaitable

from pydantic import BaseModel, Field

from neuromesh.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """Something that happened on a station."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""  # station id
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Routes station events to subscribers and keeps a bounded history.

    Handlers run concurrently; one that raises is logged and skipped so a
    broken subscriber never stalls a maturation pass.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        event = Event(topic=topic, data=data or {}, source=source)

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]

        handlers = [
            handler
            for pattern, subscribed in self._subscribers.items()
            if fnmatch.fnmatch(topic, pattern)
            for handler in subscribed
        ]
        if handlers:
            results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    _logger.warning("Subscriber of '%s' from %s failed: %s", topic, source or "?", result)

        return event

    def history(self, topic_filter: str = "*", limit: int = 50, source: str = "") -> list[Event]:
        """Recent events, newest first. `source` narrows to one station."""
        events = [
            e for e in self._history
            if (topic_filter == "*" or fnmatch.fnmatch(e.topic, topic_filter))
            and (not source or e.source == source)
        ]
        return list(reversed(events[-limit:]))

    def last(self, topic_filter: str, source: str = "") -> Event | None:
        """Most recent matching event, e.g. the last completed pass of a station."""
        found = self.history(topic_filter, limit=1, source=source)
        return found[0] if found else None

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())

    def topics(self) -> list[str]:
        return sorted({e.topic for e in self._history})

"""CLI runtime context — bridges the sync CLI to the async station."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from neuromesh.config import settings
from neuromesh.station import Station


class NeuromeshContext:
    """Singleton runtime context that holds the local station."""

    _instance: NeuromeshContext | None = None

    def __init__(self) -> None:
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        self.station = Station.from_settings(settings)
        self._initialized = False

    async def ensure_station(self) -> Station:
        """Create the workspace and tables on first use (async)."""
        if not self._initialized:
            settings.workspace_dir.mkdir(parents=True, exist_ok=True)
            settings.db_path.parent.mkdir(parents=True, exist_ok=True)
            await self.station.initialize()
            self._initialized = True
        return self.station

    @classmethod
    def get(cls) -> NeuromeshContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)

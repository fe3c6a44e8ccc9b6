from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

from bypass_router.utils.persistence import JsonFileStore

COUNTER_FIELDS = (
    "total_requests",
    "successful_requests",
    "failed_requests",
    "cache_hits",
)


class RequestOutcome(str, Enum):
    SUCCESS = "success"
    CACHE_HIT = "cache_hit"
    FAILURE = "failure"


def _counters(raw: dict[str, Any]) -> dict[str, int]:
    status: dict[str, int] = {}
    for name in COUNTER_FIELDS:
        value = raw.get(name, 0)
        status[name] = int(value) if isinstance(value, (int, float)) else 0
    return status


class StatusService:
    """Persisted request counters for the bypass endpoint."""

    def __init__(self, store: JsonFileStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def record(self, outcome: RequestOutcome) -> dict[str, int]:
        async with self._lock:
            status = await self.snapshot()
            status["total_requests"] += 1
            if outcome is RequestOutcome.FAILURE:
                status["failed_requests"] += 1
            else:
                # A cache hit is still a successful request.
                status["successful_requests"] += 1
                if outcome is RequestOutcome.CACHE_HIT:
                    status["cache_hits"] += 1
            await asyncio.to_thread(self._store.write, status)
        return status

    async def snapshot(self) -> dict[str, int]:
        return _counters(await asyncio.to_thread(self._store.load_mapping))

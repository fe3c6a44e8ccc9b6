from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from bypass_router.config import CacheConfig
from bypass_router.utils.persistence import JsonFileStore


@dataclass(slots=True)
class CacheEntry:
    response: Any
    timestamp: int

    def as_document(self) -> dict[str, Any]:
        return {"response": self.response, "timestamp": self.timestamp}


def _now_ms() -> int:
    return int(time.time() * 1000)


class UrlCache:
    """Resolved results keyed by the exact requested URL.

    Two expiry rules apply together. A read treats an entry older than the
    window as a miss, and a background task empties the whole document every
    flush interval regardless of entry age. An entry written just before a
    flush therefore may live only seconds.
    """

    def __init__(
        self,
        store: JsonFileStore,
        *,
        config: CacheConfig | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        config = config or CacheConfig()
        self._store = store
        self._window_ms = int(config.window_seconds * 1000)
        self._flush_interval_seconds = float(config.flush_interval_seconds)
        self._logger = logger
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    async def get(self, url: str) -> CacheEntry | None:
        document = await self.snapshot()
        raw = document.get(url)
        if not isinstance(raw, dict):
            return None
        timestamp = raw.get("timestamp")
        if not isinstance(timestamp, (int, float)) or "response" not in raw:
            return None
        if self._clock() - int(timestamp) >= self._window_ms:
            return None
        return CacheEntry(response=raw["response"], timestamp=int(timestamp))

    async def put(self, url: str, result: Any) -> CacheEntry:
        entry = CacheEntry(response=result, timestamp=self._clock())
        async with self._lock:
            document = await asyncio.to_thread(self._store.load_mapping)
            document[url] = entry.as_document()
            await asyncio.to_thread(self._store.write, document)
        return entry

    async def flush_all(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._store.write, {})

    async def snapshot(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._store.load_mapping)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="url-cache-flusher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            try:
                await self.flush_all()
                if self._logger is not None:
                    self._logger.info("url_cache_flushed path=%s", self._store.path)
            except Exception as exc:
                if self._logger is not None:
                    self._logger.warning("url_cache_flush_failed error=%s", str(exc))

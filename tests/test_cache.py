from __future__ import annotations

import asyncio
from pathlib import Path

from bypass_router.cache import CacheEntry, UrlCache
from bypass_router.config import CacheConfig
from bypass_router.utils.persistence import JsonFileStore

URL = "https://link.test/page"


class _Clock:
    def __init__(self, now_ms: int) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def test_put_then_get_returns_entry(tmp_path: Path) -> None:
    clock = _Clock(1_000_000)

    async def _run() -> CacheEntry | None:
        cache = UrlCache(JsonFileStore(tmp_path / "urls.json"), clock=clock)
        await cache.put(URL, {"key": "abc"})
        return await cache.get(URL)

    entry = asyncio.run(_run())

    assert entry is not None
    assert entry.response == {"key": "abc"}
    assert entry.timestamp == 1_000_000


def test_get_treats_entries_at_or_past_window_as_miss(tmp_path: Path) -> None:
    clock = _Clock(0)

    async def _run() -> list[CacheEntry | None]:
        cache = UrlCache(
            JsonFileStore(tmp_path / "urls.json"),
            config=CacheConfig(window_seconds=10.0),
            clock=clock,
        )
        await cache.put(URL, "ok")
        results = []
        clock.now_ms = 9_999
        results.append(await cache.get(URL))
        clock.now_ms = 10_000
        results.append(await cache.get(URL))
        return results

    before_window, at_window = asyncio.run(_run())

    assert before_window is not None
    assert at_window is None


def test_put_overwrites_existing_entry(tmp_path: Path) -> None:
    clock = _Clock(100)

    async def _run() -> CacheEntry | None:
        cache = UrlCache(JsonFileStore(tmp_path / "urls.json"), clock=clock)
        await cache.put(URL, "first ok")
        clock.now_ms = 200
        await cache.put(URL, "second ok")
        return await cache.get(URL)

    entry = asyncio.run(_run())

    assert entry is not None
    assert entry.response == "second ok"
    assert entry.timestamp == 200


def test_flush_all_empties_every_entry(tmp_path: Path) -> None:
    async def _run() -> dict[str, object]:
        cache = UrlCache(JsonFileStore(tmp_path / "urls.json"))
        await cache.put(URL, "ok")
        await cache.put("https://link.test/other", "ok")
        await cache.flush_all()
        return await cache.snapshot()

    assert asyncio.run(_run()) == {}


def test_background_flush_clears_fresh_entries(tmp_path: Path) -> None:
    async def _run() -> tuple[CacheEntry | None, CacheEntry | None]:
        cache = UrlCache(
            JsonFileStore(tmp_path / "urls.json"),
            config=CacheConfig(window_seconds=600.0, flush_interval_seconds=0.05),
        )
        await cache.put(URL, "ok")
        before = await cache.get(URL)
        await cache.start()
        try:
            await asyncio.sleep(0.2)
        finally:
            await cache.stop()
        return before, await cache.get(URL)

    before, after = asyncio.run(_run())

    assert before is not None
    assert after is None


def test_unreadable_document_is_treated_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "urls.json"
    path.write_text("{not json", encoding="utf-8")

    async def _run() -> CacheEntry | None:
        return await UrlCache(JsonFileStore(path)).get(URL)

    assert asyncio.run(_run()) is None

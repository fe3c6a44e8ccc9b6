from __future__ import annotations

import asyncio
from typing import Any

from bypass_router.utils.persistence import JsonFileStore

UPDATE_FLAG_VALUES = {"true", "false"}


def _default_document() -> dict[str, str]:
    return {"result": "false", "linkUp": ""}


class ApkUpdateStore:
    """Flag telling the mobile client whether a new APK is available.

    A missing or unreadable document reads as absent; the next update starts
    again from the defaults.
    """

    def __init__(self, store: JsonFileStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def read(self) -> dict[str, Any] | None:
        payload = await asyncio.to_thread(self._store.load_mapping)
        if not payload:
            return None
        return {
            "result": payload.get("result", "false"),
            "linkUp": payload.get("linkUp", ""),
        }

    async def update(
        self, *, up: str | None = None, link: str | None = None
    ) -> dict[str, Any]:
        async with self._lock:
            document = await self.read() or _default_document()
            if up in UPDATE_FLAG_VALUES:
                document["result"] = up
            if link:
                document["linkUp"] = link
            await asyncio.to_thread(self._store.write, document)
        return document

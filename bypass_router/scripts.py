from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from bypass_router.utils.persistence import JsonFileStore

MIN_AUTHOR_LENGTH = 3
MIN_SCRIPT_LENGTH = 10
REQUIRED_FIELDS = ("id", "nome", "script", "status", "data")

# Letters, digits, whitespace and basic punctuation only.
_ALLOWED_TEXT = re.compile(r"^[\w\s.,;:!?()'\"-]+$", re.ASCII)

logger = logging.getLogger("uvicorn.error")


class ScriptStatus(str, Enum):
    IN_REVIEW = "Em análise"
    APPROVED = "Aprovado"
    REJECTED = "Rejeitado"


class ScriptRejected(ValueError):
    """A submission or moderation request failed validation."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validate_submission(author: Any, script: Any) -> None:
    if not isinstance(author, str) or len(author) < MIN_AUTHOR_LENGTH:
        raise ScriptRejected(
            f"Invalid name (at least {MIN_AUTHOR_LENGTH} characters)."
        )
    if not isinstance(script, str) or len(script) < MIN_SCRIPT_LENGTH:
        raise ScriptRejected(
            f"Invalid script (at least {MIN_SCRIPT_LENGTH} characters)."
        )
    if not _ALLOWED_TEXT.match(author):
        raise ScriptRejected("Name contains invalid characters.")
    if not _ALLOWED_TEXT.match(script):
        raise ScriptRejected("Script contains invalid characters.")


class ScriptStore:
    """User-submitted scripts awaiting moderation, kept as one JSON list.

    Entries keep the document field names the mobile client reads:
    ``id``, ``nome`` (author), ``script``, ``status`` and ``data`` (ISO UTC
    submission time). Entries missing any of them are ignored on load.
    """

    def __init__(
        self,
        store: JsonFileStore,
        *,
        daily_limit: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._daily_limit = max(1, int(daily_limit))
        self._clock = clock
        self._lock = asyncio.Lock()

    async def submit(self, author: Any, script: Any) -> dict[str, Any]:
        validate_submission(author, script)
        async with self._lock:
            scripts = await self._load()
            if any(item["script"] == script for item in scripts):
                raise ScriptRejected("Duplicate script.")

            now = self._clock()
            today = now.date().isoformat()
            submitted_today = sum(
                1
                for item in scripts
                if item["nome"] == author and str(item["data"]).startswith(today)
            )
            if submitted_today >= self._daily_limit:
                raise ScriptRejected("Daily submission limit reached.")

            entry = {
                "id": max((int(item["id"]) for item in scripts), default=0) + 1,
                "nome": author,
                "script": script,
                "status": ScriptStatus.IN_REVIEW.value,
                "data": _timestamp(now),
            }
            scripts.append(entry)
            await asyncio.to_thread(self._store.write, scripts)

        logger.info("script_submitted id=%d author=%s", entry["id"], author)
        return entry

    async def page(self, *, page: int = 1, limit: int = 10) -> dict[str, Any]:
        page = max(1, page)
        limit = max(1, limit)
        scripts = await self._load()
        start = (page - 1) * limit
        return {"total": len(scripts), "scripts": scripts[start : start + limit]}

    async def set_status(self, script_id: int, status: Any) -> bool:
        try:
            new_status = ScriptStatus(status)
        except ValueError as exc:
            raise ScriptRejected("Invalid or missing status.") from exc

        async with self._lock:
            scripts = await self._load()
            for item in scripts:
                if item["id"] == script_id:
                    item["status"] = new_status.value
                    break
            else:
                return False
            await asyncio.to_thread(self._store.write, scripts)

        logger.info("script_status_changed id=%d status=%s", script_id, new_status.value)
        return True

    async def remove(self, script_id: int) -> bool:
        async with self._lock:
            scripts = await self._load()
            remaining = [item for item in scripts if item["id"] != script_id]
            if len(remaining) == len(scripts):
                return False
            await asyncio.to_thread(self._store.write, remaining)

        logger.info("script_removed id=%d", script_id)
        return True

    async def _load(self) -> list[dict[str, Any]]:
        raw = await asyncio.to_thread(self._store.load_list)
        return [
            item
            for item in raw
            if isinstance(item, dict)
            and all(item.get(name) for name in REQUIRED_FIELDS)
            and isinstance(item["id"], int)
        ]

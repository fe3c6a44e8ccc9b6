from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger("uvicorn.error")


class JsonFileStore:
    """A single JSON document on disk.

    Every write replaces the whole document through a sibling temp file, so a
    reader sees either the previous document or the new one. The ``load_*``
    helpers never raise for a missing, blank, corrupt or wrongly shaped
    document; they log and hand back an empty container instead.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self, *, default: Any = None) -> Any:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        if not raw.strip():
            return default
        payload = json.loads(raw)
        return default if payload is None else payload

    def load_mapping(self) -> dict[str, Any]:
        return self._load_shaped(dict)

    def load_list(self) -> list[Any]:
        return self._load_shaped(list)

    def write(self, payload: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        )
        temp_path = Path(handle.name)
        try:
            with handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
            temp_path.replace(self.path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

    def _load_shaped(self, kind: type) -> Any:
        try:
            payload = self.load(default=None)
        except (OSError, ValueError) as exc:
            logger.warning("json_document_unreadable path=%s error=%s", self.path, exc)
            return kind()
        if payload is None:
            return kind()
        if not isinstance(payload, kind):
            logger.warning(
                "json_document_unexpected_shape path=%s expected=%s found=%s",
                self.path,
                kind.__name__,
                type(payload).__name__,
            )
            return kind()
        return payload

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from bypass_router.utils.persistence import JsonFileStore

URL_PLACEHOLDER = "{url}"

logger = logging.getLogger("uvicorn.error")


class RegistryFetchFailed(RuntimeError):
    """Raised when the remote upstream list cannot be fetched or parsed."""


class ExtractionMode(str, Enum):
    RAW_BODY = "raw_body"
    JSON_FIELD = "json_field"


class UpstreamDescriptor(BaseModel):
    url: str
    parse_json: bool = False
    response_key: str | None = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("url")
    @classmethod
    def _require_url_template(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Upstream url must not be empty.")
        if URL_PLACEHOLDER not in normalized:
            raise ValueError(
                f"Upstream url must contain the {URL_PLACEHOLDER} placeholder."
            )
        try:
            sample = httpx.URL(normalized.replace(URL_PLACEHOLDER, "placeholder"))
        except (httpx.InvalidURL, ValueError) as exc:
            raise ValueError(f"Upstream url is not a valid URL: {exc}") from exc
        if sample.scheme not in {"http", "https"} or not sample.host:
            raise ValueError("Upstream url must be an absolute http(s) URL.")
        return normalized

    @property
    def endpoint_id(self) -> str:
        return self.url

    @property
    def extraction_mode(self) -> ExtractionMode:
        if self.parse_json:
            return ExtractionMode.JSON_FIELD
        return ExtractionMode.RAW_BODY

    def render(self, target_url: str) -> str:
        # Same escaping as encodeURIComponent, which upstream APIs expect.
        encoded = quote(target_url, safe="-_.!~*'()")
        return self.url.replace(URL_PLACEHOLDER, encoded, 1)

    def as_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def parse_descriptors(raw: Any, *, source: str) -> list[UpstreamDescriptor]:
    if not isinstance(raw, dict):
        return []
    entries = raw.get("apis")
    if not isinstance(entries, list):
        return []

    descriptors: list[UpstreamDescriptor] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        try:
            descriptors.append(UpstreamDescriptor.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "upstream_descriptor_skipped source=%s index=%d error=%s",
                source,
                index,
                exc.errors()[0].get("msg") if exc.errors() else str(exc),
            )
    return descriptors


class UpstreamRegistry:
    """Remote base list of upstreams plus a locally persisted supplement.

    The remote list is fetched again on every ``load()``. When it cannot be
    fetched the supplementary list still serves requests.
    """

    def __init__(
        self,
        *,
        source_url: str,
        supplementary_store: JsonFileStore,
        client: httpx.AsyncClient,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._source_url = source_url
        self._supplementary_store = supplementary_store
        self._client = client
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._supplementary_lock = asyncio.Lock()

    async def fetch_remote(self) -> list[UpstreamDescriptor]:
        try:
            response = await self._client.get(
                self._source_url,
                timeout=self._timeout_seconds,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise RegistryFetchFailed(
                f"Could not reach upstream list ({exc.__class__.__name__}): {exc}"
            ) from exc

        if response.status_code >= 400:
            raise RegistryFetchFailed(
                f"Failed to fetch upstream list ({response.status_code})."
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RegistryFetchFailed("Upstream list is not valid JSON.") from exc
        if not isinstance(body, dict):
            raise RegistryFetchFailed(
                "Invalid upstream list: expected top-level object."
            )
        return parse_descriptors(body, source="remote")

    async def load_remote(self) -> list[UpstreamDescriptor]:
        try:
            return await self.fetch_remote()
        except RegistryFetchFailed as exc:
            logger.warning(
                "registry_fetch_failed source_url=%s error=%s", self._source_url, exc
            )
            return []

    def load_supplementary(self) -> list[UpstreamDescriptor]:
        return parse_descriptors(
            self._supplementary_store.load_mapping(), source="supplementary"
        )

    async def load(self) -> list[UpstreamDescriptor]:
        remote = await self.load_remote()
        supplementary = await asyncio.to_thread(self.load_supplementary)
        return [*remote, *supplementary]

    async def add_supplementary(self, descriptor: UpstreamDescriptor) -> bool:
        remote = await self.load_remote()
        if any(item.endpoint_id == descriptor.endpoint_id for item in remote):
            return False

        async with self._supplementary_lock:
            supplementary = await asyncio.to_thread(self.load_supplementary)
            if any(
                item.endpoint_id == descriptor.endpoint_id for item in supplementary
            ):
                return False
            supplementary.append(descriptor)
            payload = {"apis": [item.as_document() for item in supplementary]}
            await asyncio.to_thread(self._supplementary_store.write, payload)

        logger.info("supplementary_upstream_added endpoint=%s", descriptor.endpoint_id)
        return True

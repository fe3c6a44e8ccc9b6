from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx

from bypass_router.registry import (
    ExtractionMode,
    RegistryFetchFailed,
    UpstreamDescriptor,
    UpstreamRegistry,
)
from bypass_router.utils.persistence import JsonFileStore

REGISTRY_URL = "https://registry.test/apis.json"
REMOTE_APIS = [
    {"url": "https://alpha.test/bypass?url={url}", "parse_json": False},
    {"url": "https://beta.test/api?link={url}", "parse_json": True, "response_key": "result"},
]


def _registry(tmp_path: Path, handler: httpx.MockTransport) -> UpstreamRegistry:
    return UpstreamRegistry(
        source_url=REGISTRY_URL,
        supplementary_store=JsonFileStore(tmp_path / "apisDat.json"),
        client=httpx.AsyncClient(transport=handler),
    )


def _serving(apis: list[dict[str, object]]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == REGISTRY_URL
        return httpx.Response(status_code=200, json={"apis": apis})

    return httpx.MockTransport(handler)


def test_descriptor_render_encodes_target_url() -> None:
    descriptor = UpstreamDescriptor(url="https://alpha.test/bypass?url={url}")

    rendered = descriptor.render("https://link.test/a?b=1&c=2")

    assert rendered == (
        "https://alpha.test/bypass?url=https%3A%2F%2Flink.test%2Fa%3Fb%3D1%26c%3D2"
    )
    assert descriptor.extraction_mode is ExtractionMode.RAW_BODY


def test_descriptor_extraction_mode_follows_parse_json() -> None:
    descriptor = UpstreamDescriptor(
        url="https://beta.test/{url}", parse_json=True, response_key="result"
    )

    assert descriptor.extraction_mode is ExtractionMode.JSON_FIELD
    assert descriptor.as_document() == {
        "url": "https://beta.test/{url}",
        "parse_json": True,
        "response_key": "result",
    }


def test_load_combines_remote_and_supplementary_lists(tmp_path: Path) -> None:
    (tmp_path / "apisDat.json").write_text(
        json.dumps({"apis": [{"url": "https://gamma.test/{url}"}]}), encoding="utf-8"
    )

    async def _run() -> list[UpstreamDescriptor]:
        registry = _registry(tmp_path, _serving(REMOTE_APIS))
        return await registry.load()

    descriptors = asyncio.run(_run())

    assert [item.endpoint_id for item in descriptors] == [
        "https://alpha.test/bypass?url={url}",
        "https://beta.test/api?link={url}",
        "https://gamma.test/{url}",
    ]
    assert descriptors[1].response_key == "result"


def test_load_skips_malformed_entries(tmp_path: Path) -> None:
    apis = [
        {"url": "https://alpha.test/{url}"},
        {"parse_json": True},
        "not-an-object",
        {"url": "   "},
        {"url": "https://no-placeholder.test/bypass"},
        {"url": "https://bad.test:abc/x?u={url}"},
        {"url": "ftp://files.test/{url}"},
    ]

    async def _run() -> list[UpstreamDescriptor]:
        return await _registry(tmp_path, _serving(apis)).load()

    descriptors = asyncio.run(_run())

    assert [item.endpoint_id for item in descriptors] == ["https://alpha.test/{url}"]


def test_remote_failure_degrades_to_supplementary_list(tmp_path: Path) -> None:
    (tmp_path / "apisDat.json").write_text(
        json.dumps({"apis": [{"url": "https://gamma.test/{url}"}]}), encoding="utf-8"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> list[UpstreamDescriptor]:
        return await _registry(tmp_path, httpx.MockTransport(handler)).load()

    descriptors = asyncio.run(_run())

    assert [item.endpoint_id for item in descriptors] == ["https://gamma.test/{url}"]


def test_fetch_remote_raises_on_error_status(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=503, text="unavailable")

    async def _run() -> None:
        registry = _registry(tmp_path, httpx.MockTransport(handler))
        try:
            await registry.fetch_remote()
        except RegistryFetchFailed as exc:
            assert "503" in str(exc)
        else:
            raise AssertionError("expected RegistryFetchFailed")
        assert await registry.load() == []

    asyncio.run(_run())


def test_add_supplementary_persists_and_rejects_duplicates(tmp_path: Path) -> None:
    store_path = tmp_path / "apisDat.json"
    new_api = UpstreamDescriptor(url="https://delta.test/{url}", parse_json=False)
    remote_duplicate = UpstreamDescriptor(url=REMOTE_APIS[0]["url"])

    async def _run() -> tuple[bool, bool, bool]:
        registry = _registry(tmp_path, _serving(REMOTE_APIS))
        added = await registry.add_supplementary(new_api)
        again = await registry.add_supplementary(new_api)
        from_remote = await registry.add_supplementary(remote_duplicate)
        return added, again, from_remote

    added, again, from_remote = asyncio.run(_run())

    assert added is True
    assert again is False
    assert from_remote is False
    persisted = json.loads(store_path.read_text(encoding="utf-8"))
    assert persisted == {
        "apis": [{"url": "https://delta.test/{url}", "parse_json": False}]
    }

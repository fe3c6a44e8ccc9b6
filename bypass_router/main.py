from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from bypass_router.apk_update import ApkUpdateStore
from bypass_router.cache import UrlCache
from bypass_router.classifier import ResponseClassifier
from bypass_router.config import load_resolver_config
from bypass_router.gateway.auth import SharedSecretGuard, error_response
from bypass_router.performance import PerformanceTracker
from bypass_router.registry import UpstreamDescriptor, UpstreamRegistry
from bypass_router.resolver import (
    FeatureDisabled,
    ResolveSource,
    Resolver,
    ResolverError,
)
from bypass_router.scripts import ScriptRejected, ScriptStore
from bypass_router.settings import Settings, get_settings
from bypass_router.status import RequestOutcome, StatusService
from bypass_router.utils.persistence import JsonFileStore

app = FastAPI(
    title="Bypass Router",
    description="Resolves links by racing third-party bypass APIs.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def shared_secret_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    guard: SharedSecretGuard | None = getattr(app.state, "guard", None)
    if guard is not None:
        rejection = guard.check_request(request)
        if rejection is not None:
            return rejection
    return await call_next(request)


def _build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.upstream_timeout_seconds,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        follow_redirects=True,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    resolver_config = load_resolver_config(settings.resolver_config_path)
    client = _build_http_client(settings)

    tracker = PerformanceTracker(resolver_config.scoring)
    url_cache = UrlCache(
        JsonFileStore(settings.url_cache_path),
        config=resolver_config.cache,
        logger=logger,
    )
    registry = UpstreamRegistry(
        source_url=settings.upstreams_source_url,
        supplementary_store=JsonFileStore(settings.supplementary_upstreams_path),
        client=client,
        timeout_seconds=settings.upstreams_source_timeout_seconds,
    )
    resolver = Resolver(
        registry=registry,
        tracker=tracker,
        cache=url_cache,
        classifier=ResponseClassifier(resolver_config.classifier),
        client=client,
        retry=resolver_config.retry,
        timeout_seconds=settings.upstream_timeout_seconds,
        enabled=settings.bypass_enabled,
    )
    await url_cache.start()

    app.state.settings = settings
    app.state.guard = SharedSecretGuard(settings)
    app.state.http_client = client
    app.state.url_cache = url_cache
    app.state.registry = registry
    app.state.resolver = resolver
    app.state.status_service = StatusService(JsonFileStore(settings.status_path))
    app.state.apk_updates = ApkUpdateStore(JsonFileStore(settings.apk_update_path))
    app.state.scripts = ScriptStore(
        JsonFileStore(settings.scripts_path), daily_limit=settings.scripts_per_day
    )
    logger.info(
        (
            "startup complete resolver_config_path=%s upstreams_source_url=%s "
            "bypass_enabled=%s max_attempts=%d cache_window_seconds=%.0f"
        ),
        settings.resolver_config_path,
        settings.upstreams_source_url,
        settings.bypass_enabled,
        resolver_config.retry.max_attempts,
        resolver_config.cache.window_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    url_cache: UrlCache | None = getattr(app.state, "url_cache", None)
    if url_cache is not None:
        await url_cache.stop()
    client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    logger.info("shutdown complete")


@app.get("/status")
async def server_status() -> dict[str, str]:
    return {"result": "server on"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/bypass")
async def bypass(url: str) -> Response:
    resolver: Resolver = app.state.resolver
    status_service: StatusService = app.state.status_service
    try:
        outcome = await resolver.resolve(url)
    except FeatureDisabled as exc:
        await status_service.record(RequestOutcome.FAILURE)
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE, exc.error_type, str(exc)
        )
    except ResolverError as exc:
        await status_service.record(RequestOutcome.FAILURE)
        return error_response(status.HTTP_502_BAD_GATEWAY, exc.error_type, str(exc))
    except Exception:
        await status_service.record(RequestOutcome.FAILURE)
        raise

    payload: dict[str, Any] = {
        "result": outcome.result,
        "time": f"{round(outcome.elapsed_ms)}ms",
        "source": outcome.source.value,
    }
    if outcome.source is ResolveSource.CACHE_HIT:
        await status_service.record(RequestOutcome.CACHE_HIT)
        payload["message"] = "URL was processed recently."
    else:
        await status_service.record(RequestOutcome.SUCCESS)
    return JSONResponse(content=payload)


@app.get("/get-urls")
async def get_urls() -> dict[str, Any]:
    url_cache: UrlCache = app.state.url_cache
    return await url_cache.snapshot()


@app.get("/statusBypass")
async def status_bypass() -> dict[str, int]:
    status_service: StatusService = app.state.status_service
    return await status_service.snapshot()


@app.post("/admin/toggle-bypass")
async def toggle_bypass(state: str | None = None) -> Response:
    resolver: Resolver = app.state.resolver
    if state == "on":
        resolver.set_enabled(True)
    elif state == "off":
        resolver.set_enabled(False)
    else:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            "Invalid 'state' parameter. Use 'on' or 'off'.",
        )
    return JSONResponse(
        content={
            "message": f"Bypass {'enabled' if resolver.enabled else 'disabled'}.",
            "bypass_enabled": resolver.enabled,
        }
    )


@app.get("/admin/status")
async def admin_status() -> dict[str, Any]:
    resolver: Resolver = app.state.resolver
    status_service: StatusService = app.state.status_service
    return {
        "bypass_enabled": resolver.enabled,
        "status": await status_service.snapshot(),
    }


@app.get("/admin/api-performance")
async def api_performance() -> dict[str, Any]:
    resolver: Resolver = app.state.resolver
    return resolver.tracker.snapshot()


@app.post("/admin/add-api")
async def add_api(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict) or not payload.get("url"):
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            "Invalid upstream data. At least the 'url' field is required.",
        )
    try:
        descriptor = UpstreamDescriptor.model_validate(payload)
    except ValidationError as exc:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            f"Invalid upstream data: {exc.errors()[0].get('msg', 'validation failed')}",
        )

    registry: UpstreamRegistry = app.state.registry
    added = await registry.add_supplementary(descriptor)
    if not added:
        return JSONResponse(
            content={"message": "Upstream is already registered.", "added": False}
        )
    return JSONResponse(
        content={
            "message": "Upstream added.",
            "added": True,
            "api": descriptor.as_document(),
        }
    )


@app.get("/edit/apk-up")
async def apk_update(
    newL: str | None = None,  # noqa: N803
    up: str | None = None,
) -> dict[str, Any]:
    store: ApkUpdateStore = app.state.apk_updates
    document = await store.update(up=up, link=newL)
    return {"status": "updated", **document}


@app.get("/edit/apk-stats")
async def apk_stats() -> Response:
    store: ApkUpdateStore = app.state.apk_updates
    document = await store.read()
    if document is None:
        return error_response(
            status.HTTP_404_NOT_FOUND,
            "not_found_error",
            "Update status file not found.",
        )
    return JSONResponse(content=document)


def _positive_int(raw: str | None, default: int) -> int:
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        return default
    return value if value > 0 else default


def _script_id(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


@app.post("/enviar_script")
async def submit_script(request: Request) -> Response:
    scripts: ScriptStore = app.state.scripts
    payload = await _json_object(request)
    try:
        entry = await scripts.submit(payload.get("nome"), payload.get("script"))
    except ScriptRejected as exc:
        return error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request_error", str(exc)
        )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"message": "Script submitted.", "id": entry["id"]},
    )


@app.get("/listar_scripts")
async def list_scripts(
    page: str | None = None, limit: str | None = None
) -> dict[str, Any]:
    scripts: ScriptStore = app.state.scripts
    return await scripts.page(
        page=_positive_int(page, 1), limit=_positive_int(limit, 10)
    )


@app.patch("/alterar_status/{script_id}")
async def change_script_status(script_id: str, request: Request) -> Response:
    scripts: ScriptStore = app.state.scripts
    parsed_id = _script_id(script_id)
    if parsed_id is None:
        return error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request_error", "Invalid script id."
        )
    payload = await _json_object(request)
    try:
        changed = await scripts.set_status(parsed_id, payload.get("status"))
    except ScriptRejected as exc:
        return error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request_error", str(exc)
        )
    if not changed:
        return error_response(
            status.HTTP_404_NOT_FOUND, "not_found_error", "Script not found."
        )
    return JSONResponse(content={"message": "Status updated."})


@app.delete("/remover_script/{script_id}")
async def remove_script(script_id: str) -> Response:
    scripts: ScriptStore = app.state.scripts
    parsed_id = _script_id(script_id)
    if parsed_id is None:
        return error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request_error", "Invalid script id."
        )
    if not await scripts.remove(parsed_id):
        return error_response(
            status.HTTP_404_NOT_FOUND, "not_found_error", "Script not found."
        )
    return JSONResponse(content={"message": "Script removed."})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "bypass_router.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()

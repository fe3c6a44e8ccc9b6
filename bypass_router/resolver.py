from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

import httpx

from bypass_router.cache import UrlCache
from bypass_router.classifier import ResponseClassifier
from bypass_router.config import RetryConfig
from bypass_router.performance import PerformanceTracker
from bypass_router.registry import ExtractionMode, UpstreamDescriptor, UpstreamRegistry

logger = logging.getLogger("uvicorn.error")


class ResolverError(RuntimeError):
    error_type = "resolver_error"


class FeatureDisabled(ResolverError):
    error_type = "feature_disabled"

    def __init__(self) -> None:
        super().__init__("Bypass is temporarily disabled.")


class NoUpstreamsConfigured(ResolverError):
    error_type = "no_upstreams_configured"

    def __init__(self) -> None:
        super().__init__("No upstream APIs are configured.")


class AllUpstreamsFailed(ResolverError):
    error_type = "all_upstreams_failed"

    def __init__(self, attempted: int) -> None:
        self.attempted = attempted
        super().__init__(f"None of the {attempted} upstream APIs could process the URL.")


class UpstreamAttemptFailed(Exception):
    """One call against one upstream failed; absorbed by the retry loop."""


class ResolveSource(str, Enum):
    CACHE_HIT = "cache_hit"
    FRESHLY_RESOLVED = "freshly_resolved"


@dataclass(slots=True)
class ResolveOutcome:
    result: Any
    elapsed_ms: float
    source: ResolveSource
    endpoint: str | None = None


@dataclass(slots=True)
class AttemptResult:
    descriptor: UpstreamDescriptor
    result: Any
    attempt: int
    elapsed_ms: float


def _is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _request_error_details(exc: httpx.HTTPError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "HTTPError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def extract_result(descriptor: UpstreamDescriptor, response: httpx.Response) -> Any:
    if descriptor.extraction_mode is ExtractionMode.JSON_FIELD:
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamAttemptFailed("response is not valid JSON") from exc
        if not isinstance(body, dict) or not descriptor.response_key:
            return None
        return body.get(descriptor.response_key)

    if _is_json_content_type(response.headers.get("content-type")):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class Resolver:
    """Resolves a URL by racing every configured upstream.

    All ranked upstreams are launched together and share one cancellation
    event. The first response classified valid is returned and cached, the
    remaining attempts are cancelled. Every attempt, including retries and
    attempts cut short by cancellation, is recorded in the tracker.
    """

    def __init__(
        self,
        *,
        registry: UpstreamRegistry,
        tracker: PerformanceTracker,
        cache: UrlCache,
        classifier: ResponseClassifier,
        client: httpx.AsyncClient,
        retry: RetryConfig | None = None,
        timeout_seconds: float = 60.0,
        enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._cache = cache
        self._classifier = classifier
        self._client = client
        self._retry = retry or RetryConfig()
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)
        logger.info("bypass_toggled enabled=%s", self._enabled)

    @property
    def tracker(self) -> PerformanceTracker:
        return self._tracker

    async def resolve(self, url: str) -> ResolveOutcome:
        if not self._enabled:
            raise FeatureDisabled()

        request_id = uuid4().hex[:12]
        started = time.perf_counter()
        descriptors = await self._registry.load()
        if not descriptors:
            logger.warning("resolve_no_upstreams request_id=%s", request_id)
            raise NoUpstreamsConfigured()

        ranked = self._tracker.rank(descriptors)

        cached = await self._cache.get(url)
        if cached is not None:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.info(
                "resolve_cache_hit request_id=%s elapsed_ms=%.2f", request_id, elapsed_ms
            )
            return ResolveOutcome(
                result=cached.response,
                elapsed_ms=elapsed_ms,
                source=ResolveSource.CACHE_HIT,
            )

        logger.info(
            "resolve_start request_id=%s upstreams=%d", request_id, len(ranked)
        )
        winner = await self._race(url, ranked, request_id=request_id)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if winner is None:
            logger.warning(
                "resolve_failed request_id=%s upstreams=%d elapsed_ms=%.2f",
                request_id,
                len(ranked),
                elapsed_ms,
            )
            raise AllUpstreamsFailed(len(ranked))

        await self._cache.put(url, winner.result)
        logger.info(
            "resolve_complete request_id=%s endpoint=%s attempt=%d elapsed_ms=%.2f",
            request_id,
            winner.descriptor.endpoint_id,
            winner.attempt,
            elapsed_ms,
        )
        return ResolveOutcome(
            result=winner.result,
            elapsed_ms=elapsed_ms,
            source=ResolveSource.FRESHLY_RESOLVED,
            endpoint=winner.descriptor.endpoint_id,
        )

    async def _race(
        self,
        url: str,
        ranked: list[UpstreamDescriptor],
        *,
        request_id: str,
    ) -> AttemptResult | None:
        cancelled = asyncio.Event()
        tasks = [
            asyncio.create_task(
                self._attempt_with_retry(url, descriptor, cancelled, request_id),
                name=f"resolve-{request_id}-{index}",
            )
            for index, descriptor in enumerate(ranked)
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                if result is not None:
                    return result
            return None
        finally:
            cancelled.set()
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _attempt_with_retry(
        self,
        url: str,
        descriptor: UpstreamDescriptor,
        cancelled: asyncio.Event,
        request_id: str,
    ) -> AttemptResult | None:
        max_attempts = self._retry.max_attempts
        attempt = 0
        while not cancelled.is_set():
            attempt += 1
            attempt_started = time.perf_counter()
            try:
                result = await self._call_upstream(url, descriptor)
            except UpstreamAttemptFailed as exc:
                failure = str(exc)
            except asyncio.CancelledError:
                self._tracker.record(
                    descriptor.endpoint_id,
                    (time.perf_counter() - attempt_started) * 1000.0,
                    False,
                )
                raise
            else:
                elapsed_ms = (time.perf_counter() - attempt_started) * 1000.0
                if self._classifier.is_valid(result):
                    self._tracker.record(descriptor.endpoint_id, elapsed_ms, True)
                    logger.info(
                        "resolve_attempt_valid request_id=%s endpoint=%s attempt=%d/%d elapsed_ms=%.2f",
                        request_id,
                        descriptor.endpoint_id,
                        attempt,
                        max_attempts,
                        elapsed_ms,
                    )
                    return AttemptResult(
                        descriptor=descriptor,
                        result=result,
                        attempt=attempt,
                        elapsed_ms=elapsed_ms,
                    )
                failure = "invalid response"

            self._tracker.record(
                descriptor.endpoint_id,
                (time.perf_counter() - attempt_started) * 1000.0,
                False,
            )
            logger.info(
                "resolve_attempt_failed request_id=%s endpoint=%s attempt=%d/%d reason=%s",
                request_id,
                descriptor.endpoint_id,
                attempt,
                max_attempts,
                failure,
            )
            if attempt >= max_attempts or cancelled.is_set():
                return None
            await asyncio.sleep(self._retry.delay_seconds)
        return None

    async def _call_upstream(self, url: str, descriptor: UpstreamDescriptor) -> Any:
        try:
            response = await self._client.get(
                descriptor.render(url), timeout=self._timeout_seconds
            )
        except httpx.HTTPError as exc:
            details = _request_error_details(exc)
            raise UpstreamAttemptFailed(
                f"{details['error_type']}: {details['error']}"
            ) from exc
        except (httpx.InvalidURL, ValueError) as exc:
            # Raised before any request is sent when the rendered URL is malformed.
            raise UpstreamAttemptFailed(
                f"invalid upstream url ({exc.__class__.__name__}): {exc}"
            ) from exc
        if response.status_code >= 400:
            raise UpstreamAttemptFailed(f"status {response.status_code}")
        return extract_result(descriptor, response)

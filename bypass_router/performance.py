from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from threading import Lock
from typing import Protocol, TypeVar

from bypass_router.config import ScoringConfig


class _HasEndpoint(Protocol):
    @property
    def endpoint_id(self) -> str: ...


D = TypeVar("D", bound=_HasEndpoint)


@dataclass(slots=True)
class PerformanceRecord:
    total_attempts: int = 0
    successful_attempts: int = 0
    cumulative_success_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float | None:
        if self.total_attempts <= 0:
            return None
        return self.successful_attempts / self.total_attempts

    def as_dict(self) -> dict[str, int | float | None]:
        average = (
            self.cumulative_success_latency_ms / self.successful_attempts
            if self.successful_attempts > 0
            else None
        )
        return {
            "total_attempts": self.total_attempts,
            "successful_attempts": self.successful_attempts,
            "cumulative_success_latency_ms": round(
                self.cumulative_success_latency_ms, 3
            ),
            "average_success_latency_ms": (
                round(average, 3) if average is not None else None
            ),
            "success_rate": self.success_rate,
        }


class PerformanceTracker:
    """Per-upstream attempt statistics for the life of the process.

    Lower scores are better. Endpoints that were never attempted score
    ``math.inf`` and therefore sort after every measured endpoint.
    """

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self._config = config or ScoringConfig()
        self._records: dict[str, PerformanceRecord] = {}
        self._lock = Lock()

    def record(self, endpoint_id: str, elapsed_ms: float, succeeded: bool) -> None:
        with self._lock:
            record = self._records.setdefault(endpoint_id, PerformanceRecord())
            record.total_attempts += 1
            if succeeded:
                record.successful_attempts += 1
                record.cumulative_success_latency_ms += max(0.0, float(elapsed_ms))

    def score(self, endpoint_id: str) -> float:
        with self._lock:
            record = self._records.get(endpoint_id)
            if record is None or record.total_attempts == 0:
                return math.inf
            successes = record.successful_attempts
            total = record.total_attempts
            cumulative = record.cumulative_success_latency_ms

        if successes > 0:
            average_latency_ms = cumulative / successes
        else:
            average_latency_ms = self._config.no_success_latency_ms
        success_rate = max(successes / total, self._config.min_success_rate)
        return average_latency_ms / success_rate

    def rank(self, descriptors: Iterable[D]) -> list[D]:
        # sorted() is stable, so equal scores keep their input order.
        return sorted(descriptors, key=lambda item: self.score(item.endpoint_id))

    def get(self, endpoint_id: str) -> PerformanceRecord | None:
        with self._lock:
            record = self._records.get(endpoint_id)
            if record is None:
                return None
            return PerformanceRecord(
                total_attempts=record.total_attempts,
                successful_attempts=record.successful_attempts,
                cumulative_success_latency_ms=record.cumulative_success_latency_ms,
            )

    def snapshot(self) -> dict[str, dict[str, int | float | None]]:
        with self._lock:
            payload = {
                endpoint: record.as_dict() for endpoint, record in self._records.items()
            }
        for endpoint, values in payload.items():
            score = self.score(endpoint)
            values["score"] = None if math.isinf(score) else round(score, 3)
        return payload

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_ERROR_KEYWORDS = (
    "erro",
    "error",
    "404",
    "unsupported",
    "invalid",
    "failed",
    "null",
    "afk",
    "down",
    "off",
    "stop",
    "discord",
    "not",
    "none",
    "fall",
    "er",
    "inva",
)

DEFAULT_SUCCESS_KEYWORDS = (
    "sucesso",
    "ok",
    "done",
    "completed",
    "success",
    "valid",
    "authorized",
    "passed",
    "loadstring",
    "local",
    "https",
    "http",
    "game:HttpGet",
    "No stages or already authenticated",
    "You have been authenticated. Please proceed back to the application.",
    "key",
    "FREE",
    "link",
    "type",
)

# Standalone 32-character hex token, the shape one known upstream answers with.
DEFAULT_TOKEN_PATTERN = r"(?<![0-9A-Za-z])[0-9a-fA-F]{32}(?![0-9A-Za-z])"


def _clean_keywords(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    cleaned: list[str] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            continue
        normalized = item.strip()
        if not normalized or normalized.lower() in seen:
            continue
        seen.add(normalized.lower())
        cleaned.append(normalized)
    return cleaned


class ClassifierConfig(BaseModel):
    error_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ERROR_KEYWORDS)
    )
    success_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUCCESS_KEYWORDS)
    )
    token_pattern: str | None = DEFAULT_TOKEN_PATTERN

    @field_validator("error_keywords", "success_keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> list[str]:
        return _clean_keywords(value)

    @field_validator("token_pattern")
    @classmethod
    def _compile_check(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid token_pattern: {exc}") from exc
        return value


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=2, ge=1)
    delay_seconds: float = Field(default=2.0, ge=0.0)


class CacheConfig(BaseModel):
    window_seconds: float = Field(default=600.0, gt=0.0)
    flush_interval_seconds: float = Field(default=600.0, gt=0.0)


class ScoringConfig(BaseModel):
    no_success_latency_ms: float = Field(default=60000.0, gt=0.0)
    min_success_rate: float = Field(default=0.1, gt=0.0, le=1.0)


class ResolverConfig(BaseModel):
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)


def load_resolver_config(config_path: str | Path) -> ResolverConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Resolver config not found at '{config_path}'. "
            "Create it or set RESOLVER_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return ResolverConfig.model_validate(raw)

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

from bypass_router.config import ClassifierConfig


class Classification(str, Enum):
    VALID = "valid"
    INVALID = "invalid"


def _keyword_pattern(keywords: list[str]) -> re.Pattern[str] | None:
    if not keywords:
        return None
    # Longest first so multi-word phrases win over their own prefixes.
    alternatives = "|".join(
        re.escape(keyword) for keyword in sorted(keywords, key=len, reverse=True)
    )
    return re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE)


def response_text(response: Any) -> str:
    if isinstance(response, str):
        return response
    return json.dumps(response, ensure_ascii=False, separators=(",", ":"))


class ResponseClassifier:
    """Keyword heuristics deciding whether an upstream answer is usable.

    Upstreams reply with free text that follows no schema, so a response is
    accepted when it carries a success keyword and no error keyword. A
    standalone 32-character hex token is accepted outright.
    """

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        config = config or ClassifierConfig()
        self._error_pattern = _keyword_pattern(config.error_keywords)
        self._success_pattern = _keyword_pattern(config.success_keywords)
        self._token_pattern = (
            re.compile(config.token_pattern) if config.token_pattern else None
        )

    def has_error_keyword(self, text: str) -> bool:
        return bool(self._error_pattern and self._error_pattern.search(text))

    def has_success_keyword(self, text: str) -> bool:
        return bool(self._success_pattern and self._success_pattern.search(text))

    def classify(self, response: Any) -> Classification:
        if response is None or response == "":
            return Classification.INVALID
        text = response_text(response)
        if not text.strip():
            return Classification.INVALID
        if self._token_pattern is not None and self._token_pattern.search(text):
            return Classification.VALID
        if self.has_error_keyword(text):
            return Classification.INVALID
        if self.has_success_keyword(text):
            return Classification.VALID
        return Classification.INVALID

    def is_valid(self, response: Any) -> bool:
        return self.classify(response) is Classification.VALID

from __future__ import annotations

from bypass_router.classifier import Classification, ResponseClassifier
from bypass_router.config import ClassifierConfig

HEX_TOKEN = "a3f1c2d4e5f60718293a4b5c6d7e8f90"


def test_classify_rejects_empty_and_none() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify("") is Classification.INVALID
    assert classifier.classify(None) is Classification.INVALID
    assert classifier.classify("   ") is Classification.INVALID


def test_classify_error_keyword_without_success_keyword_is_invalid() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify("404 not found") is Classification.INVALID


def test_classify_success_keywords_without_error_keyword_is_valid() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify("loadstring success key") is Classification.VALID
    assert classifier.is_valid("SUCCESS") is True


def test_classify_error_keyword_overrides_success_keyword() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify("key invalid") is Classification.INVALID


def test_classify_hex_token_is_valid_regardless_of_keywords() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify(HEX_TOKEN) is Classification.VALID
    assert classifier.classify(f"error {HEX_TOKEN}") is Classification.VALID
    # 33 hex characters are not a standalone 32-character token.
    assert classifier.classify(HEX_TOKEN + "a") is Classification.INVALID


def test_classify_matches_whole_words_only() -> None:
    classifier = ResponseClassifier()

    # "er" is an error keyword but must not match inside "server".
    assert classifier.classify("server ok") is Classification.VALID
    assert classifier.classify("nothing here") is Classification.INVALID


def test_classify_matches_multi_word_and_punctuated_keywords() -> None:
    classifier = ResponseClassifier()

    assert classifier.is_valid("game:HttpGet(...)")
    assert classifier.is_valid(
        "You have been authenticated. Please proceed back to the application."
    )


def test_classify_serializes_non_string_responses() -> None:
    classifier = ResponseClassifier()

    assert classifier.classify({"key": "abc"}) is Classification.VALID
    assert classifier.classify({"error": "rate limited"}) is Classification.INVALID
    assert classifier.classify({"key": None}) is Classification.INVALID
    assert classifier.classify(["link", "ok"]) is Classification.VALID


def test_classify_is_pure() -> None:
    classifier = ResponseClassifier()
    samples = ["404 not found", "loadstring success key", HEX_TOKEN, "", None]

    first = [classifier.classify(sample) for sample in samples]
    second = [classifier.classify(sample) for sample in samples]

    assert first == second


def test_classify_uses_configured_keyword_lists() -> None:
    classifier = ResponseClassifier(
        ClassifierConfig(
            error_keywords=["nope"],
            success_keywords=["yay"],
            token_pattern=None,
        )
    )

    assert classifier.is_valid("yay") is True
    assert classifier.is_valid("yay nope") is False
    assert classifier.is_valid("loadstring success key") is False
    assert classifier.is_valid(HEX_TOKEN) is False

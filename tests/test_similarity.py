from __future__ import annotations

import pytest

from tasklink_mcp.correlation.similarity import (
    combined_similarity,
    jaro_winkler,
    normalize_string,
    token_similarity,
    tokenize,
)

SAMPLES = ["", "a", "auth module", "Implement OAuth login", "Café résumé", "src/services/auth-handler.ts"]


@pytest.mark.parametrize("value", SAMPLES)
def test_identity_scores_one(value: str) -> None:
    assert jaro_winkler(value, value) == 1.0
    assert token_similarity(value, value) == 1.0
    assert combined_similarity(value, value) == pytest.approx(1.0)


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("martha", "marhta"),
        ("dixon", "dicksonx"),
        ("implement login page", "login page implementation"),
        ("fix ci", "set up ci pipeline for releases"),
    ],
)
def test_measures_are_symmetric(left: str, right: str) -> None:
    assert jaro_winkler(left, right) == pytest.approx(jaro_winkler(right, left))
    assert token_similarity(left, right) == pytest.approx(token_similarity(right, left))
    assert combined_similarity(left, right) == pytest.approx(combined_similarity(right, left))


def test_jaro_winkler_known_value() -> None:
    assert jaro_winkler("MARTHA", "MARHTA") == pytest.approx(0.9611, abs=1e-4)


def test_jaro_winkler_empty_side_is_zero() -> None:
    assert jaro_winkler("", "abc") == 0.0
    assert jaro_winkler("abc", "") == 0.0


def test_normalization_folds_case_accents_and_whitespace() -> None:
    assert normalize_string("  Café   RÉSUMÉ ") == "cafe resume"
    assert jaro_winkler("Café", "cafe") == 1.0


def test_tokenize_keeps_short_technical_tokens() -> None:
    assert tokenize("UI/DB-CI setup") == ["ui", "db", "ci", "setup"]
    assert tokenize("src/services/auth_handler.ts") == ["src", "services", "auth", "handler", "ts"]
    assert tokenize("   ") == []


def test_token_similarity_ignores_word_order() -> None:
    assert token_similarity("auth module", "module auth") == 1.0


def test_token_similarity_empty_inputs() -> None:
    assert token_similarity("", "") == 1.0
    assert token_similarity("", "auth") == 0.0
    assert token_similarity("auth", "") == 0.0


def test_token_similarity_rewards_coverage() -> None:
    narrow = token_similarity("auth api", "auth api extra")
    wide = token_similarity("auth api", "auth api one two three four five six seven eight")

    assert narrow == pytest.approx(0.8 + 0.2 * 2 / 3)
    assert wide == pytest.approx(0.8 + 0.2 * 2 / 10)
    assert wide < narrow


def test_combined_similarity_grows_with_shared_tokens() -> None:
    query = "auth token refresh"
    scores = [
        combined_similarity(query, candidate)
        for candidate in ("zzz qqq www", "auth qqq www", "auth token www", "auth token refresh")
    ]

    assert scores == sorted(scores)
    assert scores[-1] == pytest.approx(1.0)


def test_combined_similarity_blends_measures() -> None:
    left, right = "build payment service", "payment service build"
    expected = 0.6 * jaro_winkler(left, right) + 0.4 * token_similarity(left, right)

    assert combined_similarity(left, right) == pytest.approx(expected)
    assert token_similarity(left, right) == 1.0

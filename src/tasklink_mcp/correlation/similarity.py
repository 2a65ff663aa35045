"""Lexical similarity scoring used to match agent activity against task text.

Three measures are exposed:

* :func:`jaro_winkler` compares whole strings at the character level.
* :func:`token_similarity` compares the word sets of two strings, so word
  order does not matter and extra words only cost a coverage penalty.
* :func:`combined_similarity` blends the two (60% / 40%).

Every measure lower-cases its input, folds accented Latin characters to their
base letter and collapses whitespace before comparing.
"""

from __future__ import annotations

import re

_ACCENTS = {
    "a": "àáâãäåÀÁÂÃÄÅ",
    "e": "èéêëÈÉÊË",
    "i": "ìíîïÌÍÎÏ",
    "o": "òóôõöÒÓÔÕÖ",
    "u": "ùúûüÙÚÛÜ",
    "c": "çÇ",
    "n": "ñÑ",
    "y": "ýÿÝ",
}
_ACCENT_TABLE = str.maketrans(
    {accented: base for base, variants in _ACCENTS.items() for accented in variants}
)

_WHITESPACE = re.compile(r"\s+")
_TOKEN_SEPARATORS = re.compile(r"[\s_\-/\\.:,;|()\[\]{}]+")

WINKLER_PREFIX_LIMIT = 4
WINKLER_SCALING = 0.1


def normalize_string(value: str) -> str:
    """Lower-case, fold accents and collapse whitespace."""

    folded = value.lower().translate(_ACCENT_TABLE)
    return _WHITESPACE.sub(" ", folded).strip()


def tokenize(value: str) -> list[str]:
    """Split ``value`` into normalized words.

    There is deliberately no minimum token length: short technical words such
    as ``ui``, ``db`` or ``ci`` carry most of the meaning in task titles.
    """

    normalized = normalize_string(value)
    if not normalized:
        return []
    return [token for token in _TOKEN_SEPARATORS.split(normalized) if token]


def _jaro(s1: str, s2: str) -> float:
    if not s1 and not s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    # greedy matching depends on argument order with repeated characters
    if (len(s1), s1) > (len(s2), s2):
        s1, s2 = s2, s1

    window = max(max(len(s1), len(s2)) // 2 - 1, 0)
    s1_flags = [False] * len(s1)
    s2_flags = [False] * len(s2)

    matches = 0
    for i, char in enumerate(s1):
        start = max(0, i - window)
        end = min(i + window + 1, len(s2))
        for j in range(start, end):
            if s2_flags[j] or s2[j] != char:
                continue
            s1_flags[i] = s2_flags[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i, char in enumerate(s1):
        if not s1_flags[i]:
            continue
        while not s2_flags[k]:
            k += 1
        if char != s2[k]:
            transpositions += 1
        k += 1

    return (
        matches / len(s1)
        + matches / len(s2)
        + (matches - transpositions / 2) / matches
    ) / 3


def jaro_winkler(a: str, b: str) -> float:
    """Return the Jaro-Winkler similarity of two strings in ``[0, 1]``."""

    s1 = normalize_string(a)
    s2 = normalize_string(b)
    jaro = _jaro(s1, s2)

    prefix = 0
    for left, right in zip(s1[:WINKLER_PREFIX_LIMIT], s2[:WINKLER_PREFIX_LIMIT]):
        if left != right:
            break
        prefix += 1

    return min(jaro + prefix * WINKLER_SCALING * (1 - jaro), 1.0)


def token_similarity(a: str, b: str) -> float:
    """Return the coverage-weighted best-token similarity of two strings.

    Each token of the shorter token list is paired with its best Jaro match in
    the longer list; the mean of those scores is scaled by
    ``0.8 + 0.2 * len(shorter) / len(longer)``.
    """

    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    if len(tokens_a) == len(tokens_b):
        # Either side is "the shorter"; average both directions so a/b order is irrelevant.
        raw = (_best_token_mean(tokens_a, tokens_b) + _best_token_mean(tokens_b, tokens_a)) / 2
        return raw

    query, corpus = (tokens_a, tokens_b) if len(tokens_a) < len(tokens_b) else (tokens_b, tokens_a)
    raw = _best_token_mean(query, corpus)
    coverage = len(query) / len(corpus)
    return raw * (0.8 + 0.2 * coverage)


def _best_token_mean(query: list[str], corpus: list[str]) -> float:
    total = 0.0
    for token in query:
        best = 0.0
        for candidate in corpus:
            best = max(best, _jaro(token, candidate))
            if best >= 1.0:
                break
        total += best
    return total / len(query)


def combined_similarity(a: str, b: str) -> float:
    """Blend character-level and word-level similarity."""

    return 0.6 * jaro_winkler(a, b) + 0.4 * token_similarity(a, b)


__all__ = [
    "combined_similarity",
    "jaro_winkler",
    "normalize_string",
    "token_similarity",
    "tokenize",
]

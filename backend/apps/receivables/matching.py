"""Counterparty name matching.

Names are compared after normalisation (case, whitespace, punctuation and
German legal-entity suffixes removed). Matching first looks for an exact
normalised equality; only if none exists are candidates scored by token
overlap.

Tie-break: candidates are scanned in the order given and a later candidate
replaces the current best only with a strictly higher score, so on equal
scores the first candidate scanned wins. Callers pass candidates in a stable
order (customers ordered by posting-account number).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_THRESHOLD = 0.5
MIN_TOKEN_LENGTH = 3

LEGAL_SUFFIXES = frozenset({"gmbh", "ag", "kg", "ug", "ohg", "mbh", "eg", "co"})

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class MatchResult(Generic[T]):
    candidate: T
    score: float
    method: str  # exact|fuzzy


def normalize_name(name: Optional[str]) -> str:
    """Lower-case, strip punctuation and legal suffixes, collapse whitespace.

    Punctuation is deleted, not replaced, so "A.B.C." and "ABC" normalise to
    the same word. An ampersand separates words.
    """
    if not name:
        return ""
    text = _PUNCTUATION_RE.sub("", name.lower().replace("&", " "))
    words = [word for word in _WHITESPACE_RE.split(text) if word and word not in LEGAL_SUFFIXES]
    return " ".join(words)


def tokenize(name: Optional[str]) -> List[str]:
    """Normalised words longer than two characters."""
    return [token for token in normalize_name(name).split(" ") if len(token) >= MIN_TOKEN_LENGTH]


def match_score(name_a: Optional[str], name_b: Optional[str]) -> float:
    """Share of tokens of ``name_a`` found in ``name_b``.

    A token of A counts once if some token of B equals it or contains it.
    The count is divided by the larger token count, so extra words on either
    side lower the score. Empty token sets score 0.
    """
    tokens_a = tokenize(name_a)
    tokens_b = tokenize(name_b)
    if not tokens_a or not tokens_b:
        return 0.0

    matched = 0
    for token_a in tokens_a:
        if any(token_a == token_b or token_a in token_b for token_b in tokens_b):
            matched += 1
    return matched / max(len(tokens_a), len(tokens_b))


def find_best_match(
    name: Optional[str],
    candidates: Iterable[T],
    *,
    name_of: Callable[[T], Optional[str]],
    threshold: float = DEFAULT_THRESHOLD,
) -> Optional[MatchResult[T]]:
    """Return the exact or best fuzzy match for ``name`` among ``candidates``."""
    normalized = normalize_name(name)
    if not normalized:
        return None

    pool = list(candidates)
    for candidate in pool:
        if normalize_name(name_of(candidate)) == normalized:
            return MatchResult(candidate=candidate, score=1.0, method="exact")

    best: Optional[MatchResult[T]] = None
    for candidate in pool:
        score = match_score(name, name_of(candidate))
        if score <= threshold:
            continue
        if best is None or score > best.score:
            best = MatchResult(candidate=candidate, score=score, method="fuzzy")
    return best

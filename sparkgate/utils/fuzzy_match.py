"""
SparkGate -- Fuzzy name matching.

Clients refer to personas by whatever name the user typed ("einstein",
"my marketing guy").  Scores are on a 0-100 scale, checked in order:

    100  exact match (case-insensitive, surrounding whitespace ignored)
     90  candidate name starts with the query
     80  candidate name contains the query
    <70  ((max_len - edit_distance) / max_len) * 70

so any literal containment always beats an edit-distance guess.
An empty query is a prefix of every name; callers that resolve user input
reject blank names before scoring.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Sequence, TypeVar

T = TypeVar("T")

EXACT_SCORE = 100.0
PREFIX_SCORE = 90.0
SUBSTRING_SCORE = 80.0
PARTIAL_CEILING = 70.0
DEFAULT_MIN_SCORE = 50.0


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert / delete / substitute, unit cost)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def fuzzy_score(query: str, name: str) -> float:
    q = query.strip().lower()
    n = name.strip().lower()

    if q == n:
        return EXACT_SCORE
    if n.startswith(q):
        return PREFIX_SCORE
    if q in n:
        return SUBSTRING_SCORE

    max_len = max(len(q), len(n))
    return ((max_len - levenshtein_distance(q, n)) / max_len) * PARTIAL_CEILING


@dataclass(frozen=True)
class MatchResult(Generic[T]):
    item: T
    score: float


def find_best_match(
    query: str,
    candidates: Iterable[T],
    name_of: Callable[[T], str],
    min_score: float = DEFAULT_MIN_SCORE,
) -> MatchResult[T] | None:
    """Return the highest-scoring candidate at or above *min_score*.

    Ties keep the first candidate encountered.
    """
    best: MatchResult[T] | None = None
    for item in candidates:
        score = fuzzy_score(query, name_of(item))
        if best is None or score > best.score:
            best = MatchResult(item, score)

    if best is None or best.score < min_score:
        return None
    return best


@dataclass(frozen=True)
class NameResolution(Generic[T]):
    """Outcome of resolving a name: the match, or every candidate to choose from."""

    query: str
    match: MatchResult[T] | None
    candidates: Sequence[T] = field(default_factory=tuple)

    @property
    def found(self) -> bool:
        return self.match is not None


def resolve_name(
    query: str,
    candidates: Sequence[T],
    name_of: Callable[[T], str],
    min_score: float = DEFAULT_MIN_SCORE,
) -> NameResolution[T]:
    return NameResolution(
        query=query,
        match=find_best_match(query, candidates, name_of, min_score),
        candidates=tuple(candidates),
    )

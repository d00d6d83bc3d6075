"""Fuzzy matching of wanted names against a catalog.

This module provides:
- normalize_name: Case and punctuation insensitive normal form
- similarity: Normalized similarity score in [0, 1]
- MatchResult: One ranked candidate
- ContentMatcher: find_best_match / reconcile over CatalogItems

Scoring: an exact match of the normalized names scores 1.0. Otherwise
the score is the better of a character-level ratio (difflib) and a
word-overlap score (share of the query's significant words found in
the candidate), the latter weighted down so it never counts as exact.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher

from offlinesync.sync.types import CatalogItem

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6
EXACT_MATCH_THRESHOLD = 0.95
DEFAULT_MAX_RESULTS = 5

# Word overlap alone never reaches the exact threshold
WORD_MATCH_WEIGHT = 0.9

STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "part", "edition",
    "collection", "complete", "series",
})

_NON_WORD_RE = re.compile(r"[\W_]+", re.UNICODE)


def normalize_name(text: str) -> str:
    """Lower-case, turn punctuation into spaces and collapse whitespace."""
    return " ".join(_NON_WORD_RE.sub(" ", text.casefold()).split())


def significant_words(text: str) -> list[str]:
    """Normalized words longer than two characters, minus stop words."""
    return [w for w in normalize_name(text).split() if len(w) > 2 and w not in STOP_WORDS]


def word_overlap(query: str, candidate: str) -> float:
    """Share of the query's significant words present in the candidate."""
    wanted = significant_words(query)
    if not wanted:
        return 0.0
    available = set(normalize_name(candidate).split())
    found = sum(1 for word in wanted if word in available)
    return found / len(wanted)


def similarity(query: str, candidate: str) -> float:
    """Similarity of two names in [0, 1]."""
    q = normalize_name(query)
    c = normalize_name(candidate)
    if not q or not c:
        return 0.0
    if q == c:
        return 1.0
    ratio = SequenceMatcher(None, q, c, autojunk=False).ratio()
    return max(ratio, word_overlap(q, c) * WORD_MATCH_WEIGHT)


@dataclass(frozen=True)
class MatchResult:
    """A catalog item matched against a query."""

    item: CatalogItem
    score: float

    @property
    def is_exact(self) -> bool:
        return self.score >= EXACT_MATCH_THRESHOLD


class ContentMatcher:
    """Resolve human-specified names against catalog naming.

    Usage:
        matcher = ContentMatcher(threshold=0.6)
        best = matcher.find_best_match("planet earth", catalog)
        mapping = matcher.reconcile(["Planet Earth", "Cosmos"], catalog)
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be within [0, 1]: {threshold}")
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def find_best_match(
        self,
        query: str,
        catalog: Iterable[CatalogItem],
        threshold: float | None = None,
        limit: int | None = None,
    ) -> list[MatchResult]:
        """Rank catalog items by similarity to the query.

        Args:
            query: Name to look for.
            catalog: Items to search.
            threshold: Minimum score (defaults to the matcher's threshold).
            limit: Maximum number of results.

        Returns:
            Candidates at or above the threshold, best first. Ties keep
            catalog order. Empty when the query or catalog is empty.
        """
        cutoff = self._threshold if threshold is None else threshold
        if not normalize_name(query):
            return []

        results = []
        for item in catalog:
            value = similarity(query, item.name)
            if value >= cutoff:
                results.append(MatchResult(item=item, score=value))

        results.sort(key=lambda r: r.score, reverse=True)
        if limit is not None:
            results = results[:limit]
        return results

    def find_matches(
        self,
        query: str,
        catalog: Iterable[CatalogItem],
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> list[MatchResult]:
        """Top candidates for an interactive lookup."""
        return self.find_best_match(query, catalog, limit=max_results)

    def reconcile(
        self,
        names: Sequence[str],
        catalog: Sequence[CatalogItem],
    ) -> dict[str, MatchResult | None]:
        """Map configured names to their best catalog match.

        Returns:
            Dict from each name to its best match, or None when nothing
            reaches the threshold.
        """
        resolved: dict[str, MatchResult | None] = {}
        for name in names:
            matches = self.find_best_match(name, catalog, limit=1)
            resolved[name] = matches[0] if matches else None
            if matches and not matches[0].is_exact:
                logger.info(
                    f"Matched '{name}' to '{matches[0].item.name}' "
                    f"(score {matches[0].score:.2f})"
                )
            elif not matches:
                logger.warning(f"No catalog match for '{name}'")
        return resolved


def find_best_match(
    query: str,
    catalog: Iterable[CatalogItem],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[MatchResult]:
    """Rank catalog items by similarity to the query (module shortcut)."""
    return ContentMatcher(threshold).find_best_match(query, catalog)

"""
Query normalization, similarity scoring and batch deduplication.

Similarity is one minus the Levenshtein distance divided by the longer
string's length, so 1.0 means identical and 0.0 means nothing in common.
"""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from tools.search.errors import ValidationError
from tools.search.policy import DEFAULT_CACHE_TYPES, CacheType

logger = logging.getLogger(__name__)

_TRAILING = string.punctuation + " "

C = TypeVar("C")


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert, delete, substitute) between two strings."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

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


@dataclass
class QueryRecord:
    """A pending query inside one batch submission."""
    raw_query: str
    normalized_query: str
    similarity_group_id: int = -1
    location: str = ""
    cache_type: CacheType = CacheType.GENERAL
    max_results: int = 10
    index: int = 0


@dataclass
class QueryGroup:
    """Queries merged into one representative before provider dispatch."""
    group_id: int
    representative: QueryRecord
    members: List[QueryRecord] = field(default_factory=list)


class QueryDeduplicator:
    """
    Canonicalizes queries and finds near-duplicates.

    Thresholds are per cache type and come from the deployment policy;
    location strings use their own (stricter) threshold.
    """

    def __init__(
        self,
        thresholds: Optional[Dict[CacheType, float]] = None,
        location_threshold: float = 0.95,
        max_query_length: int = 500,
    ):
        self.thresholds: Dict[CacheType, float] = {
            ct: p.similarity_threshold for ct, p in DEFAULT_CACHE_TYPES.items()
        }
        if thresholds:
            self.thresholds.update({CacheType.parse(k): float(v) for k, v in thresholds.items()})
        self.location_threshold = location_threshold
        self.max_query_length = max(1, int(max_query_length))

    @staticmethod
    def _canonical(text: str) -> str:
        return " ".join(text.lower().split()).rstrip(_TRAILING)

    def normalize(self, raw_query: str) -> str:
        """
        Lowercase, trim, collapse whitespace, strip trailing punctuation.

        Raises ValidationError for empty input. Over-long queries are cut to
        ``max_query_length`` characters first so the cache key stays stable.
        """
        if not isinstance(raw_query, str):
            raise ValidationError(f"query must be a string, got {type(raw_query).__name__}")
        if not raw_query.strip():
            raise ValidationError("query must not be empty")
        normalized = self._canonical(raw_query[: self.max_query_length])
        if not normalized:
            raise ValidationError(f"query {raw_query!r} has no searchable content")
        return normalized

    def normalize_location(self, location: Optional[str]) -> str:
        if location is None:
            return ""
        if not isinstance(location, str):
            raise ValidationError(f"location must be a string, got {type(location).__name__}")
        return self._canonical(location[: self.max_query_length])

    def similarity(self, a: str, b: str) -> float:
        if a == b:
            return 1.0
        longest = max(len(a), len(b))
        if longest == 0:
            return 1.0
        return 1.0 - levenshtein(a, b) / longest

    def threshold_for(self, cache_type) -> float:
        return self.thresholds[CacheType.parse(cache_type)]

    def locations_match(self, a: str, b: str) -> bool:
        if a == b:
            return True
        if not a or not b:
            return False
        return self.similarity(a, b) >= self.location_threshold

    def is_match(self, a: str, b: str, cache_type) -> bool:
        return self.similarity(a, b) >= self.threshold_for(cache_type)

    def best_match(
        self,
        normalized_query: str,
        location: str,
        cache_type,
        candidates: Iterable[C],
    ) -> Optional[Tuple[C, float]]:
        """
        Highest-scoring candidate at or above the cache type's threshold.

        Candidates need ``normalized_query``, ``location`` and ``cache_type``
        attributes. Ties keep the first candidate seen.
        """
        cache_type = CacheType.parse(cache_type)
        threshold = self.thresholds[cache_type]
        best: Optional[Tuple[C, float]] = None
        for candidate in candidates:
            if CacheType.parse(candidate.cache_type) != cache_type:
                continue
            if not self.locations_match(location, candidate.location):
                continue
            score = self.similarity(normalized_query, candidate.normalized_query)
            if score < threshold:
                continue
            if best is None or score > best[1]:
                best = (candidate, score)
        return best

    def group_batch(self, queries: Sequence[QueryRecord]) -> List[QueryGroup]:
        """
        Cluster a batch so near-duplicates share one provider dispatch.

        Greedy in submission order: a query joins the first group whose
        representative it matches, else it starts a new group.
        """
        groups: List[QueryGroup] = []
        for record in queries:
            target: Optional[QueryGroup] = None
            for group in groups:
                rep = group.representative
                if rep.cache_type != record.cache_type or rep.max_results != record.max_results:
                    continue
                if not self.locations_match(rep.location, record.location):
                    continue
                if self.is_match(rep.normalized_query, record.normalized_query, record.cache_type):
                    target = group
                    break

            if target is None:
                target = QueryGroup(group_id=len(groups), representative=record)
                groups.append(target)
            record.similarity_group_id = target.group_id
            target.members.append(record)

        merged = len(queries) - len(groups)
        if merged:
            logger.info(f"[query_dedup] Merged {merged} duplicate queries into {len(groups)} groups")
        return groups


__all__ = ["QueryDeduplicator", "QueryGroup", "QueryRecord", "levenshtein"]

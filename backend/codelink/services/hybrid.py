"""Hybrid ranking of lexical and vector candidates.

Both paths run concurrently. The lexical path is the primary: if it
fails the whole search fails. The vector path is best-effort and a
failure only marks the result as degraded.

Scoring:
- lexical only: min(lexical, 1) minus a small decay per lexical rank
- vector only: cosine similarity
- both: max(min(lexical, 1), similarity)
"""

import asyncio
import logging

from codelink.schemas.base import SourceKind, Vocabulary
from codelink.schemas.codes import Candidate, SearchResult, VectorMatchResult
from codelink.services.lexical import LexicalMatcher
from codelink.services.vector import VectorMatcher

logger = logging.getLogger(__name__)

DEFAULT_RANK_DECAY = 0.01


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def merge_candidates(
    lexical: list[Candidate],
    vector: list[Candidate],
    limit: int,
    rank_decay: float = DEFAULT_RANK_DECAY,
) -> list[Candidate]:
    """Merge both candidate lists, deduplicated by code.

    Ordered by combined score descending, then title, then code.
    """
    merged: dict[str, Candidate] = {}

    for index, candidate in enumerate(lexical):
        if candidate.code in merged:
            continue
        lexical_score = _clamp(candidate.lexical_score)
        merged[candidate.code] = Candidate(
            entry=candidate.entry,
            lexical_score=candidate.lexical_score,
            combined_score=_clamp(lexical_score - index * rank_decay),
            source_kind=SourceKind.LEXICAL,
        )

    for candidate in vector:
        similarity = _clamp(candidate.vector_similarity or 0.0)
        existing = merged.get(candidate.code)
        if existing is None:
            merged[candidate.code] = Candidate(
                entry=candidate.entry,
                vector_similarity=similarity,
                combined_score=similarity,
                source_kind=SourceKind.VECTOR,
            )
        elif existing.source_kind == SourceKind.LEXICAL:
            existing.vector_similarity = similarity
            existing.combined_score = max(_clamp(existing.lexical_score), similarity)
            existing.source_kind = SourceKind.HYBRID

    ordered = sorted(merged.values(), key=lambda c: (-c.combined_score, c.title.lower(), c.code))
    return ordered[:limit]


class HybridRanker:
    """Runs lexical and vector matching and merges the candidates.

    Usage:
        ranker = HybridRanker(lexical_matcher, vector_matcher)
        result = await ranker.rank("chest pain", "chest pain", limit=8)
    """

    def __init__(
        self,
        lexical: LexicalMatcher,
        vector: VectorMatcher,
        rank_decay: float = DEFAULT_RANK_DECAY,
    ) -> None:
        self._lexical = lexical
        self._vector = vector
        self._rank_decay = rank_decay

    async def rank(
        self,
        query: str,
        normalized_query: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        vector_threshold: float = 0.5,
    ) -> SearchResult:
        """Search both paths and return the merged, ordered result.

        Raises:
            StorageUnavailable: If the lexical path (or the store behind
                the vector path) fails.
        """
        lexical_task = asyncio.create_task(
            self._lexical.match(normalized_query, limit, vocabulary)
        )
        vector_task = asyncio.create_task(
            self._vector.match(normalized_query, vector_threshold, limit, vocabulary)
        )

        try:
            lexical_candidates, vector_result = await asyncio.gather(lexical_task, vector_task)
        except BaseException:
            # Never leave the sibling running past a failed or cancelled request
            for task in (lexical_task, vector_task):
                task.cancel()
            raise

        return self._build_result(
            query, normalized_query, vocabulary, lexical_candidates, vector_result, limit
        )

    def _build_result(
        self,
        query: str,
        normalized_query: str,
        vocabulary: Vocabulary,
        lexical_candidates: list[Candidate],
        vector_result: VectorMatchResult,
        limit: int,
    ) -> SearchResult:
        candidates = merge_candidates(
            lexical_candidates,
            vector_result.candidates if vector_result.available else [],
            limit,
            self._rank_decay,
        )

        if not vector_result.available:
            logger.warning(
                f"Search '{normalized_query}' degraded to lexical-only: {vector_result.reason}"
            )

        return SearchResult(
            query=query,
            normalized_query=normalized_query,
            vocabulary=vocabulary,
            candidates=candidates,
            degraded=not vector_result.available,
            degradation_reason=vector_result.reason,
        )

"""Lexical matching over the code catalogs.

Scores an entry against a normalized query with a fixed weighted sum
of prefix and trigram signals:

    0.7 * title prefix
  + 0.5 * normalized title prefix
  + 0.5 * max trigram similarity (title, normalized title)
  + 0.8 * code prefix
  + 0.4 * synonym prefix

The sum can exceed 1.0; the hybrid ranker clamps it. The store
prefilters candidates, the matcher recomputes the score so every
backend ranks identically.
"""

import asyncio
import logging
from dataclasses import dataclass

from codelink.core.errors import StorageUnavailable
from codelink.schemas.base import SourceKind, Vocabulary
from codelink.schemas.codes import Candidate, CodeEntry
from codelink.services.normalizer import TextNormalizer, trigram_similarity
from codelink.services.storage import CodeStore

logger = logging.getLogger(__name__)

# Scoring weights
TITLE_PREFIX_WEIGHT = 0.7
NORMALIZED_PREFIX_WEIGHT = 0.5
TRIGRAM_WEIGHT = 0.5
CODE_PREFIX_WEIGHT = 0.8
SYNONYM_PREFIX_WEIGHT = 0.4

# Same default as pg_trgm's similarity_threshold
TRIGRAM_MATCH_THRESHOLD = 0.3

# Shortest query also compared against codes with dots removed
COMPACT_CODE_MIN_LENGTH = 3

_normalizer = TextNormalizer()


def _compact_code(code: str) -> str:
    return code.replace(".", "").lower()


@dataclass(frozen=True)
class LexicalFeatures:
    """Signals contributing to the lexical score of one entry."""

    title_prefix: bool
    normalized_prefix: bool
    code_prefix: bool
    synonym_prefix: bool
    trigram: float

    @property
    def matched(self) -> bool:
        """Check if the entry qualifies as a lexical match at all."""
        return (
            self.title_prefix
            or self.normalized_prefix
            or self.code_prefix
            or self.synonym_prefix
            or self.trigram >= TRIGRAM_MATCH_THRESHOLD
        )

    @property
    def score(self) -> float:
        return (
            TITLE_PREFIX_WEIGHT * self.title_prefix
            + NORMALIZED_PREFIX_WEIGHT * self.normalized_prefix
            + TRIGRAM_WEIGHT * self.trigram
            + CODE_PREFIX_WEIGHT * self.code_prefix
            + SYNONYM_PREFIX_WEIGHT * self.synonym_prefix
        )


def lexical_features(entry: CodeEntry, normalized_query: str) -> LexicalFeatures:
    """Compute the lexical signals of an entry for a normalized query."""
    query = normalized_query.lower()
    title = _normalizer.clean(entry.title)
    normalized_title = entry.normalized_title.lower() if entry.normalized_title else title

    code_prefix = entry.code.lower().startswith(query)
    if not code_prefix and len(query) >= COMPACT_CODE_MIN_LENGTH:
        code_prefix = _compact_code(entry.code).startswith(_compact_code(query))

    return LexicalFeatures(
        title_prefix=title.startswith(query),
        normalized_prefix=normalized_title.startswith(query),
        code_prefix=code_prefix,
        synonym_prefix=any(_normalizer.clean(s).startswith(query) for s in entry.synonyms),
        trigram=max(
            trigram_similarity(entry.title, query),
            trigram_similarity(normalized_title, query),
        ),
    )


def score_entry(entry: CodeEntry, normalized_query: str) -> float:
    """Weighted lexical score of an entry (0 when it does not match)."""
    features = lexical_features(entry, normalized_query)
    return features.score if features.matched else 0.0


def match_type(entry: CodeEntry, normalized_query: str) -> str:
    """Describe how an entry matched a query.

    Returns one of "code_match", "exact_prefix", "partial_match" or
    "fuzzy_match".
    """
    query = normalized_query.lower()
    features = lexical_features(entry, query)
    if features.code_prefix:
        return "code_match"
    if features.title_prefix or features.normalized_prefix:
        return "exact_prefix"
    title = _normalizer.clean(entry.title)
    if query and query in title:
        return "partial_match"
    return "fuzzy_match"


class LexicalMatcher:
    """Prefix, code and trigram search over one catalog.

    Usage:
        matcher = LexicalMatcher(store)
        candidates = await matcher.match("essential hyp", limit=8)
    """

    def __init__(
        self,
        store: CodeStore,
        timeout: float | None = 5.0,
        overfetch_factor: int = 4,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._overfetch_factor = max(1, overfetch_factor)

    def rank(self, entries: list[CodeEntry], normalized_query: str, limit: int) -> list[Candidate]:
        """Score, filter and order entries returned by the store.

        Ordering: score descending, then title, then code.
        """
        seen: set[str] = set()
        scored: list[tuple[float, CodeEntry]] = []
        for entry in entries:
            if entry.code in seen:
                continue
            seen.add(entry.code)
            score = score_entry(entry, normalized_query)
            if score > 0:
                scored.append((score, entry))

        scored.sort(key=lambda item: (-item[0], item[1].title.lower(), item[1].code))
        return [
            Candidate(
                entry=entry,
                lexical_score=score,
                combined_score=min(score, 1.0),
                source_kind=SourceKind.LEXICAL,
            )
            for score, entry in scored[:limit]
        ]

    async def match(
        self,
        normalized_query: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
    ) -> list[Candidate]:
        """Find lexical candidates for a normalized query.

        Raises:
            StorageUnavailable: If the store fails or exceeds the timeout.
        """
        if not normalized_query or limit <= 0:
            return []

        fetch_limit = limit * self._overfetch_factor
        try:
            entries = await asyncio.wait_for(
                asyncio.to_thread(
                    self._store.lexical_query,
                    normalized_query,
                    fetch_limit,
                    vocabulary,
                    vocabulary == Vocabulary.PROCEDURE,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Lexical query timed out after {self._timeout}s: '{normalized_query}'")
            raise StorageUnavailable("lexical_query", f"timed out after {self._timeout}s") from e

        candidates = self.rank(entries, normalized_query, limit)
        logger.debug(
            f"Lexical match '{normalized_query}' ({vocabulary.value}): "
            f"{len(entries)} fetched, {len(candidates)} kept"
        )
        return candidates

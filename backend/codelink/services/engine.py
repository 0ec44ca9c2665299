"""Hybrid retrieval and clinical linkage engine.

Entry point for the API layer. The engine owns no global state: the
store and the embedding provider are constructed by the caller and
injected, and every request is an independent pipeline.

Usage:
    engine = CodeLinkEngine(store, provider, EngineConfig())
    result = await engine.search_diagnoses("htn", limit=8)
    links = await engine.link_procedures("S52.501A", limit=5)
"""

import asyncio
import logging
from dataclasses import dataclass

from codelink.core.config import Settings
from codelink.core.database import get_session_factory
from codelink.core.errors import StorageUnavailable, UnknownCode
from codelink.schemas.base import SourceKind, Vocabulary
from codelink.schemas.codes import CodeEntry, LinkageResult, SearchResult, VectorMatchResult
from codelink.services.anatomy import AnatomicalSiteExtractor
from codelink.services.embedding import EmbeddingProvider, NullEmbeddingProvider, create_embedding_provider
from codelink.services.hybrid import HybridRanker
from codelink.services.lexical import LexicalMatcher
from codelink.services.linkage import LinkageRanker, expand_medical_terms
from codelink.services.normalizer import TextNormalizer
from codelink.services.rules import ClinicalRule, ClinicalRuleValidator
from codelink.services.storage import CodeStore
from codelink.services.storage_memory import InMemoryCodeStore
from codelink.services.storage_sql import PostgresCodeStore
from codelink.services.vector import VectorMatcher

logger = logging.getLogger(__name__)

KEYWORD_FALLBACK_LIMIT = 10


@dataclass(frozen=True)
class EngineConfig:
    """Immutable engine configuration."""

    search_vector_threshold: float = 0.5
    linkage_vector_threshold: float = 0.4
    endocrine_vector_threshold: float = 0.35
    infectious_vector_threshold: float = 0.38
    max_suggestions: int = 8
    default_link_limit: int = 5
    max_link_limit: int = 50
    link_overfetch_factor: int = 3
    lexical_overfetch_factor: int = 4
    approval_threshold: float = 0.65
    confidence_ceiling: float = 0.95
    non_vector_baseline: float = 0.5
    rank_decay: float = 0.01
    storage_timeout: float | None = 5.0
    embedding_timeout: float | None = 3.0
    embedding_workers: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            search_vector_threshold=settings.search_vector_threshold,
            linkage_vector_threshold=settings.linkage_vector_threshold,
            endocrine_vector_threshold=settings.endocrine_vector_threshold,
            infectious_vector_threshold=settings.infectious_vector_threshold,
            max_suggestions=settings.max_suggestions,
            default_link_limit=settings.default_link_limit,
            max_link_limit=settings.max_link_limit,
            link_overfetch_factor=settings.link_overfetch_factor,
            lexical_overfetch_factor=settings.lexical_overfetch_factor,
            approval_threshold=settings.approval_threshold,
            confidence_ceiling=settings.confidence_ceiling,
            non_vector_baseline=settings.non_vector_baseline,
            rank_decay=settings.rank_decay,
            storage_timeout=settings.storage_timeout_seconds,
            embedding_timeout=settings.embedding_timeout_seconds,
            embedding_workers=settings.embedding_workers,
        )


class CodeLinkEngine:
    """Diagnosis search and diagnosis to procedure linkage."""

    def __init__(
        self,
        store: CodeStore,
        embedder: EmbeddingProvider | None = None,
        config: EngineConfig | None = None,
        normalizer: TextNormalizer | None = None,
        rules: tuple[ClinicalRule, ...] | None = None,
        extractor: AnatomicalSiteExtractor | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.embedder = embedder or NullEmbeddingProvider()
        self.normalizer = normalizer or TextNormalizer()

        self.lexical = LexicalMatcher(
            store,
            timeout=self.config.storage_timeout,
            overfetch_factor=self.config.lexical_overfetch_factor,
        )
        self.vector = VectorMatcher(
            store,
            self.embedder,
            embedding_timeout=self.config.embedding_timeout,
            storage_timeout=self.config.storage_timeout,
            embedding_workers=self.config.embedding_workers,
        )
        self.hybrid = HybridRanker(self.lexical, self.vector, rank_decay=self.config.rank_decay)
        self.validator = ClinicalRuleValidator(
            rules=rules,
            extractor=extractor,
            approval_threshold=self.config.approval_threshold,
            confidence_ceiling=self.config.confidence_ceiling,
            baseline=self.config.non_vector_baseline,
        )
        self.linkage_ranker = LinkageRanker()

        logger.info(
            f"CodeLink engine ready: store={type(store).__name__}, "
            f"embedder={type(self.embedder).__name__}, rules={len(self.validator.rules)}"
        )

    def close(self) -> None:
        """Release the embedding worker pool."""
        self.vector.close()

    def _search_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.max_suggestions
        return max(0, limit)

    def _link_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.default_link_limit
        return min(max(0, limit), self.config.max_link_limit)

    async def _search(self, query: str, limit: int | None, vocabulary: Vocabulary) -> SearchResult:
        normalized = self.normalizer.normalize(query)
        limit = self._search_limit(limit)
        if not normalized or limit == 0:
            return SearchResult(query=query, normalized_query=normalized, vocabulary=vocabulary)

        result = await self.hybrid.rank(
            query,
            normalized,
            limit,
            vocabulary,
            self.config.search_vector_threshold,
        )
        logger.info(
            f"Search '{normalized}' ({vocabulary.value}): {len(result.candidates)} candidates"
            + (" [lexical-only]" if result.degraded else "")
        )
        return result

    async def search_diagnoses(self, query: str, limit: int | None = None) -> SearchResult:
        """Rank diagnosis codes for a free-text query.

        Raises:
            StorageUnavailable: If the catalog store is unavailable.
        """
        return await self._search(query, limit, Vocabulary.DIAGNOSIS)

    async def search_procedures(self, query: str, limit: int | None = None) -> SearchResult:
        """Rank active procedure codes for a free-text query."""
        return await self._search(query, limit, Vocabulary.PROCEDURE)

    async def normalize(self, text: str, limit: int | None = None) -> SearchResult:
        """Expand abbreviations in clinical text and map it to diagnoses."""
        return await self.search_diagnoses(text, limit)

    def linkage_threshold(self, diagnosis: CodeEntry) -> float:
        """Vector threshold for linkage, lowered for sparse specialties."""
        code = diagnosis.code.upper()
        chapter = (diagnosis.chapter or "").lower()
        if code.startswith("E") or "endocrine" in chapter or "metabolic" in chapter:
            return self.config.endocrine_vector_threshold
        if code[:1] in ("A", "B") or "infectious" in chapter:
            return self.config.infectious_vector_threshold
        return self.config.linkage_vector_threshold

    async def get_diagnosis(self, code: str) -> CodeEntry:
        """Look up a diagnosis code.

        Raises:
            UnknownCode: If the code is not in the catalog.
            StorageUnavailable: If the lookup fails or times out.
        """
        normalized_code = code.strip().upper()
        try:
            entry = await asyncio.wait_for(
                asyncio.to_thread(self.store.get_entry, Vocabulary.DIAGNOSIS, normalized_code),
                timeout=self.config.storage_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageUnavailable("get_entry", f"timed out after {self.config.storage_timeout}s") from e

        if entry is None:
            raise UnknownCode(normalized_code, Vocabulary.DIAGNOSIS.value)
        return entry

    async def _keyword_candidates(self, diagnosis: CodeEntry, fetch_limit: int) -> list[CodeEntry]:
        keywords = expand_medical_terms(diagnosis)
        if not keywords:
            return []
        logger.info(f"Keyword fallback for {diagnosis.code}: {', '.join(keywords)}")

        queries = [
            asyncio.to_thread(
                self.store.keyword_query,
                keyword,
                KEYWORD_FALLBACK_LIMIT,
                Vocabulary.PROCEDURE,
                True,
            )
            for keyword in keywords
        ]
        try:
            batches = await asyncio.wait_for(asyncio.gather(*queries), timeout=self.config.storage_timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailable("keyword_query", f"timed out after {self.config.storage_timeout}s") from e

        seen: dict[str, CodeEntry] = {}
        for batch in batches:
            for entry in batch:
                seen.setdefault(entry.code, entry)
        return list(seen.values())[:fetch_limit]

    async def link_procedures(self, diagnosis_code: str, limit: int | None = None) -> LinkageResult:
        """Validated, ranked procedures for a confirmed diagnosis.

        Candidates come from vector similarity (stored diagnosis
        embedding first, then the provider) and fall back to keyword
        search. Only approved links are returned.

        Raises:
            UnknownCode: If the diagnosis code does not exist.
            StorageUnavailable: If the catalog store is unavailable.
        """
        diagnosis = await self.get_diagnosis(diagnosis_code)
        limit = self._link_limit(limit)
        if limit == 0:
            return LinkageResult(diagnosis=diagnosis)

        fetch_limit = limit * self.config.link_overfetch_factor
        threshold = self.linkage_threshold(diagnosis)

        vector_result: VectorMatchResult = await self.vector.match(
            diagnosis.title,
            threshold,
            fetch_limit,
            Vocabulary.PROCEDURE,
            embedding=diagnosis.embedding if diagnosis.has_embedding else None,
        )

        if vector_result.available and vector_result.candidates:
            raw = [(c.entry, c.vector_similarity) for c in vector_result.candidates]
            source = SourceKind.VECTOR
        else:
            entries = await self._keyword_candidates(diagnosis, fetch_limit)
            raw = [(entry, None) for entry in entries]
            source = SourceKind.LEXICAL

        validated = self.validator.validate_all(diagnosis, raw)
        links = self.linkage_ranker.rank(validated, limit)

        approved = sum(1 for link in validated if link.is_approved)
        logger.info(
            f"Linkage {diagnosis.code}: {len(raw)} {source.value} candidates, "
            f"{approved} approved, {len(links)} returned (threshold={threshold})"
        )

        return LinkageResult(
            diagnosis=diagnosis,
            links=links,
            candidates_considered=len(raw),
            candidate_source=source,
            degraded=not vector_result.available,
            degradation_reason=vector_result.reason,
        )


def create_store(settings: Settings) -> CodeStore:
    """Build the catalog store selected by ``settings.storage_backend``."""
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryCodeStore.from_fixture(settings.catalog_fixture_path)
    if backend == "postgres":
        return PostgresCodeStore(
            session_factory=get_session_factory(settings.database_url, echo=settings.debug),
            statement_timeout=settings.storage_timeout_seconds,
        )
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


def build_engine(settings: Settings) -> CodeLinkEngine:
    """Construct the engine and its collaborators from settings."""
    return CodeLinkEngine(
        store=create_store(settings),
        embedder=create_embedding_provider(settings),
        config=EngineConfig.from_settings(settings),
    )

"""Vector similarity matching.

Embeds a query through the injected provider and asks the store for
the nearest entries. Embedding failures and timeouts never escape this
module: they come back as an unavailable VectorMatchResult so callers
can continue with lexical results.
"""

import asyncio
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from codelink.core.errors import EmbeddingUnavailable
from codelink.schemas.base import SourceKind, Vocabulary
from codelink.schemas.codes import Candidate, VectorMatchResult
from codelink.services.embedding import EmbeddingProvider
from codelink.services.storage import CodeStore

logger = logging.getLogger(__name__)


class VectorMatcher:
    """Semantic search over one catalog.

    Usage:
        matcher = VectorMatcher(store, provider)
        result = await matcher.match("high blood pressure", threshold=0.5, limit=8)
        if not result.available:
            ...  # lexical-only
    """

    def __init__(
        self,
        store: CodeStore,
        embedder: EmbeddingProvider,
        embedding_timeout: float | None = 3.0,
        storage_timeout: float | None = 5.0,
        embedding_workers: int = 4,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._embedding_timeout = embedding_timeout
        self._storage_timeout = storage_timeout
        self._embedding_workers = embedding_workers
        self._executor: ThreadPoolExecutor | None = None

    def _embedding_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._embedding_workers,
                thread_name_prefix="codelink-embed",
            )
        return self._executor

    def close(self) -> None:
        """Stop accepting embedding calls; running calls finish in the background."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def embed(self, text: str) -> list[float]:
        """Embed text in a worker thread, bounded by the embedding timeout.

        A timed-out call cannot be interrupted and keeps its worker until the
        provider returns. Calls run on this matcher's own pool of
        ``embedding_workers`` threads, so stuck providers queue further calls
        (which then time out) instead of growing the default executor.

        Raises:
            EmbeddingUnavailable: If the provider fails or times out.
        """
        try:
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(
                loop.run_in_executor(self._embedding_executor(), self._embedder.embed, text),
                timeout=self._embedding_timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(
                f"embedding timed out after {self._embedding_timeout}s"
            ) from e
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            logger.error(f"Embedding provider {type(self._embedder).__name__} raised: {e!r}")
            raise EmbeddingUnavailable(f"embedding provider error: {e}") from e

    async def match(
        self,
        text: str,
        threshold: float,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        embedding: Sequence[float] | None = None,
    ) -> VectorMatchResult:
        """Find entries whose embedding is similar to the text.

        Args:
            text: Text to embed when no precomputed embedding is given.
            threshold: Minimum cosine similarity.
            limit: Maximum candidates to return.
            vocabulary: Catalog to search.
            embedding: Precomputed query embedding, skips the provider.

        Returns:
            VectorMatchResult; ``available`` is False when embedding or
            the vector query could not be completed.

        Raises:
            StorageUnavailable: If the store itself fails.
        """
        if limit <= 0:
            return VectorMatchResult()

        if embedding is None:
            if not text:
                return VectorMatchResult()
            try:
                embedding = await self.embed(text)
            except EmbeddingUnavailable as e:
                logger.warning(f"Vector path unavailable for '{text}': {e.reason}")
                return VectorMatchResult.unavailable(e.reason)

        if not any(embedding):
            return VectorMatchResult()

        try:
            pairs = await asyncio.wait_for(
                asyncio.to_thread(
                    self._store.vector_query,
                    embedding,
                    threshold,
                    limit,
                    vocabulary,
                    vocabulary == Vocabulary.PROCEDURE,
                ),
                timeout=self._storage_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Vector query timed out after {self._storage_timeout}s")
            return VectorMatchResult.unavailable("vector query timed out")
        except EmbeddingUnavailable as e:
            logger.warning(f"Vector query rejected embedding: {e.reason}")
            return VectorMatchResult.unavailable(e.reason)

        seen: set[str] = set()
        candidates: list[Candidate] = []
        for entry, similarity in pairs:
            if entry.code in seen or similarity < threshold:
                continue
            seen.add(entry.code)
            similarity = min(max(similarity, 0.0), 1.0)
            candidates.append(
                Candidate(
                    entry=entry,
                    vector_similarity=similarity,
                    combined_score=similarity,
                    source_kind=SourceKind.VECTOR,
                )
            )

        candidates.sort(key=lambda c: (-c.combined_score, c.title.lower(), c.code))
        logger.debug(f"Vector match ({vocabulary.value}): {len(candidates)} above {threshold}")
        return VectorMatchResult(candidates=candidates[:limit])

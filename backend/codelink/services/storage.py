"""Code catalog storage interface.

The engine reads the diagnosis and procedure catalogs through this
contract only. Implementations are blocking; the engine runs them in
worker threads and bounds each call with its own timeout. Any backend
failure must be raised as StorageUnavailable.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from codelink.schemas.base import Vocabulary
from codelink.schemas.codes import CodeEntry


class CodeStore(ABC):
    """Read-only access to a versioned snapshot of the code catalogs."""

    @abstractmethod
    def get_entry(self, vocabulary: Vocabulary, code: str) -> CodeEntry | None:
        """Look up a single code, returning None when it does not exist."""
        pass  # pragma: no cover

    @abstractmethod
    def lexical_query(
        self,
        normalized_text: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        """Return entries matching the text by prefix, code or trigram.

        An entry qualifies when its title, normalized title, code or a
        synonym starts with the text, or when the trigram similarity of
        its title or normalized title reaches the fuzzy match threshold.
        Entries are returned best match first.
        """
        pass  # pragma: no cover

    @abstractmethod
    def vector_query(
        self,
        embedding: Sequence[float],
        threshold: float,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[tuple[CodeEntry, float]]:
        """Return (entry, cosine similarity) pairs at or above threshold.

        Entries without an embedding are never returned. Pairs are
        ordered by similarity descending. A query embedding whose
        dimension does not match the catalog raises EmbeddingUnavailable.
        """
        pass  # pragma: no cover

    @abstractmethod
    def keyword_query(
        self,
        keyword: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.PROCEDURE,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        """Return entries whose title or long title contains the keyword."""
        pass  # pragma: no cover

    def entries_without_embeddings(self, vocabulary: Vocabulary, limit: int) -> list[CodeEntry]:
        """Entries still waiting for an embedding (used by the backfill job)."""
        raise NotImplementedError(f"{type(self).__name__} does not support embedding backfill")

    def store_embeddings(self, vocabulary: Vocabulary, embeddings: dict[str, list[float]]) -> int:
        """Persist embeddings keyed by code, returning the number updated."""
        raise NotImplementedError(f"{type(self).__name__} does not support embedding backfill")

    def check(self) -> None:
        """Raise StorageUnavailable if the store cannot serve requests."""
        return None

"""In-memory code catalog backed by a JSON fixture.

Used for development without PostgreSQL and by the test suite. The
catalog is loaded once and every query works on a copy of it; lexical
and vector predicates mirror the SQL store so both backends return the same
candidates.
"""

import json
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

from codelink.core.errors import EmbeddingUnavailable, StorageUnavailable
from codelink.schemas.base import Vocabulary
from codelink.schemas.codes import CodeEntry
from codelink.services.embedding import find_similar
from codelink.services.lexical import lexical_features
from codelink.services.normalizer import TextNormalizer
from codelink.services.storage import CodeStore

logger = logging.getLogger(__name__)

_normalizer = TextNormalizer()


def entry_from_dict(data: dict[str, Any], vocabulary: Vocabulary) -> CodeEntry:
    """Build a CodeEntry from one fixture record."""
    embedding = data.get("embedding")
    title = data.get("title") or data.get("short_description") or data["display"]
    long_title = data.get("long_title") or data.get("display")
    return CodeEntry(
        code=data["code"],
        title=title,
        vocabulary=vocabulary,
        normalized_title=data.get("normalized_title") or _normalizer.clean(title),
        synonyms=tuple(data.get("synonyms", ())),
        chapter=data.get("chapter"),
        subchapter=data.get("subchapter") or data.get("block"),
        long_title=long_title if long_title != title else None,
        has_specifiers=bool(data.get("has_specifiers", False)),
        active=bool(data.get("active", True)),
        embedding=tuple(embedding) if embedding else None,
    )


class InMemoryCodeStore(CodeStore):
    """Code catalog held in process memory.

    Usage:
        store = InMemoryCodeStore.from_fixture("fixtures/code_catalog.json")
        store.get_entry(Vocabulary.DIAGNOSIS, "I10")
    """

    def __init__(self, entries: Iterable[CodeEntry] = ()) -> None:
        self._entries: dict[Vocabulary, dict[str, CodeEntry]] = {
            vocabulary: {} for vocabulary in Vocabulary
        }
        self._lock = threading.Lock()
        for entry in entries:
            self._entries[entry.vocabulary][entry.code.upper()] = entry

    @classmethod
    def from_fixture(cls, path: str | Path) -> "InMemoryCodeStore":
        """Load a catalog fixture with "diagnoses" and "procedures" lists.

        Raises:
            StorageUnavailable: If the fixture cannot be read or parsed.
        """
        fixture_path = Path(path)
        try:
            with open(fixture_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailable("load_fixture", f"{fixture_path}: {e}") from e

        entries = [entry_from_dict(d, Vocabulary.DIAGNOSIS) for d in data.get("diagnoses", [])]
        entries += [entry_from_dict(p, Vocabulary.PROCEDURE) for p in data.get("procedures", [])]
        store = cls(entries)
        logger.info(
            f"Loaded catalog fixture {fixture_path.name}: "
            f"{store.count(Vocabulary.DIAGNOSIS)} diagnoses, "
            f"{store.count(Vocabulary.PROCEDURE)} procedures"
        )
        return store

    def _snapshot(self, vocabulary: Vocabulary, active_only: bool = False) -> list[CodeEntry]:
        with self._lock:
            entries = list(self._entries[vocabulary].values())
        if active_only:
            entries = [e for e in entries if e.active]
        return entries

    def count(self, vocabulary: Vocabulary) -> int:
        return len(self._entries[vocabulary])

    def get_entry(self, vocabulary: Vocabulary, code: str) -> CodeEntry | None:
        with self._lock:
            return self._entries[vocabulary].get(code.strip().upper())

    def lexical_query(
        self,
        normalized_text: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        if not normalized_text or limit <= 0:
            return []

        scored = []
        for entry in self._snapshot(vocabulary, active_only):
            features = lexical_features(entry, normalized_text)
            if features.matched:
                scored.append((features.score, entry))

        scored.sort(key=lambda item: (-item[0], item[1].title))
        return [entry for _, entry in scored[:limit]]

    def vector_query(
        self,
        embedding: Sequence[float],
        threshold: float,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
        active_only: bool = True,
    ) -> list[tuple[CodeEntry, float]]:
        if limit <= 0:
            return []

        entries = [e for e in self._snapshot(vocabulary, active_only) if e.has_embedding]
        if not entries:
            return []

        dims = {len(e.embedding) for e in entries}
        if len(dims) > 1 or len(embedding) not in dims:
            raise EmbeddingUnavailable(
                f"embedding dimension {len(embedding)} does not match catalog {sorted(dims)}"
            )

        matches = find_similar(
            embedding,
            [e.embedding for e in entries],
            top_k=limit,
            threshold=threshold,
        )
        return [(entries[idx], score) for idx, score in matches]

    def keyword_query(
        self,
        keyword: str,
        limit: int,
        vocabulary: Vocabulary = Vocabulary.PROCEDURE,
        active_only: bool = True,
    ) -> list[CodeEntry]:
        needle = keyword.strip().lower()
        if not needle or limit <= 0:
            return []

        results = [
            entry
            for entry in self._snapshot(vocabulary, active_only)
            if needle in entry.title.lower() or needle in (entry.long_title or "").lower()
        ]
        results.sort(key=lambda e: e.code)
        return results[:limit]

    def entries_without_embeddings(self, vocabulary: Vocabulary, limit: int) -> list[CodeEntry]:
        missing = [e for e in self._snapshot(vocabulary) if not e.has_embedding]
        missing.sort(key=lambda e: e.code)
        return missing[:limit]

    def store_embeddings(self, vocabulary: Vocabulary, embeddings: dict[str, list[float]]) -> int:
        updated = 0
        with self._lock:
            catalog = self._entries[vocabulary]
            for code, embedding in embeddings.items():
                key = code.upper()
                if key in catalog:
                    catalog[key] = replace(catalog[key], embedding=tuple(embedding))
                    updated += 1
        return updated

"""Tests for the in-memory code catalog."""

import json
from pathlib import Path

import pytest

from conftest import make_entry, make_procedure
from codelink.core.errors import EmbeddingUnavailable, StorageUnavailable
from codelink.schemas.base import Vocabulary
from codelink.services.storage_memory import InMemoryCodeStore, entry_from_dict


class TestFixtureLoading:
    """Test loading the catalog fixture."""

    def test_counts(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.count(Vocabulary.DIAGNOSIS) == 24
        assert catalog_store.count(Vocabulary.PROCEDURE) == 34

    def test_missing_fixture(self, tmp_path: Path) -> None:
        with pytest.raises(StorageUnavailable) as exc_info:
            InMemoryCodeStore.from_fixture(tmp_path / "missing.json")
        assert exc_info.value.operation == "load_fixture"

    def test_malformed_fixture(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageUnavailable):
            InMemoryCodeStore.from_fixture(path)

    def test_small_fixture(self, tmp_path: Path) -> None:
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({
            "diagnoses": [{"code": "I10", "title": "Essential (primary) hypertension"}],
            "procedures": [],
        }), encoding="utf-8")

        store = InMemoryCodeStore.from_fixture(path)

        assert store.count(Vocabulary.DIAGNOSIS) == 1
        assert store.get_entry(Vocabulary.DIAGNOSIS, "I10").normalized_title == "essential (primary) hypertension"


class TestEntryFromDict:
    """Test fixture record conversion."""

    def test_procedure_descriptions(self) -> None:
        entry = entry_from_dict(
            {"code": "84443", "short_description": "Assay thyroid stim hormone",
             "display": "Thyroid stimulating hormone (TSH)"},
            Vocabulary.PROCEDURE,
        )
        assert entry.title == "Assay thyroid stim hormone"
        assert entry.long_title == "Thyroid stimulating hormone (TSH)"
        assert entry.active
        assert entry.embedding is None

    def test_display_only(self) -> None:
        entry = entry_from_dict({"code": "99213", "display": "Office visit"}, Vocabulary.PROCEDURE)
        assert entry.title == "Office visit"
        assert entry.long_title is None

    def test_embedding_and_flags(self) -> None:
        entry = entry_from_dict(
            {"code": "E11.9", "title": "Type 2 diabetes mellitus without complications",
             "has_specifiers": True, "block": "E08-E13", "embedding": [0.1, 0.2]},
            Vocabulary.DIAGNOSIS,
        )
        assert entry.has_specifiers
        assert entry.subchapter == "E08-E13"
        assert entry.embedding == (0.1, 0.2)


class TestQueries:
    """Test lookup, lexical and keyword queries."""

    def test_get_entry_is_case_insensitive(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.get_entry(Vocabulary.DIAGNOSIS, " s72.301a ").code == "S72.301A"
        assert catalog_store.get_entry(Vocabulary.DIAGNOSIS, "Z99.99") is None

    def test_vocabularies_are_separate(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.get_entry(Vocabulary.PROCEDURE, "I10") is None

    def test_lexical_query_by_code(self, catalog_store: InMemoryCodeStore) -> None:
        results = catalog_store.lexical_query("i10", 5)
        assert results[0].code == "I10"

    def test_lexical_query_empty(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.lexical_query("", 5) == []
        assert catalog_store.lexical_query("fracture", 0) == []

    def test_keyword_query_skips_inactive(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.keyword_query("rbc", 10) == []
        assert [e.code for e in catalog_store.keyword_query("rbc", 10, active_only=False)] == ["0001U"]

    def test_keyword_query_matches_long_title(self, catalog_store: InMemoryCodeStore) -> None:
        results = catalog_store.keyword_query("thyroid stimulating", 10)
        assert "84443" in [e.code for e in results]

    def test_keyword_query_sorted_and_limited(self, catalog_store: InMemoryCodeStore) -> None:
        results = catalog_store.keyword_query("fracture", 2)
        codes = [e.code for e in results]
        assert len(codes) <= 2
        assert codes == sorted(codes)


class TestEmbeddings:
    """Test vector queries and embedding backfill."""

    def test_vector_query(self, vector_store: InMemoryCodeStore) -> None:
        results = vector_store.vector_query([1.0, 0.0, 0.0], threshold=0.5, limit=5, vocabulary=Vocabulary.PROCEDURE)

        assert [entry.code for entry, _ in results] == ["27506", "27447", "73552"]
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)

    def test_dimension_mismatch(self, vector_store: InMemoryCodeStore) -> None:
        with pytest.raises(EmbeddingUnavailable):
            vector_store.vector_query([1.0, 0.0], threshold=0.0, limit=5)

    def test_no_embeddings(self, catalog_store: InMemoryCodeStore) -> None:
        assert catalog_store.vector_query([1.0, 0.0, 0.0], threshold=0.0, limit=5) == []

    def test_backfill_round(self) -> None:
        store = InMemoryCodeStore([
            make_procedure("27447", "Total knee arthroplasty"),
            make_procedure("27506", "Open treatment of femoral shaft fracture", embedding=[1.0, 0.0]),
            make_entry("I10", "Essential (primary) hypertension"),
        ])

        missing = store.entries_without_embeddings(Vocabulary.PROCEDURE, 10)
        assert [e.code for e in missing] == ["27447"]

        updated = store.store_embeddings(Vocabulary.PROCEDURE, {"27447": [0.0, 1.0], "99999": [1.0, 1.0]})

        assert updated == 1
        assert store.get_entry(Vocabulary.PROCEDURE, "27447").embedding == (0.0, 1.0)
        assert store.entries_without_embeddings(Vocabulary.PROCEDURE, 10) == []

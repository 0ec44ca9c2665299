"""Tests for the retrieval and linkage engine."""

from unittest.mock import MagicMock

import pytest

from conftest import BrokenCodeStore, CrashingEmbeddingProvider, FakeEmbeddingProvider, make_entry
from codelink.core.config import Settings
from codelink.core.database import close_db
from codelink.core.errors import StorageUnavailable, UnknownCode
from codelink.schemas.base import LinkStatus, RelationshipType, SourceKind
from codelink.services.embedding import NullEmbeddingProvider, SentenceTransformerEmbeddingProvider
from codelink.services.engine import CodeLinkEngine, EngineConfig, build_engine, create_store
from codelink.services.storage_memory import InMemoryCodeStore
from codelink.services.storage_sql import PostgresCodeStore


class TestSearch:
    """Test diagnosis and procedure search."""

    @pytest.mark.asyncio
    async def test_search_without_embeddings_is_degraded(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("htn")

        assert result.normalized_query == "hypertension"
        assert result.degraded
        assert "I10" in [c.code for c in result.candidates]
        assert all(c.source_kind == SourceKind.LEXICAL for c in result.candidates)

    @pytest.mark.asyncio
    async def test_results_are_bounded_and_ordered(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("fracture", limit=8)

        scores = [c.combined_score for c in result.candidates]
        assert 0 < len(scores) <= 8
        assert all(0.0 <= s <= 1.0 for s in scores)
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_prefix_matches_rank_first(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("hyp")

        codes = [c.code for c in result.candidates]
        assert set(codes[:2]) == {"E03.9", "I11.9"}
        assert codes.index("I10") > 1

    @pytest.mark.asyncio
    async def test_code_search(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("S52.501")
        assert {c.code for c in result.candidates[:2]} == {"S52.501A", "S52.501S"}

    @pytest.mark.asyncio
    async def test_search_is_repeatable(self, engine: CodeLinkEngine) -> None:
        first = await engine.search_diagnoses("diabetes")
        second = await engine.search_diagnoses("diabetes")
        assert [(c.code, c.combined_score) for c in first.candidates] == [
            (c.code, c.combined_score) for c in second.candidates
        ]

    @pytest.mark.asyncio
    async def test_empty_query(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("   ")
        assert result.is_empty
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_no_matches_is_empty_not_error(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_diagnoses("qqqzzz")
        assert result.is_empty

    @pytest.mark.asyncio
    async def test_hybrid_search_with_embeddings(self, vector_store: InMemoryCodeStore) -> None:
        provider = FakeEmbeddingProvider({"high blood pressure": [0.1, 1.0, 0.0]})
        engine = CodeLinkEngine(vector_store, provider)

        result = await engine.search_diagnoses("High blood pressure")

        assert not result.degraded
        assert result.candidates[0].code == "I10"
        assert result.candidates[0].source_kind == SourceKind.HYBRID

    @pytest.mark.asyncio
    async def test_model_runtime_error_degrades_to_lexical(self, catalog_store: InMemoryCodeStore) -> None:
        """Test a failing local model still yields lexical suggestions."""
        provider = SentenceTransformerEmbeddingProvider("all-MiniLM-L6-v2")
        provider._model = MagicMock()
        provider._model.encode.side_effect = RuntimeError("CUDA out of memory")
        engine = CodeLinkEngine(catalog_store, provider)

        result = await engine.search_diagnoses("essential")

        assert result.degraded
        assert "CUDA out of memory" in result.degradation_reason
        assert result.candidates[0].code == "I10"

    @pytest.mark.asyncio
    async def test_procedure_search_skips_inactive(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_procedures("rbc dna")
        assert result.is_empty

    @pytest.mark.asyncio
    async def test_procedure_search(self, engine: CodeLinkEngine) -> None:
        result = await engine.search_procedures("x-ray exam")
        assert {"71046", "73090"} <= {c.code for c in result.candidates}

    @pytest.mark.asyncio
    async def test_normalize_expands_abbreviations(self, engine: CodeLinkEngine) -> None:
        result = await engine.normalize("DM type 2 w/o comp", limit=3)

        assert result.normalized_query == "type 2 diabetes mellitus without complications"
        assert result.candidates[0].code == "E11.9"

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self) -> None:
        engine = CodeLinkEngine(BrokenCodeStore())
        with pytest.raises(StorageUnavailable):
            await engine.search_diagnoses("hypertension")


class TestLinkage:
    """Test diagnosis to procedure linkage."""

    @pytest.mark.asyncio
    async def test_unknown_code(self, engine: CodeLinkEngine) -> None:
        with pytest.raises(UnknownCode) as exc_info:
            await engine.link_procedures("Z99.99")
        assert exc_info.value.code == "Z99.99"

    @pytest.mark.asyncio
    async def test_code_lookup_is_case_insensitive(self, engine: CodeLinkEngine) -> None:
        diagnosis = await engine.get_diagnosis(" s52.501a ")
        assert diagnosis.code == "S52.501A"

    @pytest.mark.asyncio
    async def test_vector_linkage_uses_stored_embedding(self, vector_store: InMemoryCodeStore) -> None:
        provider = FakeEmbeddingProvider()
        engine = CodeLinkEngine(vector_store, provider)

        result = await engine.link_procedures("S72.301A")

        assert provider.calls == []
        assert result.candidate_source == SourceKind.VECTOR
        assert not result.degraded
        assert result.candidates_considered == 3
        assert [link.procedure.code for link in result.links] == ["27506", "73552"]
        assert all(link.validation_score == pytest.approx(0.95) for link in result.links)
        assert result.links[0].relationship_type == RelationshipType.THERAPEUTIC
        assert result.links[1].relationship_type == RelationshipType.IMAGING

    @pytest.mark.asyncio
    async def test_wrong_site_never_returned(self, vector_store: InMemoryCodeStore) -> None:
        """Test the knee arthroplasty is filtered out for a femur fracture."""
        engine = CodeLinkEngine(vector_store)
        result = await engine.link_procedures("S72.301A", limit=10)
        assert "27447" not in [link.procedure.code for link in result.links]

    @pytest.mark.asyncio
    async def test_vector_linkage_embeds_title(self, femur_diagnosis) -> None:
        diagnosis = make_entry(femur_diagnosis.code, femur_diagnosis.title, chapter=femur_diagnosis.chapter)
        store = InMemoryCodeStore([diagnosis])
        provider = FakeEmbeddingProvider({femur_diagnosis.title: [1.0, 0.0, 0.0]})
        engine = CodeLinkEngine(store, provider)

        result = await engine.link_procedures("S72.301A")

        assert provider.calls == [femur_diagnosis.title]
        assert result.links == []

    @pytest.mark.asyncio
    async def test_keyword_fallback(self, engine: CodeLinkEngine) -> None:
        result = await engine.link_procedures("S52.501A")

        assert result.candidate_source == SourceKind.LEXICAL
        assert result.degraded
        assert [link.procedure.code for link in result.links] == ["25607"]
        link = result.links[0]
        assert link.status == LinkStatus.APPROVED
        assert link.raw_similarity is None
        assert link.validation_score == pytest.approx(0.95)
        assert link.relationship_type == RelationshipType.THERAPEUTIC
        assert link.rationale == "Surgical fracture treatment for radius; Surgical treatment of an injury"

    @pytest.mark.asyncio
    async def test_provider_crash_falls_back_to_keywords(self, catalog_store: InMemoryCodeStore) -> None:
        engine = CodeLinkEngine(catalog_store, CrashingEmbeddingProvider())

        result = await engine.link_procedures("S52.501A")

        assert result.degraded
        assert result.candidate_source == SourceKind.LEXICAL
        assert [link.procedure.code for link in result.links] == ["25607"]

    @pytest.mark.asyncio
    async def test_keyword_fallback_thyroid(self, engine: CodeLinkEngine) -> None:
        result = await engine.link_procedures("E03.9")

        assert [link.procedure.code for link in result.links] == ["84439", "84443"]
        assert all(link.relationship_type == RelationshipType.DIAGNOSTIC for link in result.links)

    @pytest.mark.asyncio
    async def test_all_links_are_approved_and_capped(self, engine: CodeLinkEngine) -> None:
        for code in ("I10", "E11.9", "A41.9", "S72.301A", "S02.609A", "K35.80"):
            result = await engine.link_procedures(code, limit=3)
            assert len(result.links) <= 3
            for link in result.links:
                assert link.status == LinkStatus.APPROVED
                assert 0.65 <= link.validation_score <= 0.95

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self) -> None:
        engine = CodeLinkEngine(BrokenCodeStore())
        with pytest.raises(StorageUnavailable):
            await engine.link_procedures("I10")


class TestLinkageThreshold:
    """Test per-specialty vector thresholds."""

    def test_endocrine_threshold(self, engine: CodeLinkEngine) -> None:
        endocrine = make_entry("E11.9", "Some diagnosis", chapter="Endocrine, nutritional and metabolic diseases")
        assert engine.linkage_threshold(endocrine) == 0.35
        assert engine.linkage_threshold(make_entry("E03.9", "Some diagnosis")) == 0.35

    def test_infectious_threshold(self, engine: CodeLinkEngine) -> None:
        infectious = make_entry("A41.9", "Some diagnosis", chapter="Certain infectious and parasitic diseases")
        assert engine.linkage_threshold(infectious) == 0.38
        assert engine.linkage_threshold(make_entry("B20", "Some diagnosis")) == 0.38

    def test_default_threshold(self, engine: CodeLinkEngine) -> None:
        diagnosis = make_entry("I10", "Some diagnosis", chapter="Diseases of the circulatory system")
        assert engine.linkage_threshold(diagnosis) == 0.4


class TestConstruction:
    """Test engine construction from settings."""

    def test_build_engine_from_settings(self, test_settings: Settings) -> None:
        engine = build_engine(test_settings)

        assert isinstance(engine.store, InMemoryCodeStore)
        assert isinstance(engine.embedder, NullEmbeddingProvider)
        assert engine.config.approval_threshold == 0.65

    def test_config_from_settings(self) -> None:
        settings = Settings(_env_file=None, max_suggestions=12, linkage_vector_threshold=0.45)
        config = EngineConfig.from_settings(settings)
        assert config.max_suggestions == 12
        assert config.linkage_vector_threshold == 0.45

    def test_postgres_store_uses_configured_url(self) -> None:
        settings = Settings(
            _env_file=None,
            storage_backend="postgres",
            database_url="postgresql+psycopg2://u:p@otherhost:5433/otherdb",
        )
        try:
            store = create_store(settings)
            url = store._session_factory.kw["bind"].url

            assert isinstance(store, PostgresCodeStore)
            assert (url.host, url.port, url.database) == ("otherhost", 5433, "otherdb")
            assert create_store(settings)._session_factory.kw["bind"] is store._session_factory.kw["bind"]
        finally:
            close_db()

    def test_unknown_storage_backend(self) -> None:
        with pytest.raises(ValueError):
            create_store(Settings(_env_file=None, storage_backend="mongo"))

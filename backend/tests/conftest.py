"""Pytest configuration and fixtures for backend tests."""

import time
from collections.abc import AsyncGenerator, Sequence

import pytest
from httpx import ASGITransport, AsyncClient

from codelink.core.config import DEFAULT_FIXTURE, Settings
from codelink.core.errors import EmbeddingUnavailable, StorageUnavailable
from codelink.main import create_app
from codelink.schemas.base import Vocabulary
from codelink.schemas.codes import CodeEntry
from codelink.services.embedding import EmbeddingProvider
from codelink.services.engine import CodeLinkEngine, EngineConfig
from codelink.services.normalizer import TextNormalizer
from codelink.services.storage_memory import InMemoryCodeStore

INJURY_CHAPTER = "Injury, poisoning and certain other consequences of external causes"

_normalizer = TextNormalizer()


def make_entry(
    code: str,
    title: str,
    vocabulary: Vocabulary = Vocabulary.DIAGNOSIS,
    embedding: Sequence[float] | None = None,
    **kwargs,
) -> CodeEntry:
    """Build a catalog entry with a cleaned normalized title."""
    kwargs.setdefault("normalized_title", _normalizer.clean(title))
    return CodeEntry(
        code=code,
        title=title,
        vocabulary=vocabulary,
        embedding=tuple(embedding) if embedding is not None else None,
        **kwargs,
    )


def make_procedure(code: str, title: str, **kwargs) -> CodeEntry:
    return make_entry(code, title, vocabulary=Vocabulary.PROCEDURE, **kwargs)


class FakeEmbeddingProvider(EmbeddingProvider):
    """Returns canned vectors looked up by lowercased text."""

    def __init__(
        self,
        vectors: dict[str, Sequence[float]] | None = None,
        default: Sequence[float] | None = None,
    ) -> None:
        self.vectors = {text.lower(): list(v) for text, v in (vectors or {}).items()}
        self.default = list(default) if default is not None else None
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = self.vectors.get(text.lower(), self.default)
        if vector is None:
            raise EmbeddingUnavailable(f"no embedding for '{text}'")
        return list(vector)


class FailingEmbeddingProvider(EmbeddingProvider):
    """Provider whose backend is always down."""

    def embed(self, text: str) -> list[float]:
        raise EmbeddingUnavailable("provider offline")


class CrashingEmbeddingProvider(EmbeddingProvider):
    """Provider whose model fails at runtime."""

    def embed(self, text: str) -> list[float]:
        raise RuntimeError("CUDA out of memory")


class SlowEmbeddingProvider(EmbeddingProvider):
    """Provider that blocks longer than any test timeout."""

    def __init__(self, delay: float = 0.5) -> None:
        self.delay = delay

    def embed(self, text: str) -> list[float]:
        time.sleep(self.delay)
        return [1.0, 0.0, 0.0]


class BrokenCodeStore(InMemoryCodeStore):
    """Store whose database connection is gone."""

    def get_entry(self, vocabulary, code):
        raise StorageUnavailable("get_entry", "connection refused")

    def lexical_query(self, normalized_text, limit, vocabulary=Vocabulary.DIAGNOSIS, active_only=True):
        raise StorageUnavailable("lexical_query", "connection refused")

    def vector_query(self, embedding, threshold, limit, vocabulary=Vocabulary.DIAGNOSIS, active_only=True):
        raise StorageUnavailable("vector_query", "connection refused")

    def check(self) -> None:
        raise StorageUnavailable("check", "connection refused")


# ============================================================================
# Catalog fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings for the in-memory catalog without an embedding backend."""
    return Settings(
        _env_file=None,
        storage_backend="memory",
        embedding_provider="none",
        catalog_fixture_path=DEFAULT_FIXTURE,
    )


@pytest.fixture
def catalog_store() -> InMemoryCodeStore:
    """The sample catalog shipped with the repository (no embeddings)."""
    return InMemoryCodeStore.from_fixture(DEFAULT_FIXTURE)


@pytest.fixture
def engine(catalog_store: InMemoryCodeStore) -> CodeLinkEngine:
    """Engine over the sample catalog with no embedding provider."""
    return CodeLinkEngine(catalog_store, config=EngineConfig())


@pytest.fixture
def femur_diagnosis() -> CodeEntry:
    return make_entry(
        "S72.301A",
        "Unspecified fracture of shaft of right femur, initial encounter for closed fracture",
        chapter=INJURY_CHAPTER,
        embedding=[1.0, 0.0, 0.0],
    )


@pytest.fixture
def vector_store(femur_diagnosis: CodeEntry) -> InMemoryCodeStore:
    """Small catalog with 3-dimensional embeddings on every entry."""
    return InMemoryCodeStore([
        femur_diagnosis,
        make_entry(
            "I10",
            "Essential (primary) hypertension",
            synonyms=("hypertension", "high blood pressure"),
            chapter="Diseases of the circulatory system",
            embedding=[0.0, 1.0, 0.0],
        ),
        make_entry(
            "I11.9",
            "Hypertensive heart disease without heart failure",
            chapter="Diseases of the circulatory system",
            embedding=[0.0, 0.8, 0.6],
        ),
        make_entry(
            "J18.9",
            "Pneumonia, unspecified organism",
            chapter="Diseases of the respiratory system",
            embedding=[0.0, 0.0, 1.0],
        ),
        make_procedure(
            "27506",
            "Treatment of thigh fracture",
            long_title="Open treatment of femoral shaft fracture, with insertion of intramedullary implant",
            chapter="Surgery",
            embedding=[0.95, 0.05, 0.0],
        ),
        make_procedure(
            "27447",
            "Total knee arthroplasty",
            long_title="Arthroplasty, knee, condyle and plateau; medial AND lateral compartments",
            chapter="Surgery",
            embedding=[0.9, 0.1, 0.0],
        ),
        make_procedure(
            "73552",
            "X-ray exam of femur 2/>",
            long_title="Radiologic examination, femur; minimum 2 views",
            chapter="Radiology",
            embedding=[0.8, 0.2, 0.0],
        ),
        make_procedure(
            "93000",
            "Electrocardiogram complete",
            long_title="Electrocardiogram, routine ECG with at least 12 leads; with interpretation and report",
            chapter="Medicine",
            embedding=[0.0, 0.0, 1.0],
        ),
    ])


# ============================================================================
# API fixtures
# ============================================================================


@pytest.fixture
async def client(
    test_settings: Settings,
    engine: CodeLinkEngine,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with a prebuilt engine over the sample catalog."""
    app = create_app(test_settings)
    app.state.engine = engine
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def broken_client(test_settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Async test client whose catalog store is unreachable."""
    app = create_app(test_settings)
    app.state.engine = CodeLinkEngine(BrokenCodeStore())
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

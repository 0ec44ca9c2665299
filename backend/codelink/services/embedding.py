"""Embedding providers for semantic search.

The engine depends only on ``EmbeddingProvider.embed``. Two providers
are available: a local sentence-transformers model and an HTTP client
for an OpenAI-compatible embeddings endpoint. Every failure surfaces as
EmbeddingUnavailable so callers can fall back to lexical search.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

import httpx
import numpy as np

from codelink.core.config import Settings
from codelink.core.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

# Local model is 384-dimensional; the HTTP default is 1536.
DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_HTTP_MODEL = "text-embedding-3-small"


class EmbeddingProvider(ABC):
    """Interface for text embedding collaborators."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Generate an embedding for a single text.

        Raises:
            EmbeddingUnavailable: If the provider errors or is unconfigured.
        """
        pass  # pragma: no cover

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate embeddings for several texts.

        Providers with a native batch API should override this.
        """
        return [self.embed(text) for text in texts]


class NullEmbeddingProvider(EmbeddingProvider):
    """Provider used when no embedding backend is configured."""

    def embed(self, text: str) -> list[float]:
        raise EmbeddingUnavailable("no embedding provider configured")


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Embeds codes and queries with a local sentence-transformers model.

    The model is loaded on the first call, so constructing the provider
    (and the engine around it) never touches the disk or the network.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL) -> None:
        self.model_name = model_name
        self._model = None

    def _load_model(self):
        if self._model is not None:
            return self._model

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            logger.error("Install sentence-transformers to use the local embedding provider")
            raise EmbeddingUnavailable("sentence-transformers is not installed") from e

        logger.info(f"Loading sentence-transformers model {self.model_name}")
        try:
            self._model = SentenceTransformer(self.model_name)
        except Exception as e:
            logger.error(f"Could not load {self.model_name}: {e}")
            raise EmbeddingUnavailable(f"failed to load model {self.model_name}") from e
        return self._model

    def embed(self, text: str) -> list[float]:
        cleaned = (text or "").strip().lower()
        if not cleaned:
            raise EmbeddingUnavailable("cannot embed empty text")
        model = self._load_model()
        try:
            vector = model.encode(cleaned, convert_to_numpy=True)
        except Exception as e:
            logger.error(f"{self.model_name} failed to encode text: {e}")
            raise EmbeddingUnavailable(f"model {self.model_name} failed: {e}") from e
        return vector.tolist()

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> list[list[float]]:
        if not texts:
            return []
        model = self._load_model()
        try:
            vectors = model.encode(
                [(t or "").strip().lower() for t in texts],
                batch_size=batch_size,
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as e:
            logger.error(f"{self.model_name} failed to encode {len(texts)} texts: {e}")
            raise EmbeddingUnavailable(f"model {self.model_name} failed: {e}") from e
        return vectors.tolist()


class HTTPEmbeddingProvider(EmbeddingProvider):
    """Client for an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        model: str = DEFAULT_HTTP_MODEL,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_url = api_url
        self.model = model
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def _request(self, payload_input: str | list[str]) -> list[list[float]]:
        if not self._api_key:
            raise EmbeddingUnavailable("embedding API key is not configured")

        try:
            response = self._client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self.model, "input": payload_input, "encoding_format": "float"},
            )
            response.raise_for_status()
            data = response.json()["data"]
        except httpx.HTTPError as e:
            logger.warning(f"Embedding request failed: {e}")
            raise EmbeddingUnavailable(f"embedding request failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise EmbeddingUnavailable("malformed embedding response") from e

        try:
            ordered = sorted(data, key=lambda item: item.get("index", 0))
            return [list(item["embedding"]) for item in ordered]
        except (AttributeError, KeyError, TypeError) as e:
            logger.warning(f"Embedding response from {self.api_url} has no usable vectors")
            raise EmbeddingUnavailable("malformed embedding response") from e

    def embed(self, text: str) -> list[float]:
        vectors = self._request(text)
        if not vectors:
            raise EmbeddingUnavailable("malformed embedding response")
        return vectors[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._request(list(texts))

    def close(self) -> None:
        self._client.close()


def cosine_similarity(embedding1: Sequence[float], embedding2: Sequence[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either is all zeros."""
    a = np.asarray(embedding1, dtype=float)
    b = np.asarray(embedding2, dtype=float)
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(a @ b) / denominator


def find_similar(
    query_embedding: Sequence[float],
    candidate_embeddings: Sequence[Sequence[float]],
    top_k: int = 10,
    threshold: float = 0.5,
) -> list[tuple[int, float]]:
    """Rank candidate vectors by cosine similarity to a query vector.

    Args:
        query_embedding: Vector to compare against.
        candidate_embeddings: Matrix of catalog vectors, one row each.
        top_k: Number of pairs to keep.
        threshold: Pairs scoring below this are dropped.

    Returns:
        (row index, similarity) pairs, best first. Rows with equal scores
        keep their input order; zero rows never match.
    """
    if len(candidate_embeddings) == 0 or top_k <= 0:
        return []

    query = np.asarray(query_embedding, dtype=float)
    matrix = np.asarray(candidate_embeddings, dtype=float)
    query_length = np.linalg.norm(query)
    if query_length == 0:
        return []

    row_lengths = np.linalg.norm(matrix, axis=1)
    scores = np.full(matrix.shape[0], -np.inf)
    nonzero = row_lengths > 0
    scores[nonzero] = (matrix[nonzero] @ query) / (row_lengths[nonzero] * query_length)

    order = np.argsort(-scores, kind="stable")
    ranked = [(int(i), float(scores[i])) for i in order if scores[i] >= threshold]
    return ranked[:top_k]


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider selected by ``settings.embedding_provider``."""
    kind = settings.embedding_provider.lower()
    if kind == "sentence-transformers":
        return SentenceTransformerEmbeddingProvider(settings.embedding_model)
    if kind == "http":
        return HTTPEmbeddingProvider(
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            timeout=settings.embedding_timeout_seconds,
        )
    if kind == "none":
        return NullEmbeddingProvider()
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")

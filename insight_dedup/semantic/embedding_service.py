"""
Embedding Service - Convert insight text into fixed-length vectors.

The embedding computation itself is an external collaborator. Two backends
are available:

- ``OpenAIEmbeddingGateway``: OpenAI-compatible HTTP API
  (default model text-embedding-3-small, 1536 dimensions)
- ``SentenceTransformerGateway``: local sentence-transformers model
  (e.g. all-MiniLM-L6-v2, 384 dimensions)

Both may fail or rate-limit; failures surface as ``EmbeddingGatewayError`` so
callers can count them per item instead of aborting a batch.

References:
- https://platform.openai.com/docs/guides/embeddings
- https://www.sbert.net/docs/pretrained_models.html
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np
import requests
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import Settings, get_settings
from insight_dedup.exceptions import ConfigurationError, EmbeddingGatewayError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

RETRY_STATUS_CODES = [429, 500, 502, 503, 504]
DEFAULT_BACKOFF_FACTOR = 0.5  # 0.5, 1.0, 2.0 seconds between retries


@dataclass
class EmbeddingResult:
    """Result of embedding generation for a single text."""

    text: str
    embedding: np.ndarray
    model_name: str
    generated_at: datetime

    def to_list(self) -> list[float]:
        """Convert embedding to list for JSON responses."""
        return self.embedding.tolist()

    def to_bytes(self) -> bytes:
        """Convert embedding to bytes for LargeBinary storage."""
        return self.embedding.astype(np.float32).tobytes()

    @staticmethod
    def from_bytes(data: bytes) -> np.ndarray:
        """Deserialize embedding from LargeBinary storage."""
        return np.frombuffer(data, dtype=np.float32)

    @property
    def dimension(self) -> int:
        """Get embedding dimension."""
        return len(self.embedding)


def insight_text(statement: str, context_note: str | None = None) -> str:
    """
    Build the text embedded for an insight.

    The context note is appended to the statement for a richer representation.
    """
    statement = statement.strip() if statement else ""
    context_note = context_note.strip() if context_note else ""

    if statement and context_note:
        return f"{statement} {context_note}"
    return statement or context_note


class EmbeddingGateway(ABC):
    """Text -> vector. Implementations may fail or rate-limit."""

    model_name: str
    expected_dimension: int

    @abstractmethod
    def _embed_texts(self, texts: list[str]) -> list[np.ndarray]:
        """Backend call returning one vector per text."""

    def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Raises:
            EmbeddingGatewayError: Empty text, backend failure, or wrong dimension.
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """
        Generate embeddings for multiple texts.

        Raises:
            EmbeddingGatewayError: If any text is empty, the backend fails, or a
                returned vector has the wrong dimension or non-finite values.
        """
        if not texts:
            return []

        cleaned = [t.strip() if t else "" for t in texts]
        if any(not t for t in cleaned):
            raise EmbeddingGatewayError("Text cannot be empty")

        try:
            vectors = self._embed_texts(cleaned)
        except EmbeddingGatewayError:
            raise
        except Exception as e:
            raise EmbeddingGatewayError(f"Embedding request failed: {e}") from e

        if len(vectors) != len(cleaned):
            raise EmbeddingGatewayError(
                f"Expected {len(cleaned)} embeddings, got {len(vectors)}"
            )

        now = datetime.now(UTC)
        results = []
        for text, vector in zip(cleaned, vectors):
            vector = np.asarray(vector, dtype=np.float32)
            if vector.shape != (self.expected_dimension,):
                raise EmbeddingGatewayError(
                    f"Embedding dimension mismatch: expected {self.expected_dimension}, "
                    f"got {vector.shape[0] if vector.ndim == 1 else vector.shape}"
                )
            if not np.all(np.isfinite(vector)):
                raise EmbeddingGatewayError("Embedding contains NaN or infinite values")
            results.append(
                EmbeddingResult(
                    text=text,
                    embedding=vector,
                    model_name=self.model_name,
                    generated_at=now,
                )
            )
        return results

    def get_model_info(self) -> dict:
        """Information about the configured model."""
        return {
            "model_name": self.model_name,
            "dimension": self.expected_dimension,
        }


class OpenAIEmbeddingGateway(EmbeddingGateway):
    """
    Embeddings from an OpenAI-compatible ``/embeddings`` endpoint.

    Rate limits (429) and server errors are retried with exponential backoff
    by the session adapter; anything left over becomes EmbeddingGatewayError.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model_name: str | None = None,
        base_url: str | None = None,
        settings: Settings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.openai_api_key
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai embedding provider")

        self.model_name = model_name or self.settings.embedding_model
        self.expected_dimension = self.settings.embedding_dimension
        self.base_url = (base_url or self.settings.openai_base_url).rstrip("/")
        self.timeout = self.settings.embedding_request_timeout

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=self.settings.embedding_max_retries,
                backoff_factor=DEFAULT_BACKOFF_FACTOR,
                status_forcelist=RETRY_STATUS_CODES,
                allowed_methods=["POST"],
                respect_retry_after_header=True,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

        logger.debug(
            "Initialized OpenAI embedding gateway: url={}, model={}, dim={}",
            self.base_url,
            self.model_name,
            self.expected_dimension,
        )

    def _embed_texts(self, texts: list[str]) -> list[np.ndarray]:
        try:
            response = self.session.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model_name, "input": texts},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise EmbeddingGatewayError(f"Embedding request failed: {e}") from e

        data = response.json().get("data") or []
        if not data:
            raise EmbeddingGatewayError("No embedding returned from embeddings API")

        # The API may return items out of order; "index" restores request order
        data = sorted(data, key=lambda item: item.get("index", 0))
        return [np.asarray(item["embedding"], dtype=np.float32) for item in data]


class SentenceTransformerGateway(EmbeddingGateway):
    """
    Embeddings from a local sentence-transformers model.

    The model is lazy-loaded on first use to avoid startup delays.
    """

    def __init__(self, model_name: str | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.embedding_model
        self.expected_dimension = self.settings.embedding_dimension
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        """
        Lazy load the model on first use.

        The model is downloaded from HuggingFace Hub on first run.
        Subsequent runs use the cached version.
        """
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info(
                f"Embedding model loaded: {self.model_name} ({self.expected_dimension}-dim)"
            )
        return self._model

    def _embed_texts(self, texts: list[str]) -> list[np.ndarray]:
        embeddings = self.model.encode(
            texts,
            batch_size=self.settings.embedding_batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return list(embeddings)

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info["is_loaded"] = self._model is not None
        return info


def get_embedding_gateway(settings: Settings | None = None) -> EmbeddingGateway:
    """Build the gateway selected by ``embedding_provider``."""
    settings = settings or get_settings()

    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingGateway(settings=settings)
    if settings.embedding_provider == "local":
        return SentenceTransformerGateway(settings=settings)

    raise ConfigurationError(f"Unknown embedding provider: {settings.embedding_provider}")

"""Embedding providers for semantic memory.

The default provider is a deterministic hashed bag-of-words. Remote providers
never surface their failures: any error falls back to the local provider of
the same dimension so retrieval keeps working without the external service.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from array import array
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from matrix_core.config import EmbeddingSettings

logger = logging.getLogger(__name__)

Vector = list[float]
_TOKEN_SPLIT_PATTERN = re.compile(r"[^a-z0-9_]+")
_HF_UNAUTH_WARNING_PATTERN = re.compile(
    r"^Warning:\s*You are sending unauthenticated requests to the HF Hub\.",
)


class _HfHubUnauthWarningFilter(logging.Filter):
    """Suppress one noisy HF Hub unauthenticated warning line."""

    def filter(self, record: logging.LogRecord) -> bool:
        return _HF_UNAUTH_WARNING_PATTERN.match(record.getMessage()) is None


def _suppress_hf_hub_unauth_warning() -> None:
    hf_logger = logging.getLogger("huggingface_hub.utils._http")
    if any(isinstance(item, _HfHubUnauthWarningFilter) for item in hf_logger.filters):
        return
    hf_logger.addFilter(_HfHubUnauthWarningFilter())


class Embedder(Protocol):
    """Embedding backend interface."""

    model_name: str
    dimensions: int

    def embed(self, text: str) -> Vector:
        """Encode one text into a vector of ``dimensions`` floats."""
        raise NotImplementedError

    def embed_many(self, texts: list[str]) -> list[Vector]:
        """Encode texts in order."""
        raise NotImplementedError


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens; punctuation and whitespace are separators."""

    return [token for token in _TOKEN_SPLIT_PATTERN.split((text or "").lower()) if token]


@dataclass(slots=True)
class HashingEmbedder:
    """Deterministic hashed bag-of-words embedder with no external dependencies."""

    model_name: str = "hashed-bow"
    dimensions: int = 256

    def embed(self, text: str) -> Vector:
        vector = array("f", [0.0]) * self.dimensions
        tokens = tokenize(text)
        if not tokens:
            return list(vector)

        for token in tokens:
            digest = hashlib.sha1(token.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = array("f", (value / norm for value in vector))
        return list(vector)

    def embed_many(self, texts: list[str]) -> list[Vector]:
        return [self.embed(text) for text in texts]


class HttpEmbedder:
    """Remote provider: POST ``{"text": ...}`` and read ``{"vector": [...]}``."""

    def __init__(
        self,
        *,
        url: str,
        dimensions: int,
        timeout_seconds: float = 10.0,
        fallback: HashingEmbedder | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model_name = f"http:{url}"
        self.dimensions = dimensions
        self.fallback = fallback or HashingEmbedder(dimensions=dimensions)
        if self.fallback.dimensions != dimensions:
            raise ValueError("Fallback embedder must match the remote dimension.")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
            transport=transport,
        )

    def embed(self, text: str) -> Vector:
        try:
            response = self._client.post(self.url, json={"text": text})
            response.raise_for_status()
            return self._parse_vector(response.json())
        except httpx.TimeoutException:
            logger.warning("Timeout from embedding service %s, using local embedder", self.url)
        except httpx.HTTPError as exc:
            logger.warning("Embedding service %s failed: %s; using local embedder", self.url, exc)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning(
                "Embedding service %s returned an invalid payload: %s; using local embedder",
                self.url,
                exc,
            )
        return self.fallback.embed(text)

    def embed_many(self, texts: list[str]) -> list[Vector]:
        return [self.embed(text) for text in texts]

    def _parse_vector(self, payload: Any) -> Vector:
        raw = payload["vector"]
        if not isinstance(raw, list):
            raise TypeError(f"'vector' must be a list, got {type(raw).__name__}")
        if len(raw) != self.dimensions:
            raise ValueError(f"expected {self.dimensions} dimensions, got {len(raw)}")
        return normalize([float(value) for value in raw])

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpEmbedder:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


@dataclass(slots=True)
class SentenceTransformerEmbedder:
    """Sentence-transformers backend with lazy import and per-call local fallback."""

    model_name: str
    dimensions: int = field(init=False)
    _model: Any = field(init=False, repr=False)
    _fallback: HashingEmbedder = field(init=False, repr=False)

    def __post_init__(self) -> None:
        _suppress_hf_hub_unauth_warning()
        from sentence_transformers import SentenceTransformer  # type: ignore

        self._model = SentenceTransformer(self.model_name)
        self.dimensions = int(self._model.get_sentence_embedding_dimension())
        self._fallback = HashingEmbedder(model_name="hashed-bow", dimensions=self.dimensions)

    def embed(self, text: str) -> Vector:
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[Vector]:
        prefixed = [self._prefix(text) for text in texts]
        try:
            vectors = self._model.encode(prefixed, normalize_embeddings=True)
        except (RuntimeError, ValueError) as exc:
            logger.warning(
                "Model %s failed to encode: %s; using local embedder",
                self.model_name,
                exc,
            )
            return self._fallback.embed_many(texts)
        return [vector.tolist() for vector in vectors]

    def _prefix(self, text: str) -> str:
        if self.model_name.startswith("intfloat/multilingual-e5"):
            return f"passage: {text}"
        return text


def build_embedder(settings: EmbeddingSettings) -> Embedder:
    """Build the configured embedder.

    Model construction failure is explicit unless fallback is allowed, to avoid
    silent quality degradation.
    """

    if settings.provider == "http":
        if not settings.http_url:
            raise ValueError("HTTP embedding provider requires MATRIX_CORE_EMBEDDING_HTTP_URL.")
        return HttpEmbedder(
            url=settings.http_url,
            dimensions=settings.dimensions,
            timeout_seconds=settings.http_timeout_seconds,
        )
    if settings.provider == "sentence-transformers":
        try:
            return SentenceTransformerEmbedder(model_name=settings.model_name)
        except (ImportError, ModuleNotFoundError, OSError, RuntimeError, ValueError) as error:
            if settings.allow_model_fallback:
                logger.warning(
                    "Embedding model %s unavailable (%s); using hashed embedder",
                    settings.model_name,
                    error,
                )
                return HashingEmbedder(dimensions=settings.dimensions)
            raise RuntimeError(
                f"Failed to initialize embedding model {settings.model_name}. "
                "Install sentence-transformers or set "
                "MATRIX_CORE_EMBEDDING_ALLOW_MODEL_FALLBACK=true.",
            ) from error
    return HashingEmbedder(dimensions=settings.dimensions)


def normalize(vector: Vector) -> Vector:
    """Scale to unit length; the zero vector is returned unchanged."""

    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return list(vector)
    return [value / norm for value in vector]


def cosine_similarity(left: Vector | tuple[float, ...], right: Vector | tuple[float, ...]) -> float:
    """Cosine similarity; zero-length vectors score 0."""

    if len(left) != len(right):
        raise ValueError("Vectors must have the same size")

    dot = sum(l_value * r_value for l_value, r_value in zip(left, right, strict=True))
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (left_norm * right_norm)))

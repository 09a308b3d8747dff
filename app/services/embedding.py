"""Embedding service — wraps LiteLLM for provider-agnostic vector generation.

Calls are batched, bounded by a timeout, admitted through the shared
``ModelGate`` and retried with exponential backoff on transient provider
errors. A batch either yields one vector of the expected size per input or
raises ``EmbeddingError``; nothing is dropped silently.
"""

from __future__ import annotations

import asyncio
import logging

import litellm
from litellm import aembedding

from app.core.errors import EmbeddingError
from app.services.gate import ModelGate

logger = logging.getLogger(__name__)

# Default embedding model
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1536

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    TimeoutError,
)


def get_embedding_dimensions(model: str | None = None) -> int:
    """Return the expected vector dimension for a given embedding model."""
    model = model or DEFAULT_EMBEDDING_MODEL
    # Known dimensions for common models
    dims = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }
    return dims.get(model, DEFAULT_EMBEDDING_DIMENSIONS)


class EmbeddingClient:
    """Batched, retried embedding calls for one model."""

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int | None = None,
        gate: ModelGate | None = None,
        batch_size: int = 64,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        timeout_seconds: float = 30.0,
        api_key: str | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions or get_embedding_dimensions(model)
        self.gate = gate or ModelGate(16)
        self.batch_size = batch_size
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed any number of texts, one batch at a time, preserving order."""
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            vectors.extend(await self.embed_batch(texts[i : i + self.batch_size]))
        return vectors

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a single batch with retry on transient errors.

        Raises:
            EmbeddingError: On a non-transient error, exhausted retries, or a
                malformed response.
        """
        if not texts:
            return []

        kwargs: dict = {"model": self.model, "input": texts}
        if self.api_key:
            kwargs["api_key"] = self.api_key

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.gate:
                    async with asyncio.timeout(self.timeout_seconds):
                        response = await aembedding(**kwargs)
                break
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Embedding failed after %d attempts: %s", attempt, type(exc).__name__,
                    )
                    raise EmbeddingError(
                        f"Embedding provider unavailable after {attempt} attempts"
                    ) from exc
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Transient embedding error (%s), retry %d/%d in %.1fs",
                    type(exc).__name__, attempt, self.max_attempts - 1, delay,
                )
                await asyncio.sleep(delay)
            except Exception as exc:
                logger.warning("Embedding request rejected: %s", exc)
                raise EmbeddingError("Embedding provider rejected the request") from exc

        vectors = [item["embedding"] for item in response.data]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
                )
        return vectors

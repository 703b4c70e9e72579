"""OpenAI embeddings service with a content-addressed cache."""

from __future__ import annotations

import asyncio

import numpy as np
from openai import AsyncOpenAI

from .cache import EmbeddingCache, cache_key, normalize_text
from .config import config
from .errors import ConfigurationError, EmbeddingError, EmptyInputError

logger = config.get_logger(__name__)

KNOWN_EMBEDDING_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors, in [-1, 1].

    Returns:
        ``dot(a, b) / (|a| * |b|)``, or 0.0 when either vector is zero.

    Raises:
        ValueError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        msg = f"Vectors must have the same dimensions: {a.shape} != {b.shape}"
        raise ValueError(msg)
    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denominator, -1.0, 1.0))


class EmbeddingService:
    """Handles OpenAI embeddings generation, consulting the cache first."""

    def __init__(  # noqa: PLR0913
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        cache: EmbeddingCache | None = None,
        dimension: int | None = None,
        batch_size: int | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the EmbeddingService.

        Args:
            api_key: OpenAI API key. If None,
                reads from OPENAI_API_KEY environment variable.
            model: Embedding model name. If None, uses config.EMBEDDING_MODEL.
            cache: Embedding cache. If None, a private cache is created.
            dimension: Expected vector length. If None, uses
                config.EMBEDDING_DIMENSION or the known size of the model.
            batch_size: Texts per provider sub-batch. If None, uses
                config.EMBEDDING_BATCH_SIZE.
            client: Preconfigured async OpenAI client.
        """
        if client is None:
            default_headers = config.get_api_headers()
            client = AsyncOpenAI(
                api_key=api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
            )
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.cache = cache if cache is not None else EmbeddingCache()
        self.batch_size = max(1, batch_size or config.EMBEDDING_BATCH_SIZE)
        self._dimension = (
            dimension
            or config.EMBEDDING_DIMENSION
            or KNOWN_EMBEDDING_DIMENSIONS.get(self.model)
        )

    def get_embedding_dimension(self) -> int | None:
        """Vector length produced by the active model.

        Returns:
            The dimension, or None for an unknown model not yet called.
        """
        return self._dimension

    async def embed(self, text: str) -> np.ndarray:
        """Get the embedding for a single text.

        Args:
            text: The input text to generate an embedding for.

        Returns:
            np.ndarray: The embedding vector for the input text.

        Raises:
            EmptyInputError: If the text is blank.
        """
        cleaned = normalize_text(text)
        if not cleaned:
            msg = "Cannot generate embedding for empty text"
            raise EmptyInputError(msg)

        self.cache.start()
        key = cache_key(cleaned)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        embedding = await self._request_embedding(cleaned)
        self.cache.set(key, embedding)
        return embedding

    async def embed_batch(
        self,
        texts: list[str],
        batch_size: int | None = None,
    ) -> list[np.ndarray]:
        """Get embeddings for multiple texts, preserving input order.

        The first call on an event loop starts the cache's background sweep.
        Cached texts are answered from the cache; the rest are sent to the
        provider in sub-batches processed one after another, with the calls
        inside a sub-batch issued concurrently.

        Args:
            texts: List of input texts to generate embeddings for.
            batch_size: Number of uncached texts per sub-batch.

        Returns:
            list[np.ndarray]: List of embedding vectors for the input texts.

        Raises:
            EmptyInputError: If any text is blank.
        """
        batch_size = max(1, batch_size or self.batch_size)
        cleaned_texts = [normalize_text(text) for text in texts]
        if any(not text for text in cleaned_texts):
            msg = "Cannot generate embedding for empty text"
            raise EmptyInputError(msg)

        self.cache.start()
        results: list[np.ndarray | None] = [None] * len(cleaned_texts)
        pending: dict[str, list[int]] = {}
        for index, text in enumerate(cleaned_texts):
            cached = self.cache.get(cache_key(text))
            if cached is not None:
                results[index] = cached
            else:
                pending.setdefault(text, []).append(index)

        uncached = list(pending)
        for start in range(0, len(uncached), batch_size):
            batch = uncached[start : start + batch_size]
            embeddings = await asyncio.gather(
                *(self._request_embedding(text) for text in batch)
            )
            for text, embedding in zip(batch, embeddings, strict=True):
                self.cache.set(cache_key(text), embedding)
                for index in pending[text]:
                    results[index] = embedding
            logger.info(
                "Generated embeddings for batch %d (%d texts)",
                start // batch_size + 1,
                len(batch),
            )

        return [embedding for embedding in results if embedding is not None]

    async def _request_embedding(self, text: str) -> np.ndarray:
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=text,
            )
        except Exception as exc:
            logger.exception("Error generating embedding")
            msg = f"Embedding provider failed: {exc}"
            raise EmbeddingError(msg) from exc

        embedding = np.asarray(response.data[0].embedding, dtype=np.float32)
        self._check_dimension(embedding)
        return embedding

    def _check_dimension(self, embedding: np.ndarray) -> None:
        if self._dimension is None:
            self._dimension = int(embedding.shape[0])
            logger.info(
                "Embedding model %s produces %d dimensions",
                self.model,
                self._dimension,
            )
        elif embedding.shape[0] != self._dimension:
            msg = (
                f"Embedding model {self.model} returned {embedding.shape[0]} "
                f"dimensions, expected {self._dimension}"
            )
            raise ConfigurationError(msg)

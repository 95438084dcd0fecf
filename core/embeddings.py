"""
Embedding management.

Provides the deterministic local hashing vectorizer used by default and as
the fallback, and a provider-backed embedder that batches requests where
the backend supports it and falls back to local vectors per text.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

import numpy as np

from config import settings
from monitoring.metrics import embedding_fallback_counter
from utils.text import tokenize

if TYPE_CHECKING:
    from core.llm import LLMClient

logger = logging.getLogger(__name__)

Vectorizer = Callable[[str], List[float]]

_HASH_SEED = 5381
_HASH_MASK = 0xFFFFFFFF


def djb2_hash(token: str) -> int:
    """32-bit djb2 string hash (h = h*33 + ord(c)), always non-negative."""
    h = _HASH_SEED
    for ch in token:
        h = (h * 33 + ord(ch)) & _HASH_MASK
    return h


def embed_text(text: str, dim: int = 256) -> List[float]:
    """
    Feature-hashing embedding of a text.

    Every token increments the term-frequency bucket `djb2(token) % dim`;
    the result is L2-normalised. Text without tokens yields the zero vector.

    Args:
        text: Text to embed.
        dim: Vector dimension.

    Returns:
        Dense vector of length `dim`.
    """
    vec = np.zeros(dim, dtype=np.float64)
    for token in tokenize(text):
        vec[djb2_hash(token) % dim] += 1.0

    norm = np.linalg.norm(vec)
    if norm > 0:
        vec /= norm

    return vec.tolist()


class HashingVectorizer:
    """
    Local hashing vectorizer with a fixed dimension.

    Collisions between tokens are expected; the vectorizer needs no model
    download and is fully deterministic.

    Attributes:
        dim: Output vector dimension.
    """

    __slots__ = ('dim',)

    def __init__(self, dim: Optional[int] = None) -> None:
        self.dim: int = dim or settings.EMBEDDING_DIM

    def __call__(self, text: str) -> List[float]:
        return embed_text(text, self.dim)

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts."""
        return [embed_text(t, self.dim) for t in texts]


def get_vectorizer(dim: Optional[int] = None) -> HashingVectorizer:
    """
    Convenience function to get the local vectorizer.

    Returns:
        HashingVectorizer using settings.EMBEDDING_DIM unless overridden.
    """
    return HashingVectorizer(dim)


class ProviderEmbedder:
    """
    Embeds texts through the configured provider with local fallback.

    Batch-capable providers get requests of up to `EMBED_BATCH_SIZE` texts;
    otherwise texts are embedded one request at a time. Any text whose provider vector is
    missing or empty is embedded with the local vectorizer instead.

    Attributes:
        client: LLM client used for embedding requests.
        fallback: Local vectorizer used when the provider fails.
        fallbacks: Number of texts embedded locally so far.
    """

    def __init__(
        self,
        client: LLMClient,
        fallback: Optional[Vectorizer] = None,
    ) -> None:
        self.client = client
        self.fallback: Vectorizer = fallback or get_vectorizer()
        self.fallbacks: int = 0

    async def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed texts, preserving order.

        Args:
            texts: Texts to embed.

        Returns:
            One non-empty vector per text (provider or local fallback).
        """
        if not texts:
            return []

        if self.client.supports_batch_embeddings():
            vectors = await self.client.embed_batch(list(texts))
            if len(vectors) != len(texts):
                logger.warning(
                    f"Batch embedding returned {len(vectors)} vectors for "
                    f"{len(texts)} texts; using local vectors"
                )
                vectors = [[] for _ in texts]
        else:
            vectors = []
            for text in texts:
                vectors.append(await self.client.embed(text))

        return [self._with_fallback(text, vec) for text, vec in zip(texts, vectors)]

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query text."""
        vec = await self.client.embed(text)
        return self._with_fallback(text, vec)

    def _with_fallback(self, text: str, vec: List[float]) -> List[float]:
        if vec:
            return vec
        self.fallbacks += 1
        embedding_fallback_counter.inc()
        logger.debug("Provider embedding empty; using local vector")
        return self.fallback(text)

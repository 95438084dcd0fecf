"""
Vector retrieval over the persisted chunk store.

The query is cleaned the same way documents are, embedded (locally, or by
the provider with a local fallback) and scored against every stored chunk
by brute-force cosine similarity.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from config import Settings, settings
from core.embeddings import ProviderEmbedder, Vectorizer, get_vectorizer
from core.schema import RetrievalResult
from monitoring.metrics import (
    retrieval_counter,
    retrieval_docs_returned,
    retrieval_latency,
    track_retrieval_metrics,
)
from storage.vector_store import VectorStoreInterface
from utils.text import clean_text

logger = logging.getLogger(__name__)


class Retriever:
    """
    Top-K chunk retriever.

    Attributes:
        store: Vector store backend; loaded fresh per query.
        cfg: Settings providing the default top-k.
        vectorizer: Local vectorizer for queries and fallback.
        embedder: Provider embedder, if provider query embeddings are used.
    """

    __slots__ = ('store', 'cfg', 'vectorizer', 'embedder')

    def __init__(
        self,
        store: VectorStoreInterface,
        cfg: Optional[Settings] = None,
        vectorizer: Optional[Vectorizer] = None,
        embedder: Optional[ProviderEmbedder] = None,
    ) -> None:
        self.store = store
        self.cfg: Settings = cfg or settings
        self.vectorizer: Vectorizer = vectorizer or get_vectorizer(self.cfg.EMBEDDING_DIM)
        self.embedder = embedder

    def _top_k(self, top_k: Optional[int]) -> int:
        return top_k if top_k is not None else self.cfg.SIMILARITY_TOP_K

    @track_retrieval_metrics
    def retrieve(self, query: str, top_k: Optional[int] = None) -> List[RetrievalResult]:
        """
        Retrieve with the local vectorizer.

        Args:
            query: User query.
            top_k: Number of results (defaults to settings.SIMILARITY_TOP_K).

        Returns:
            Results sorted by descending score.
        """
        query_vector = self.vectorizer(clean_text(query).strip())
        return self.store.query(self.store.load(), query_vector, self._top_k(top_k))

    async def aretrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        use_provider_embeddings: Optional[bool] = None,
    ) -> List[RetrievalResult]:
        """
        Retrieve, embedding the query through the provider when enabled.

        A failed or empty provider embedding falls back to the local vector.
        Stored chunks must have been embedded the same way for the scores
        to be meaningful; chunks of a different dimension are skipped.

        Args:
            query: User query.
            top_k: Number of results.
            use_provider_embeddings: Overrides settings.USE_PROVIDER_EMBEDDINGS.

        Returns:
            Results sorted by descending score.
        """
        if use_provider_embeddings is None:
            use_provider_embeddings = self.cfg.USE_PROVIDER_EMBEDDINGS

        if not use_provider_embeddings or self.embedder is None:
            return self.retrieve(query, top_k)

        retrieval_counter.inc()
        with retrieval_latency.time():
            cleaned = clean_text(query).strip()
            query_vector = await self.embedder.embed_query(cleaned)
            results = self.store.query(self.store.load(), query_vector, self._top_k(top_k))

        retrieval_docs_returned.observe(len(results))
        logger.debug(f"Provider-embedded query returned {len(results)} result(s)")
        return results


def get_retriever(
    store: VectorStoreInterface,
    cfg: Optional[Settings] = None,
    embedder: Optional[ProviderEmbedder] = None,
) -> Retriever:
    """
    Factory function to get a retriever.

    Returns:
        Retriever bound to the given store.
    """
    return Retriever(store, cfg, embedder=embedder)

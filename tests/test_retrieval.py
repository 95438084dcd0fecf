"""
Tests for retrieval module.

Tests local and provider-embedded top-K retrieval over a stored corpus.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from core.chunking import split_text
from core.embeddings import HashingVectorizer, ProviderEmbedder, embed_text
from core.retrieval import Retriever, get_retriever
from core.schema import StoreData


@pytest.fixture
def corpus(store):
    """Three single-chunk documents persisted to the store."""
    data = StoreData()
    texts = {
        "ml.txt": "Machine learning is a subset of artificial intelligence.",
        "py.txt": "Python is a popular programming language for data science.",
        "dl.txt": "Deep learning uses neural networks with multiple layers.",
    }
    for path, text in texts.items():
        store.add_chunks(data, path, split_text(text, 200))
    store.save(data)
    return texts


@pytest.fixture
def mock_embedder():
    embedder = Mock(spec=ProviderEmbedder)
    embedder.embed_query = AsyncMock()
    return embedder


class TestLocalRetrieval:
    """Test retrieval with the hashing vectorizer."""

    def test_best_match_first(self, store, cfg, corpus):
        retriever = Retriever(store, cfg)

        results = retriever.retrieve("python programming language", top_k=3)

        assert results[0].chunk.path == "py.txt"
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    def test_top_k_bound(self, store, cfg, corpus):
        assert len(Retriever(store, cfg).retrieve("learning", top_k=2)) == 2

    def test_default_top_k_from_settings(self, store, cfg, corpus):
        retriever = Retriever(store, cfg.model_copy(update={"SIMILARITY_TOP_K": 1}))
        assert len(retriever.retrieve("learning")) == 1

    def test_empty_store(self, store, cfg):
        assert Retriever(store, cfg).retrieve("anything") == []

    def test_query_is_cleaned(self, store, cfg, corpus):
        retriever = Retriever(store, cfg)
        plain = retriever.retrieve("deep neural networks", top_k=3)
        noisy = retriever.retrieve("  deep\x00 neural\r\nnetworks  ", top_k=3)
        assert [r.chunk.id for r in noisy] == [r.chunk.id for r in plain]


class TestProviderRetrieval:
    """Test retrieval with provider query embeddings."""

    async def test_provider_vector_used(self, store, cfg, corpus, mock_embedder):
        mock_embedder.embed_query.return_value = embed_text("machine intelligence")
        retriever = Retriever(store, cfg, embedder=mock_embedder)

        results = await retriever.aretrieve("ignored", top_k=1, use_provider_embeddings=True)

        mock_embedder.embed_query.assert_awaited_once_with("ignored")
        assert results[0].chunk.path == "ml.txt"

    async def test_disabled_uses_local(self, store, cfg, corpus, mock_embedder):
        retriever = Retriever(store, cfg, embedder=mock_embedder)

        results = await retriever.aretrieve("python programming", top_k=1)

        mock_embedder.embed_query.assert_not_awaited()
        assert results[0].chunk.path == "py.txt"

    async def test_without_embedder_uses_local(self, store, cfg, corpus):
        retriever = Retriever(store, cfg)
        results = await retriever.aretrieve("python", top_k=1, use_provider_embeddings=True)
        assert results[0].chunk.path == "py.txt"

    async def test_dimension_mismatch_skipped(self, store, cfg, corpus, mock_embedder):
        mock_embedder.embed_query.return_value = [1.0, 0.0]
        retriever = Retriever(store, cfg, embedder=mock_embedder)

        assert await retriever.aretrieve("q", use_provider_embeddings=True) == []


class TestFactory:
    """Test the retriever factory."""

    def test_get_retriever(self, store, cfg):
        embedder = ProviderEmbedder(Mock(), HashingVectorizer(16))
        retriever = get_retriever(store, cfg, embedder)
        assert isinstance(retriever, Retriever)
        assert retriever.embedder is embedder

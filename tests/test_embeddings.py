"""
Tests for embeddings module.

Tests the hashing vectorizer and the provider embedder's fallback paths.
"""

import math
from unittest.mock import AsyncMock, Mock

import pytest

from core.embeddings import (
    HashingVectorizer,
    ProviderEmbedder,
    djb2_hash,
    embed_text,
    get_vectorizer,
)
from utils.text import tokenize


def norm(vec):
    return math.sqrt(sum(x * x for x in vec))


class TestTokenize:
    """Test tokenisation shared with the vectorizer."""

    def test_lowercases_and_splits_on_non_alnum(self):
        assert tokenize("Hello, World! foo_bar-42") == ["hello", "world", "foo", "bar", "42"]

    def test_drops_empty_tokens(self):
        assert tokenize("  ... ,, ") == []


class TestDjb2:
    """Test the string hash."""

    def test_known_values(self):
        assert djb2_hash("") == 5381
        assert djb2_hash("a") == 5381 * 33 + ord("a")

    def test_folded_to_32_bits(self):
        h = djb2_hash("a fairly long token that overflows thirty two bits")
        assert 0 <= h < 2 ** 32


class TestEmbedText:
    """Test the local hashing embedding."""

    def test_dimension(self):
        assert len(embed_text("hello world", 64)) == 64
        assert len(embed_text("hello world")) == 256

    def test_unit_norm(self):
        assert norm(embed_text("The quick brown fox jumps")) == pytest.approx(1.0)

    def test_no_tokens_gives_zero_vector(self):
        vec = embed_text("!!! ---", 32)
        assert vec == [0.0] * 32

    def test_deterministic(self):
        assert embed_text("same input") == embed_text("same input")

    def test_term_frequency_bucket(self):
        vec = embed_text("cat cat", 16)
        bucket = djb2_hash("cat") % 16
        assert vec[bucket] == pytest.approx(1.0)

    def test_case_insensitive(self):
        assert embed_text("Vector STORE") == embed_text("vector store")


class TestHashingVectorizer:
    """Test the vectorizer class."""

    def test_callable(self):
        vectorizer = HashingVectorizer(dim=32)
        assert vectorizer("abc") == embed_text("abc", 32)

    def test_embed_batch(self):
        vectors = HashingVectorizer(dim=16).embed_batch(["a", "b c"])
        assert len(vectors) == 2
        assert all(len(v) == 16 for v in vectors)

    def test_get_vectorizer_uses_settings_dim(self):
        from config import settings

        assert get_vectorizer().dim == settings.EMBEDDING_DIM


@pytest.fixture
def batch_client():
    client = Mock()
    client.supports_batch_embeddings.return_value = True
    client.embed_batch = AsyncMock()
    client.embed = AsyncMock()
    return client


class TestProviderEmbedder:
    """Test provider embeddings with local fallback."""

    async def test_batch_vectors_used(self, batch_client):
        batch_client.embed_batch.return_value = [[1.0, 0.0], [0.0, 1.0]]
        embedder = ProviderEmbedder(batch_client, HashingVectorizer(8))

        vectors = await embedder.embed_texts(["one", "two"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        batch_client.embed_batch.assert_awaited_once_with(["one", "two"])
        assert embedder.fallbacks == 0

    async def test_empty_vector_falls_back_per_text(self, batch_client):
        batch_client.embed_batch.return_value = [[1.0, 0.0], []]
        embedder = ProviderEmbedder(batch_client, HashingVectorizer(8))

        vectors = await embedder.embed_texts(["one", "two"])

        assert vectors[0] == [1.0, 0.0]
        assert vectors[1] == embed_text("two", 8)
        assert embedder.fallbacks == 1

    async def test_failed_batch_falls_back_for_all(self, batch_client):
        batch_client.embed_batch.return_value = []
        embedder = ProviderEmbedder(batch_client, HashingVectorizer(8))

        vectors = await embedder.embed_texts(["one", "two"])

        assert vectors == [embed_text("one", 8), embed_text("two", 8)]
        assert embedder.fallbacks == 2

    async def test_sequential_without_batch_support(self):
        client = Mock()
        client.supports_batch_embeddings.return_value = False
        client.embed = AsyncMock(side_effect=[[0.5], [0.25]])
        embedder = ProviderEmbedder(client, HashingVectorizer(8))

        vectors = await embedder.embed_texts(["a", "b"])

        assert vectors == [[0.5], [0.25]]
        assert client.embed.await_count == 2

    async def test_empty_input(self, batch_client):
        embedder = ProviderEmbedder(batch_client)
        assert await embedder.embed_texts([]) == []
        batch_client.embed_batch.assert_not_awaited()

    async def test_embed_query_fallback(self, batch_client):
        batch_client.embed.return_value = []
        embedder = ProviderEmbedder(batch_client, HashingVectorizer(8))

        assert await embedder.embed_query("query") == embed_text("query", 8)

"""
Core RAG components.

This module provides the essential building blocks for the RAG pipeline:
- Fixed-window chunking with context padding
- Local hashing embeddings and provider-backed embeddings
- Provider request/response adapters
- The provider-agnostic LLM client

Retrieval and orchestration live in `core.retrieval` and `core.rag_engine`
and are imported from there, since they depend on the storage package.
"""

from core.chunking import WindowChunker, get_chunker, split_text
from core.embeddings import HashingVectorizer, ProviderEmbedder, embed_text, get_vectorizer
from core.llm import ChatReply, LLMClient, get_llm
from core.schema import (
    Chunk,
    ChunkOptions,
    Document,
    HistoryEntry,
    Message,
    RetrievalResult,
    StoreData,
    TextChunk,
)

__all__ = [
    # Chunking
    "WindowChunker",
    "get_chunker",
    "split_text",
    # Embeddings
    "HashingVectorizer",
    "ProviderEmbedder",
    "embed_text",
    "get_vectorizer",
    # LLM
    "ChatReply",
    "LLMClient",
    "get_llm",
    # Models
    "Chunk",
    "ChunkOptions",
    "Document",
    "HistoryEntry",
    "Message",
    "RetrievalResult",
    "StoreData",
    "TextChunk",
]

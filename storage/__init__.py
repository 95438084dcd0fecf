"""
Storage package.

Provides the vector store used for document embeddings:
- LocalStore: single JSON file, loaded and saved in full per operation
"""

from pathlib import Path
from typing import Optional

from storage.local_store import LocalStore
from storage.vector_store import (
    VectorStoreInterface,
    compute_content_hash,
    cosine_similarity,
)


def get_vector_store(store_path: Optional[Path] = None) -> VectorStoreInterface:
    """
    Factory function to create the configured vector store.

    Args:
        store_path: Optional override for settings.STORE_PATH.

    Returns:
        VectorStoreInterface implementation.
    """
    return LocalStore(store_path)


__all__ = [
    "VectorStoreInterface",
    "LocalStore",
    "compute_content_hash",
    "cosine_similarity",
    "get_vector_store",
]

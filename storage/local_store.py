"""
JSON-file vector store implementation.

Keeps every chunk, vector and document record in a single JSON file that is
loaded fresh and rewritten in full on every mutating call. Suitable for
personal document collections where a brute-force scan is fast enough.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from config import settings
from core.schema import StoreData
from storage.vector_store import VectorStoreInterface
from utils.fileio import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class LocalStore(VectorStoreInterface):
    """
    File-backed vector store.

    The file is written to a temporary sibling and renamed over the target,
    so it always holds either the previous or the new full store. There is
    no locking: concurrent writers on one file lose updates, and callers
    must serialise ingestion.

    Attributes:
        store_path: Location of the JSON file.
    """

    __slots__ = ('store_path',)

    def __init__(self, store_path: Optional[Path] = None) -> None:
        """
        Initialize the store.

        Args:
            store_path: JSON file location. Defaults to settings.STORE_PATH.
        """
        self.store_path: Path = Path(store_path or settings.STORE_PATH)

    def load(self) -> StoreData:
        """Load the store; a missing or malformed file yields an empty store."""
        data = read_json(self.store_path)
        if data is None:
            return StoreData()

        try:
            return StoreData.model_validate(data)
        except ValidationError as e:
            logger.error(f"Malformed vector store {self.store_path}: {e}")
            return StoreData()

    def save(self, store: StoreData) -> bool:
        """Persist the store atomically (temp file, then rename)."""
        saved = atomic_write_json(self.store_path, store.to_json_dict(), prefix=".store_")
        if saved:
            logger.debug(f"Vector store saved ({len(store.items)} chunks)")
        return saved

    def get_stats(self) -> Dict[str, object]:
        """
        Get store statistics.

        Returns:
            Dictionary with backend info, chunk and document counts, disk size.
        """
        store = self.load()
        disk_size_mb = 0.0
        if self.store_path.exists():
            disk_size_mb = self.store_path.stat().st_size / (1024 * 1024)

        return {
            "backend": "json",
            "vector_count": len(store.items),
            "document_count": len(store.docs),
            "vector_dimensions": sorted({len(c.vector) for c in store.items}),
            "store_path": str(self.store_path),
            "disk_size_mb": round(disk_size_mb, 2),
        }

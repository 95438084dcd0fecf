"""
Abstract vector store interface.

Defines the common interface for vector store backends. Backends own
persistence (`load`/`save`); the store operations themselves work on a
`StoreData` value so every call can load fresh, mutate, and save in full.
"""

from __future__ import annotations

import bisect
import hashlib
import itertools
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from core.embeddings import get_vectorizer
from core.schema import Chunk, Document, RetrievalResult, StoreData, TextChunk

logger = logging.getLogger(__name__)

_ID_SEQUENCE = itertools.count()


def new_chunk_id() -> str:
    """Unique chunk id for this process: epoch milliseconds plus a sequence."""
    return f"{int(time.time() * 1000)}-{next(_ID_SEQUENCE)}"


def compute_content_hash(chunks: Sequence[TextChunk]) -> str:
    """SHA-256 over the concatenation of all chunk texts."""
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk.text.encode("utf-8"))
    return digest.hexdigest()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 if either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError(f"dimension mismatch: {len(a)} != {len(b)}")

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


class VectorStoreInterface(ABC):
    """
    Abstract interface for vector store backends.

    Implementations provide persistence. Mutating operations change the
    `StoreData` passed in; callers save it afterwards.
    """

    @abstractmethod
    def load(self) -> StoreData:
        """
        Load the whole store.

        Returns:
            The persisted store, or an empty store if missing or unreadable.
        """
        pass

    @abstractmethod
    def save(self, store: StoreData) -> bool:
        """
        Persist the whole store, replacing previous content.

        Returns:
            True on success.
        """
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, object]:
        """
        Get vector store statistics.

        Returns:
            Dictionary with backend info, chunk count, etc.
        """
        pass

    def delete_all(self) -> bool:
        """Replace the persisted store with an empty one."""
        logger.warning("Deleting all data from vector store")
        return self.save(StoreData())

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    def add_chunks(
        self,
        store: StoreData,
        path: str,
        chunks: Sequence[TextChunk],
        vectorizer: Optional[Callable[[str], List[float]]] = None,
        doc_meta: Optional[Mapping[str, Any]] = None,
    ) -> Document:
        """
        Add a document's chunks to the store.

        If another document already has the same content hash (any path),
        this path's record mirrors its chunk ids and nothing is embedded.
        If this path was stored with a different hash, its old chunks are
        pruned first. An incoming chunk matching an existing item on
        `(path, start, end)`, or on `(contentHash, start, end)`, with the
        same text reuses that item instead of being stored again.

        Args:
            store: Store to mutate.
            path: Document path.
            chunks: Splitter output for the document.
            vectorizer: Embeds chunks lacking a vector (default: local hashing).
            doc_meta: Optional `contentHash`, `size` and `mtime`.

        Returns:
            The document record now stored under `path`.
        """
        doc_meta = doc_meta or {}
        vectorizer = vectorizer or get_vectorizer()
        content_hash = doc_meta.get("contentHash") or compute_content_hash(chunks)
        size = int(doc_meta.get("size") or sum(len(c.text) for c in chunks))
        mtime = float(doc_meta.get("mtime") or 0.0)

        existing = store.docs.get(path)
        if existing is not None and existing.content_hash != content_hash:
            logger.info(f"Content changed for {path}; pruning stale chunks")
            self._prune_path(store, path)

        twin = self.find_twin(store, content_hash)
        if twin is not None:
            if twin.path != path:
                logger.info(f"{path} duplicates {twin.path}; sharing its chunks")
            doc = Document(
                path=path,
                size=size,
                mtime=mtime,
                content_hash=content_hash,
                chunk_ids=list(twin.chunk_ids),
            )
            store.docs[path] = doc
            return doc

        by_span = {(c.path, c.start, c.end): c for c in store.items}
        by_hash = {(c.content_hash, c.start, c.end): c for c in store.items if c.content_hash}

        chunk_ids: List[str] = []
        added = 0
        for chunk in chunks:
            match = by_span.get((path, chunk.start, chunk.end)) or by_hash.get(
                (content_hash, chunk.start, chunk.end)
            )
            if match is not None and match.text == chunk.text:
                chunk_ids.append(match.id)
                continue

            vector = list(chunk.vector) if chunk.vector else vectorizer(chunk.text)
            item = Chunk(
                id=new_chunk_id(),
                path=path,
                start=chunk.start,
                end=chunk.end,
                text=chunk.text,
                left_context=chunk.left_context,
                right_context=chunk.right_context,
                vector=vector,
                content_hash=content_hash,
                size=size,
                mtime=mtime,
            )
            store.items.append(item)
            by_span[(path, item.start, item.end)] = item
            chunk_ids.append(item.id)
            added += 1

        doc = Document(
            path=path,
            size=size,
            mtime=mtime,
            content_hash=content_hash,
            chunk_ids=chunk_ids,
        )
        store.docs[path] = doc
        logger.info(f"Stored {added} new chunk(s) for {path} ({len(chunk_ids)} total)")
        return doc

    def query(
        self,
        store: StoreData,
        query_vector: Sequence[float],
        top_k: int = 4,
    ) -> List[RetrievalResult]:
        """
        Brute-force cosine similarity search.

        Keeps a bounded list ordered by descending score; on equal scores
        the earlier stored item stays first. Items whose vector length
        differs from the query, or that fail to score, are skipped.

        Args:
            store: Store to search.
            query_vector: Query embedding.
            top_k: Maximum number of results.

        Returns:
            Results sorted by non-increasing score.
        """
        if top_k <= 0:
            return []

        results: List[RetrievalResult] = []
        neg_scores: List[float] = []

        for item in store.items:
            try:
                score = cosine_similarity(query_vector, item.vector)
            except Exception as e:
                logger.debug(f"Skipping chunk {item.id}: {e}")
                continue
            if not math.isfinite(score):
                continue

            pos = bisect.bisect_right(neg_scores, -score)
            if pos >= top_k:
                continue
            neg_scores.insert(pos, -score)
            results.insert(pos, RetrievalResult(score=score, chunk=item))
            if len(results) > top_k:
                neg_scores.pop()
                results.pop()

        return results

    def remove_doc(self, store: StoreData, path: str) -> bool:
        """
        Delete a document record and the chunks it owns.

        Returns:
            True if anything was removed.
        """
        found = path in store.docs or any(c.path == path for c in store.items)
        self._prune_path(store, path)
        if found:
            logger.info(f"Removed document {path}")
        return found

    def list_docs(self, store: StoreData) -> Dict[str, Document]:
        """Document records keyed by path."""
        return dict(store.docs)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def find_twin(store: StoreData, content_hash: str) -> Optional[Document]:
        """A document with this hash whose chunks are all still stored."""
        if not content_hash:
            return None
        stored_ids = {c.id for c in store.items}
        for doc in store.docs.values():
            if (
                doc.content_hash == content_hash
                and doc.chunk_ids
                and all(cid in stored_ids for cid in doc.chunk_ids)
            ):
                return doc
        return None

    @staticmethod
    def _prune_path(store: StoreData, path: str) -> None:
        """
        Drop the record for `path` and the chunks it owns.

        Chunks still listed by another document (content-hash mirrors) are
        handed over to that document's path instead of being deleted.
        """
        store.docs.pop(path, None)
        owned = {c.id for c in store.items if c.path == path}
        if not owned:
            return

        heirs: Dict[str, str] = {}
        for other in store.docs.values():
            for cid in other.chunk_ids:
                if cid in owned:
                    heirs.setdefault(cid, other.path)

        kept: List[Chunk] = []
        for chunk in store.items:
            if chunk.path != path:
                kept.append(chunk)
            elif chunk.id in heirs:
                chunk.path = heirs[chunk.id]
                kept.append(chunk)
        store.items = kept

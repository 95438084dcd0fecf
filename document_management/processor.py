"""
Document processing pipeline.

Loads documents through a `DocumentLoader`, cleans the text, and splits it
into windows ready for the vector store.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Union

from config import Settings, settings
from core.chunking import WindowChunker
from core.schema import ChunkOptions, TextChunk
from document_management.loader import DocumentLoader, PathLike, PlainTextLoader
from storage.vector_store import compute_content_hash
from utils.text import clean_text

logger = logging.getLogger(__name__)


class PreparedDocument(NamedTuple):
    """A cleaned, chunked document and the metadata stored with it."""

    path: str
    text: str
    chunks: List[TextChunk]
    doc_meta: Dict[str, Any]


def document_key(path: PathLike) -> str:
    """Store key of a document path (absolute, not symlink-resolved)."""
    return os.path.abspath(str(path))


class DocumentProcessor:
    """
    Prepares documents for indexing.

    Attributes:
        loader: Turns a path into plain text.
        cfg: Settings with the default chunking parameters.
    """

    __slots__ = ('loader', 'cfg')

    def __init__(
        self,
        loader: Optional[DocumentLoader] = None,
        cfg: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the document processor.

        Args:
            loader: Document loader. Defaults to PlainTextLoader.
            cfg: Settings. Defaults to the global settings.
        """
        self.loader: DocumentLoader = loader or PlainTextLoader()
        self.cfg: Settings = cfg or settings

    def expand_paths(self, paths: Iterable[PathLike]) -> List[str]:
        """
        Expand directories into the files the loader accepts.

        Plain file arguments are kept as given; missing paths are logged and
        dropped.
        """
        accepts = getattr(self.loader, "accepts", None)
        expanded: List[str] = []

        for raw in paths:
            path = Path(raw)
            if path.is_dir():
                for child in sorted(path.rglob("*")):
                    if child.is_file() and (accepts is None or accepts(child)):
                        expanded.append(document_key(child))
            elif path.is_file():
                expanded.append(document_key(path))
            else:
                logger.warning(f"Path not found: {path}")

        return expanded

    def get_chunker(self, chunk_opts: Optional[Union[ChunkOptions, Mapping[str, Any]]] = None) -> WindowChunker:
        """Chunker from per-call options layered over the settings."""
        if chunk_opts is None:
            opts = ChunkOptions()
        elif isinstance(chunk_opts, ChunkOptions):
            opts = chunk_opts
        else:
            opts = ChunkOptions.model_validate(dict(chunk_opts))

        return WindowChunker(
            chunk_size=opts.chunk_size if opts.chunk_size is not None else self.cfg.CHUNK_SIZE,
            overlap=opts.overlap if opts.overlap is not None else self.cfg.CHUNK_OVERLAP,
            pad=opts.pad if opts.pad is not None else self.cfg.CHUNK_PAD,
        )

    def load_text(self, path: PathLike) -> Optional[str]:
        """
        Load and clean a document.

        Returns:
            Cleaned text, or None if the document cannot be read.
        """
        try:
            return clean_text(self.loader.load(path))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load document {path}: {e}")
            return None

    def prepare(
        self,
        path: PathLike,
        chunk_opts: Optional[Union[ChunkOptions, Mapping[str, Any]]] = None,
    ) -> Optional[PreparedDocument]:
        """
        Load, clean and split a document.

        Args:
            path: Document path.
            chunk_opts: Optional chunk size / overlap / pad overrides.

        Returns:
            The prepared document, or None if it is unreadable or empty.
        """
        key = document_key(path)
        text = self.load_text(key)
        if text is None:
            return None
        if not text.strip():
            logger.warning(f"Skipping {key}: no text content")
            return None

        chunks = self.get_chunker(chunk_opts).split(text)

        try:
            stat = os.stat(key)
            size, mtime = stat.st_size, stat.st_mtime
        except OSError:
            size, mtime = len(text), 0.0

        doc_meta = {
            "contentHash": compute_content_hash(chunks),
            "size": size,
            "mtime": mtime,
        }
        logger.info(f"Prepared {Path(key).name}: {len(text)} chars, {len(chunks)} chunk(s)")
        return PreparedDocument(key, text, chunks, doc_meta)

    @staticmethod
    def get_document_stats(documents: List[PreparedDocument]) -> Dict[str, object]:
        """
        Compute statistics about prepared documents.

        Returns:
            Statistics dictionary with counts and file type breakdown.
        """
        if not documents:
            return {
                "total_documents": 0,
                "total_characters": 0,
                "total_chunks": 0,
                "avg_length": 0,
                "file_types": {},
            }

        total_chars = sum(len(doc.text) for doc in documents)
        file_types: Dict[str, int] = {}
        for doc in documents:
            ext = Path(doc.path).suffix.lower().lstrip('.') or "none"
            file_types[ext] = file_types.get(ext, 0) + 1

        return {
            "total_documents": len(documents),
            "total_characters": total_chars,
            "total_chunks": sum(len(doc.chunks) for doc in documents),
            "avg_length": total_chars // len(documents),
            "file_types": file_types,
        }

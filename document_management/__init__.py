"""Document management package."""

from document_management.indexer import IngestQueue, IngestTask
from document_management.loader import DocumentLoader, PlainTextLoader
from document_management.processor import DocumentProcessor, PreparedDocument, document_key

__all__ = [
    "DocumentLoader",
    "PlainTextLoader",
    "DocumentProcessor",
    "PreparedDocument",
    "document_key",
    "IngestQueue",
    "IngestTask",
]

"""Citation attribution for generated answers."""

from citation.extractor import (
    CitationExtractor,
    CitationSource,
    FileCitation,
    is_denial,
    is_salutation,
    merge_ranges,
    should_cite,
)

__all__ = [
    "CitationExtractor",
    "CitationSource",
    "FileCitation",
    "is_denial",
    "is_salutation",
    "merge_ranges",
    "should_cite",
]

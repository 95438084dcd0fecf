"""
Utilities package.

Provides helper functions for:
- Text cleaning and tokenization
- Atomic JSON persistence and path labels
- Input validation
"""

from utils.fileio import atomic_write_json, display_names, read_json
from utils.text import clean_text, distinct_words, line_at, tokenize
from utils.validators import validate_query, validate_top_k

__all__ = [
    # Text
    "clean_text",
    "tokenize",
    "distinct_words",
    "line_at",
    # Files
    "atomic_write_json",
    "read_json",
    "display_names",
    # Validation
    "validate_query",
    "validate_top_k",
]

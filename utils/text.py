"""
Text normalisation helpers shared by ingestion, embedding and citation.

Character offsets used throughout the engine are 1-based positions into
the output of `clean_text`, so every consumer must clean the same way.
"""

from __future__ import annotations

import re
from typing import List, Set

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def clean_text(text: str) -> str:
    """
    Clean raw document text before chunking.

    Removes null bytes and normalises line endings to '\\n'. Line structure
    is preserved so citation line numbers stay meaningful.
    """
    if not text:
        return ""
    text = text.replace('\x00', '')
    return text.replace('\r\n', '\n').replace('\r', '\n')


def tokenize(text: str) -> List[str]:
    """Lowercase, collapse non-[a-z0-9] runs to spaces and split."""
    if not text:
        return []
    return [tok for tok in _NON_ALNUM.sub(" ", text.lower()).split(" ") if tok]


def distinct_words(text: str) -> Set[str]:
    """Distinct normalised words of a text."""
    return set(tokenize(text))


def line_at(text: str, position: int) -> int:
    """
    Line number (1-based) of a 1-based character position.

    Positions past the end of the text map to the last line.
    """
    position = max(1, min(position, len(text)))
    return text.count("\n", 0, position - 1) + 1

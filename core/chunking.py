"""
Fixed-window text chunking.

Splits cleaned document text into overlapping character windows. Each
window also carries a few characters of padding on either side; the padding
is shown next to citations but never vectorised.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from config import settings
from core.schema import TextChunk


def split_text(
    text: str,
    chunk_size: int,
    overlap: int = 0,
    pad: int = 0,
) -> List[TextChunk]:
    """
    Split text into overlapping windows.

    Windows start at position 1 and span `[pos, min(len, pos+chunk_size-1)]`
    (1-based, inclusive). The next window starts `chunk_size - overlap`
    characters later; splitting stops once a window reaches the end of the
    text, so the last window may be shorter than `chunk_size`.

    Args:
        text: Cleaned document text.
        chunk_size: Window size in characters, must be positive.
        overlap: Characters shared by consecutive windows. Negative values
            are clamped to 0, values >= chunk_size to chunk_size - 1.
        pad: Context characters captured on each side of a window.

    Returns:
        Ordered windows. Empty text yields no windows.

    Raises:
        ValueError: If chunk_size is not positive.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    overlap = max(0, min(overlap, chunk_size - 1))
    pad = max(0, pad)
    length = len(text)
    step = chunk_size - overlap

    chunks: List[TextChunk] = []
    pos = 1
    while pos <= length:
        end = min(length, pos + chunk_size - 1)
        left_from = max(1, pos - pad)
        chunks.append(
            TextChunk(
                start=pos,
                end=end,
                text=text[pos - 1:end],
                left_context=text[left_from - 1:pos - 1],
                right_context=text[end:end + pad],
            )
        )
        if end >= length:
            break
        pos += step

    return chunks


class WindowChunker:
    """
    Character-window chunker with settings-backed defaults.

    Attributes:
        chunk_size: Window size in characters.
        overlap: Characters shared by consecutive windows.
        pad: Context characters captured on each side.
    """

    __slots__ = ('chunk_size', 'overlap', 'pad')

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        pad: Optional[int] = None,
    ) -> None:
        """
        Initialize the chunker.

        Args:
            chunk_size: Window size (default from settings).
            overlap: Overlap between windows (default from settings).
            pad: Padding context length (default from settings).
        """
        self.chunk_size: int = chunk_size if chunk_size is not None else settings.CHUNK_SIZE
        self.overlap: int = overlap if overlap is not None else settings.CHUNK_OVERLAP
        self.pad: int = pad if pad is not None else settings.CHUNK_PAD

    def split(self, text: str) -> List[TextChunk]:
        """Split text with this chunker's parameters."""
        return split_text(text, self.chunk_size, self.overlap, self.pad)

    def get_stats(self, text: str) -> Dict[str, int | float]:
        """
        Compute chunking statistics for a text.

        Args:
            text: Text to analyze.

        Returns:
            Statistics dictionary with chunk count and sizes.
        """
        chunks = self.split(text)
        sizes = [len(c.text) for c in chunks]

        return {
            "total_characters": len(text),
            "total_chunks": len(chunks),
            "avg_chunk_size": sum(sizes) / max(len(sizes), 1),
            "chunk_size": self.chunk_size,
            "overlap": self.overlap,
            "pad": self.pad,
        }


def get_chunker(
    chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
    pad: Optional[int] = None,
) -> WindowChunker:
    """
    Factory function to create a chunker.

    Args:
        chunk_size: Optional override for settings.CHUNK_SIZE.
        overlap: Optional override for settings.CHUNK_OVERLAP.
        pad: Optional override for settings.CHUNK_PAD.

    Returns:
        Configured chunker instance.
    """
    return WindowChunker(chunk_size=chunk_size, overlap=overlap, pad=pad)

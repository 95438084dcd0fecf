"""
Document loading.

Turning a file into plain text is delegated to a `DocumentLoader`. The
default loader reads UTF-8 text files; rich formats need a loader of their
own.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, Tuple, Union, runtime_checkable

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@runtime_checkable
class DocumentLoader(Protocol):
    """Anything that turns a document path into plain text."""

    def load(self, path: PathLike) -> str:
        """
        Read a document as plain text.

        Raises:
            OSError: If the document cannot be read.
        """
        ...


class PlainTextLoader:
    """
    Reads text files as UTF-8.

    Undecodable bytes are replaced rather than failing the whole file.

    Attributes:
        suffixes: File suffixes picked up when a directory is expanded.
    """

    __slots__ = ('suffixes',)

    DEFAULT_SUFFIXES: Tuple[str, ...] = (".txt", ".md", ".markdown", ".rst", ".csv", ".log")

    def __init__(self, suffixes: Tuple[str, ...] = DEFAULT_SUFFIXES) -> None:
        self.suffixes = tuple(s.lower() for s in suffixes)

    def load(self, path: PathLike) -> str:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    def accepts(self, path: PathLike) -> bool:
        return Path(path).suffix.lower() in self.suffixes

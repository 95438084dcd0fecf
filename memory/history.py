"""
Persistent chat history log.

Every chat exchange is appended as `{ts, user, status, raw}` to a JSON
array that is rewritten in full (atomically) on each append.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from config import settings
from core.schema import HistoryEntry
from utils.fileio import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class ChatHistoryLog:
    """
    JSON-array chat log.

    Attributes:
        path: Location of the history file.
    """

    __slots__ = ('path',)

    def __init__(self, path: Optional[Path] = None) -> None:
        """
        Initialize the history log.

        Args:
            path: History file. Defaults to settings.HISTORY_PATH.
        """
        self.path: Path = Path(path or settings.HISTORY_PATH)

    def entries(self) -> List[HistoryEntry]:
        """All entries, oldest first; unreadable entries are skipped."""
        data = read_json(self.path, default=[])
        if not isinstance(data, list):
            logger.error(f"History file {self.path} is not a JSON array; ignoring it")
            return []

        entries: List[HistoryEntry] = []
        for item in data:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed history entry: {e}")
        return entries

    def append(self, user: str, status: int, raw: str, ts: Optional[str] = None) -> bool:
        """
        Append one exchange and rewrite the file.

        Args:
            user: User prompt.
            status: Final HTTP status or transport sentinel.
            raw: Raw model reply.
            ts: ISO-8601 timestamp (defaults to now, UTC).

        Returns:
            True if the history was written.
        """
        entry = HistoryEntry(
            ts=ts or datetime.now(timezone.utc).isoformat(timespec="seconds"),
            user=user,
            status=status,
            raw=raw,
        )
        entries = self.entries()
        entries.append(entry)
        return self._write(entries)

    def recent(self, n: int = 10) -> List[HistoryEntry]:
        """The last `n` entries, oldest first."""
        if n <= 0:
            return []
        return self.entries()[-n:]

    def clear(self) -> bool:
        """Replace the log with an empty array."""
        logger.info("Clearing chat history")
        return self._write([])

    def _write(self, entries: List[HistoryEntry]) -> bool:
        return atomic_write_json(
            self.path, [e.model_dump() for e in entries], prefix=".history_"
        )

    def __len__(self) -> int:
        return len(self.entries())

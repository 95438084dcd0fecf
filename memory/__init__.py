"""Chat history persistence."""

from memory.history import ChatHistoryLog

__all__ = ["ChatHistoryLog"]

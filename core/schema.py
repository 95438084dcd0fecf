"""
Core data models.

Chunks, documents and the persisted store layout. Models serialise with
the camelCase keys of the on-disk JSON format (`model_dump(by_alias=True)`)
and accept either the alias or the field name when loading.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TextChunk(BaseModel):
    """A window of document text produced by the splitter, not yet stored."""

    start: int = Field(..., ge=1, description="1-based inclusive start offset")
    end: int = Field(..., ge=0, description="1-based inclusive end offset")
    text: str = Field(..., description="Window text (the only part that is vectorised)")
    left_context: str = Field(default="", alias="leftContext")
    right_context: str = Field(default="", alias="rightContext")
    vector: Optional[List[float]] = Field(
        default=None, description="Pre-computed embedding, if already embedded"
    )

    model_config = ConfigDict(populate_by_name=True)


class Chunk(BaseModel):
    """A stored chunk: window text, display context, vector and owner metadata."""

    id: str = Field(..., description="Unique chunk id")
    path: str = Field(..., description="Owning document path")
    start: int = Field(..., description="1-based inclusive start offset")
    end: int = Field(..., description="1-based inclusive end offset")
    text: str = Field(default="")
    left_context: str = Field(default="", alias="leftContext")
    right_context: str = Field(default="", alias="rightContext")
    vector: List[float] = Field(default_factory=list)
    content_hash: str = Field(default="", alias="contentHash")
    size: int = Field(default=0)
    mtime: float = Field(default=0.0)

    model_config = ConfigDict(populate_by_name=True)


class Document(BaseModel):
    """Per-path document record."""

    path: str
    size: int = 0
    mtime: float = 0.0
    content_hash: str = Field(default="", alias="contentHash")
    chunk_ids: List[str] = Field(default_factory=list, alias="chunkIds")

    model_config = ConfigDict(populate_by_name=True)


class StoreData(BaseModel):
    """The whole persisted vector store."""

    items: List[Chunk] = Field(default_factory=list)
    docs: Dict[str, Document] = Field(default_factory=dict)

    def to_json_dict(self) -> dict:
        """Plain dict in the on-disk layout."""
        return self.model_dump(by_alias=True)


class RetrievalResult(BaseModel):
    """A scored chunk returned by a similarity query."""

    score: float
    chunk: Chunk


class Message(BaseModel):
    """A chat message."""

    role: Literal["system", "user", "assistant"]
    content: str


class HistoryEntry(BaseModel):
    """One persisted chat exchange."""

    ts: str
    user: str
    status: int
    raw: str


class ChunkOptions(BaseModel):
    """Per-call chunking overrides; unset values use the settings."""

    chunk_size: Optional[int] = Field(default=None, alias="chunkSize")
    overlap: Optional[int] = None
    pad: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

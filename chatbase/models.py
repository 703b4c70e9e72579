"""Data models for the RAG application."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np

Role = Literal["user", "assistant", "system"]
StreamEventType = Literal["sources", "token", "done", "error"]


@dataclass(frozen=True)
class Chunk:
    """A passage of a source document produced by the chunker."""

    content: str
    metadata: dict[str, Any]
    chunk_index: int
    total_chunks: int


@dataclass
class Document:
    """A persisted chunk owned by the vector store."""

    id: str
    content: str
    metadata: dict[str, Any]
    embedding: np.ndarray | None = None
    created_at: str | None = None


@dataclass
class SearchResult:
    """A document ranked against a query."""

    id: str
    content: str
    metadata: dict[str, Any]
    similarity: float

    def to_source(self, preview_length: int = 200) -> dict[str, Any]:
        """Summarize the result for storage alongside an assistant message.

        Returns:
            JSON-serializable mapping with a truncated content preview.
        """
        return {
            "id": self.id,
            "content": self.content[:preview_length],
            "metadata": self.metadata,
            "similarity": self.similarity,
        }


@dataclass
class Conversation:
    """A conversation thread belonging to a session."""

    id: str
    session_id: str
    title: str | None
    created_at: str
    updated_at: str


@dataclass
class Message:
    """A single stored message of a conversation."""

    id: str
    conversation_id: str
    role: Role
    content: str
    sources: list[dict[str, Any]] = field(default_factory=list)
    regenerated_from: str | None = None
    created_at: str | None = None


@dataclass
class AskOptions:
    """Per-request retrieval options."""

    match_threshold: float | None = None
    match_count: int | None = None
    include_history: bool = True


@dataclass
class ChatResponse:
    """Complete answer returned by a blocking request."""

    answer: str
    sources: list[SearchResult]
    session_id: str
    conversation_id: str | None = None
    message_id: str | None = None


@dataclass
class StreamEvent:
    """One event of a streamed answer."""

    type: StreamEventType
    data: Any = None

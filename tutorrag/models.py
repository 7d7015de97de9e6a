"""Data models for the tutoring pipeline."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import numpy as np

from .errors import ValidationError

CLASS_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def validate_class_id(class_id: str) -> str:
    """Check that a class id is usable as a partition name.

    Returns:
        The class id unchanged.

    Raises:
        ValidationError: If the id is empty or contains unsupported characters.
    """
    if not class_id or not CLASS_ID_PATTERN.match(class_id):
        msg = f"Invalid class id: {class_id!r}"
        raise ValidationError(msg)
    return class_id


class SourceType(StrEnum):
    """Kind of uploaded class material a chunk was extracted from."""

    AUDIO = "audio"
    PHOTO = "photo"
    TEXTBOOK = "textbook"

    @property
    def info(self) -> SourceTypeInfo:
        return SOURCE_TYPE_INFO[self]

    @classmethod
    def parse(cls, value: str | SourceType) -> SourceType:
        """Convert a raw value into a SourceType.

        Returns:
            The matching SourceType member.

        Raises:
            ValidationError: If the value is not a known source type.
        """
        try:
            return cls(value)
        except ValueError as exc:
            msg = f"Unknown source type: {value!r}"
            raise ValidationError(msg) from exc

    @classmethod
    def by_priority(cls) -> list[SourceType]:
        return sorted(cls, key=lambda source_type: source_type.info.priority)


@dataclass(frozen=True)
class SourceTypeInfo:
    """Per-variant display and ranking metadata."""

    label: str
    priority: int


SOURCE_TYPE_INFO: dict[SourceType, SourceTypeInfo] = {
    SourceType.AUDIO: SourceTypeInfo(label="Lecture", priority=0),
    SourceType.PHOTO: SourceTypeInfo(label="Photo", priority=1),
    SourceType.TEXTBOOK: SourceTypeInfo(label="Textbook", priority=2),
}


@dataclass(frozen=True)
class SourceFilters:
    """Per source-type toggles for retrieval."""

    include_audio: bool = True
    include_photos: bool = True
    include_textbooks: bool = True

    def enabled(self) -> list[SourceType]:
        """Return enabled source types in priority order."""  # noqa: DOC201
        toggles = {
            SourceType.AUDIO: self.include_audio,
            SourceType.PHOTO: self.include_photos,
            SourceType.TEXTBOOK: self.include_textbooks,
        }
        return [
            source_type
            for source_type in SourceType.by_priority()
            if toggles[source_type]
        ]


@dataclass(frozen=True)
class TextSpan:
    """A chunk of text with its position in the original input."""

    text: str
    index: int
    start_char: int
    end_char: int
    page_number: int | None = None


@dataclass(frozen=True)
class ContentChunk:
    """A bounded span of source text owned by one class partition."""

    text: str
    source_type: SourceType
    source_id: str
    class_id: str
    chunk_index: int
    timestamp: str | None = None
    page_number: int | None = None
    start_char: int | None = None
    end_char: int | None = None
    embedding: np.ndarray | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class SearchFilter:
    """Restricts a vector search to a source type and/or a set of sources."""

    source_type: SourceType | None = None
    source_id: str | None = None
    source_ids: frozenset[str] | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.source_type is None
            and self.source_id is None
            and self.source_ids is None
        )


class IngestionStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {IngestionStatus.COMPLETE, IngestionStatus.ERROR}


@dataclass
class IngestionRecord:
    """Tracking record for one uploaded source item."""

    source_id: str
    source_type: SourceType
    class_id: str
    status: IngestionStatus = IngestionStatus.PENDING
    extracted_text: str | None = None
    title: str | None = None
    error: str | None = None
    chunk_count: int = 0
    degraded: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Citation:
    """User-facing reference from an answer back to an uploaded source."""

    type: SourceType
    id: str
    title: str
    relevance_score: float
    timestamp: str | None = None
    page_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "id": self.id,
            "title": self.title,
            "relevance_score": self.relevance_score,
            "timestamp": self.timestamp,
            "page_number": self.page_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Citation:
        return cls(
            type=SourceType.parse(data["type"]),
            id=str(data["id"]),
            title=str(data.get("title") or "Unknown"),
            relevance_score=float(data.get("relevance_score", 0.0)),
            timestamp=data.get("timestamp"),
            page_number=data.get("page_number"),
        )


@dataclass(frozen=True)
class RetrievalResult:
    """A ranked chunk produced by a single retrieval call."""

    chunk: ContentChunk
    relevance_score: float
    resolved_title: str = "Unknown"


@dataclass
class RetrievalContext:
    """Grounding text and citations assembled for one query."""

    context_text: str = ""
    citations: list[Citation] = field(default_factory=list)
    results: list[RetrievalResult] = field(default_factory=list)
    degraded: bool = False

    @property
    def is_grounded(self) -> bool:
        return bool(self.context_text)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Conversation:
    id: str
    owner_user_id: str
    class_id: str
    title: str
    message_count: int = 0
    last_message_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    citations: list[Citation] | None = None
    token_count: int = 0
    created_at: str | None = None


@dataclass
class ChatResult:
    """Outcome of a fully persisted chat turn."""

    conversation_id: str
    message_id: str
    content: str
    citations: list[Citation] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "content": self.content,
            "citations": [citation.to_dict() for citation in self.citations],
            "degraded": self.degraded,
        }


def estimate_token_count(text: str) -> int:
    """Rough token estimate (one token per four characters), for accounting only.

    Returns:
        Estimated number of tokens in the text.
    """
    return math.ceil(len(text) / 4)

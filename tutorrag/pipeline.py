"""Main RAG pipeline wiring ingestion, retrieval and chat together."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .chat_store import ChatStore
from .config import config
from .conversation import ConversationManager
from .document_processing import TextChunker
from .embeddings import EmbeddingService
from .errors import IngestionFailure, ValidationError
from .ingestion import IngestionTracker
from .models import (
    ChatResult,
    ContentChunk,
    IngestionRecord,
    IngestionStatus,
    RetrievalContext,
    SourceFilters,
    SourceType,
    validate_class_id,
)
from .retrieval import RetrievalOrchestrator
from .vector_store import get_vector_store

if TYPE_CHECKING:
    from concurrent.futures import Future
    from pathlib import Path

    from openai import OpenAI

    from .tasks import IngestionQueue
    from .vector_store import FaissVectorStore, SQLiteVectorStore

logger = config.get_logger(__name__)


class RAGPipeline:
    """Composition root: Split -> Embed -> Store on write, Retrieve -> Chat on read."""

    def __init__(  # noqa: PLR0913
        self,
        openai_api_key: str | None = None,
        *,
        database_path: Path | None = None,
        vector_backend: str | None = None,
        embedding_service: EmbeddingService | None = None,
        vector_store: FaissVectorStore | SQLiteVectorStore | None = None,
        chat_client: OpenAI | None = None,
        chunker: TextChunker | None = None,
    ) -> None:
        """Initialize the pipeline and its collaborators.

        Args:
            openai_api_key: OpenAI API key for embeddings and generation.
            database_path: SQLite file for ingestion records and chats. If
                None, uses config.DATABASE_PATH.
            vector_backend: Which vector store backend to use ("faiss" |
                "sqlite"). Defaults to config.VECTOR_BACKEND.
            embedding_service: Pre-built embedding service.
            vector_store: Pre-built vector store; overrides ``vector_backend``.
            chat_client: Pre-built OpenAI client for generation.
            chunker: Pre-built text chunker.
        """
        if database_path is None:
            database_path = config.DATABASE_PATH

        self.chunker = chunker or TextChunker()
        self.embedding_service = embedding_service or EmbeddingService(
            api_key=openai_api_key
        )

        if vector_store is None:
            vector_store = get_vector_store(vector_backend)
        self.vector_store = vector_store
        self.vector_backend = self.vector_store.backend
        logger.info("Using %s vector storage", self.vector_backend)
        self.vector_store.load()

        self.tracker = IngestionTracker(database_path)
        self.chat_store = ChatStore(database_path)
        self.retrieval = RetrievalOrchestrator(
            self.embedding_service, self.vector_store, self.tracker
        )
        self.conversations = ConversationManager(
            self.retrieval,
            self.chat_store,
            client=chat_client,
            openai_api_key=openai_api_key,
        )
        self._queue: IngestionQueue | None = None

    @property
    def queue(self) -> IngestionQueue:
        if self._queue is None:
            from .tasks import IngestionQueue  # noqa: PLC0415

            self._queue = IngestionQueue(self)
        return self._queue

    def build_chunks(
        self,
        source_type: SourceType,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any],
    ) -> list[ContentChunk]:
        """Split a source into ContentChunks without embeddings.

        ``metadata["pages"]`` (pairs of page number and text) switches to
        per-page chunking; ``timestamp`` and ``page_number`` are copied onto
        every chunk.

        Returns:
            Chunks in reading order.
        """
        pages = metadata.get("pages")
        if pages:
            spans = self.chunker.chunk_pages(pages)
        else:
            spans = self.chunker.chunk_text(raw_text)
        return [
            ContentChunk(
                text=span.text,
                source_type=source_type,
                source_id=source_id,
                class_id=class_id,
                chunk_index=span.index,
                timestamp=metadata.get("timestamp"),
                page_number=(
                    span.page_number
                    if span.page_number is not None
                    else metadata.get("page_number")
                ),
                start_char=span.start_char,
                end_char=span.end_char,
            )
            for span in spans
        ]

    def index_source(
        self,
        source_type: SourceType | str,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[int, bool]:
        """Chunk, embed and store one source, replacing its previous chunks.

        Returns:
            Number of chunks stored and whether any embedding degraded.

        Raises:
            IngestionFailure: If the source cannot be indexed.
        """
        source_type = SourceType.parse(source_type)
        chunks = self.build_chunks(
            source_type, source_id, class_id, raw_text or "", metadata or {}
        )
        if not chunks:
            msg = "No extractable text"
            raise IngestionFailure(msg, retryable=False)

        batch = self.embedding_service.get_embeddings_batch(
            [chunk.text for chunk in chunks]
        )
        embedded = [
            replace(chunk, embedding=vector)
            for chunk, vector in zip(chunks, batch.vectors, strict=True)
        ]

        try:
            self.vector_store.upsert(embedded)
            # Drop chunks left over from a longer previous version of the source
            pruned = self.vector_store.delete_by_source(
                class_id, source_id, min_chunk_index=len(embedded)
            )
        except ValidationError as exc:
            raise IngestionFailure(str(exc), retryable=False) from exc
        except (RuntimeError, sqlite3.Error, OSError) as exc:
            msg = f"Failed to store chunks: {exc}"
            raise IngestionFailure(msg) from exc

        logger.info(
            "Indexed %s source %s: %d chunks (%d pruned, degraded=%s)",
            source_type,
            source_id,
            len(embedded),
            pruned,
            batch.degraded,
        )
        return len(embedded), batch.degraded

    def register_source(  # noqa: PLR0913
        self,
        source_type: SourceType,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any],
    ) -> IngestionRecord:
        """Register a source as pending, moving it out of a previous class.

        A source re-registered under another class loses its chunks in the old
        partition, so no class keeps vectors for a source it no longer owns.

        Returns:
            The pending record.

        Raises:
            ValidationError: If the source identifiers are invalid.
        """
        validate_class_id(class_id)
        previous = self.tracker.get(source_type, source_id)
        if previous is not None and previous.class_id != class_id:
            moved = self.vector_store.delete_by_source(previous.class_id, source_id)
            logger.info(
                "Moved %s source %s from class %s to %s (%d chunks dropped)",
                source_type,
                source_id,
                previous.class_id,
                class_id,
                moved,
            )
        return self.tracker.register(
            source_type,
            source_id,
            class_id,
            title=metadata.get("title"),
            extracted_text=raw_text,
            metadata=metadata,
        )

    def ingest(  # noqa: PLR0913
        self,
        source_type: SourceType | str,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> IngestionRecord:
        """Ingest one source synchronously, recording progress on its record.

        Failures end in the ``error`` state instead of propagating.

        Returns:
            The final ingestion record.

        Raises:
            ValidationError: If the source identifiers are invalid.
        """
        source_type = SourceType.parse(source_type)
        metadata = metadata or {}
        logger.info("Starting ingestion for %s source %s", source_type, source_id)

        record = self.tracker.get(source_type, source_id)
        if (
            record is None
            or record.status is not IngestionStatus.PENDING
            or record.class_id != class_id
        ):
            self.register_source(source_type, source_id, class_id, raw_text, metadata)
        self.tracker.mark_processing(source_type, source_id, extracted_text=raw_text)

        try:
            chunk_count, degraded = self.index_source(
                source_type, source_id, class_id, raw_text, metadata
            )
        except IngestionFailure as exc:
            return self.tracker.mark_error(source_type, source_id, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Unexpected failure ingesting %s source %s", source_type, source_id
            )
            return self.tracker.mark_error(
                source_type, source_id, f"Unexpected error: {exc}"
            )

        return self.tracker.mark_complete(
            source_type, source_id, chunk_count=chunk_count, degraded=degraded
        )

    def submit_ingest(  # noqa: PLR0913
        self,
        source_type: SourceType | str,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> Future[IngestionRecord]:
        """Queue ingestion as background work with bounded retries.

        Returns:
            Future resolving to the final ingestion record.
        """
        return self.queue.submit(source_type, source_id, class_id, raw_text, metadata)

    def retrieve(
        self,
        class_id: str,
        query_text: str,
        source_filters: SourceFilters | None = None,
    ) -> RetrievalContext:
        return self.retrieval.retrieve(class_id, query_text, source_filters)

    def chat(  # noqa: PLR0913
        self,
        user_id: str,
        class_id: str,
        message: str,
        conversation_id: str | None = None,
        source_filters: SourceFilters | None = None,
    ) -> ChatResult:
        return self.conversations.chat(
            user_id, class_id, message, conversation_id, source_filters
        )

    def delete_source(
        self,
        source_type: SourceType | str,
        source_id: str,
    ) -> int:
        """Remove a source's chunks and its ingestion record.

        Returns:
            Number of chunks removed.

        Raises:
            NotFoundOrDeniedError: If the source was never registered.
        """
        record = self.tracker.require(source_type, source_id)
        deleted = self.vector_store.delete_by_source(record.class_id, source_id)
        self.tracker.delete(record.source_type, source_id)
        logger.info("Deleted %s source %s (%d chunks)", source_type, source_id, deleted)
        return deleted

    def delete_class(self, class_id: str) -> None:
        """Drop a class partition and every ingestion record of the class."""
        validate_class_id(class_id)
        self.vector_store.delete_partition(class_id)
        removed = self.tracker.delete_class(class_id)
        logger.info("Deleted class %s (%d ingestion records)", class_id, removed)

    def close(self) -> None:
        if self._queue is not None:
            self._queue.shutdown()
        self.vector_store.save()

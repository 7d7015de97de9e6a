"""Shared helpers for vector stores keeping chunk metadata in SQLite."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from tutorrag.config import config
from tutorrag.errors import ValidationError
from tutorrag.models import (
    ContentChunk,
    SearchFilter,
    SourceType,
    validate_class_id,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

CHUNK_COLUMNS = (
    "id",
    "class_id",
    "source_type",
    "source_id",
    "chunk_index",
    "content",
    "start_char",
    "end_char",
    "timestamp",
    "page_number",
    "vector_file",
)

logger = config.get_logger(__name__)


class BaseSQLiteStore:
    """Partition bookkeeping and chunk metadata shared by vector backends.

    Every chunk row belongs to one class partition. The row id doubles as the
    vector id inside the backend index, and ``(class_id, source_id,
    chunk_index)`` identifies a chunk so re-ingestion replaces rather than
    duplicates it.
    """

    backend = "base"

    def __init__(self, db_path: Path) -> None:
        """Initialize metadata store and ensure schema exists."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self) -> None:
        """Create partition and chunk tables if they don't exist."""
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS partitions (
                    class_id TEXT PRIMARY KEY,
                    dimension INTEGER NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    class_id TEXT NOT NULL,
                    source_type TEXT NOT NULL CHECK(
                        source_type IN ('audio','photo','textbook')
                    ),
                    source_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    start_char INTEGER,
                    end_char INTEGER,
                    timestamp TEXT,
                    page_number INTEGER,
                    vector_file TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (class_id, source_id, chunk_index),
                    FOREIGN KEY (class_id) REFERENCES partitions (class_id)
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_chunks_class_type "
                "ON chunks(class_id, source_type)",
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_chunks_class_source "
                "ON chunks(class_id, source_id)",
            )
            conn.commit()

    validate_class_id = staticmethod(validate_class_id)

    @classmethod
    def _validate_batch(cls, chunks: Sequence[ContentChunk]) -> tuple[str, int]:
        """Check that a batch targets one partition with consistent embeddings.

        Returns:
            Tuple of (class_id, embedding dimension).

        Raises:
            ValidationError: On mixed class ids or missing/mismatched embeddings.
        """
        class_ids = {chunk.class_id for chunk in chunks}
        if len(class_ids) != 1:
            msg = (
                "All chunks in one upsert must share a class id, "
                f"got {sorted(class_ids)}"
            )
            raise ValidationError(msg)
        class_id = cls.validate_class_id(class_ids.pop())

        dimensions = set()
        for chunk in chunks:
            if chunk.embedding is None:
                msg = (
                    f"Chunk {chunk.chunk_index} of source {chunk.source_id} "
                    "has no embedding"
                )
                raise ValidationError(msg)
            if not chunk.source_id:
                msg = "Chunk source id is required"
                raise ValidationError(msg)
            dimensions.add(int(np.asarray(chunk.embedding).shape[-1]))
        if len(dimensions) != 1:
            msg = f"Mixed embedding dimensions in one upsert: {sorted(dimensions)}"
            raise ValidationError(msg)

        return class_id, dimensions.pop()

    @staticmethod
    def _ensure_partition(
        cursor: sqlite3.Cursor,
        class_id: str,
        dimension: int,
    ) -> bool:
        """Create the partition row on first write and check its dimension.

        Returns:
            True if the partition was created by this call.

        Raises:
            ValidationError: If the dimension differs from the partition's.
        """
        cursor.execute(
            "SELECT dimension FROM partitions WHERE class_id = ?", (class_id,)
        )
        row = cursor.fetchone()
        if row is None:
            cursor.execute(
                "INSERT INTO partitions (class_id, dimension) VALUES (?, ?)",
                (class_id, dimension),
            )
            logger.info(
                "Created vector partition for class %s (dimension %d)",
                class_id,
                dimension,
            )
            return True
        if int(row[0]) != dimension:
            msg = (
                f"Embedding dimension {dimension} does not match partition "
                f"dimension {row[0]} for class {class_id}"
            )
            raise ValidationError(msg)
        return False

    @staticmethod
    def _partition_exists(cursor: sqlite3.Cursor, class_id: str) -> bool:
        cursor.execute("SELECT 1 FROM partitions WHERE class_id = ?", (class_id,))
        return cursor.fetchone() is not None

    @staticmethod
    def _pop_existing_chunk(
        cursor: sqlite3.Cursor,
        chunk: ContentChunk,
    ) -> tuple[int, str | None] | None:
        """Delete the row sharing this chunk's identity, if any.

        Returns:
            (vector id, vector file) of the replaced row, or None.
        """
        cursor.execute(
            """
            SELECT id, vector_file FROM chunks
            WHERE class_id = ? AND source_id = ? AND chunk_index = ?
            """,
            (chunk.class_id, chunk.source_id, chunk.chunk_index),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        cursor.execute("DELETE FROM chunks WHERE id = ?", (row[0],))
        return int(row[0]), row[1]

    @staticmethod
    def _insert_chunk_row(
        cursor: sqlite3.Cursor,
        chunk: ContentChunk,
        *,
        vector_file: str | None,
    ) -> int:
        """Persist a chunk row and return its id, which is also its vector id.

        Raises:
            RuntimeError: If the chunk row cannot be inserted.

        Returns:
            Row id of the new chunk.
        """
        cursor.execute(
            """
            INSERT INTO chunks (
                class_id,
                source_type,
                source_id,
                chunk_index,
                content,
                start_char,
                end_char,
                timestamp,
                page_number,
                vector_file
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.class_id,
                SourceType.parse(chunk.source_type).value,
                chunk.source_id,
                chunk.chunk_index,
                chunk.text,
                chunk.start_char,
                chunk.end_char,
                chunk.timestamp,
                chunk.page_number,
                vector_file,
            ),
        )
        chunk_row_id = cursor.lastrowid
        if chunk_row_id is None:
            msg = "Failed to insert chunk row"
            raise RuntimeError(msg)
        return int(chunk_row_id)

    @staticmethod
    def _delete_source_rows(
        cursor: sqlite3.Cursor,
        class_id: str,
        source_id: str,
        min_chunk_index: int | None = None,
    ) -> list[tuple[int, str | None]]:
        """Delete chunk rows of a source, optionally from an index onwards.

        Returns:
            (vector id, vector file) pairs of the deleted rows.
        """
        clause = "class_id = ? AND source_id = ?"
        params: list[object] = [class_id, source_id]
        if min_chunk_index is not None:
            clause += " AND chunk_index >= ?"
            params.append(min_chunk_index)

        cursor.execute(
            f"SELECT id, vector_file FROM chunks WHERE {clause}",  # noqa: S608
            params,
        )
        rows = [(int(row[0]), row[1]) for row in cursor.fetchall()]
        cursor.execute(f"DELETE FROM chunks WHERE {clause}", params)  # noqa: S608
        return rows

    @staticmethod
    def _delete_partition_rows(cursor: sqlite3.Cursor, class_id: str) -> int:
        cursor.execute("DELETE FROM chunks WHERE class_id = ?", (class_id,))
        deleted = cursor.rowcount
        cursor.execute("DELETE FROM partitions WHERE class_id = ?", (class_id,))
        return deleted

    @staticmethod
    def _filter_clause(
        class_id: str,
        search_filter: SearchFilter | None,
    ) -> tuple[str, list[object]]:
        clause = "class_id = ?"
        params: list[object] = [class_id]
        if search_filter is None:
            return clause, params

        if search_filter.source_type is not None:
            clause += " AND source_type = ?"
            params.append(SourceType.parse(search_filter.source_type).value)
        if search_filter.source_id is not None:
            clause += " AND source_id = ?"
            params.append(search_filter.source_id)
        if search_filter.source_ids is not None:
            source_ids = sorted(search_filter.source_ids)
            placeholders = ", ".join("?" for _ in source_ids) or "NULL"
            clause += f" AND source_id IN ({placeholders})"
            params.extend(source_ids)
        return clause, params

    def _candidate_ids(
        self,
        cursor: sqlite3.Cursor,
        class_id: str,
        search_filter: SearchFilter | None,
    ) -> list[int]:
        """Return ids of the partition's chunks matching a filter.

        Returns:
            Matching chunk ids in insertion order.
        """
        clause, params = self._filter_clause(class_id, search_filter)
        cursor.execute(
            f"SELECT id FROM chunks WHERE {clause} ORDER BY id",  # noqa: S608
            params,
        )
        return [int(row[0]) for row in cursor.fetchall()]

    @staticmethod
    def _build_chunk_from_row(row: Sequence[object]) -> ContentChunk:
        """Create a ContentChunk from a metadata row.

        Returns:
            ContentChunk hydrated from the row, without its embedding.
        """
        (
            _chunk_db_id,
            class_id,
            source_type,
            source_id,
            chunk_index,
            content,
            start_char,
            end_char,
            timestamp,
            page_number,
            _vector_file,
        ) = row

        return ContentChunk(
            text=str(content),
            source_type=SourceType.parse(str(source_type)),
            source_id=str(source_id),
            class_id=str(class_id),
            chunk_index=int(chunk_index),  # type: ignore[arg-type]
            timestamp=timestamp,  # type: ignore[arg-type]
            page_number=page_number,  # type: ignore[arg-type]
            start_char=start_char,  # type: ignore[arg-type]
            end_char=end_char,  # type: ignore[arg-type]
        )

    def _fetch_chunks_by_ids(
        self,
        cursor: sqlite3.Cursor,
        chunk_ids: Sequence[int],
    ) -> dict[int, ContentChunk]:
        """Fetch chunks by row id.

        Returns:
            Mapping of id to chunk for the ids that still exist.
        """
        if not chunk_ids:
            return {}
        placeholders = ", ".join("?" for _ in chunk_ids)
        cursor.execute(
            f"SELECT {', '.join(CHUNK_COLUMNS)} FROM chunks "  # noqa: S608
            f"WHERE id IN ({placeholders})",
            [int(chunk_id) for chunk_id in chunk_ids],
        )
        return {
            int(row[0]): self._build_chunk_from_row(row) for row in cursor.fetchall()
        }

    def count(self, class_id: str) -> int:
        """Number of chunks stored in a class partition.

        Returns:
            Chunk count, 0 for a missing partition.
        """
        self.validate_class_id(class_id)
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM chunks WHERE class_id = ?", (class_id,)
            )
            return int(cursor.fetchone()[0])

    def list_chunks(
        self,
        class_id: str,
        search_filter: SearchFilter | None = None,
    ) -> list[ContentChunk]:
        """List a partition's chunks in insertion order.

        Returns:
            Chunks matching the optional filter, without embeddings.
        """
        self.validate_class_id(class_id)
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            clause, params = self._filter_clause(class_id, search_filter)
            cursor.execute(
                f"SELECT {', '.join(CHUNK_COLUMNS)} FROM chunks "  # noqa: S608
                f"WHERE {clause} ORDER BY id",
                params,
            )
            return [self._build_chunk_from_row(row) for row in cursor.fetchall()]

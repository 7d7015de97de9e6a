"""SQLite-based vector storage with numpy file backend."""

from __future__ import annotations

import shutil
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from tutorrag.config import config
from tutorrag.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tutorrag.models import ContentChunk, SearchFilter

logger = config.get_logger(__name__)


class SQLiteVectorStore(BaseSQLiteStore):
    """Vector storage using SQLite for metadata and numpy files for embeddings.

    Each class partition keeps its vectors under ``vectors_dir/<class_id>``;
    a per-partition matrix is rebuilt lazily after writes.
    """

    backend = "sqlite"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        vectors_dir: Path = Path("data/vectors"),
    ) -> None:
        """Initialize the SQLiteVectorStore with database and vector directory paths.

        Args:
            db_path: Path to the SQLite database file.
            vectors_dir: Directory to store numpy vector files.
        """
        self.vectors_dir = Path(vectors_dir)
        self.vectors_dir.mkdir(exist_ok=True, parents=True)

        self.embeddings: dict[str, tuple[np.ndarray, np.ndarray]] = {}

        super().__init__(db_path)

    def partition_dir(self, class_id: str) -> Path:
        self.validate_class_id(class_id)
        return self.vectors_dir / class_id

    def upsert(self, chunks: Sequence[ContentChunk]) -> int:
        """Add or replace chunks with embeddings in their class partition.

        Raises:
            ValidationError: If chunks span several classes or lack embeddings.

        Returns:
            Number of chunks written.
        """
        if not chunks:
            return 0

        class_id, dimension = self._validate_batch(chunks)
        partition_dir = self.partition_dir(class_id)
        partition_dir.mkdir(exist_ok=True, parents=True)

        stale_files: list[str] = []
        with self._lock:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                self._ensure_partition(cursor, class_id, dimension)

                for chunk in chunks:
                    replaced = self._pop_existing_chunk(cursor, chunk)
                    if replaced is not None and replaced[1]:
                        stale_files.append(replaced[1])

                    chunk_db_id = self._insert_chunk_row(
                        cursor, chunk, vector_file=None
                    )
                    vector_filename = f"chunk{chunk_db_id:08d}.npy"
                    np.save(
                        partition_dir / vector_filename,
                        np.asarray(chunk.embedding, dtype=np.float32),
                    )
                    cursor.execute(
                        "UPDATE chunks SET vector_file = ? WHERE id = ?",
                        (vector_filename, chunk_db_id),
                    )

                conn.commit()

            self.embeddings.pop(class_id, None)
            self._remove_vector_files(class_id, stale_files)

        logger.info(
            "Upserted %d chunks into SQLite partition %s", len(chunks), class_id
        )
        return len(chunks)

    def _remove_vector_files(self, class_id: str, vector_files: list[str]) -> None:
        for vector_file in vector_files:
            (self.partition_dir(class_id) / vector_file).unlink(missing_ok=True)

    def _load_partition_matrix(self, class_id: str) -> tuple[np.ndarray, np.ndarray]:
        """Rebuild the embeddings matrix of a partition from vector files.

        Returns:
            Tuple of (chunk ids, embeddings matrix) in insertion order.
        """
        cached = self.embeddings.get(class_id)
        if cached is not None:
            return cached

        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, vector_file FROM chunks
                WHERE class_id = ? AND vector_file IS NOT NULL
                ORDER BY id
                """,
                (class_id,),
            )
            rows = cursor.fetchall()

        ids: list[int] = []
        vectors: list[np.ndarray] = []
        for chunk_db_id, vector_file in rows:
            vector_path = self.partition_dir(class_id) / vector_file
            if vector_path.exists():
                ids.append(int(chunk_db_id))
                vectors.append(np.load(vector_path))
            else:
                logger.warning("Vector file not found: %s", vector_path)

        if vectors:
            matrix = (np.asarray(ids, dtype=np.int64), np.vstack(vectors))
        else:
            matrix = (np.empty(0, dtype=np.int64), np.empty((0, 0), dtype=np.float32))
        self.embeddings[class_id] = matrix

        logger.info(
            "Rebuilt embeddings matrix for class %s with %d vectors",
            class_id,
            len(vectors),
        )
        return matrix

    @staticmethod
    def cosine_similarity(
        query_embedding: np.ndarray,
        embeddings: np.ndarray,
    ) -> np.ndarray:
        """Calculate cosine similarity between query and document embeddings.

        Zero vectors have similarity 0 with everything.

        Returns:
            np.ndarray: Array of cosine similarity scores
                    between the query and each document embedding.
        """
        query = np.asarray(query_embedding, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return np.zeros(embeddings.shape[0], dtype=np.float32)

        doc_norms = np.linalg.norm(embeddings, axis=1)
        safe_norms = np.where(doc_norms == 0, 1.0, doc_norms)
        return (embeddings @ (query / query_norm)) / safe_norms

    def search(
        self,
        class_id: str,
        query_embedding: np.ndarray,
        top_k: int = 5,
        search_filter: SearchFilter | None = None,
    ) -> list[tuple[ContentChunk, float]]:
        """Search for similar chunks within one class partition.

        Returns:
            Up to ``top_k`` (ContentChunk, cosine similarity) pairs, best first;
            ties keep insertion order.
        """
        self.validate_class_id(class_id)
        if top_k <= 0:
            return []

        with self._lock:
            ids, matrix = self._load_partition_matrix(class_id)
            if ids.size == 0:
                return []

            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                if search_filter is not None and not search_filter.is_empty:
                    allowed = self._candidate_ids(cursor, class_id, search_filter)
                    mask = np.isin(ids, np.asarray(allowed, dtype=np.int64))
                    ids, matrix = ids[mask], matrix[mask]
                    if ids.size == 0:
                        return []

                similarities = self.cosine_similarity(query_embedding, matrix)
                order = np.argsort(-similarities, kind="stable")[:top_k]
                top_ids = [int(ids[i]) for i in order]
                chunks = self._fetch_chunks_by_ids(cursor, top_ids)

        results = []
        for position in order:
            chunk_db_id = int(ids[position])
            chunk = chunks.get(chunk_db_id)
            if chunk:
                results.append((chunk, float(similarities[position])))
        return results

    def delete_by_source(
        self,
        class_id: str,
        source_id: str,
        min_chunk_index: int | None = None,
    ) -> int:
        """Remove every chunk of a source (or those from ``min_chunk_index`` on).

        Returns:
            Number of chunks removed.
        """
        self.validate_class_id(class_id)
        with self._lock:
            with sqlite3.connect(str(self.db_path)) as conn:
                deleted = self._delete_source_rows(
                    conn.cursor(), class_id, source_id, min_chunk_index
                )
                conn.commit()

            self.embeddings.pop(class_id, None)
            self._remove_vector_files(
                class_id, [vector_file for _, vector_file in deleted if vector_file]
            )

        if deleted:
            logger.info(
                "Deleted %d chunks for source %s in class %s",
                len(deleted),
                source_id,
                class_id,
            )
        return len(deleted)

    def delete_partition(self, class_id: str) -> None:
        """Remove a whole class partition; a missing partition is not an error."""
        self.validate_class_id(class_id)
        with self._lock:
            self.embeddings.pop(class_id, None)
            try:
                with sqlite3.connect(str(self.db_path)) as conn:
                    deleted = self._delete_partition_rows(conn.cursor(), class_id)
                shutil.rmtree(self.partition_dir(class_id), ignore_errors=True)
            except sqlite3.Error:
                logger.warning(
                    "Failed to delete partition for class %s", class_id, exc_info=True
                )
                return

        logger.info("Deleted partition for class %s (%d chunks)", class_id, deleted)

    def save(self) -> None:  # noqa: PLR6301
        """
        Save operation - data is already persisted in SQLite and files.

        Note:
            This method is kept as an instance method for interface consistency
            with other vector store implementations, even though it does not use `self`.
        """
        logger.info("Data already persisted in SQLite database and vector files")

    def load(self) -> None:
        """Drop cached partition matrices so they are rebuilt from disk."""
        with self._lock:
            self.embeddings.clear()

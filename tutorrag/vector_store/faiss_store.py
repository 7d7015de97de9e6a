"""FAISS-backed per-class vector partitions with SQLite metadata."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np

from tutorrag.config import config
from tutorrag.vector_store.base import BaseSQLiteStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tutorrag.models import ContentChunk, SearchFilter

logger = config.get_logger(__name__)


class FaissVectorStore(BaseSQLiteStore):
    """One FAISS inner-product index per class, metadata in SQLite.

    Vectors are L2-normalized before indexing and querying, so inner-product
    scores are cosine similarities where higher is better.
    """

    backend = "faiss"

    def __init__(
        self,
        db_path: Path = Path("data/vector_store.db"),
        index_dir: Path = Path("data/faiss"),
        raw_top_k_multiplier: int = 2,
    ) -> None:
        """Configure FAISS-backed vector store."""
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(exist_ok=True, parents=True)

        self.indexes: dict[str, faiss.IndexIDMap] = {}
        self.raw_top_k_multiplier = max(1, raw_top_k_multiplier)

        super().__init__(db_path)

    @staticmethod
    def _normalize_embedding(embedding: np.ndarray) -> np.ndarray:
        """Normalize embedding for cosine similarity using inner product search.

        Zero vectors (embedding fallbacks) are left as they are and score 0.

        Returns:
            Normalized float32 embedding vector.
        """
        vector = np.array(embedding, dtype="float32").reshape(1, -1)
        if np.linalg.norm(vector) == 0:
            return vector[0]
        faiss.normalize_L2(vector)
        return vector[0]

    def index_path(self, class_id: str) -> Path:
        self.validate_class_id(class_id)
        return self.index_dir / f"class_{class_id}.faiss"

    def _get_index(
        self,
        class_id: str,
        dimension: int | None = None,
    ) -> faiss.IndexIDMap | None:
        """Return the partition index, loading it from disk or creating it.

        Returns:
            The index, or None if the partition has none and no dimension
            was given to create one.
        """
        index = self.indexes.get(class_id)
        if index is not None:
            return index

        path = self.index_path(class_id)
        if path.exists():
            index = faiss.read_index(str(path))
            if not isinstance(index, (faiss.IndexIDMap, faiss.IndexIDMap2)):
                logger.warning(
                    "Loaded FAISS index is %s; wrapping with IndexIDMap to enable IDs",
                    type(index).__name__,
                )
                index = faiss.IndexIDMap(index)
            logger.info(
                "Loaded FAISS index for class %s with %d vectors",
                class_id,
                index.ntotal,
            )
        elif dimension is not None:
            index = faiss.IndexIDMap(faiss.IndexFlatIP(dimension))
            logger.info(
                "Initialized FAISS index for class %s with dimension %d",
                class_id,
                dimension,
            )
        else:
            return None

        self.indexes[class_id] = index
        return index

    def _write_index(self, class_id: str, index: faiss.IndexIDMap) -> None:
        self.index_dir.mkdir(exist_ok=True, parents=True)
        faiss.write_index(index, str(self.index_path(class_id)))

    def upsert(self, chunks: Sequence[ContentChunk]) -> int:
        """Add or replace chunks in their class partition.

        Raises:
            ValidationError: If chunks span several classes or lack embeddings.

        Returns:
            Number of chunks written.
        """
        if not chunks:
            return 0

        class_id, dimension = self._validate_batch(chunks)

        with self._lock:
            try:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()
                    self._ensure_partition(cursor, class_id, dimension)
                    index = self._get_index(class_id, dimension)
                    if index is None or index.d != dimension:
                        msg = (
                            f"FAISS index for class {class_id} cannot hold "
                            f"{dimension}-dimensional vectors"
                        )
                        raise RuntimeError(msg)

                    replaced_ids: list[int] = []
                    vector_ids: list[int] = []
                    vectors: list[np.ndarray] = []
                    for chunk in chunks:
                        replaced = self._pop_existing_chunk(cursor, chunk)
                        if replaced is not None:
                            replaced_ids.append(replaced[0])
                        vector_ids.append(
                            self._insert_chunk_row(cursor, chunk, vector_file=None)
                        )
                        vectors.append(self._normalize_embedding(chunk.embedding))

                    if replaced_ids:
                        index.remove_ids(np.asarray(replaced_ids, dtype="int64"))
                    index.add_with_ids(  # pyright: ignore[reportCallIssue]
                        np.vstack(vectors).astype("float32"),
                        np.asarray(vector_ids, dtype="int64"),
                    )
                    self._write_index(class_id, index)
            except Exception:
                # Metadata rolled back; drop the in-memory index so it reloads
                self.indexes.pop(class_id, None)
                logger.exception("Failed to upsert chunks for class %s", class_id)
                raise

        logger.info(
            "Upserted %d vectors into FAISS partition %s (%d replaced)",
            len(vector_ids),
            class_id,
            len(replaced_ids),
        )
        return len(vector_ids)

    def search(
        self,
        class_id: str,
        query_embedding: np.ndarray,
        top_k: int = 5,
        search_filter: SearchFilter | None = None,
    ) -> list[tuple[ContentChunk, float]]:
        """Search a class partition for the chunks most similar to a query.

        Filters are resolved to allowed ids in SQLite; the FAISS candidate
        window grows until enough allowed ids are found or the index is
        exhausted.

        Returns:
            Up to ``top_k`` (ContentChunk, cosine similarity) pairs, best first.
        """
        self.validate_class_id(class_id)
        if top_k <= 0:
            return []

        with self._lock:
            index = self._get_index(class_id)
            if index is None or index.ntotal == 0:
                return []

            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                allowed: set[int] | None = None
                if search_filter is not None and not search_filter.is_empty:
                    allowed = set(self._candidate_ids(cursor, class_id, search_filter))
                    if not allowed:
                        return []

                query = self._normalize_embedding(query_embedding).reshape(1, -1)
                raw_top_k = min(
                    index.ntotal, max(top_k, self.raw_top_k_multiplier * top_k)
                )
                while True:
                    scores, vector_ids = index.search(query, raw_top_k)  # pyright: ignore[reportCallIssue]
                    hits = [
                        (int(vector_id), float(score))
                        for score, vector_id in zip(
                            scores[0], vector_ids[0], strict=True
                        )
                        if int(vector_id) != -1  # faiss returns -1 for empty results
                        and (allowed is None or int(vector_id) in allowed)
                    ]
                    if len(hits) >= top_k or raw_top_k >= index.ntotal:
                        break
                    raw_top_k = min(index.ntotal, raw_top_k * 2)

                hits = hits[:top_k]
                chunks = self._fetch_chunks_by_ids(
                    cursor, [vector_id for vector_id, _ in hits]
                )

        return [
            (chunks[vector_id], score)
            for vector_id, score in hits
            if vector_id in chunks
        ]

    def delete_by_source(
        self,
        class_id: str,
        source_id: str,
        min_chunk_index: int | None = None,
    ) -> int:
        """Remove every chunk of a source (or those from ``min_chunk_index`` on).

        Metadata rows and vectors are removed under one transaction; readers
        hydrate results from metadata, so the commit is the visibility point.

        Returns:
            Number of chunks removed.
        """
        self.validate_class_id(class_id)
        with self._lock:
            try:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()
                    deleted = self._delete_source_rows(
                        cursor, class_id, source_id, min_chunk_index
                    )
                    if deleted:
                        index = self._get_index(class_id)
                        if index is not None:
                            index.remove_ids(
                                np.asarray(
                                    [vector_id for vector_id, _ in deleted],
                                    dtype="int64",
                                )
                            )
                            self._write_index(class_id, index)
            except Exception:
                self.indexes.pop(class_id, None)
                logger.exception(
                    "Failed to delete source %s from class %s", source_id, class_id
                )
                raise

        if deleted:
            logger.info(
                "Deleted %d vectors for source %s in class %s",
                len(deleted),
                source_id,
                class_id,
            )
        return len(deleted)

    def delete_partition(self, class_id: str) -> None:
        """Remove a whole class partition; a missing partition is not an error."""
        self.validate_class_id(class_id)
        with self._lock:
            self.indexes.pop(class_id, None)
            try:
                with sqlite3.connect(str(self.db_path)) as conn:
                    deleted = self._delete_partition_rows(conn.cursor(), class_id)
                self.index_path(class_id).unlink(missing_ok=True)
            except (sqlite3.Error, OSError):
                logger.warning(
                    "Failed to fully delete partition for class %s",
                    class_id,
                    exc_info=True,
                )
                return

        logger.info("Deleted partition for class %s (%d chunks)", class_id, deleted)

    def save(self) -> None:
        """Persist every loaded FAISS index to disk."""
        with self._lock:
            for class_id, index in self.indexes.items():
                self._write_index(class_id, index)
        logger.info(
            "Saved %d FAISS partitions to %s", len(self.indexes), self.index_dir
        )

    def load(self) -> None:
        """Load the FAISS index of every known partition from disk.

        Raises:
            sqlite3.Error: If metadata read fails.
        """
        try:
            with sqlite3.connect(str(self.db_path)) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT class_id FROM partitions ORDER BY class_id")
                class_ids = [row[0] for row in cursor.fetchall()]
        except sqlite3.Error:
            logger.exception("Error loading metadata for FAISS vector store")
            raise

        with self._lock:
            for class_id in class_ids:
                if self._get_index(class_id) is None:
                    logger.warning(
                        "FAISS index not found for class %s at %s",
                        class_id,
                        self.index_path(class_id),
                    )

        logger.info("Loaded %d FAISS partitions", len(self.indexes))

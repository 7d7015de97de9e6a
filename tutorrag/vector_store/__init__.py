"""Per-class vector partitions and the backend factory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, get_args

from tutorrag.config import config
from tutorrag.errors import ValidationError

from .base import BaseSQLiteStore
from .faiss_store import FaissVectorStore
from .sqlite_store import SQLiteVectorStore

if TYPE_CHECKING:
    from pathlib import Path

VectorBackend = Literal["faiss", "sqlite"]
VECTOR_BACKENDS: tuple[str, ...] = get_args(VectorBackend)


def get_vector_store(
    backend: VectorBackend | str | None = None,
    *,
    db_path: Path | None = None,
    vectors_dir: Path | None = None,
    index_dir: Path | None = None,
    raw_top_k_multiplier: int | None = None,
) -> BaseSQLiteStore:
    """Build the vector store named by ``backend``.

    Unset arguments fall back to the VECTOR_* and FAISS_* settings, so
    ``get_vector_store()`` returns the store configured for this deployment.

    Raises:
        ValidationError: If the backend name is not one of VECTOR_BACKENDS.
    """
    name = (backend or config.VECTOR_BACKEND).strip().lower()
    if name not in VECTOR_BACKENDS:
        msg = (
            f"Unsupported vector store backend: {backend!r} "
            f"(expected one of {', '.join(VECTOR_BACKENDS)})"
        )
        raise ValidationError(msg)

    db_path = db_path or config.VECTOR_STORE_DB_PATH
    if name == "sqlite":
        return SQLiteVectorStore(
            db_path=db_path, vectors_dir=vectors_dir or config.VECTOR_STORE_DIR
        )
    return FaissVectorStore(
        db_path=db_path,
        index_dir=index_dir or config.FAISS_INDEX_DIR,
        raw_top_k_multiplier=raw_top_k_multiplier
        or config.VECTOR_RAW_TOP_K_MULTIPLIER,
    )


__all__ = [
    "VECTOR_BACKENDS",
    "BaseSQLiteStore",
    "FaissVectorStore",
    "SQLiteVectorStore",
    "VectorBackend",
    "get_vector_store",
]

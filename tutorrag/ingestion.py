"""Ingestion status tracking for uploaded source items."""

from __future__ import annotations

import datetime
import json
import sqlite3
from pathlib import Path
from typing import Any

from .config import config
from .errors import NotFoundOrDeniedError, ValidationError
from .models import (
    IngestionRecord,
    IngestionStatus,
    SourceType,
    validate_class_id,
)

logger = config.get_logger(__name__)

# Allowed status transitions; complete and error are terminal.
TRANSITIONS: dict[IngestionStatus, set[IngestionStatus]] = {
    IngestionStatus.PENDING: {IngestionStatus.PROCESSING, IngestionStatus.ERROR},
    IngestionStatus.PROCESSING: {IngestionStatus.COMPLETE, IngestionStatus.ERROR},
    IngestionStatus.COMPLETE: set(),
    IngestionStatus.ERROR: set(),
}

RECORD_COLUMNS = (
    "source_type",
    "source_id",
    "class_id",
    "status",
    "extracted_text",
    "title",
    "error",
    "chunk_count",
    "degraded",
    "metadata",
    "created_at",
    "updated_at",
)


def _now() -> str:
    return datetime.datetime.now(tz=datetime.UTC).isoformat()


class IngestionTracker:
    """Per-source state machine deciding whether chunks are retrieval-eligible.

    ``pending`` is created on registration, ``processing`` when chunk/embed/
    store work is claimed, ``complete`` once every chunk is stored, ``error``
    with a readable reason otherwise. The tracker records state only; retries
    belong to :class:`tutorrag.tasks.IngestionQueue`.

    The tracker also serves as the source metadata lookup used to resolve
    citation titles.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or config.DATABASE_PATH)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ingestion_records (
                    source_type TEXT NOT NULL CHECK(
                        source_type IN ('audio','photo','textbook')
                    ),
                    source_id TEXT NOT NULL,
                    class_id TEXT NOT NULL,
                    status TEXT NOT NULL CHECK(
                        status IN ('pending','processing','complete','error')
                    ),
                    extracted_text TEXT,
                    title TEXT,
                    error TEXT,
                    chunk_count INTEGER DEFAULT 0,
                    degraded INTEGER DEFAULT 0,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (source_type, source_id)
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_ingestion_class_status "
                "ON ingestion_records(class_id, source_type, status)"
            )
            conn.commit()

    @staticmethod
    def _build_record(row: tuple) -> IngestionRecord:
        (
            source_type,
            source_id,
            class_id,
            status,
            extracted_text,
            title,
            error,
            chunk_count,
            degraded,
            metadata,
            created_at,
            updated_at,
        ) = row
        return IngestionRecord(
            source_id=source_id,
            source_type=SourceType.parse(source_type),
            class_id=class_id,
            status=IngestionStatus(status),
            extracted_text=extracted_text,
            title=title,
            error=error,
            chunk_count=int(chunk_count or 0),
            degraded=bool(degraded),
            metadata=json.loads(metadata) if metadata else {},
            created_at=created_at,
            updated_at=updated_at,
        )

    def register(
        self,
        source_type: SourceType | str,
        source_id: str,
        class_id: str,
        *,
        title: str | None = None,
        extracted_text: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IngestionRecord:
        """Create (or restart) the pending record for a source item.

        Registering an existing source starts a new ingestion run: the record
        returns to ``pending`` and its previous outcome is cleared.

        Returns:
            The pending record.

        Raises:
            ValidationError: If identifiers are missing or malformed.
        """
        source_type = SourceType.parse(source_type)
        if not source_id:
            msg = "source_id is required to register a source"
            raise ValidationError(msg)
        validate_class_id(class_id)

        now = _now()
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO ingestion_records (
                    source_type, source_id, class_id, status, extracted_text,
                    title, error, chunk_count, degraded, metadata,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, 'pending', ?, ?, NULL, 0, 0, ?, ?, ?)
                ON CONFLICT (source_type, source_id) DO UPDATE SET
                    class_id = excluded.class_id,
                    status = 'pending',
                    extracted_text = COALESCE(
                        excluded.extracted_text, ingestion_records.extracted_text
                    ),
                    title = COALESCE(excluded.title, ingestion_records.title),
                    error = NULL,
                    chunk_count = 0,
                    degraded = 0,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    source_type.value,
                    source_id,
                    class_id,
                    extracted_text,
                    title,
                    json.dumps(metadata or {}),
                    now,
                    now,
                ),
            )
            conn.commit()

        logger.info(
            "Registered %s source %s for class %s", source_type, source_id, class_id
        )
        return self.require(source_type, source_id)

    def get(
        self,
        source_type: SourceType | str,
        source_id: str,
    ) -> IngestionRecord | None:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM ingestion_records "  # noqa: S608
                "WHERE source_type = ? AND source_id = ?",
                (SourceType.parse(source_type).value, source_id),
            )
            row = cursor.fetchone()
        return self._build_record(row) if row else None

    def require(
        self,
        source_type: SourceType | str,
        source_id: str,
    ) -> IngestionRecord:
        """Fetch a record that must exist.

        Returns:
            The ingestion record.

        Raises:
            NotFoundOrDeniedError: If no record exists for the source.
        """
        record = self.get(source_type, source_id)
        if record is None:
            msg = f"No ingestion record for {source_type} source {source_id}"
            raise NotFoundOrDeniedError(msg)
        return record

    def _transition(
        self,
        source_type: SourceType | str,
        source_id: str,
        new_status: IngestionStatus,
        **fields: Any,
    ) -> IngestionRecord:
        record = self.require(source_type, source_id)
        if new_status not in TRANSITIONS[record.status]:
            msg = (
                f"Invalid ingestion transition {record.status} -> {new_status} "
                f"for {record.source_type} source {source_id}"
            )
            raise ValidationError(msg)

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new_status.value, _now()]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([record.source_type.value, source_id])

        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            # Guard against a concurrent transition since the read above
            cursor.execute(
                f"UPDATE ingestion_records SET {', '.join(assignments)} "  # noqa: S608
                "WHERE source_type = ? AND source_id = ? AND status = ?",
                [*params, record.status.value],
            )
            if cursor.rowcount != 1:
                msg = f"Ingestion record for {source_id} changed concurrently"
                raise ValidationError(msg)
            conn.commit()

        logger.info(
            "Ingestion %s %s: %s -> %s",
            record.source_type,
            source_id,
            record.status,
            new_status,
        )
        return self.require(record.source_type, source_id)

    def mark_processing(
        self,
        source_type: SourceType | str,
        source_id: str,
        extracted_text: str | None = None,
    ) -> IngestionRecord:
        if extracted_text is None:
            return self._transition(source_type, source_id, IngestionStatus.PROCESSING)
        return self._transition(
            source_type,
            source_id,
            IngestionStatus.PROCESSING,
            extracted_text=extracted_text,
        )

    def mark_complete(
        self,
        source_type: SourceType | str,
        source_id: str,
        *,
        chunk_count: int,
        degraded: bool = False,
    ) -> IngestionRecord:
        return self._transition(
            source_type,
            source_id,
            IngestionStatus.COMPLETE,
            chunk_count=chunk_count,
            degraded=int(degraded),
        )

    def mark_error(
        self,
        source_type: SourceType | str,
        source_id: str,
        reason: str,
    ) -> IngestionRecord:
        logger.warning(
            "Ingestion failed for %s source %s: %s", source_type, source_id, reason
        )
        return self._transition(
            source_type, source_id, IngestionStatus.ERROR, error=reason
        )

    def list_records(
        self,
        class_id: str,
        status: IngestionStatus | None = None,
        source_type: SourceType | None = None,
    ) -> list[IngestionRecord]:
        """List records of a class, optionally by status and source type.

        Returns:
            Records ordered by creation time.
        """
        clause = "class_id = ?"
        params: list[Any] = [class_id]
        if status is not None:
            clause += " AND status = ?"
            params.append(IngestionStatus(status).value)
        if source_type is not None:
            clause += " AND source_type = ?"
            params.append(SourceType.parse(source_type).value)

        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM ingestion_records "  # noqa: S608
                f"WHERE {clause} ORDER BY created_at, source_id",
                params,
            )
            return [self._build_record(row) for row in cursor.fetchall()]

    def list_pending(self) -> list[IngestionRecord]:
        """Records of every class still waiting for processing.

        Returns:
            Pending records ordered by creation time.
        """
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM ingestion_records "  # noqa: S608
                "WHERE status = 'pending' ORDER BY created_at, source_id"
            )
            return [self._build_record(row) for row in cursor.fetchall()]

    def complete_source_ids(
        self,
        class_id: str,
        source_type: SourceType | None = None,
    ) -> frozenset[str]:
        """Ids of sources in a class whose chunks are retrieval-eligible.

        Returns:
            Source ids whose record is ``complete``.
        """
        records = self.list_records(
            class_id, status=IngestionStatus.COMPLETE, source_type=source_type
        )
        return frozenset(record.source_id for record in records)

    def get_title(self, source_type: SourceType | str, source_id: str) -> str | None:
        """Display title of a source, if one was recorded.

        Returns:
            The title, or None when the source or its title is unknown.
        """
        record = self.get(source_type, source_id)
        return record.title if record else None

    def delete(self, source_type: SourceType | str, source_id: str) -> bool:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM ingestion_records WHERE source_type = ? AND source_id = ?",
                (SourceType.parse(source_type).value, source_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_class(self, class_id: str) -> int:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM ingestion_records WHERE class_id = ?", (class_id,)
            )
            conn.commit()
            return cursor.rowcount

"""Background ingestion with bounded retries and exponential backoff."""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from .config import config
from .errors import IngestionFailure
from .models import IngestionRecord, SourceType

if TYPE_CHECKING:
    from collections.abc import Callable

    from .pipeline import RAGPipeline

logger = config.get_logger(__name__)


class IngestionQueue:
    """Runs chunk/embed/store work off the request path.

    Each submitted source is registered as ``pending`` right away. A worker
    thread then claims it (``processing``) and retries transient failures up
    to ``max_attempts`` times, sleeping ``backoff_seconds * 2 ** (n - 1)``
    after the n-th failed attempt. The final failure is recorded on the
    IngestionRecord and never raised to the submitter.
    """

    def __init__(  # noqa: PLR0913
        self,
        pipeline: RAGPipeline,
        *,
        max_workers: int | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pipeline = pipeline
        self.max_attempts = max(
            1, max_attempts if max_attempts is not None else config.INGEST_MAX_ATTEMPTS
        )
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else config.INGEST_BACKOFF_SECONDS
        )
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.INGEST_MAX_WORKERS,
            thread_name_prefix="ingest",
        )
        self._futures: set[Future[IngestionRecord]] = set()

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_seconds * 2 ** (attempt - 1)

    def submit(  # noqa: PLR0913
        self,
        source_type: SourceType | str,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> Future[IngestionRecord]:
        """Register a source as pending and queue its ingestion.

        Returns:
            Future resolving to the final ingestion record.

        Raises:
            ValidationError: If the source identifiers are invalid.
        """
        source_type = SourceType.parse(source_type)
        metadata = metadata or {}
        self.pipeline.register_source(
            source_type, source_id, class_id, raw_text, metadata
        )
        return self._schedule(source_type, source_id, class_id, raw_text, metadata)

    def _schedule(  # noqa: PLR0913
        self,
        source_type: SourceType,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any],
    ) -> Future[IngestionRecord]:
        future = self._executor.submit(
            self._run, source_type, source_id, class_id, raw_text, metadata
        )
        self._futures.add(future)
        future.add_done_callback(self._on_done)
        logger.info("Queued ingestion for %s source %s", source_type, source_id)
        return future

    def _on_done(self, future: Future[IngestionRecord]) -> None:
        self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Ingestion job crashed", exc_info=exc)

    def _run(  # noqa: PLR0913
        self,
        source_type: SourceType,
        source_id: str,
        class_id: str,
        raw_text: str,
        metadata: dict[str, Any],
    ) -> IngestionRecord:
        tracker = self.pipeline.tracker
        tracker.mark_processing(source_type, source_id, extracted_text=raw_text)

        attempt = 0
        while True:
            attempt += 1
            try:
                chunk_count, degraded = self.pipeline.index_source(
                    source_type, source_id, class_id, raw_text, metadata
                )
            except IngestionFailure as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    return tracker.mark_error(
                        source_type,
                        source_id,
                        f"{exc} (after {attempt} attempt(s))",
                    )
                delay = self.backoff_for(attempt)
                logger.warning(
                    "Ingestion attempt %d/%d for %s failed: %s; retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    source_id,
                    exc,
                    delay,
                )
                self._sleep(delay)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Ingestion of %s crashed on attempt %d", source_id, attempt
                )
                return tracker.mark_error(
                    source_type, source_id, f"Unexpected error: {exc}"
                )

            return tracker.mark_complete(
                source_type, source_id, chunk_count=chunk_count, degraded=degraded
            )

    def requeue_pending(self) -> list[Future[IngestionRecord]]:
        """Queue every source left in ``pending``, e.g. after a restart.

        Returns:
            One future per requeued source.
        """
        futures = [
            self._schedule(
                record.source_type,
                record.source_id,
                record.class_id,
                record.extracted_text or "",
                record.metadata,
            )
            for record in self.pipeline.tracker.list_pending()
        ]
        logger.info("Requeued %d pending sources", len(futures))
        return futures

    def wait(self, timeout: float | None = None) -> None:
        """Block until every queued job has finished."""
        for future in list(self._futures):
            future.result(timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

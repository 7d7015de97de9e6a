"""Multi-source retrieval: quota fan-out, global ranking and context assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .config import config
from .models import (
    Citation,
    RetrievalContext,
    RetrievalResult,
    SearchFilter,
    SourceFilters,
    SourceType,
    validate_class_id,
)

if TYPE_CHECKING:
    from .embeddings import EmbeddingService
    from .ingestion import IngestionTracker
    from .vector_store import FaissVectorStore, SQLiteVectorStore

logger = config.get_logger(__name__)

UNKNOWN_TITLE = "Unknown"


class TitleLookup(Protocol):
    def get_title(self, source_type: SourceType, source_id: str) -> str | None: ...


def format_context(results: list[RetrievalResult]) -> str:
    """Render ranked results as numbered, labelled source blocks.

    Returns:
        The blocks joined by blank lines, or "" when there are none.
    """
    return "\n\n".join(
        f"[Source {position} - {result.chunk.source_type.info.label}]\n"
        f"{result.chunk.text}"
        for position, result in enumerate(results, start=1)
    )


def build_citation(result: RetrievalResult) -> Citation:
    chunk = result.chunk
    return Citation(
        type=chunk.source_type,
        id=chunk.source_id,
        title=result.resolved_title,
        relevance_score=result.relevance_score,
        timestamp=chunk.timestamp,
        page_number=chunk.page_number,
    )


class RetrievalOrchestrator:
    """Fans one query across source types and assembles grounded context."""

    def __init__(  # noqa: PLR0913
        self,
        embedding_service: EmbeddingService,
        vector_store: FaissVectorStore | SQLiteVectorStore,
        tracker: IngestionTracker,
        *,
        title_lookup: TitleLookup | None = None,
        quotas: dict[str, int] | None = None,
        top_n: int | None = None,
        require_complete: bool | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            embedding_service: Produces the query embedding.
            vector_store: Partitioned store searched per source type.
            tracker: Ingestion status, used to gate searchable sources.
            title_lookup: Resolves display titles; defaults to the tracker.
            quotas: Per source-type candidate quotas keyed by type value.
            top_n: Global number of results kept after merging.
            require_complete: Only search sources whose ingestion is complete.
        """
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.tracker = tracker
        self.title_lookup: TitleLookup = title_lookup or tracker
        self.quotas = quotas if quotas is not None else config.source_quotas()
        self.top_n = top_n if top_n is not None else config.RETRIEVAL_TOP_N
        self.require_complete = (
            require_complete
            if require_complete is not None
            else config.RETRIEVAL_REQUIRE_COMPLETE
        )

    def _search_filter(
        self, class_id: str, source_type: SourceType
    ) -> SearchFilter | None:
        """Build the per-type filter, or None when nothing is searchable."""
        if not self.require_complete:
            return SearchFilter(source_type=source_type)

        eligible = self.tracker.complete_source_ids(class_id, source_type)
        if not eligible:
            return None
        return SearchFilter(source_type=source_type, source_ids=eligible)

    def _resolve_title(self, source_type: SourceType, source_id: str) -> str:
        try:
            title = self.title_lookup.get_title(source_type, source_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Title lookup failed for %s source %s",
                source_type,
                source_id,
                exc_info=True,
            )
            return UNKNOWN_TITLE
        return title or UNKNOWN_TITLE

    def search(
        self,
        class_id: str,
        query_text: str,
        source_filters: SourceFilters | None = None,
    ) -> tuple[list[RetrievalResult], bool]:
        """Rank chunks of the enabled source types for a query.

        Returns:
            The global top-N results and whether the query embedding degraded.
        """
        enabled = (source_filters or SourceFilters()).enabled()
        if not enabled:
            logger.info("No source types enabled for class %s", class_id)
            return [], False

        query = self.embedding_service.get_query_embedding(query_text)
        if query.degraded:
            logger.warning("Query embedding degraded; ranking is not meaningful")

        candidates: list[tuple[float, int, int, RetrievalResult]] = []
        for source_type in enabled:
            search_filter = self._search_filter(class_id, source_type)
            if search_filter is None:
                logger.debug(
                    "No searchable %s sources in class %s", source_type, class_id
                )
                continue

            hits = self.vector_store.search(
                class_id,
                query.vector,
                top_k=self.quotas.get(source_type.value, 0),
                search_filter=search_filter,
            )
            logger.info("Retrieved %d %s candidates", len(hits), source_type)
            for chunk, score in hits:
                candidates.append((
                    -score,
                    source_type.info.priority,
                    chunk.chunk_index,
                    RetrievalResult(chunk=chunk, relevance_score=score),
                ))

        candidates.sort(key=lambda candidate: candidate[:3])
        ranked = [
            RetrievalResult(
                chunk=result.chunk,
                relevance_score=result.relevance_score,
                resolved_title=self._resolve_title(
                    result.chunk.source_type, result.chunk.source_id
                ),
            )
            for *_, result in candidates[: self.top_n]
        ]
        return ranked, query.degraded

    def retrieve(
        self,
        class_id: str,
        query_text: str,
        source_filters: SourceFilters | None = None,
    ) -> RetrievalContext:
        """Retrieve grounding context and citations for a question.

        Returns:
            RetrievalContext: empty context and citations when nothing matched.

        Raises:
            ValidationError: If the class id is malformed.
        """
        validate_class_id(class_id)
        logger.info("Retrieving context for class %s: %s", class_id, query_text)
        results, degraded = self.search(class_id, query_text, source_filters)
        return RetrievalContext(
            context_text=format_context(results),
            citations=[build_citation(result) for result in results],
            results=results,
            degraded=degraded,
        )

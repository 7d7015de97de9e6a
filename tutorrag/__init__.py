"""TutorRAG - retrieval-augmented tutoring over a student's class materials."""

from .chat_store import ChatStore
from .conversation import ConversationManager
from .document_processing import TextChunker
from .embeddings import EmbeddingBatch, EmbeddingResult, EmbeddingService
from .errors import (
    IngestionFailure,
    NotFoundOrDeniedError,
    PersistenceError,
    TutorRAGError,
    UpstreamUnavailableError,
    ValidationError,
)
from .ingestion import IngestionTracker
from .models import (
    ChatResult,
    Citation,
    ContentChunk,
    IngestionRecord,
    IngestionStatus,
    RetrievalContext,
    SearchFilter,
    SourceFilters,
    SourceType,
)
from .pipeline import RAGPipeline
from .retrieval import RetrievalOrchestrator
from .tasks import IngestionQueue
from .vector_store import FaissVectorStore, SQLiteVectorStore, get_vector_store

__all__ = [
    "ChatResult",
    "ChatStore",
    "Citation",
    "ContentChunk",
    "ConversationManager",
    "EmbeddingBatch",
    "EmbeddingResult",
    "EmbeddingService",
    "FaissVectorStore",
    "IngestionFailure",
    "IngestionQueue",
    "IngestionRecord",
    "IngestionStatus",
    "IngestionTracker",
    "NotFoundOrDeniedError",
    "PersistenceError",
    "RAGPipeline",
    "RetrievalContext",
    "RetrievalOrchestrator",
    "SQLiteVectorStore",
    "SearchFilter",
    "SourceFilters",
    "SourceType",
    "TextChunker",
    "TutorRAGError",
    "UpstreamUnavailableError",
    "ValidationError",
    "get_vector_store",
]

"""Test configuration and fixtures for TutorRAG tests.

This module provides reusable test fixtures organized by functionality:
- Constants and test data
- Mock services and API responses
- EmbeddingService fixtures
- Text processing fixtures
- Vector store, tracker and chat store fixtures
- Sample data factories
- Pipeline helpers
"""

import hashlib
from contextlib import contextmanager
from unittest.mock import Mock, patch

import httpx
import numpy as np
import openai
import pytest

from tutorrag import (
    ChatStore,
    ContentChunk,
    ConversationManager,
    EmbeddingBatch,
    EmbeddingResult,
    EmbeddingService,
    FaissVectorStore,
    IngestionTracker,
    RAGPipeline,
    RetrievalOrchestrator,
    SQLiteVectorStore,
    SourceType,
    TextChunker,
)


class TestConstants:
    """Centralized test constants to avoid repetition across test files."""

    # API Configuration
    TEST_API_KEY = "test-key"
    TEST_OPENAI_MODEL = "text-embedding-3-small"
    DEFAULT_EMBEDDING_DIMENSION = 384
    SMALL_EMBEDDING_DIMENSION = 8

    # Text Chunking Configuration
    SMALL_CHUNK_SIZE = 100
    SMALL_CHUNK_OVERLAP = 20
    DEFAULT_CHUNK_SIZE = 500
    DEFAULT_CHUNK_OVERLAP = 100

    # Tenancy
    CLASS_ID = "calc-101"
    OTHER_CLASS_ID = "bio-200"
    USER_ID = "student-1"
    OTHER_USER_ID = "student-2"


class MockEmbeddingService:
    """Mock embedding service for testing without API calls.

    Generates deterministic embeddings based on text content hash, so equal
    texts always land on the same unit vector.
    """

    def __init__(
        self, dimension: int = TestConstants.DEFAULT_EMBEDDING_DIMENSION
    ) -> None:
        self.dimension = dimension
        self.degraded = False

    def embed(self, text: str) -> np.ndarray:
        if self.degraded:
            return np.zeros(self.dimension, dtype=np.float32)
        seed = int.from_bytes(
            hashlib.sha256(text.lower().encode("utf-8")).digest()[:8],
            byteorder="big",
            signed=False,
        )
        rng = np.random.default_rng(seed)
        embedding = rng.normal(0, 1, self.dimension)
        return (embedding / np.linalg.norm(embedding)).astype(np.float32)

    def get_embedding(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=self.embed(text), degraded=self.degraded)

    def get_query_embedding(self, query: str) -> EmbeddingResult:
        return self.get_embedding(query)

    def get_embeddings_batch(self, texts: list[str]) -> EmbeddingBatch:
        return EmbeddingBatch(
            vectors=[self.embed(text) for text in texts],
            fallback_indices=list(range(len(texts))) if self.degraded else [],
        )


def unit_vector(index: int, dimension: int) -> np.ndarray:
    """One-hot float32 vector, handy for hand-checkable similarity scores."""
    vector = np.zeros(dimension, dtype=np.float32)
    vector[index % dimension] = 1.0
    return vector


def create_mock_openai_response(embeddings: list[list[float]]) -> Mock:
    """Create a mock OpenAI embeddings API response.

    Returns:
        Mock object representing OpenAI embeddings API response.
    """
    mock_response = Mock()
    mock_response.data = [Mock(embedding=emb) for emb in embeddings]
    return mock_response


def create_mock_chat_response(
    content: str | None, completion_tokens: int = 42, prompt_tokens: int = 100
) -> Mock:
    """Create a mock OpenAI chat completion response.

    Returns:
        Mock object representing OpenAI chat completion response.
    """
    mock_response = Mock()
    mock_response.choices = [Mock(message=Mock(content=content))]
    mock_response.usage = Mock(
        completion_tokens=completion_tokens, prompt_tokens=prompt_tokens
    )
    return mock_response


def api_connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    )


@pytest.fixture
def openai_embeddings_api_mock():
    """Base fixture that patches OpenAI embeddings.create method."""
    with patch("openai.resources.embeddings.Embeddings.create") as mock_create:
        yield mock_create


@pytest.fixture
def openai_embeddings_factory(openai_embeddings_api_mock):
    """Factory for creating OpenAI embeddings API mocks with different scenarios."""

    def _create_mock(scenario="success", embeddings=None, batches=None):  # noqa: ANN202
        """Configure the patched embeddings API.

        Args:
            scenario: 'success', 'error' or 'batches'.
            embeddings: Vectors returned by a single successful call.
            batches: One entry per call; None entries raise a connection error.
        """
        openai_embeddings_api_mock.reset_mock()
        openai_embeddings_api_mock.side_effect = None
        openai_embeddings_api_mock.return_value = None

        if scenario == "success":
            openai_embeddings_api_mock.return_value = create_mock_openai_response(
                embeddings or [[0.1, 0.2, 0.3]]
            )
        elif scenario == "error":
            openai_embeddings_api_mock.side_effect = api_connection_error()
        elif scenario == "batches":
            openai_embeddings_api_mock.side_effect = [
                api_connection_error()
                if batch is None
                else create_mock_openai_response(batch)
                for batch in batches
            ]

        return openai_embeddings_api_mock

    return _create_mock


@pytest.fixture
def connection_error():
    """Factory for OpenAI connection errors."""
    return api_connection_error


@pytest.fixture
def chat_response_factory():
    return create_mock_chat_response


@pytest.fixture
def embedding_service_factory():
    """Factory for creating EmbeddingService instances with different configurations."""

    def _create_service(dimension=None, batch_size=None, model=None):  # noqa: ANN202
        return EmbeddingService(
            api_key=TestConstants.TEST_API_KEY,
            model=model,
            dimension=dimension,
            batch_size=batch_size,
        )

    return _create_service


@pytest.fixture
def embedding_service(embedding_service_factory):
    """Default EmbeddingService with test API key for most tests."""
    return embedding_service_factory()


@pytest.fixture
def text_chunker_factory():
    """Factory fixture that creates ``TextChunker`` instances on demand."""
    presets: dict[str, tuple[int, int]] = {
        "small": (
            TestConstants.SMALL_CHUNK_SIZE,
            TestConstants.SMALL_CHUNK_OVERLAP,
        ),
        "default": (
            TestConstants.DEFAULT_CHUNK_SIZE,
            TestConstants.DEFAULT_CHUNK_OVERLAP,
        ),
    }

    def _create_chunker(
        name: str = "default",
        *,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> TextChunker:
        if chunk_size is None or overlap is None:
            try:
                preset_chunk_size, preset_overlap = presets[name]
            except KeyError as exc:
                msg = f"Unknown text chunker preset: {name}"
                raise ValueError(msg) from exc
            chunk_size = preset_chunk_size if chunk_size is None else chunk_size
            overlap = preset_overlap if overlap is None else overlap

        return TextChunker(chunk_size=chunk_size, overlap=overlap)

    return _create_chunker


@pytest.fixture
def text_chunker_small(text_chunker_factory):
    """Text chunker configured for small chunks (100/20)."""
    return text_chunker_factory("small")


@pytest.fixture
def text_chunker_default(text_chunker_factory):
    """Text chunker configured with default settings (500/100)."""
    return text_chunker_factory("default")


@pytest.fixture
def mock_embedding_service():
    """Fresh MockEmbeddingService for consistent test embeddings."""
    return MockEmbeddingService()


@pytest.fixture
def temp_vector_store(tmp_path) -> SQLiteVectorStore:
    """Create temporary SQLite vector store for testing."""
    return SQLiteVectorStore(tmp_path / "test_store.db", tmp_path / "vectors")


@pytest.fixture
def temp_faiss_store(tmp_path) -> FaissVectorStore:
    """Create temporary FAISS vector store for testing."""
    return FaissVectorStore(tmp_path / "faiss_meta.db", tmp_path / "faiss")


@pytest.fixture(params=["sqlite", "faiss"])
def any_vector_store(request, tmp_path):
    """Run a test against both vector store backends."""
    if request.param == "faiss":
        return FaissVectorStore(tmp_path / "faiss_meta.db", tmp_path / "faiss")
    return SQLiteVectorStore(tmp_path / "test_store.db", tmp_path / "vectors")


@pytest.fixture
def tracker(tmp_path) -> IngestionTracker:
    return IngestionTracker(tmp_path / "tutorrag.db")


@pytest.fixture
def chat_store(tmp_path) -> ChatStore:
    return ChatStore(tmp_path / "tutorrag.db")


@pytest.fixture
def chunk_factory():
    """Factory for ContentChunks with explicit embeddings."""

    def _create_chunk(  # noqa: PLR0913
        text: str,
        embedding: np.ndarray,
        *,
        source_type: SourceType = SourceType.AUDIO,
        source_id: str = "lecture-1",
        class_id: str = TestConstants.CLASS_ID,
        chunk_index: int = 0,
        timestamp: str | None = None,
        page_number: int | None = None,
    ) -> ContentChunk:
        return ContentChunk(
            text=text,
            source_type=source_type,
            source_id=source_id,
            class_id=class_id,
            chunk_index=chunk_index,
            timestamp=timestamp,
            page_number=page_number,
            embedding=np.asarray(embedding, dtype=np.float32),
        )

    return _create_chunk


@pytest.fixture
def register_complete(tracker):
    """Mark a source as fully ingested without running the pipeline."""

    def _register(
        source_type: SourceType,
        source_id: str,
        class_id: str = TestConstants.CLASS_ID,
        title: str | None = None,
    ) -> None:
        tracker.register(source_type, source_id, class_id, title=title)
        tracker.mark_processing(source_type, source_id)
        tracker.mark_complete(source_type, source_id, chunk_count=1)

    return _register


@pytest.fixture
def orchestrator_factory(temp_faiss_store, tracker):
    """Factory for RetrievalOrchestrator instances over the temp FAISS store."""

    def _create(embedding_service=None, **kwargs) -> RetrievalOrchestrator:  # noqa: ANN003
        return RetrievalOrchestrator(
            embedding_service or MockEmbeddingService(),
            temp_faiss_store,
            tracker,
            **kwargs,
        )

    return _create


@pytest.fixture
def chat_client():
    """OpenAI chat client double returning a fixed completion."""
    client = Mock()
    client.chat.completions.create.return_value = create_mock_chat_response(
        "Test response"
    )
    return client


@pytest.fixture
def conversation_manager_factory(chat_store, chat_client):
    """Factory fixture for creating ConversationManager instances."""

    def _create(retrieval) -> ConversationManager:  # noqa: ANN001
        return ConversationManager(retrieval, chat_store, client=chat_client)

    return _create


@pytest.fixture
def rag_pipeline_factory(tmp_path, chat_client):
    """Factory for RAGPipeline instances wired to local stores and mocks."""

    def _create_pipeline(
        embedding_service=None,  # noqa: ANN001
        backend: str = "faiss",
        chunk_size: int = 200,
        overlap: int = 50,
    ) -> RAGPipeline:
        if backend == "faiss":
            store = FaissVectorStore(tmp_path / "vector_store.db", tmp_path / "faiss")
        else:
            store = SQLiteVectorStore(
                tmp_path / "vector_store.db", tmp_path / "vectors"
            )
        return RAGPipeline(
            database_path=tmp_path / "tutorrag.db",
            embedding_service=embedding_service or MockEmbeddingService(),
            vector_store=store,
            chat_client=chat_client,
            chunker=TextChunker(chunk_size=chunk_size, overlap=overlap),
        )

    return _create_pipeline


@pytest.fixture
def chat_mock_factory():
    """Patch a ConversationManager's chat.completions.create."""

    @contextmanager
    def _mock_chat(  # noqa: ANN202
        manager, content: str | None = "Test response", side_effect=None
    ):
        with patch.object(manager.client.chat.completions, "create") as mock_create:
            if side_effect is not None:
                mock_create.side_effect = side_effect
            else:
                mock_create.return_value = create_mock_chat_response(content)
            yield mock_create

    return _mock_chat

"""OpenAI embeddings service with a zero-vector fallback."""

from dataclasses import dataclass, field

import numpy as np
from openai import OpenAI, OpenAIError

from .config import config

logger = config.get_logger(__name__)


@dataclass
class EmbeddingResult:
    """A single embedding and whether it is a fallback placeholder."""

    vector: np.ndarray
    degraded: bool = False


@dataclass
class EmbeddingBatch:
    """Embeddings for a batch of texts, in input order.

    ``fallback_indices`` lists the inputs that received an all-zero vector
    because the backend failed or returned nothing usable for them.
    """

    vectors: list[np.ndarray] = field(default_factory=list)
    fallback_indices: list[int] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.fallback_indices)

    def __len__(self) -> int:
        return len(self.vectors)


class EmbeddingService:
    """Handles OpenAI embeddings generation."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        dimension: int | None = None,
        client: OpenAI | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the EmbeddingService with OpenAI API key and model.

        Args:
            api_key: OpenAI API key. If None,
                reads from OPENAI_API_KEY environment variable.
            model: Embedding model name. If None, uses config.EMBEDDING_MODEL.
            dimension: Vector dimension. If None, uses config.EMBEDDING_DIMENSION.
            client: Pre-built OpenAI client, mainly for tests.
            batch_size: Texts per API call. If None, uses
                config.EMBEDDING_BATCH_SIZE.
        """
        if client is None:
            default_headers = config.get_api_headers()
            client = OpenAI(
                api_key=api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
                timeout=config.EMBEDDING_TIMEOUT_SECONDS,
                max_retries=0,
            )
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE

    def zero_vector(self) -> np.ndarray:
        return np.zeros(self.dimension, dtype=np.float32)

    def _to_vector(self, values: list[float] | None) -> np.ndarray | None:
        if not values or len(values) != self.dimension:
            return None
        return np.asarray(values, dtype=np.float32)

    def get_embedding(self, text: str) -> EmbeddingResult:
        """Get embedding for a single text.

        Args:
            text: The input text to generate an embedding for.

        Returns:
            EmbeddingResult holding the vector, flagged degraded on fallback.
        """
        batch = self.get_embeddings_batch([text])
        return EmbeddingResult(vector=batch.vectors[0], degraded=batch.degraded)

    def get_query_embedding(self, query: str) -> EmbeddingResult:
        """Get embedding for a search query.

        Returns:
            EmbeddingResult for the query text.
        """
        logger.debug("Generating query embedding for: %.50s", query)
        return self.get_embedding(query)

    def get_embeddings_batch(
        self,
        texts: list[str],
        batch_size: int | None = None,
    ) -> EmbeddingBatch:
        """Get embeddings for multiple texts in batches.

        Backend failures never raise: every input of a failed batch gets an
        all-zero vector and its index is recorded in ``fallback_indices``.

        Args:
            texts: List of input texts to generate embeddings for.
            batch_size: Number of texts to process in each batch.

        Returns:
            EmbeddingBatch with one vector per input text.
        """
        batch_size = batch_size or self.batch_size
        result = EmbeddingBatch()

        for i in range(0, len(texts), batch_size):
            batch_texts = texts[i : i + batch_size]
            try:
                response = self.client.embeddings.create(
                    model=self.model,
                    input=batch_texts,
                    dimensions=self.dimension,
                )
            except OpenAIError:
                logger.warning(
                    "Embedding backend unavailable for batch %d; "
                    "using %d zero-vector placeholders",
                    i // batch_size + 1,
                    len(batch_texts),
                    exc_info=True,
                )
                result.vectors.extend(self.zero_vector() for _ in batch_texts)
                result.fallback_indices.extend(range(i, i + len(batch_texts)))
                continue

            data = list(response.data)
            for offset in range(len(batch_texts)):
                values = data[offset].embedding if offset < len(data) else None
                vector = self._to_vector(values)
                if vector is None:
                    vector = self.zero_vector()
                    result.fallback_indices.append(i + offset)
                result.vectors.append(vector)
            logger.info("Generated embeddings for batch %d", i // batch_size + 1)

        if result.degraded:
            logger.warning(
                "Embeddings degraded for %d of %d texts",
                len(result.fallback_indices),
                len(texts),
            )
        return result

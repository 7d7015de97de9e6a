"""Configuration management for the TutorRAG pipeline."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"

if env_path.exists():
    load_dotenv(env_path)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Application configuration loaded from environment variables."""

    # OpenAI Configuration
    @classmethod
    def get_openai_api_key(cls) -> str:
        """Get OpenAI API key from environment variables.

        Returns:
            OpenAI API key from environment or empty string if not set.
        """
        return os.getenv("OPENAI_API_KEY", "")

    OPENAI_BASE_URL: str | None = os.getenv("OPENAI_BASE_URL")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    OPENAI_LOG_LEVEL: str = os.getenv("OPENAI_LOG_LEVEL", "WARNING").upper()

    # Chunking Configuration
    CHUNK_SIZE: int = int(os.getenv("CHUNK_SIZE", "2048"))
    CHUNK_OVERLAP: int = int(os.getenv("CHUNK_OVERLAP", "200"))
    MIN_PAGE_TEXT_LENGTH: int = int(os.getenv("MIN_PAGE_TEXT_LENGTH", "50"))

    # Embedding Configuration
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSION: int = int(os.getenv("EMBEDDING_DIMENSION", "384"))
    EMBEDDING_BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))
    EMBEDDING_TIMEOUT_SECONDS: float = float(
        os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30")
    )

    # Chat Model Configuration
    CHAT_MODEL: str = os.getenv("CHAT_MODEL", "gpt-4-turbo-preview")
    CHAT_MAX_TOKENS: int = int(os.getenv("CHAT_MAX_TOKENS", "1000"))
    CHAT_TEMPERATURE: float = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
    CHAT_TIMEOUT_SECONDS: float = float(os.getenv("CHAT_TIMEOUT_SECONDS", "120"))
    CHAT_HISTORY_LIMIT: int = int(os.getenv("CHAT_HISTORY_LIMIT", "20"))
    DEFAULT_CONVERSATION_TITLE: str = os.getenv(
        "DEFAULT_CONVERSATION_TITLE", "New Conversation"
    )

    # Retrieval Configuration
    RETRIEVAL_AUDIO_QUOTA: int = int(os.getenv("RETRIEVAL_AUDIO_QUOTA", "3"))
    RETRIEVAL_PHOTO_QUOTA: int = int(os.getenv("RETRIEVAL_PHOTO_QUOTA", "2"))
    RETRIEVAL_TEXTBOOK_QUOTA: int = int(os.getenv("RETRIEVAL_TEXTBOOK_QUOTA", "3"))
    RETRIEVAL_TOP_N: int = int(os.getenv("RETRIEVAL_TOP_N", "5"))
    RETRIEVAL_REQUIRE_COMPLETE: bool = _env_flag("RETRIEVAL_REQUIRE_COMPLETE", "true")

    # Ingestion Queue Configuration
    INGEST_MAX_WORKERS: int = int(os.getenv("INGEST_MAX_WORKERS", "2"))
    INGEST_MAX_ATTEMPTS: int = int(os.getenv("INGEST_MAX_ATTEMPTS", "3"))
    INGEST_BACKOFF_SECONDS: float = float(os.getenv("INGEST_BACKOFF_SECONDS", "2.0"))

    # Storage Configuration
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "data/tutorrag.db"))
    VECTOR_BACKEND: str = os.getenv("VECTOR_BACKEND", "faiss").lower()
    VECTOR_STORE_DB_PATH: Path = Path(
        os.getenv("VECTOR_STORE_DB_PATH", "data/vector_store.db")
    )
    VECTOR_STORE_DIR: Path = Path(os.getenv("VECTOR_STORE_DIR", "data/vectors"))
    FAISS_INDEX_DIR: Path = Path(os.getenv("FAISS_INDEX_DIR", "data/faiss"))
    VECTOR_RAW_TOP_K_MULTIPLIER: int = int(
        os.getenv("VECTOR_RAW_TOP_K_MULTIPLIER", "2")
    )

    # API Header Configuration
    API_USER_AGENT: str = os.getenv("API_USER_AGENT", "TutorRAG/1.0")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration values.

        Raises:
            ValueError: If OPENAI_API_KEY is not set or chunking is inconsistent.
        """
        if not cls.get_openai_api_key():
            msg = (
                "OPENAI_API_KEY is required. Please set it in .env file or environment."
            )
            raise ValueError(msg)
        if cls.CHUNK_OVERLAP >= cls.CHUNK_SIZE:
            msg = "CHUNK_OVERLAP must be smaller than CHUNK_SIZE."
            raise ValueError(msg)

    @classmethod
    def setup_logging(cls) -> None:
        """Setup basic logging configuration.

        Configure logging once at application startup with:
        - Console output for all levels
        - Simple, readable format
        - Configurable level via environment variable
        """
        logging.basicConfig(
            level=getattr(logging, cls.LOG_LEVEL, logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )

        # Configure third-party library log levels via environment variables
        logging.getLogger("openai").setLevel(
            getattr(logging, cls.OPENAI_LOG_LEVEL, logging.WARNING)
        )

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger with the specified name.

        Args:
            name: Logger name (typically __name__)

        Returns:
            Logger instance
        """
        return logging.getLogger(name)

    @classmethod
    def get_api_headers(cls) -> dict[str, str]:
        """Build default headers for outbound API calls.

        Returns:
            Mapping of header names to values used on outbound HTTP requests.
        """
        headers: dict[str, str] = {}

        if cls.API_USER_AGENT:
            headers["User-Agent"] = cls.API_USER_AGENT

        return headers

    @classmethod
    def source_quotas(cls) -> dict[str, int]:
        """Per source-type result quotas used by the retrieval fan-out.

        Returns:
            Mapping of source type value to its maximum number of candidates.
        """
        return {
            "audio": cls.RETRIEVAL_AUDIO_QUOTA,
            "photo": cls.RETRIEVAL_PHOTO_QUOTA,
            "textbook": cls.RETRIEVAL_TEXTBOOK_QUOTA,
        }


config = Config()

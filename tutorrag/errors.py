"""Exception hierarchy for the tutoring pipeline."""


class TutorRAGError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(TutorRAGError, ValueError):
    """Malformed or missing identifiers, or inconsistent batch contents."""


class NotFoundOrDeniedError(TutorRAGError):
    """Resource is missing or not owned by the caller.

    Both cases share one error so callers cannot probe for the existence of
    another user's resources.
    """


class UpstreamUnavailableError(TutorRAGError):
    """An external service (generation backend) failed or timed out."""


class PersistenceError(TutorRAGError):
    """A durable write failed."""


class IngestionFailure(TutorRAGError):
    """Chunk, embed or store work failed for a single source item."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable

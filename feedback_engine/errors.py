"""Error kinds raised by the feedback engine.

Every error is terminal for the ingestion run or feedback request that raised
it. Callers decide whether to retry; nothing in this package retries on its
own.
"""


class FeedbackEngineError(Exception):
    """Base exception for all feedback engine errors.

    Attributes:
        message: Short description of what failed.
        detail: Optional user-actionable hint.
    """

    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ExtractionFailed(FeedbackEngineError):
    """Raised when uploaded bytes cannot be parsed as a PDF."""

    def __init__(self, message: str = "Could not extract text from the document"):
        super().__init__(
            message=message,
            detail="Check that the file is a valid, non-encrypted PDF and re-submit it.",
        )


class InvalidSourceFile(FeedbackEngineError):
    """Raised when an upload is rejected before ingestion starts."""


class ProviderTimeout(FeedbackEngineError):
    """Raised when an external provider call exceeds its time budget."""


class EmbeddingProviderError(FeedbackEngineError):
    """Raised when the embedding call errors or returns an unusable payload."""


class EmbeddingTimeout(EmbeddingProviderError, ProviderTimeout):
    """Embedding call did not finish in time."""


class GenerationProviderError(FeedbackEngineError):
    """Raised when the feedback generation call fails."""


class GenerationTimeout(GenerationProviderError, ProviderTimeout):
    """Generation call did not finish in time."""


class NoEligibleSources(FeedbackEngineError):
    """Raised when a skill has no completed source documents linked."""

    def __init__(self, skill_id: str):
        self.skill_id = skill_id
        super().__init__(
            message=f"No processed sources found for skill '{skill_id}'",
            detail="Link at least one source document to this skill and wait for it to finish processing.",
        )


class NoRelevantContent(FeedbackEngineError):
    """Raised when eligible sources exist but the ranking came back empty."""

    def __init__(self, skill_id: str):
        self.skill_id = skill_id
        super().__init__(
            message=f"No relevant content found in the sources for skill '{skill_id}'",
            detail="The linked sources contain no retrievable passages. Upload a source with extractable text.",
        )


class DocumentNotFound(FeedbackEngineError):
    """Raised when a source document id is unknown to the store."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(message=f"Source document '{document_id}' not found")


class IngestionStateError(FeedbackEngineError):
    """Raised when a processing status transition is not allowed."""


class IngestionInProgress(IngestionStateError):
    """Raised when a document is re-submitted while a run is in flight."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(
            message=f"Source document '{document_id}' is already being processed",
            detail="Wait for the current run to finish, or re-submit with preempt=True.",
        )


class StaleIngestion(IngestionStateError):
    """Raised when a superseded ingestion run tries to transition its document."""

    def __init__(self, document_id: str, generation: int, current: int):
        self.document_id = document_id
        self.generation = generation
        self.current = current
        super().__init__(
            message=(
                f"Ingestion run {generation} for '{document_id}' was superseded "
                f"by run {current}"
            )
        )


class ChunkSchemaError(FeedbackEngineError):
    """Raised when a persisted chunk record cannot be loaded safely."""


class DimensionMismatch(ValueError):
    """Raised when vectors of different dimensionality are compared or mixed."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}. "
            "Ingestion and retrieval must use the same embedding model."
        )


class EmbeddingModelMismatch(FeedbackEngineError):
    """Raised when a query vector and stored chunks come from different models."""

    def __init__(self, query_dim: int, chunk_dim: int):
        self.query_dim = query_dim
        self.chunk_dim = chunk_dim
        super().__init__(
            message=f"Query embedding has dimension {query_dim} but stored chunks have {chunk_dim}",
            detail="Re-ingest the linked sources with the current embedding model.",
        )

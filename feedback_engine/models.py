"""Data models for the feedback engine.

This module defines Pydantic models for source documents, chunk records,
feedback queries and feedback results.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProcessingStatus(str, Enum):
    """Ingestion state of a source document."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Chunk(BaseModel):
    """One retrievable passage of a source document.

    Attributes:
        content: Chunk text content.
        embedding: Embedding vector for the chunk.
        page: 1-based page number the chunk came from.
        chunk_index: Position of the chunk within its document.
    """

    model_config = ConfigDict(frozen=True)

    content: str
    embedding: tuple[float, ...]
    page: int = Field(ge=1)
    chunk_index: int = Field(ge=0)

    @property
    def dim(self) -> int:
        return len(self.embedding)


class SourceDocument(BaseModel):
    """A reference text uploaded for one or more skills.

    Attributes:
        id: Unique document identifier.
        title: Document title shown in citations.
        authors: Optional author line.
        publication_year: Optional publication year.
        processing_status: Current ingestion state.
        chunks: Chunks from the last successful ingestion run.
        object_key: Object storage key of the original PDF.
        generation: Number of the latest ingestion submission.
        embedding_dim: Dimensionality of the stored chunk embeddings.
        last_error: Message of the last failed run, if any.
        file_size: Size of the original PDF in bytes.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    authors: str | None = None
    publication_year: int | None = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    chunks: tuple[Chunk, ...] = ()
    object_key: str | None = None
    generation: int = 0
    embedding_dim: int | None = None
    last_error: str | None = None
    file_size: int | None = None

    @property
    def is_eligible(self) -> bool:
        """Whether the document may be used as a retrieval candidate."""
        return self.processing_status is ProcessingStatus.COMPLETED


class ScoredChunk(BaseModel):
    """A chunk paired with its owning document and query similarity.

    Attributes:
        chunk: The matched chunk.
        document_id: Identifier of the owning document.
        title: Title of the owning document.
        author: Author line of the owning document.
        similarity: Cosine similarity to the query vector.
        source_order: Enumeration position of the owning document.
    """

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    document_id: str
    title: str
    author: str | None = None
    similarity: float
    source_order: int = 0


class FeedbackQuery(BaseModel):
    """A request for grounded feedback on a student response."""

    student_response: str = Field(..., min_length=1)
    skill_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)
    context: str | None = None

    @model_validator(mode="after")
    def validate_not_blank(self):
        """Reject required fields that are only whitespace."""
        for name in ("student_response", "skill_id", "question"):
            if not getattr(self, name).strip():
                raise ValueError(f"'{name}' must not be blank")
        return self


class SourceCitation(BaseModel):
    """A cited source passage in a feedback result."""

    title: str
    author: str | None = None
    excerpt: str
    page: int
    relevance: int = Field(ge=0, le=100)


class FeedbackResult(BaseModel):
    """Generated feedback with its citations and confidence."""

    feedback: str
    sources: list[SourceCitation]
    confidence: int = Field(ge=0, le=100)


class SkillContext(BaseModel):
    """Formatted source material gathered for one skill."""

    skill_id: str
    skill_name: str
    source_content: list[str] = Field(default_factory=list)

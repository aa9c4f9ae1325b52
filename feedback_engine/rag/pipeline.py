"""RAG pipelines for source ingestion and grounded feedback.

This module provides the IngestionPipeline and FeedbackPipeline classes.
"""

import io
import logging
from typing import Iterable, Optional, Sequence

from feedback_engine.config import Settings
from feedback_engine.errors import (
    DimensionMismatch,
    EmbeddingModelMismatch,
    ExtractionFailed,
    GenerationProviderError,
    InvalidSourceFile,
    NoEligibleSources,
    NoRelevantContent,
    StaleIngestion,
)
from feedback_engine.models import (
    Chunk,
    FeedbackQuery,
    FeedbackResult,
    ScoredChunk,
    SkillContext,
    SourceCitation,
    SourceDocument,
)
from feedback_engine.rag.chunk_store import ChunkStore
from feedback_engine.rag.chunker import chunk_pages
from feedback_engine.rag.confidence import confidence, relevance
from feedback_engine.rag.context import (
    build_feedback_prompt,
    excerpt,
    format_skill_sources,
)
from feedback_engine.rag.cos_client import COSClient, ObjectStorage, source_key
from feedback_engine.rag.embeddings import Embedder, EmbeddingClient
from feedback_engine.rag.generator import GeneratorClient
from feedback_engine.rag.pdf_extractor import extract_metadata, extract_text_per_page
from feedback_engine.rag.similarity import search

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class IngestionPipeline:
    """Pipeline for ingesting source PDFs into the chunk store.

    Handles upload validation, object storage, text extraction, chunking,
    embedding, and the processing status transitions of each document.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ChunkStore] = None,
        embed: Optional[Embedder] = None,
        cos: Optional[ObjectStorage] = None,
    ) -> None:
        """Initialize ingestion pipeline.

        Args:
            settings: Application settings.
            store: Chunk store; built from settings when omitted.
            embed: Embedding client; watsonx.ai when omitted.
            cos: Object storage for original PDFs; IBM COS when omitted.
        """
        self.settings = settings
        self.store = store or ChunkStore(settings.chunk_store_path, settings.embedding_dim)
        self.embed = embed or EmbeddingClient(settings)
        self.cos = cos or COSClient(settings)

    def _validate_upload(self, pdf_bytes: bytes, content_type: str) -> None:
        if not pdf_bytes:
            raise InvalidSourceFile("The uploaded file is empty.")
        if content_type != PDF_CONTENT_TYPE or not pdf_bytes.startswith(b"%PDF-"):
            raise InvalidSourceFile("Only PDF files are allowed.")
        if len(pdf_bytes) > self.settings.max_upload_bytes:
            limit_mb = self.settings.max_upload_bytes // (1024 * 1024)
            raise InvalidSourceFile(f"File size must be less than {limit_mb}MB.")

    def upload_source(
        self,
        pdf_bytes: bytes,
        filename: str,
        title: Optional[str] = None,
        authors: Optional[str] = None,
        publication_year: Optional[int] = None,
        skill_ids: Iterable[str] = (),
        content_type: str = PDF_CONTENT_TYPE,
    ) -> SourceDocument:
        """Store a new source PDF, link it to skills, and ingest it.

        When no title is given, title and author are detected from the PDF,
        falling back to the file name for the title.

        Returns:
            The document after ingestion.

        Raises:
            InvalidSourceFile: The upload is not an acceptable PDF.
            FeedbackEngineError: Ingestion failed; the document stays
                registered with status failed so it can be re-submitted.
        """
        self._validate_upload(pdf_bytes, content_type)

        if not title or not title.strip():
            detected = {"title": None, "author": None}
            if self.settings.detect_metadata:
                detected = extract_metadata(io.BytesIO(pdf_bytes))
            title = detected["title"] or filename.rsplit(".", 1)[0]
            authors = authors or detected["author"]

        doc = self.store.register(
            title=title, authors=authors, publication_year=publication_year
        )
        key = source_key(doc.id, filename)
        try:
            self.cos.upload_bytes(key, pdf_bytes, content_type)
        except Exception:
            logger.error(f"Upload of '{filename}' failed, removing record '{doc.id}'")
            self.store.delete(doc.id)
            raise
        self.store.attach_object(doc.id, key, len(pdf_bytes))

        for skill_id in skill_ids:
            self.store.link(skill_id, doc.id)

        return self.ingest(doc.id)

    def _build_chunks(self, pdf_bytes: bytes) -> list[Chunk]:
        pages = extract_text_per_page(io.BytesIO(pdf_bytes))
        page_chunks = chunk_pages(
            pages, self.settings.max_chunk_chars, self.settings.chunk_overlap
        )
        if not page_chunks:
            return []
        embeddings = self.embed.embed_texts([c.text for c in page_chunks])
        return [
            Chunk(content=pc.text, embedding=tuple(emb), page=pc.page, chunk_index=idx)
            for idx, (pc, emb) in enumerate(zip(page_chunks, embeddings))
        ]

    def ingest(self, document_id: str, preempt: bool = False) -> SourceDocument:
        """Run (or re-run) ingestion for a registered document.

        A failed run leaves chunks from an earlier successful run in place.

        Args:
            document_id: Document to ingest.
            preempt: Supersede a run that is still marked processing.

        Returns:
            The completed document.
        """
        generation = self.store.submit(document_id, preempt=preempt)
        try:
            doc = self.store.start(document_id, generation)
            if not doc.object_key:
                raise ExtractionFailed("No original PDF is stored for this document")
            pdf_bytes = self.cos.fetch_bytes(doc.object_key)
            chunks = self._build_chunks(pdf_bytes)
            completed = self.store.complete(document_id, generation, chunks)
        except StaleIngestion:
            logger.warning(f"Discarding superseded ingestion run {generation} of '{document_id}'")
            raise
        except Exception as e:
            try:
                self.store.fail(document_id, generation, str(e))
            except StaleIngestion:
                logger.warning(f"Run {generation} of '{document_id}' failed after being superseded")
            raise
        return completed


class FeedbackPipeline:
    """Pipeline for grounded feedback on student responses.

    Handles response embedding, two-pass similarity ranking over a skill's
    sources, prompt assembly, generation, and citation scoring.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ChunkStore] = None,
        embed: Optional[Embedder] = None,
        gen: Optional[GeneratorClient] = None,
    ) -> None:
        self.settings = settings
        self.store = store or ChunkStore(settings.chunk_store_path, settings.embedding_dim)
        self.embed = embed or EmbeddingClient(settings)
        self.gen = gen or GeneratorClient(settings)

    def _rank(
        self,
        query_vector: Sequence[float],
        sources: Sequence[SourceDocument],
        top_k: int,
        per_source_top_n: Optional[int],
    ) -> list[ScoredChunk]:
        try:
            return search(
                query_vector,
                sources,
                top_k=top_k,
                per_source_top_n=per_source_top_n,
                workers=self.settings.search_workers,
            )
        except DimensionMismatch as e:
            raise EmbeddingModelMismatch(e.expected, e.actual) from e

    def retrieve(self, skill_id: str, text: str) -> list[ScoredChunk]:
        """Rank the passages of a skill's sources against text.

        Raises:
            NoEligibleSources: The skill has no completed sources.
            NoRelevantContent: The completed sources yielded no passages.
            EmbeddingProviderError: The query could not be embedded.
            EmbeddingModelMismatch: Stored chunks were embedded by another model.
        """
        sources = self.store.eligible_sources(skill_id)
        if not sources:
            raise NoEligibleSources(skill_id)
        query_vector = self.embed.embed_query(text)
        ranked = self._rank(
            query_vector, sources, self.settings.top_k, self.settings.per_source_top_n
        )
        if not ranked:
            raise NoRelevantContent(skill_id)
        return ranked

    def cite(self, ranked: Sequence[ScoredChunk]) -> list[SourceCitation]:
        return [
            SourceCitation(
                title=s.title,
                author=s.author,
                excerpt=excerpt(s.chunk.content, self.settings.excerpt_chars),
                page=s.chunk.page,
                relevance=relevance(s.similarity),
            )
            for s in ranked
        ]

    def generate_feedback(self, query: FeedbackQuery) -> FeedbackResult:
        """Produce source-grounded feedback for a student response.

        Raises:
            NoEligibleSources: The skill has no completed sources.
            NoRelevantContent: The completed sources yielded no passages.
            EmbeddingProviderError: The response could not be embedded.
            GenerationProviderError: Feedback generation failed.
        """
        ranked = self.retrieve(query.skill_id, query.student_response)
        prompt = build_feedback_prompt(
            question=query.question,
            student_response=query.student_response,
            ranked=ranked,
            context=query.context,
        )
        try:
            feedback = self.gen.generate(prompt)
        except GenerationProviderError:
            logger.error(
                f"Feedback generation failed for skill '{query.skill_id}' after ranking: "
                + ", ".join(
                    f"{s.document_id}#p{s.chunk.page}={s.similarity:.3f}" for s in ranked
                )
            )
            raise

        return FeedbackResult(
            feedback=feedback,
            sources=self.cite(ranked),
            confidence=confidence([s.similarity for s in ranked]),
        )

    def skill_context(
        self,
        skills: Sequence[tuple[str, str]],
        description: str,
        per_source_top_n: Optional[int] = 5,
        top_k: int = 10,
    ) -> list[SkillContext]:
        """Gather source passages relevant to a description for each skill.

        Skills without completed sources get an empty source list. The
        description is embedded at most once.

        Args:
            skills: (skill_id, skill_name) pairs.
            description: Text the passages should be relevant to.
            per_source_top_n: Chunks kept per source.
            top_k: Chunks kept per skill.
        """
        query_vector: Optional[list[float]] = None
        out: list[SkillContext] = []
        for skill_id, skill_name in skills:
            sources = self.store.eligible_sources(skill_id)
            blocks: list[str] = []
            if sources:
                if query_vector is None:
                    query_vector = self.embed.embed_query(description)
                ranked = self._rank(query_vector, sources, top_k, per_source_top_n)
                blocks = format_skill_sources(ranked)
            out.append(
                SkillContext(skill_id=skill_id, skill_name=skill_name, source_content=blocks)
            )
        return out

"""Source document and chunk storage with a guarded ingestion state machine.

Status flow per document::

    pending -> processing -> completed
                          -> failed
    completed | failed -> pending   (re-submission)

Every submission bumps the document's generation counter. ``start``,
``complete`` and ``fail`` name the generation they belong to and are refused
once a newer submission exists, so a slow superseded run can never overwrite
the outcome of a later one. A document's chunk tuple is replaced whole on
``complete`` and is left untouched on ``fail``.

When a directory is given, each document is persisted as one JSON file
written via a temporary file and ``os.replace``; readers see either the old
record or the new one, never a partial chunk array.

Transitions hold an exclusive ``<id>.lock`` file beside the record and
re-read it first, so stores in separate processes sharing one directory
obey the same generation guard.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from pydantic import ValidationError

from feedback_engine.errors import (
    ChunkSchemaError,
    DimensionMismatch,
    DocumentNotFound,
    IngestionInProgress,
    IngestionStateError,
    StaleIngestion,
)
from feedback_engine.models import Chunk, ProcessingStatus, SourceDocument

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# A lock file older than this belongs to a process that died mid-transition
LOCK_STALE_AFTER = 30.0


def new_document_id() -> str:
    return uuid.uuid4().hex


def _write_json_atomic(path: str, payload: dict) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def document_to_record(doc: SourceDocument) -> dict:
    """Serialize a document into the versioned on-disk record."""
    record = doc.model_dump(mode="json")
    record["schema_version"] = SCHEMA_VERSION
    return record


def document_from_record(record: dict) -> SourceDocument:
    """Load a versioned on-disk record, checking schema and dimensions.

    Raises:
        ChunkSchemaError: Unknown schema version, invalid fields, or chunk
            embeddings that disagree with the recorded dimension.
    """
    version = record.get("schema_version")
    if version != SCHEMA_VERSION:
        raise ChunkSchemaError(
            f"Unsupported chunk record schema_version {version!r} "
            f"(expected {SCHEMA_VERSION})"
        )
    fields = {k: v for k, v in record.items() if k != "schema_version"}
    try:
        doc = SourceDocument.model_validate(fields)
    except ValidationError as e:
        raise ChunkSchemaError(f"Invalid chunk record: {e}") from e
    dims = {c.dim for c in doc.chunks}
    if doc.chunks and (len(dims) != 1 or doc.embedding_dim not in dims):
        raise ChunkSchemaError(
            f"Chunk record '{doc.id}' has embedding dimensions {sorted(dims)} "
            f"but declares {doc.embedding_dim}"
        )
    return doc


class ChunkStore:
    """Thread-safe store of source documents, their chunks, and skill links.

    Args:
        path: Directory for persisted records; None keeps everything in memory.
        embedding_dim: Required embedding dimension; 0 infers it from the
            first completed document.
    """

    def __init__(self, path: Optional[str] = None, embedding_dim: int = 0):
        self.path = path or None
        self.embedding_dim = embedding_dim
        self._docs: Dict[str, SourceDocument] = {}
        self._links: Dict[str, List[str]] = {}
        self._doc_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.RLock()
        if self.path:
            os.makedirs(os.path.join(self.path, "documents"), exist_ok=True)
            self._load()

    # ── persistence ──────────────────────────────────────

    def _doc_path(self, document_id: str) -> str:
        return os.path.join(self.path, "documents", f"{document_id}.json")

    def _links_path(self) -> str:
        return os.path.join(self.path, "links.json")

    def _load(self) -> None:
        doc_dir = os.path.join(self.path, "documents")
        for name in sorted(os.listdir(doc_dir)):
            if not name.endswith(".json") or name.startswith(".tmp-"):
                continue
            with open(os.path.join(doc_dir, name), "r", encoding="utf-8") as f:
                doc = document_from_record(json.load(f))
            if self.embedding_dim and doc.embedding_dim and doc.embedding_dim != self.embedding_dim:
                raise ChunkSchemaError(
                    f"Stored chunks of '{doc.id}' have dimension {doc.embedding_dim}, "
                    f"but the configured embedding dimension is {self.embedding_dim}. "
                    "Re-ingest the source with the current embedding model."
                )
            if doc.processing_status in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING):
                # The run that owned this document died with the previous process
                doc = doc.model_copy(
                    update={
                        "processing_status": ProcessingStatus.FAILED,
                        "last_error": "Ingestion interrupted before completion",
                    }
                )
                logger.warning(f"Marked interrupted ingestion of '{doc.id}' as failed")
            self._docs[doc.id] = doc
        if os.path.exists(self._links_path()):
            with open(self._links_path(), "r", encoding="utf-8") as f:
                links = json.load(f)
            self._links = {
                skill: [d for d in doc_ids if d in self._docs]
                for skill, doc_ids in links.items()
            }
        logger.info(f"Loaded {len(self._docs)} source documents from {self.path}")

    def _put(self, doc: SourceDocument) -> None:
        if self.path:
            _write_json_atomic(self._doc_path(doc.id), document_to_record(doc))
        with self._lock:
            self._docs[doc.id] = doc

    def _save_links(self) -> None:
        if self.path:
            _write_json_atomic(self._links_path(), self._links)

    def _doc_lock(self, document_id: str) -> threading.Lock:
        with self._lock:
            if document_id not in self._doc_locks:
                self._doc_locks[document_id] = threading.Lock()
            return self._doc_locks[document_id]

    def _lock_path(self, document_id: str) -> str:
        return os.path.join(self.path, "documents", f"{document_id}.lock")

    def _acquire_file_lock(self, document_id: str) -> str:
        lock_path = self._lock_path(document_id)
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    age = time.time() - os.path.getmtime(lock_path)
                except FileNotFoundError:
                    continue
                if age > LOCK_STALE_AFTER:
                    logger.warning(f"Removing abandoned lock on '{document_id}' ({age:.0f}s old)")
                    try:
                        os.remove(lock_path)
                    except FileNotFoundError:
                        pass
                    continue
                time.sleep(0.01)
                continue
            os.close(fd)
            return lock_path

    def _refresh(self, document_id: str) -> None:
        """Replace the cached record with the one on disk, if any."""
        path = self._doc_path(document_id)
        if not os.path.exists(path):
            with self._lock:
                self._docs.pop(document_id, None)
            return
        with open(path, "r", encoding="utf-8") as f:
            doc = document_from_record(json.load(f))
        with self._lock:
            self._docs[document_id] = doc

    @contextmanager
    def _guard(self, document_id: str) -> Iterator[None]:
        """Hold one document exclusively for a read-check-write.

        Threads of this store share a lock per document. With a directory
        backend an ``O_EXCL`` lock file extends that to other store instances
        and processes, and the record is re-read from disk before the check.
        """
        with self._doc_lock(document_id):
            if not self.path:
                yield
                return
            lock_path = self._acquire_file_lock(document_id)
            try:
                self._refresh(document_id)
                yield
            finally:
                os.remove(lock_path)

    # ── documents ────────────────────────────────────────

    def register(
        self,
        title: str,
        authors: Optional[str] = None,
        publication_year: Optional[int] = None,
        document_id: Optional[str] = None,
        object_key: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> SourceDocument:
        """Create a pending document record with no chunks."""
        if not title or not title.strip():
            raise ValueError("title must not be blank")
        doc = SourceDocument(
            id=document_id or new_document_id(),
            title=title.strip(),
            authors=authors.strip() if authors and authors.strip() else None,
            publication_year=publication_year,
            object_key=object_key,
            file_size=file_size,
        )
        with self._lock:
            if doc.id in self._docs:
                raise ValueError(f"Source document '{doc.id}' already exists")
            self._put(doc)
        return doc

    def attach_object(self, document_id: str, object_key: str, file_size: Optional[int] = None) -> SourceDocument:
        """Record where the original PDF of a document is stored."""
        with self._guard(document_id):
            doc = self.get(document_id)
            updated = doc.model_copy(update={"object_key": object_key, "file_size": file_size})
            self._put(updated)
        return updated

    def get(self, document_id: str) -> SourceDocument:
        with self._lock:
            doc = self._docs.get(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        return doc

    def documents(self) -> List[SourceDocument]:
        with self._lock:
            return list(self._docs.values())

    def delete(self, document_id: str) -> None:
        """Remove a document, its chunks and all of its skill links."""
        with self._guard(document_id):
            self.get(document_id)
            with self._lock:
                del self._docs[document_id]
                for doc_ids in self._links.values():
                    if document_id in doc_ids:
                        doc_ids.remove(document_id)
                self._save_links()
            if self.path and os.path.exists(self._doc_path(document_id)):
                os.remove(self._doc_path(document_id))
        with self._lock:
            self._doc_locks.pop(document_id, None)

    # ── state machine ────────────────────────────────────

    def submit(self, document_id: str, preempt: bool = False) -> int:
        """Queue a document for (re-)ingestion and return the run's generation.

        Raises:
            IngestionInProgress: A run is in flight and preempt is False.
        """
        with self._guard(document_id):
            doc = self.get(document_id)
            if doc.processing_status is ProcessingStatus.PROCESSING and not preempt:
                raise IngestionInProgress(document_id)
            generation = doc.generation + 1
            self._put(
                doc.model_copy(
                    update={
                        "processing_status": ProcessingStatus.PENDING,
                        "generation": generation,
                    }
                )
            )
        logger.info(f"Submitted '{document_id}' for ingestion (run {generation})")
        return generation

    def _check_generation(self, doc: SourceDocument, generation: int) -> None:
        if generation != doc.generation:
            logger.warning(
                f"Rejected transition of '{doc.id}' from stale run {generation} "
                f"(current run {doc.generation})"
            )
            raise StaleIngestion(doc.id, generation, doc.generation)

    def start(self, document_id: str, generation: int) -> SourceDocument:
        """Move a pending document to processing."""
        with self._guard(document_id):
            doc = self.get(document_id)
            self._check_generation(doc, generation)
            if doc.processing_status is not ProcessingStatus.PENDING:
                raise IngestionStateError(
                    f"Cannot start '{document_id}' from status "
                    f"'{doc.processing_status.value}'"
                )
            updated = doc.model_copy(update={"processing_status": ProcessingStatus.PROCESSING})
            self._put(updated)
        return updated

    def _expected_dim(self, exclude_id: str) -> Optional[int]:
        if self.embedding_dim:
            return self.embedding_dim
        with self._lock:
            for doc in self._docs.values():
                if doc.id != exclude_id and doc.is_eligible and doc.embedding_dim:
                    return doc.embedding_dim
        return None

    def complete(
        self, document_id: str, generation: int, chunks: Iterable[Chunk]
    ) -> SourceDocument:
        """Replace a processing document's chunks and mark it completed.

        Raises:
            StaleIngestion: A newer submission exists.
            DimensionMismatch: Chunk embeddings disagree with each other or
                with the dimension used by the rest of the store.
        """
        new_chunks = tuple(chunks)
        dims = {c.dim for c in new_chunks}
        if len(dims) > 1:
            low, high = sorted(dims)[0], sorted(dims)[-1]
            raise DimensionMismatch(low, high)
        dim = dims.pop() if dims else None

        with self._guard(document_id):
            doc = self.get(document_id)
            self._check_generation(doc, generation)
            if doc.processing_status is not ProcessingStatus.PROCESSING:
                raise IngestionStateError(
                    f"Cannot complete '{document_id}' from status "
                    f"'{doc.processing_status.value}'"
                )
            expected = self._expected_dim(document_id)
            if dim is not None and expected is not None and dim != expected:
                raise DimensionMismatch(expected, dim)
            updated = doc.model_copy(
                update={
                    "processing_status": ProcessingStatus.COMPLETED,
                    "chunks": new_chunks,
                    "embedding_dim": dim,
                    "last_error": None,
                }
            )
            self._put(updated)
        logger.info(f"Completed '{document_id}' with {len(new_chunks)} chunks (run {generation})")
        return updated

    def fail(self, document_id: str, generation: int, error: str) -> SourceDocument:
        """Mark a run failed; chunks from an earlier successful run are kept."""
        with self._guard(document_id):
            doc = self.get(document_id)
            self._check_generation(doc, generation)
            if doc.processing_status not in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING):
                raise IngestionStateError(
                    f"Cannot fail '{document_id}' from status "
                    f"'{doc.processing_status.value}'"
                )
            updated = doc.model_copy(
                update={"processing_status": ProcessingStatus.FAILED, "last_error": error}
            )
            self._put(updated)
        logger.warning(f"Ingestion of '{document_id}' failed (run {generation}): {error}")
        return updated

    # ── skill links ──────────────────────────────────────

    def link(self, skill_id: str, document_id: str) -> None:
        self.get(document_id)
        with self._lock:
            doc_ids = self._links.setdefault(skill_id, [])
            if document_id not in doc_ids:
                doc_ids.append(document_id)
                self._save_links()

    def unlink(self, skill_id: str, document_id: str) -> None:
        with self._lock:
            doc_ids = self._links.get(skill_id, [])
            if document_id in doc_ids:
                doc_ids.remove(document_id)
                self._save_links()

    def sources_for_skill(self, skill_id: str) -> List[SourceDocument]:
        """All documents linked to a skill, in link order, any status."""
        with self._lock:
            return [self._docs[d] for d in self._links.get(skill_id, []) if d in self._docs]

    def unlinked_sources(self, skill_id: str) -> List[SourceDocument]:
        """Documents that could still be linked to a skill."""
        with self._lock:
            linked = set(self._links.get(skill_id, []))
            return [doc for doc_id, doc in self._docs.items() if doc_id not in linked]

    def eligible_sources(self, skill_id: str) -> List[SourceDocument]:
        """Completed documents linked to a skill: the retrieval pool."""
        return [doc for doc in self.sources_for_skill(skill_id) if doc.is_eligible]

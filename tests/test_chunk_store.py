"""Tests for the chunk store and its ingestion state machine."""

import json
import os

import pytest

from conftest import completed_document, unit
from feedback_engine.errors import (
    ChunkSchemaError,
    DimensionMismatch,
    DocumentNotFound,
    IngestionInProgress,
    IngestionStateError,
    StaleIngestion,
)
from feedback_engine.models import Chunk, ProcessingStatus
from feedback_engine.rag.chunk_store import SCHEMA_VERSION, ChunkStore


def _chunks(*sims, dim_pad: int = 0):
    return [
        Chunk(content=f"chunk {i}", embedding=unit(s) + (0.0,) * dim_pad, page=1, chunk_index=i)
        for i, s in enumerate(sims)
    ]


class TestStateMachine:
    def setup_method(self):
        self.store = ChunkStore()
        self.doc = self.store.register(title="Assessment for Learning", authors="P. Black")

    def test_register_starts_pending_without_chunks(self):
        assert self.doc.processing_status is ProcessingStatus.PENDING
        assert self.doc.chunks == ()
        assert not self.doc.is_eligible

    def test_register_requires_title(self):
        with pytest.raises(ValueError):
            self.store.register(title="   ")

    def test_happy_path(self):
        generation = self.store.submit(self.doc.id)
        started = self.store.start(self.doc.id, generation)
        assert started.processing_status is ProcessingStatus.PROCESSING
        done = self.store.complete(self.doc.id, generation, _chunks(0.5, 0.6))
        assert done.processing_status is ProcessingStatus.COMPLETED
        assert done.embedding_dim == 2
        assert len(done.chunks) == 2
        assert done.is_eligible

    def test_complete_requires_processing(self):
        generation = self.store.submit(self.doc.id)
        with pytest.raises(IngestionStateError):
            self.store.complete(self.doc.id, generation, _chunks(0.5))

    def test_failure_keeps_previous_chunks(self):
        """Should leave a re-ingested document's earlier chunks untouched on failure."""
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        self.store.complete(self.doc.id, generation, _chunks(0.5, 0.6))

        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        failed = self.store.fail(self.doc.id, generation, "Embedding call failed")
        assert failed.processing_status is ProcessingStatus.FAILED
        assert failed.last_error == "Embedding call failed"
        assert len(failed.chunks) == 2
        assert not failed.is_eligible

    def test_resubmit_after_failure(self):
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        self.store.fail(self.doc.id, generation, "boom")
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        done = self.store.complete(self.doc.id, generation, _chunks(0.7))
        assert done.processing_status is ProcessingStatus.COMPLETED
        assert done.last_error is None

    def test_resubmit_while_processing_is_rejected(self):
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        with pytest.raises(IngestionInProgress):
            self.store.submit(self.doc.id)

    def test_stale_run_cannot_overwrite_newer_outcome(self):
        """Should refuse a slow superseded run once a newer one has completed."""
        slow = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, slow)
        fast = self.store.submit(self.doc.id, preempt=True)
        assert fast > slow
        self.store.start(self.doc.id, fast)
        self.store.complete(self.doc.id, fast, _chunks(0.9))

        with pytest.raises(StaleIngestion):
            self.store.fail(self.doc.id, slow, "late failure")
        with pytest.raises(StaleIngestion):
            self.store.complete(self.doc.id, slow, _chunks(0.1, 0.2))

        doc = self.store.get(self.doc.id)
        assert doc.processing_status is ProcessingStatus.COMPLETED
        assert len(doc.chunks) == 1

    def test_empty_chunk_list_completes(self):
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        done = self.store.complete(self.doc.id, generation, [])
        assert done.processing_status is ProcessingStatus.COMPLETED
        assert done.chunks == ()

    def test_mixed_dimensions_rejected(self):
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        with pytest.raises(DimensionMismatch):
            self.store.complete(self.doc.id, generation, _chunks(0.5) + _chunks(0.5, dim_pad=1))

    def test_dimension_must_match_other_documents(self):
        completed_document(self.store, [0.5])
        generation = self.store.submit(self.doc.id)
        self.store.start(self.doc.id, generation)
        with pytest.raises(DimensionMismatch):
            self.store.complete(self.doc.id, generation, _chunks(0.5, dim_pad=2))

    def test_unknown_document(self):
        with pytest.raises(DocumentNotFound):
            self.store.get("missing")
        with pytest.raises(DocumentNotFound):
            self.store.submit("missing")


class TestSkillLinks:
    def setup_method(self):
        self.store = ChunkStore()

    def test_eligible_sources_only_completed_in_link_order(self):
        done_b = completed_document(self.store, [0.5], title="B")
        pending = self.store.register(title="Pending")
        done_a = completed_document(self.store, [0.5], title="A")
        for doc in (done_b, pending, done_a):
            self.store.link("skill-1", doc.id)

        assert [d.id for d in self.store.sources_for_skill("skill-1")] == [done_b.id, pending.id, done_a.id]
        assert [d.id for d in self.store.eligible_sources("skill-1")] == [done_b.id, done_a.id]
        assert self.store.eligible_sources("other-skill") == []

    def test_link_is_idempotent_and_unlink_removes(self):
        doc = completed_document(self.store, [0.5])
        self.store.link("skill-1", doc.id)
        self.store.link("skill-1", doc.id)
        assert len(self.store.sources_for_skill("skill-1")) == 1
        self.store.unlink("skill-1", doc.id)
        assert self.store.sources_for_skill("skill-1") == []

    def test_unlinked_sources(self):
        linked = completed_document(self.store, [0.5], title="Linked")
        other = completed_document(self.store, [0.5], title="Other")
        self.store.link("skill-1", linked.id)
        assert [d.id for d in self.store.unlinked_sources("skill-1")] == [other.id]

    def test_delete_removes_links(self):
        doc = completed_document(self.store, [0.5])
        self.store.link("skill-1", doc.id)
        self.store.delete(doc.id)
        assert self.store.sources_for_skill("skill-1") == []
        with pytest.raises(DocumentNotFound):
            self.store.get(doc.id)

    def test_link_unknown_document(self):
        with pytest.raises(DocumentNotFound):
            self.store.link("skill-1", "missing")

    def test_delete_releases_document_lock(self):
        doc = completed_document(self.store, [0.5])
        self.store.delete(doc.id)
        assert doc.id not in self.store._doc_locks


class TestPersistence:
    def test_round_trip(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        doc = completed_document(store, [0.5, 0.8], title="Persisted")
        store.link("skill-1", doc.id)

        reloaded = ChunkStore(str(tmp_path))
        loaded = reloaded.get(doc.id)
        assert loaded.processing_status is ProcessingStatus.COMPLETED
        assert loaded.chunks == doc.chunks
        assert [d.id for d in reloaded.eligible_sources("skill-1")] == [doc.id]

    def test_record_is_versioned(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        doc = completed_document(store, [0.5])
        with open(tmp_path / "documents" / f"{doc.id}.json", encoding="utf-8") as f:
            record = json.load(f)
        assert record["schema_version"] == SCHEMA_VERSION
        assert record["embedding_dim"] == 2
        assert not [n for n in os.listdir(tmp_path / "documents") if n.startswith(".tmp-")]

    def test_unknown_schema_version(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        doc = completed_document(store, [0.5])
        path = tmp_path / "documents" / f"{doc.id}.json"
        record = json.loads(path.read_text(encoding="utf-8"))
        record["schema_version"] = SCHEMA_VERSION + 1
        path.write_text(json.dumps(record), encoding="utf-8")
        with pytest.raises(ChunkSchemaError):
            ChunkStore(str(tmp_path))

    def test_configured_dimension_mismatch(self, tmp_path):
        """Should refuse to load chunks embedded with a different model size."""
        store = ChunkStore(str(tmp_path))
        completed_document(store, [0.5])
        with pytest.raises(ChunkSchemaError):
            ChunkStore(str(tmp_path), embedding_dim=768)

    def test_interrupted_run_becomes_failed(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        doc = store.register(title="Interrupted")
        generation = store.submit(doc.id)
        store.start(doc.id, generation)

        reloaded = ChunkStore(str(tmp_path))
        loaded = reloaded.get(doc.id)
        assert loaded.processing_status is ProcessingStatus.FAILED
        assert loaded.last_error
        reloaded.submit(doc.id)


class TestSharedDirectory:
    """Two stores over one directory stand in for two worker processes."""

    def setup_method(self):
        self.chunks = _chunks(0.9)

    def test_generation_guard_holds_across_stores(self, tmp_path):
        """Should refuse a superseded run even when another store superseded it."""
        first = ChunkStore(str(tmp_path))
        doc = first.register(title="Shared")
        second = ChunkStore(str(tmp_path))

        slow = first.submit(doc.id)
        first.start(doc.id, slow)
        with pytest.raises(IngestionInProgress):
            second.submit(doc.id)

        fast = second.submit(doc.id, preempt=True)
        assert fast > slow
        second.start(doc.id, fast)
        second.complete(doc.id, fast, self.chunks)

        with pytest.raises(StaleIngestion):
            first.fail(doc.id, slow, "late failure")
        with pytest.raises(StaleIngestion):
            first.complete(doc.id, slow, _chunks(0.1, 0.2))

        loaded = ChunkStore(str(tmp_path)).get(doc.id)
        assert loaded.processing_status is ProcessingStatus.COMPLETED
        assert loaded.generation == fast
        assert len(loaded.chunks) == 1

    def test_no_lock_files_left_behind(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        completed_document(store, [0.5, 0.6])
        assert not [n for n in os.listdir(tmp_path / "documents") if n.endswith(".lock")]

    def test_abandoned_lock_is_reclaimed(self, tmp_path):
        store = ChunkStore(str(tmp_path))
        doc = store.register(title="Crashed")
        lock_path = tmp_path / "documents" / f"{doc.id}.lock"
        lock_path.write_text("", encoding="utf-8")
        old = lock_path.stat().st_mtime - 3600
        os.utime(lock_path, (old, old))

        generation = store.submit(doc.id)
        assert generation == 1
        assert not lock_path.exists()

    def test_delete_seen_by_other_store(self, tmp_path):
        first = ChunkStore(str(tmp_path))
        doc = first.register(title="Removed")
        second = ChunkStore(str(tmp_path))
        first.delete(doc.id)
        with pytest.raises(DocumentNotFound):
            second.submit(doc.id)

"""Shared pytest fixtures for feedback engine tests.

Provides:
- ``settings``: Settings with no real credentials and an in-memory store
- ``store``: Fresh in-memory ChunkStore per test
- ``embedder`` / ``generator`` / ``storage``: Provider fakes that count calls
- ``make_pdf``: Builds small text PDFs without any PDF writer library
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import pytest

from feedback_engine.config import Settings
from feedback_engine.errors import EmbeddingProviderError, GenerationProviderError
from feedback_engine.models import Chunk, SourceDocument
from feedback_engine.rag.chunk_store import ChunkStore

VOCAB = ("assessment", "feedback", "evidence", "photosynthesis", "chlorophyll", "rubric")


def unit(similarity: float) -> tuple[float, float]:
    """2-d unit vector whose cosine similarity to (1, 0) is exactly similarity."""
    return (similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity)))


def make_settings(**overrides) -> Settings:
    values = dict(
        ibm_cloud_api_key="test-key",
        watsonx_region="us-south",
        watsonx_project_id="test-project",
        watsonx_embed_model="test/embed",
        watsonx_gen_model="test/gen",
        cos_endpoint="",
        cos_bucket="",
        cos_instance_crn="",
        cos_api_key=None,
        cos_auth_endpoint="https://iam.cloud.ibm.com/identity/token",
        cos_hmac_access_key_id="",
        cos_hmac_secret_access_key="",
        chunk_store_path="",
        provider_timeout=5.0,
        search_workers=2,
    )
    values.update(overrides)
    return Settings(**values)


def completed_document(
    store: ChunkStore,
    similarities: Sequence[float],
    title: str = "Source",
    authors: Optional[str] = "A. Author",
) -> SourceDocument:
    """Register a document and complete it with chunks of given similarities to (1, 0)."""
    doc = store.register(title=title, authors=authors)
    generation = store.submit(doc.id)
    store.start(doc.id, generation)
    chunks = [
        Chunk(content=f"{title} passage {i}", embedding=unit(s), page=i + 1, chunk_index=i)
        for i, s in enumerate(similarities)
    ]
    return store.complete(doc.id, generation, chunks)


class FakeEmbedder:
    """Keyword-count embedder: one dimension per VOCAB word plus a bias."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self.texts: list[str] = []

    def _vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCAB] + [0.1]

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        self.texts.extend(texts)
        if self.fail:
            raise EmbeddingProviderError("Embedding call failed: provider unavailable")
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        return self.embed_texts([text])[0]


class FakeGenerator:
    """Generator that records prompts and returns canned feedback."""

    def __init__(self, reply: str = "Good use of evidence. Cite Source 1 more directly.", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def generate(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise GenerationProviderError("Generation call failed: 503 Service Unavailable")
        return self.reply


class InMemoryStorage:
    """Object storage fake keyed by object key."""

    def __init__(self, fail_upload: bool = False):
        self.objects: dict[str, bytes] = {}
        self.fail_upload = fail_upload

    def upload_bytes(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        if self.fail_upload:
            raise RuntimeError(f"Failed to upload '{key}' to COS: access denied")
        self.objects[key] = data
        return key

    def fetch_bytes(self, key: str) -> bytes:
        if key not in self.objects:
            raise RuntimeError(f"Failed to fetch '{key}' from COS: NoSuchKey")
        return self.objects[key]


def _pdf_string(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    return f"({escaped})"


def build_pdf(
    pages: Sequence[Sequence[str]],
    title: Optional[str] = None,
    author: Optional[str] = None,
    heading: Optional[str] = None,
) -> bytes:
    """Write a minimal PDF with one Helvetica text line per entry.

    Args:
        pages: Lines of text for each page; an empty list gives a blank page.
        title: Optional /Title in the document information dictionary.
        author: Optional /Author in the document information dictionary.
        heading: Optional 24pt line drawn above the text of the first page.
    """
    objects: list[bytes] = []

    def add(body: bytes) -> int:
        objects.append(body)
        return len(objects)

    add(b"<< /Type /Catalog /Pages 2 0 R >>")
    add(b"")  # page tree, filled in once the kids are known
    add(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    page_refs = []
    for index, lines in enumerate(pages):
        ops = []
        if index == 0 and heading:
            ops.append(f"BT /F1 24 Tf 72 740 Td {_pdf_string(heading)} Tj ET")
        if lines:
            ops.append("BT /F1 12 Tf 14 TL 72 700 Td")
            for i, line in enumerate(lines):
                if i:
                    ops.append("T*")
                ops.append(f"{_pdf_string(line)} Tj")
            ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        content_ref = add(
            b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
        )
        page_refs.append(
            add(
                b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                b"/Resources << /Font << /F1 3 0 R >> >> /Contents %d 0 R >>" % content_ref
            )
        )
    kids = " ".join(f"{ref} 0 R" for ref in page_refs)
    objects[1] = f"<< /Type /Pages /Kids [{kids}] /Count {len(page_refs)} >>".encode("latin-1")

    info_ref = None
    if title or author:
        entries = []
        if title:
            entries.append(f"/Title {_pdf_string(title)}")
        if author:
            entries.append(f"/Author {_pdf_string(author)}")
        info_ref = add(f"<< {' '.join(entries)} >>".encode("latin-1"))

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    trailer = f"<< /Size {len(objects) + 1} /Root 1 0 R"
    if info_ref:
        trailer += f" /Info {info_ref} 0 R"
    trailer += " >>"
    out += b"trailer\n" + trailer.encode("latin-1") + b"\nstartxref\n%d\n%%%%EOF\n" % xref_at
    return bytes(out)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> ChunkStore:
    """Fresh in-memory store, isolated per test."""
    return ChunkStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def make_pdf():
    return build_pdf


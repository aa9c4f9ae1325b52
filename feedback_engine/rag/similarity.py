"""Cosine-similarity search over the chunks of a skill's source documents.

Ranking happens in two passes. Each document first keeps only its own
top-N chunks, which bounds how much a single long document can crowd the
result; the survivors of every document are then pooled and cut to a global
top-K. Both sorts are stable, so equal scores keep document enumeration order
and then chunk order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np

from feedback_engine.errors import DimensionMismatch
from feedback_engine.models import ScoredChunk, SourceDocument

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of a and b divided by the product of their L2 norms.

    A zero vector has no direction, so its similarity to anything is 0.0.

    Raises:
        DimensionMismatch: The vectors have different lengths.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatch(va.shape[0], vb.shape[0])
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def similarities(query: Sequence[float], embeddings: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine similarity of query against each row of embeddings."""
    q = np.asarray(query, dtype=np.float64)
    if len(embeddings) == 0:
        return np.zeros(0, dtype=np.float64)
    matrix = np.asarray(embeddings, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[1] != q.shape[0]:
        actual = matrix.shape[1] if matrix.ndim == 2 else -1
        raise DimensionMismatch(q.shape[0], actual)
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
    return np.clip(sims, -1.0, 1.0)


def rank_document(
    query: Sequence[float],
    document: SourceDocument,
    top_n: int | None,
    source_order: int = 0,
) -> list[ScoredChunk]:
    """Per-source pass: score one document's chunks and keep its top-N."""
    if not document.chunks:
        return []
    sims = similarities(query, [c.embedding for c in document.chunks])
    scored = [
        ScoredChunk(
            chunk=chunk,
            document_id=document.id,
            title=document.title,
            author=document.authors,
            similarity=float(sim),
            source_order=source_order,
        )
        for chunk, sim in zip(document.chunks, sims)
    ]
    scored.sort(key=lambda s: -s.similarity)
    return scored if top_n is None else scored[:top_n]


def merge_ranked(per_source: Sequence[Sequence[ScoredChunk]], top_k: int) -> list[ScoredChunk]:
    """Global pass: pool per-source survivors and keep the global top-K."""
    pooled = [s for ranked in per_source for s in ranked]
    pooled.sort(key=lambda s: -s.similarity)
    return pooled[:top_k]


def search(
    query: Sequence[float],
    documents: Sequence[SourceDocument],
    top_k: int = 5,
    per_source_top_n: int | None = 3,
    workers: int = 4,
) -> list[ScoredChunk]:
    """Rank chunks of documents against query.

    Documents are scored concurrently, one task per document, and joined
    before the global sort. An empty pool gives an empty ranking.

    Args:
        query: Query embedding.
        documents: Candidate documents in enumeration order.
        top_k: Size of the final ranking.
        per_source_top_n: Chunks kept per document, or None for a flat ranking.
        workers: Threads used for the per-document pass.

    Returns:
        Ranked chunks, most similar first.

    Raises:
        DimensionMismatch: A chunk embedding does not match the query dimension.
    """
    if top_k <= 0 or not documents:
        return []
    if per_source_top_n is not None and per_source_top_n <= 0:
        per_source_top_n = None

    def _rank(item: tuple[int, SourceDocument]) -> list[ScoredChunk]:
        order, doc = item
        return rank_document(query, doc, per_source_top_n, source_order=order)

    items = list(enumerate(documents))
    if len(items) == 1 or workers <= 1:
        per_source = [_rank(item) for item in items]
    else:
        with ThreadPoolExecutor(
            max_workers=min(workers, len(items)), thread_name_prefix="similarity"
        ) as executor:
            per_source = list(executor.map(_rank, items))

    ranked = merge_ranked(per_source, top_k)
    logger.debug(
        f"Ranked {sum(len(d.chunks) for d in documents)} chunks from "
        f"{len(documents)} sources, kept {len(ranked)}"
    )
    return ranked

"""Text chunking utilities.

This module provides functions for splitting page texts into bounded
passages that remember the page they came from.
"""

from typing import List, NamedTuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

# Paragraph, line, sentence, then word breaks; "" hard-splits as a last resort.
SEPARATORS = ["\n\n", "\n", ". ", "? ", "! ", "; ", " ", ""]


class PageChunk(NamedTuple):
    """Chunk text with the 1-based page number it originated from."""

    page: int
    text: str


def _split_oversized(text: str, max_chars: int) -> List[str]:
    """Split text longer than max_chars at word boundaries.

    Args:
        text: Text to split.
        max_chars: Maximum characters per piece.

    Returns:
        List of pieces, none longer than max_chars.
    """
    if len(text) <= max_chars:
        return [text]

    result: List[str] = []
    current: List[str] = []
    current_len = 0
    for word in text.split():
        added = len(word) + (1 if current else 0)
        if current_len + added <= max_chars:
            current.append(word)
            current_len += added
            continue
        if current:
            result.append(" ".join(current))
        if len(word) > max_chars:
            pieces = [word[i : i + max_chars] for i in range(0, len(word), max_chars)]
            result.extend(pieces[:-1])
            current, current_len = [pieces[-1]], len(pieces[-1])
        else:
            current, current_len = [word], len(word)
    if current:
        result.append(" ".join(current))
    return result


def make_splitter(max_chars: int, chunk_overlap: int) -> RecursiveCharacterTextSplitter:
    overlap = max(0, min(chunk_overlap, max_chars // 2))
    return RecursiveCharacterTextSplitter(
        chunk_size=max_chars,
        chunk_overlap=overlap,
        length_function=len,
        separators=SEPARATORS,
        keep_separator="end",
    )


def chunk_pages(
    pages: List[str], max_chars: int = 1500, chunk_overlap: int = 200
) -> List[PageChunk]:
    """Split pages of text into page-tagged chunks.

    Pages are split independently so every chunk maps to exactly one page.
    Whitespace-only chunks are dropped. Empty input gives an empty list.

    Args:
        pages: Page texts in page order; index 0 is page 1.
        max_chars: Maximum characters per chunk.
        chunk_overlap: Overlap between consecutive chunks of one page.

    Returns:
        List of page chunks in reading order.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    splitter = make_splitter(max_chars, chunk_overlap)
    chunks: List[PageChunk] = []
    for page_num, text in enumerate(pages, start=1):
        if not text or not text.strip():
            continue
        for piece in splitter.split_text(text):
            for part in _split_oversized(piece.strip(), max_chars):
                if part.strip():
                    chunks.append(PageChunk(page=page_num, text=part))
    return chunks

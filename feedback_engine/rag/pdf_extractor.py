"""PDF text and metadata extraction.

Turns raw PDF bytes into normalized per-page text for the chunker, and
guesses a title and author line when the uploader did not supply them.
"""

from typing import BinaryIO, Dict, List, Optional
import logging
import re

import pdfplumber
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from feedback_engine.errors import ExtractionFailed

logger = logging.getLogger(__name__)

_SOFTWARE_NAMES = (
    "adobe", "microsoft", "latex", "pdf", "word", "acrobat", "writer",
    "libreoffice", "openoffice", "google", "pages", "unknown", "anonymous",
)

_NON_TITLE_PREFIXES = (
    "abstract", "keywords", "introduction", "contents", "table of contents",
    "chapter", "figure", "table", "page", "doi:", "http", "www.", "copyright",
)


def normalize_text(text: str) -> str:
    """Collapse runs of spaces inside lines and keep paragraph breaks.

    Single line breaks are kept, blank-line runs collapse to one blank line.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    lines = [" ".join(line.split()) for line in text.split("\n")]
    normalized = "\n".join(lines)
    normalized = re.sub(r"\n{3,}", "\n\n", normalized)
    return normalized.strip()


def extract_text_per_page(fileobj: BinaryIO) -> List[str]:
    """Extract normalized text for every page, in page order.

    Pages without extractable text come back as empty strings so that list
    position still maps to page number.

    Raises:
        ExtractionFailed: The stream is not a readable PDF.
    """
    try:
        fileobj.seek(0)
        reader = PdfReader(fileobj)
        if reader.is_encrypted:
            raise ExtractionFailed("The document is encrypted")
        pages: List[str] = []
        for page in reader.pages:
            pages.append(normalize_text(page.extract_text() or ""))
    except ExtractionFailed:
        raise
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as e:
        logger.warning(f"PDF text extraction failed: {e}")
        raise ExtractionFailed(f"Could not parse the document as PDF: {e}") from e
    return pages


def _is_non_title_pattern(text: str) -> bool:
    """Check if text matches common non-title patterns."""
    text_lower = text.lower().strip()
    if any(text_lower.startswith(prefix) for prefix in _NON_TITLE_PREFIXES):
        return True
    if re.match(r"^\d{4}$|^[A-Za-z]+\s+\d{4}$", text_lower):
        return True
    if re.search(r"http://|https://|www\.|@", text):
        return True
    if not 10 <= len(text.strip()) <= 250:
        return True
    special_char_count = len(re.findall(r"[^\w\s]", text))
    return special_char_count > len(text) * 0.3


def _is_author_name(text: str) -> bool:
    """Check if text looks like an author line."""
    text = text.strip()
    if not 5 <= len(text) <= 150:
        return False
    if any(name in text.lower() for name in _SOFTWARE_NAMES):
        return False
    if re.search(r"http://|https://|www\.|@|\d{3,}", text):
        return False
    words = text.split()
    if not 2 <= len(words) <= 15:
        return False
    return bool(re.search(r"[A-Z]", text))


def _clean_metadata_value(value: object) -> Optional[str]:
    if not value:
        return None
    cleaned = str(value).strip()
    if cleaned.startswith("/"):
        cleaned = cleaned[1:]
    return cleaned or None


def _title_by_font(fileobj: BinaryIO) -> Optional[str]:
    """Take the largest-font text in the top third of the first page."""
    fileobj.seek(0)
    with pdfplumber.open(fileobj) as pdf:
        if not pdf.pages:
            return None
        first_page = pdf.pages[0]
        cutoff = first_page.height / 3
        words = [
            w
            for w in first_page.extract_words(extra_attrs=["size"])
            if w["top"] <= cutoff
        ]
        if not words:
            return None
        max_size = max(w["size"] for w in words)
        title_words = [w for w in words if abs(w["size"] - max_size) < 0.5]
        title_words.sort(key=lambda w: (round(w["top"]), w["x0"]))
        title = " ".join(w["text"] for w in title_words).strip()
    if _is_non_title_pattern(title):
        return None
    return title


def _first_lines(fileobj: BinaryIO, limit: int = 15) -> List[str]:
    fileobj.seek(0)
    reader = PdfReader(fileobj)
    if not reader.pages:
        return []
    text = reader.pages[0].extract_text() or ""
    return [line.strip() for line in text.split("\n") if line.strip()][:limit]


def _author_after_title(lines: List[str], title: Optional[str]) -> Optional[str]:
    """Look for an author line in the few lines following the title."""
    start = 0
    if title:
        for i, line in enumerate(lines):
            if line.lower() in title.lower() or title.lower() in line.lower():
                start = i + 1
                break
    for line in lines[start : start + 5]:
        candidate = re.sub(r"^(written by|authors?|by)\s*:?\s*", "", line, flags=re.I)
        candidate = re.sub(r"\([^)]*\)|\[[^\]]*\]", "", candidate).strip()
        if candidate.lower().startswith(("abstract", "keywords", "introduction")):
            break
        if _is_author_name(candidate):
            return candidate
    return None


def extract_metadata(fileobj: BinaryIO) -> Dict[str, Optional[str]]:
    """Guess the title and author line of a PDF.

    Strategies, in priority order:
    1. Font analysis of the first page (pdfplumber)
    2. Embedded document information (pypdf)
    3. First lines of the first page

    Returns:
        Dict with 'title' and 'author' keys. Values are None if not found.
    """
    meta_title: Optional[str] = None
    meta_author: Optional[str] = None
    try:
        fileobj.seek(0)
        info = PdfReader(fileobj).metadata
        if info:
            meta_title = _clean_metadata_value(info.get("/Title"))
            meta_author = _clean_metadata_value(info.get("/Author"))
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as e:
        logger.debug(f"Metadata extraction failed: {e}")
        return {"title": None, "author": None}

    if meta_title and _is_non_title_pattern(meta_title):
        meta_title = None
    if meta_author and not _is_author_name(meta_author):
        meta_author = None

    font_title: Optional[str] = None
    try:
        font_title = _title_by_font(fileobj)
    except Exception as e:
        # pdfminer raises a wide range of parser errors on odd layouts
        logger.warning(f"Font-based title extraction failed: {e}")

    try:
        lines = _first_lines(fileobj)
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as e:
        logger.debug(f"First-page line extraction failed: {e}")
        lines = []

    position_title = next(
        (line for line in lines if not _is_non_title_pattern(line)), None
    )
    title = font_title or meta_title or position_title
    author = meta_author or _author_after_title(lines, title)

    if title:
        logger.info(f"Detected title: {title[:50]}")
    return {"title": title, "author": author}

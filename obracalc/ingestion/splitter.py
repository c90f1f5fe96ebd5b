"""PDF page splitting and overlapping chunk plans."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from io import BytesIO
from typing import TypeVar

from pypdf import PdfReader, PdfWriter

from obracalc.core.errors import InvalidRangeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def page_count(document: bytes) -> int:
    """Number of pages in a PDF document."""
    return len(PdfReader(BytesIO(document)).pages)


def split_pages(document: bytes, pages: int | Sequence[int]) -> bytes:
    """Return a new PDF containing exactly the given 0-based pages, in order.

    Raises:
        InvalidRangeError: If any index is outside the document, or no
            index is given.
    """
    indices = [pages] if isinstance(pages, int) else list(pages)
    if not indices:
        raise InvalidRangeError("No pages requested")

    reader = PdfReader(BytesIO(document))
    total = len(reader.pages)
    for index in indices:
        if index < 0 or index >= total:
            raise InvalidRangeError(f"Page index {index} out of range (document has {total} pages)")

    writer = PdfWriter()
    for index in indices:
        writer.add_page(reader.pages[index])

    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def chunk_ranges(total_pages: int, chunk_size: int = 5, overlap: int = 2) -> list[range]:
    """Plan overlapping page-range chunks covering ``total_pages``.

    >>> [list(r) for r in chunk_ranges(8, chunk_size=5, overlap=2)]
    [[0, 1, 2, 3, 4], [3, 4, 5, 6, 7]]
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    step = chunk_size - overlap
    chunks: list[range] = []
    start = 0
    while start < total_pages:
        end = min(start + chunk_size, total_pages)
        chunks.append(range(start, end))
        if end == total_pages:
            break
        start += step
    return chunks


def deduplicate_by_code(items: Iterable[T], code_of=lambda i: i.code, description_of=lambda i: i.description) -> list[T]:
    """Keep one item per code, preferring the longest description.

    Items from overlapping chunks repeat; the more complete reading (the
    one not cut at a page boundary) has the longer description. First-seen
    order is preserved.
    """
    best: dict[str, T] = {}
    for item in items:
        code = code_of(item)
        current = best.get(code)
        if current is None or len(description_of(item) or "") > len(description_of(current) or ""):
            best[code] = item
    return list(best.values())

"""
Splits extracted document text into overlapping chunks for embedding.

Chunks prefer to end on a sentence or line boundary when one falls in the
second half of the window. Offsets index into the original text, so
``text[start_offset:end_offset].strip() == content`` for every chunk.
"""

from __future__ import annotations

from typing import List, Optional

from discovery.core.config import settings
from discovery.db.schemas import ChunkData

BREAK_CHARS = (".", "\n")


def content_hash(text: str) -> str:
    """
    Fast 32-bit rolling hash (``h * 31 + code_unit``) of *text*, rendered as
    signed hex. Used to spot identical chunks; not collision resistant.
    """
    h = 0
    data = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, "x")


def _find_break(text: str, start: int, end: int) -> int:
    # Last boundary character at or before ``end``
    return max(text.rfind(ch, 0, end + 1) for ch in BREAK_CHARS)


def chunk_text(
    text: str,
    chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[ChunkData]:
    """
    Split *text* into chunks of at most *chunk_size* characters, each starting
    *overlap* characters before the previous one ended.

    Deterministic: the same input always yields the same chunks.
    """
    size = chunk_size if chunk_size is not None else settings.CHUNK_SIZE
    step_back = overlap if overlap is not None else settings.CHUNK_OVERLAP
    if size <= 0:
        raise ValueError("chunk_size must be positive")
    if step_back < 0 or step_back >= size:
        raise ValueError("overlap must be between 0 and chunk_size - 1")

    spans: list[tuple[str, int, int]] = []
    length = len(text)
    start = 0

    while start < length:
        end = min(start + size, length)

        if end < length:
            boundary = _find_break(text, start, end)
            if boundary > start + size / 2:
                end = boundary + 1

        spans.append((text[start:end].strip(), start, end))
        if end >= length:
            # The remaining tail is already inside this chunk
            break

        next_start = end - step_back
        # Forced advance when the overlap would not move us forward
        if next_start <= spans[-1][1]:
            next_start = end
        start = next_start

    chunks: List[ChunkData] = []
    for content, span_start, span_end in spans:
        if not content:
            continue
        chunks.append(
            ChunkData(
                chunk_index=len(chunks),
                content=content,
                content_hash=content_hash(content),
                start_offset=span_start,
                end_offset=span_end,
            )
        )
    return chunks

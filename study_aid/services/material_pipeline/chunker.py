"""
Word-boundary chunking of extracted material text.
"""

from __future__ import annotations

import re
from typing import Iterator

from services.material_pipeline.constants import DEFAULT_CHUNK_SIZE

_WORD_RE = re.compile(r"\S+")


class ChunkSequence:
    """
    Lazy, restartable view over the chunks of one text.

    Every iteration re-scans the text, so the same input always yields the
    same chunks and callers may iterate more than once (count, then process).
    """

    def __init__(self, text: str, max_chunk_size: int) -> None:
        self._text = text or ""
        self._max_chunk_size = int(max_chunk_size)

    def __iter__(self) -> Iterator[str]:
        return _iter_chunks(self._text, self._max_chunk_size)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self) -> str:
        return f"ChunkSequence(chars={len(self._text)}, max_chunk_size={self._max_chunk_size})"


class Chunker:
    def __init__(self, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if int(max_chunk_size) < 1:
            raise ValueError("max_chunk_size must be positive")
        self.max_chunk_size = int(max_chunk_size)

    def split(self, text: str) -> ChunkSequence:
        return ChunkSequence(text, self.max_chunk_size)


def split_text(text: str, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> ChunkSequence:
    return Chunker(max_chunk_size).split(text)


def _iter_chunks(text: str, max_chars: int) -> Iterator[str]:
    # A word longer than max_chars is emitted alone and unshortened.
    current: list[str] = []
    current_len = 0
    for match in _WORD_RE.finditer(text):
        word = match.group(0)
        next_len = current_len + len(word) + (1 if current else 0)
        if next_len > max_chars and current:
            yield " ".join(current)
            current = [word]
            current_len = len(word)
        else:
            current.append(word)
            current_len = next_len
    if current:
        yield " ".join(current)

"""Word-window chunking with overlap."""

from __future__ import annotations

import re
from dataclasses import dataclass

_WORD_RE = re.compile(r"\S+")
_SENTENCE_ENDERS = (".", "!", "?", "؟", "؛", "。")


@dataclass(slots=True, frozen=True)
class TextChunk:
    """One window of words from the source text."""

    index: int
    content: str
    start_char: int
    end_char: int
    word_count: int


def chunk_words(text: str, *, max_words: int = 800, overlap_words: int = 80) -> list[TextChunk]:
    """Split ``text`` into overlapping windows of at most ``max_words`` words.

    A window prefers to end at a paragraph break, then at a sentence end,
    searched in its second half; otherwise it is cut at ``max_words``.
    Consecutive windows share ``overlap_words`` words. The result is
    deterministic so a resumed job can re-chunk and skip to its cursor.
    """

    if max_words <= 0:
        raise ValueError("max_words must be > 0")
    if not 0 <= overlap_words < max_words:
        raise ValueError("overlap_words must be >= 0 and < max_words")

    words = [(match.start(), match.end()) for match in _WORD_RE.finditer(text)]
    chunks: list[TextChunk] = []
    start = 0
    while start < len(words):
        end = _best_break(text, words, start, min(start + max_words, len(words)))
        chunks.append(
            TextChunk(
                index=len(chunks),
                content=text[words[start][0] : words[end - 1][1]],
                start_char=words[start][0],
                end_char=words[end - 1][1],
                word_count=end - start,
            ),
        )
        if end >= len(words):
            break
        start = max(end - overlap_words, start + 1)
    return chunks


def _best_break(text: str, words: list[tuple[int, int]], start: int, limit: int) -> int:
    if limit >= len(words):
        return len(words)
    floor = start + max(1, (limit - start) // 2)
    for index in range(limit - 1, floor - 1, -1):
        if "\n\n" in text[words[index][1] : words[index][1] + 3]:
            return index + 1
    for index in range(limit - 1, floor - 1, -1):
        word_start, word_end = words[index]
        if text[word_start:word_end].endswith(_SENTENCE_ENDERS):
            return index + 1
    return limit

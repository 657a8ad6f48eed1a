"""Split extracted text into titled segments (chapters or page ranges)."""

from __future__ import annotations

import re
from dataclasses import dataclass

MAX_SEGMENTS = 50
FALLBACK_PAGES_PER_SEGMENT = 10
FALLBACK_WORDS_PER_SEGMENT = 2_000

_HEADING_RE = re.compile(
    r"^\s*(?:#{1,3}\s+(?P<md>\S.*?)|(?P<chapter>(?:chapter|lesson|unit)\s+\S.*?))\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_PAGE_BREAK = "\f"


@dataclass(slots=True, frozen=True)
class Segment:
    key: str
    position: int
    title: str
    text: str


def detect_segments(text: str) -> list[Segment]:
    """Headings win; otherwise split by page ranges, then by word count."""

    if not text.strip():
        return []
    segments = _by_headings(text)
    if not segments:
        segments = _by_pages(text) if _PAGE_BREAK in text else _by_words(text)
    return segments[:MAX_SEGMENTS]


def normalize_title(title: str) -> str:
    return " ".join(re.sub(r"[^\w\s]", " ", title.casefold()).split())


def _by_headings(text: str) -> list[Segment]:
    matches = list(_HEADING_RE.finditer(text))
    if not matches:
        return []
    segments: list[Segment] = []
    for index, match in enumerate(matches):
        body_end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        body = text[match.end() : body_end].strip()
        if not body:
            continue
        title = (match.group("md") or match.group("chapter")).strip()
        segments.append(_segment(len(segments), title, body))
    return segments


def _by_pages(text: str) -> list[Segment]:
    pages = text.split(_PAGE_BREAK)
    segments: list[Segment] = []
    for first in range(0, len(pages), FALLBACK_PAGES_PER_SEGMENT):
        window = pages[first : first + FALLBACK_PAGES_PER_SEGMENT]
        body = "\n".join(page.strip() for page in window).strip()
        if not body:
            continue
        last = first + len(window)
        segments.append(_segment(len(segments), f"Pages {first + 1}-{last}", body))
    return segments


def _by_words(text: str) -> list[Segment]:
    words = text.split()
    segments: list[Segment] = []
    for first in range(0, len(words), FALLBACK_WORDS_PER_SEGMENT):
        body = " ".join(words[first : first + FALLBACK_WORDS_PER_SEGMENT])
        segments.append(_segment(len(segments), f"Part {len(segments) + 1}", body))
    return segments


def _segment(position: int, title: str, body: str) -> Segment:
    return Segment(key=f"seg-{position + 1:03d}", position=position, title=title, text=body)

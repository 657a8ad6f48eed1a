"""External collaborators of the lesson pipeline and local implementations.

Production deployments plug in OCR, transcription and LLM-backed services
behind :class:`ContentExtractor` and :class:`ContentAnalyzer`. The local
implementations here handle plain text and produce a heuristic analysis so
the whole job graph runs without network access.
"""

from __future__ import annotations

import os
import re
from collections import Counter
from pathlib import Path
from typing import Any, Protocol

from lesson_pipeline.jobs.failure_classifier import PermanentJobError

_SENTENCE_RE = re.compile(r"(?<=[.!?؟])\s+")
_WORD_RE = re.compile(r"[^\W\d_]{4,}", re.UNICODE)
_STOPWORDS = frozenset(
    {
        "about", "after", "also", "been", "before", "being", "between", "both",
        "could", "each", "from", "have", "here", "into", "more", "most", "only",
        "other", "over", "same", "some", "such", "than", "that", "their", "them",
        "then", "there", "these", "they", "this", "those", "through", "very",
        "were", "what", "when", "where", "which", "while", "will", "with",
        "would", "your",
    },
)


class ContentExtractor(Protocol):
    supported_types: frozenset[str]
    estimated_seconds: float

    def extract(self, path: Path, content_type: str) -> str:
        """Return the text content of ``path``."""


class ContentAnalyzer(Protocol):
    estimated_seconds: float

    def analyze(self, text: str, *, title: str) -> dict[str, Any]:
        """Return ``summary``, ``focus_points`` and ``quizzes`` for ``text``."""


class LocalBlobStore:
    """Filesystem blob store; writes replace the whole object."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        if not candidate.is_relative_to(self.root.resolve()):
            raise PermanentJobError(f"Blob key escapes store root: {key!r}")
        return candidate

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def read_text(self, key: str) -> str:
        path = self.path(key)
        if not path.is_file():
            raise PermanentJobError(f"Blob not found: {key}")
        return path.read_text(encoding="utf-8")

    def write_text(self, key: str, text: str) -> None:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(path)


class PlainTextExtractor:
    supported_types = frozenset({"text/plain", "text/markdown"})
    estimated_seconds = 1.0

    def extract(self, path: Path, content_type: str) -> str:
        if content_type not in self.supported_types:
            raise PermanentJobError(f"Unsupported content type: {content_type}")
        return path.read_text(encoding="utf-8")


class HeuristicAnalyzer:
    """Extractive summary, keyword focus points and fill-in quizzes."""

    estimated_seconds = 1.0

    def __init__(self, *, summary_sentences: int = 2, focus_points: int = 5) -> None:
        self.summary_sentences = summary_sentences
        self.focus_points = focus_points

    def analyze(self, text: str, *, title: str) -> dict[str, Any]:
        sentences = [part.strip() for part in _SENTENCE_RE.split(text.strip()) if part.strip()]
        keywords = self._keywords(text)
        focus_points = [
            {"title": keyword, "details": _first_sentence_with(sentences, keyword)}
            for keyword in keywords
        ]
        quizzes = []
        for keyword in keywords:
            sentence = _first_sentence_with(sentences, keyword)
            if not sentence:
                continue
            options = [keyword, *[other for other in keywords if other != keyword][:3]]
            quizzes.append(
                {
                    "question": re.sub(
                        re.escape(keyword),
                        "_____",
                        sentence,
                        count=1,
                        flags=re.IGNORECASE,
                    ),
                    "type": "fill_in",
                    "options": sorted(options),
                    "correct_answer": sorted(options).index(keyword),
                    "explanation": f"From {title}: {sentence}",
                },
            )
        return {
            "summary": " ".join(sentences[: self.summary_sentences]),
            "focus_points": focus_points,
            "quizzes": quizzes,
        }

    def _keywords(self, text: str) -> list[str]:
        counts = Counter(
            word.casefold()
            for word in _WORD_RE.findall(text)
            if word.casefold() not in _STOPWORDS
        )
        return [word for word, _ in counts.most_common(self.focus_points)]


def _first_sentence_with(sentences: list[str], keyword: str) -> str:
    for sentence in sentences:
        if keyword in sentence.casefold():
            return sentence
    return ""

from __future__ import annotations

import allure
import pytest

from lesson_pipeline.pipeline.chunker import chunk_words
from lesson_pipeline.pipeline.segments import MAX_SEGMENTS, detect_segments, normalize_title

pytestmark = [
    allure.epic("Lesson Pipeline"),
    allure.feature("Segmentation & Chunking"),
]


def test_markdown_and_chapter_headings_become_segments() -> None:
    text = (
        "Preface text is ignored.\n"
        "# Introduction\nWhat we will learn.\n\n"
        "Chapter 2: Forces\nPush and pull.\n\n"
        "## Empty\n\n"
        "Lesson 3 Energy\nWork and power.\n"
    )

    segments = detect_segments(text)

    assert [(s.key, s.position, s.title) for s in segments] == [
        ("seg-001", 0, "Introduction"),
        ("seg-002", 1, "Chapter 2: Forces"),
        ("seg-003", 2, "Lesson 3 Energy"),
    ]
    assert segments[1].text == "Push and pull."


def test_page_breaks_group_ten_pages_per_segment() -> None:
    pages = [f"page {index} body" for index in range(1, 24)]

    segments = detect_segments("\f".join(pages))

    assert [segment.title for segment in segments] == ["Pages 1-10", "Pages 11-20", "Pages 21-23"]
    assert segments[2].text.splitlines() == ["page 21 body", "page 22 body", "page 23 body"]


def test_plain_text_falls_back_to_word_parts() -> None:
    segments = detect_segments(" ".join(["token"] * 4_500))

    assert [segment.title for segment in segments] == ["Part 1", "Part 2", "Part 3"]
    assert len(segments[2].text.split()) == 500


def test_segment_count_is_capped_and_blank_text_has_none() -> None:
    text = "\n".join(f"# Topic {index}\nbody" for index in range(MAX_SEGMENTS + 5))

    assert len(detect_segments(text)) == MAX_SEGMENTS
    assert detect_segments(" \n\t") == []


def test_normalize_title_ignores_case_and_punctuation() -> None:
    assert normalize_title("  Cell  Respiration!") == normalize_title("cell respiration")


def test_chunks_overlap_and_prefer_sentence_ends() -> None:
    text = " ".join(f"w{index}" + ("." if index % 7 == 6 else "") for index in range(30))

    chunks = chunk_words(text, max_words=10, overlap_words=2)

    assert chunks[0].word_count == 7
    assert chunks[0].content.endswith("w6.")
    assert chunks[1].content.startswith("w5")
    assert chunks[-1].end_char == len(text)
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert chunk_words(text, max_words=10, overlap_words=2) == chunks


def test_paragraph_break_wins_over_sentence_end() -> None:
    text = "one two. three four five six\n\nseven eight nine ten eleven twelve"

    chunks = chunk_words(text, max_words=8, overlap_words=0)

    assert chunks[0].content == "one two. three four five six"
    assert chunks[1].content.startswith("seven")


def test_chunking_rejects_bad_window() -> None:
    assert chunk_words("", max_words=5, overlap_words=1) == []
    with pytest.raises(ValueError, match="max_words"):
        chunk_words("text", max_words=0)
    with pytest.raises(ValueError, match="overlap_words"):
        chunk_words("text", max_words=5, overlap_words=5)

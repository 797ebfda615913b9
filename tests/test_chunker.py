from __future__ import annotations

import pytest

from localrag.errors import InvalidParameters
from localrag.ingestion.chunker import chunk_text, is_heading, validate_chunk_parameters


def _words(prefix: str, count: int) -> list[str]:
    return [f"{prefix}{i}" for i in range(count)]


@pytest.mark.parametrize("size, overlap", [(0, 0), (-5, 0), (10_001, 10), (100, -1), (100, 100), (100, 150)])
def test_invalid_chunk_parameters_are_rejected(size: int, overlap: int):
    with pytest.raises(InvalidParameters):
        validate_chunk_parameters(size, overlap)
    with pytest.raises(InvalidParameters):
        chunk_text("some text", size, overlap)


def test_blank_text_produces_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("   \n\n\t  ") == []


def test_short_text_is_a_single_chunk():
    assert chunk_text("A small note about revenue.", 100, 10) == ["A small note about revenue."]


def test_long_paragraph_chunks_respect_size_and_overlap():
    words = _words("w", 2000)
    chunks = chunk_text(" ".join(words), 100, 20)
    assert len(chunks) > 1
    for chunk in chunks:
        assert len(chunk.split()) <= 100
    for previous, following in zip(chunks, chunks[1:]):
        assert following.split()[:20] == previous.split()[-20:]
    assert chunks[0].split()[0] == "w0"
    assert chunks[-1].split()[-1] == "w1999"


def test_every_word_is_covered_in_order():
    words = _words("w", 950)
    chunks = chunk_text(" ".join(words), 100, 20)
    seen: list[str] = []
    for chunk in chunks:
        for word in chunk.split():
            if not seen or int(word[1:]) > int(seen[-1][1:]):
                seen.append(word)
    assert seen == words


def test_heading_is_carried_into_the_next_chunk():
    first = " ".join(_words("alpha", 60))
    second = " ".join(_words("beta", 60))
    chunks = chunk_text(f"Introduction\n\n{first}\n\n{second}", 100, 10)
    assert len(chunks) == 2
    assert chunks[0].startswith("Introduction alpha0")
    assert chunks[1].startswith("Introduction")
    assert chunks[1].split()[1:11] == _words("alpha", 60)[-10:]
    assert chunks[1].split()[-1] == "beta59"


def test_paragraphs_stay_together_when_they_fit():
    text = "First paragraph here.\n\nSecond paragraph here.\n\nThird one."
    assert chunk_text(text, 100, 10) == ["First paragraph here. Second paragraph here. Third one."]


@pytest.mark.parametrize(
    "paragraph, expected",
    [
        ("Introduction", True),
        ("Quarterly Results 2023", True),
        ("This is a full sentence.", False),
        ("Heading, with comma,", False),
        ("Line one\nLine two", False),
        (" ".join(["word"] * 13), False),
        ("   ", False),
    ],
)
def test_is_heading(paragraph: str, expected: bool):
    assert is_heading(paragraph) is expected

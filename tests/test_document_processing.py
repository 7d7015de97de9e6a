"""Unit tests for the text chunker."""

import pytest

from tutorrag import TextChunker, ValidationError


def test_chunk_creation():
    """Test basic text chunking."""
    chunker = TextChunker(chunk_size=100, overlap=20)
    text = "This is a test document. " * 20

    spans = chunker.chunk_text(text)

    assert len(spans) > 1
    for i, span in enumerate(spans):
        assert span.index == i
        assert span.text
        assert span.text == text[span.start_char : span.end_char]
        assert len(span.text) <= 100


def test_empty_text_chunking():
    """Test chunking empty and whitespace-only text."""
    chunker = TextChunker()

    assert chunker.chunk_text("") == []
    assert chunker.chunk_text("   \n\n  ") == []


def test_short_text_is_single_span():
    chunker = TextChunker(chunk_size=100, overlap=20)

    spans = chunker.chunk_text("  The derivative measures change.  ")

    assert len(spans) == 1
    assert spans[0].text == "The derivative measures change."
    assert spans[0].start_char == 2


def test_chunk_overlap():
    """Consecutive spans share trailing sentences up to the overlap size."""
    chunker = TextChunker(chunk_size=100, overlap=30)
    text = "This is a test document. " * 20

    spans = chunker.chunk_text(text)

    assert spans[1].start_char < spans[0].end_char
    assert spans[0].end_char - spans[1].start_char <= 30


def test_spans_cover_all_content():
    chunker = TextChunker(chunk_size=80, overlap=15)
    text = (
        "Limits describe behaviour near a point.\n"
        "Derivatives are limits of difference quotients.\n\n"
        "Integrals accumulate area. The fundamental theorem links both ideas. "
        "Practice problems follow in the next section."
    )

    spans = chunker.chunk_text(text)

    covered = set()
    for span in spans:
        covered.update(range(span.start_char, span.end_char))
    missing = [
        i for i, char in enumerate(text) if not char.isspace() and i not in covered
    ]
    assert missing == []
    assert [span.start_char for span in spans] == sorted(
        span.start_char for span in spans
    )


def test_paragraphs_are_kept_whole():
    chunker = TextChunker(chunk_size=60, overlap=0)
    first = "Photosynthesis converts light into chemical energy."
    second = "Respiration releases that energy inside the cell."

    spans = chunker.chunk_text(f"{first}\n\n{second}")

    assert [span.text for span in spans] == [first, second]


def test_indivisible_text_is_cut_by_characters():
    chunker = TextChunker(chunk_size=50, overlap=10)

    spans = chunker.chunk_text("A" * 120)

    assert [len(span.text) for span in spans] == [50, 50, 20]
    assert "".join(span.text for span in spans) == "A" * 120


def test_chunking_is_deterministic():
    chunker = TextChunker(chunk_size=100, overlap=20)
    text = "Vectors have magnitude and direction. " * 15

    assert chunker.chunk_text(text) == chunker.chunk_text(text)


def test_chunk_pages_skips_sparse_pages():
    chunker = TextChunker(chunk_size=100, overlap=20, min_page_length=50)
    pages = [
        (1, "Chapter 1"),
        (2, "Cells are the basic unit of life. " * 2),
        (3, "Mitochondria produce most of the cell's energy supply. " * 3),
    ]

    spans = chunker.chunk_pages(pages)

    assert {span.page_number for span in spans} == {2, 3}
    assert [span.index for span in spans] == list(range(len(spans)))
    assert spans[0].page_number == 2


@pytest.mark.parametrize(
    ("chunk_size", "overlap"),
    [(0, 0), (100, 100), (100, -1)],
)
def test_invalid_chunker_settings(chunk_size, overlap):
    with pytest.raises(ValidationError):
        TextChunker(chunk_size=chunk_size, overlap=overlap)

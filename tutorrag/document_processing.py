"""Text chunking with separator-aware splitting and overlap."""

from collections import deque
from collections.abc import Iterable

from .config import config
from .errors import ValidationError
from .models import TextSpan

logger = config.get_logger(__name__)

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")


class TextChunker:
    """Splits text into overlapping spans, keeping semantic units whole.

    Separators are tried in priority order (paragraph, line, sentence, word,
    character). Pieces that are still too large are split again with the next
    separator, then adjacent pieces are merged greedily up to ``chunk_size``.
    Each new span re-uses trailing pieces of the previous one, up to
    ``overlap`` characters.
    """

    def __init__(
        self,
        chunk_size: int | None = None,
        overlap: int | None = None,
        separators: Iterable[str] = DEFAULT_SEPARATORS,
        min_page_length: int | None = None,
    ) -> None:
        """Initialize the TextChunker with chunk size and overlap.

        Args:
            chunk_size: Maximum number of characters per span.
            overlap: Maximum number of characters shared by consecutive spans.
            separators: Split points in priority order; ``""`` means characters.
            min_page_length: Pages with this many characters or fewer are
                skipped by :meth:`chunk_pages`.

        Raises:
            ValidationError: If the size/overlap combination is invalid.
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.overlap = config.CHUNK_OVERLAP if overlap is None else overlap
        self.min_page_length = (
            config.MIN_PAGE_TEXT_LENGTH if min_page_length is None else min_page_length
        )
        self.separators = tuple(separators)
        if "" not in self.separators:
            self.separators = (*self.separators, "")

        if self.chunk_size <= 0:
            msg = f"chunk_size must be positive, got {self.chunk_size}"
            raise ValidationError(msg)
        if not 0 <= self.overlap < self.chunk_size:
            msg = (
                f"overlap must be in [0, chunk_size), got {self.overlap} "
                f"for chunk_size {self.chunk_size}"
            )
            raise ValidationError(msg)

    def chunk_text(self, text: str) -> list[TextSpan]:
        """Split text into overlapping spans.

        Returns:
            Spans in left-to-right order, each satisfying
            ``text[span.start_char:span.end_char] == span.text``.
        """
        spans = [
            TextSpan(text=text[start:end], index=i, start_char=start, end_char=end)
            for i, (start, end) in enumerate(self._span_ranges(text))
        ]
        logger.debug("Text split into %d chunks", len(spans))
        return spans

    def chunk_pages(self, pages: Iterable[tuple[int, str]]) -> list[TextSpan]:
        """Chunk per-page text, numbering spans contiguously across pages.

        Pages whose trimmed text is ``min_page_length`` characters or shorter
        are skipped. Offsets are relative to each page.

        Returns:
            Spans carrying their page number.
        """
        spans: list[TextSpan] = []
        for page_number, page_text in pages:
            if len(page_text.strip()) <= self.min_page_length:
                logger.debug("Skipping page %s with minimal text", page_number)
                continue
            for start, end in self._span_ranges(page_text):
                spans.append(
                    TextSpan(
                        text=page_text[start:end],
                        index=len(spans),
                        start_char=start,
                        end_char=end,
                        page_number=page_number,
                    )
                )

        logger.debug("Pages split into %d chunks", len(spans))
        return spans

    def _span_ranges(self, text: str) -> list[tuple[int, int]]:
        if not text.strip():
            return []

        pieces = self._split_ranges(text, 0, len(text), self.separators)
        merged = self._merge_ranges(pieces)

        ranges = []
        for start, end in merged:
            # Trim surrounding whitespace so spans never start or end blank
            while start < end and text[start].isspace():
                start += 1
            while end > start and text[end - 1].isspace():
                end -= 1
            if start < end and (not ranges or ranges[-1] != (start, end)):
                ranges.append((start, end))
        return ranges

    def _split_ranges(
        self,
        text: str,
        start: int,
        end: int,
        separators: tuple[str, ...],
    ) -> list[tuple[int, int]]:
        """Recursively cut ``text[start:end]`` into pieces no longer than chunk_size.

        Separators stay attached to the piece they terminate, so the pieces
        tile the input exactly.

        Returns:
            Contiguous (start, end) ranges covering ``[start, end)``.
        """
        if end - start <= self.chunk_size:
            return [(start, end)]

        level = next(
            i
            for i, separator in enumerate(separators)
            if separator == "" or text.find(separator, start, end) != -1
        )
        separator = separators[level]
        remaining = separators[level + 1 :]

        if separator == "":
            return [
                (offset, min(offset + self.chunk_size, end))
                for offset in range(start, end, self.chunk_size)
            ]

        pieces: list[tuple[int, int]] = []
        piece_start = start
        while (found := text.find(separator, piece_start, end)) != -1:
            piece_end = found + len(separator)
            pieces.append((piece_start, piece_end))
            piece_start = piece_end
        if piece_start < end:
            pieces.append((piece_start, end))

        result: list[tuple[int, int]] = []
        for piece_start, piece_end in pieces:
            if piece_end - piece_start > self.chunk_size:
                result.extend(
                    self._split_ranges(text, piece_start, piece_end, remaining)
                )
            else:
                result.append((piece_start, piece_end))
        return result

    def _merge_ranges(self, pieces: list[tuple[int, int]]) -> list[tuple[int, int]]:
        merged: list[tuple[int, int]] = []
        window: deque[tuple[int, int]] = deque()

        for piece_start, piece_end in pieces:
            if window and piece_end - window[0][0] > self.chunk_size:
                merged.append((window[0][0], window[-1][1]))
                # Keep trailing pieces as overlap while the next piece still fits
                while window and (
                    window[-1][1] - window[0][0] > self.overlap
                    or piece_end - window[0][0] > self.chunk_size
                ):
                    window.popleft()
            window.append((piece_start, piece_end))

        if window:
            merged.append((window[0][0], window[-1][1]))
        return merged

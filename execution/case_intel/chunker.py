"""
Overlapping Window Chunker

Splits extracted document text into overlapping windows sized for the
embedding model, and attributes each window to a page when the text
carries page markers.

Strategy:
- Paragraphs (blank-line separated) are the preferred unit
- Paragraphs over the token limit are split on sentence boundaries
- Sentences over the limit are split into word groups
- Units are packed greedily; each window starts with the tail of the
  previous one (up to overlap_tokens) so content at the edges is not lost

Every chunk is an exact slice of the input, so start_char/end_char can be
used for page attribution. Same text in, same boundaries out.
"""

import math
import re
import bisect
import logging
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TOKENS_PER_WORD = 1.3

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"\S+")

# Page marker formats produced by common extractors
PAGE_PATTERNS = [
    re.compile(r"Page\s+(\d+)", re.IGNORECASE),
    re.compile(r"- (\d+) -"),
    re.compile(r"\[Page (\d+)\]", re.IGNORECASE),
    re.compile(r"^(\d+)$", re.MULTILINE),
]
MAX_PAGE_NUMBER = 10000


@dataclass
class TextChunk:
    """A window of document text with its position."""
    chunk_index: int
    content: str
    start_char: int
    end_char: int
    token_count: int
    page_number: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "content": self.content,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "token_count": self.token_count,
            "page_number": self.page_number,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters."""
    max_tokens: int = 500
    overlap_tokens: int = 50
    # Trailing windows shorter than this are folded into the previous one
    min_chunk_chars: int = 100


@dataclass
class _Unit:
    start: int
    end: int
    words: int


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1.3 tokens per whitespace-separated word."""
    return _tokens_for_words(len(text.split()))


def _tokens_for_words(words: int) -> int:
    return math.ceil(words * TOKENS_PER_WORD)


class DocumentChunker:
    """Deterministic overlapping-window chunker."""

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()
        if self.config.overlap_tokens >= self.config.max_tokens:
            raise ValueError("overlap_tokens must be smaller than max_tokens")

    def chunk(self, text: str) -> list[str]:
        """Split text into ordered, overlapping chunk strings."""
        return [c.content for c in self.split(text)]

    def split(self, text: str) -> list[TextChunk]:
        """Split text into TextChunk windows with character offsets."""
        units = self._units(text)
        if not units:
            return []

        windows = self._pack(units)
        windows = self._fold_short_tail(windows)

        chunks = []
        for index, (start, end) in enumerate(windows):
            content = text[start:end]
            chunks.append(TextChunk(
                chunk_index=index,
                content=content,
                start_char=start,
                end_char=end,
                token_count=estimate_tokens(content),
            ))

        logger.debug(f"Split {len(text)} chars into {len(chunks)} chunks")
        return chunks

    # -------------------------------------------------------------------------
    # Unit construction
    # -------------------------------------------------------------------------

    def _units(self, text: str) -> list[_Unit]:
        units = []
        for p_start, p_end in _spans(text, _PARAGRAPH_BREAK, 0, len(text)):
            words = _count_words(text, p_start, p_end)
            if _tokens_for_words(words) <= self.config.max_tokens:
                units.append(_Unit(p_start, p_end, words))
                continue

            for s_start, s_end in _spans(text, _SENTENCE_BREAK, p_start, p_end):
                s_words = _count_words(text, s_start, s_end)
                if _tokens_for_words(s_words) <= self.config.max_tokens:
                    units.append(_Unit(s_start, s_end, s_words))
                else:
                    units.extend(self._word_groups(text, s_start, s_end))
        return units

    def _word_groups(self, text: str, start: int, end: int) -> list[_Unit]:
        """Split an over-long sentence into groups of words that fit a window."""
        max_words = max(1, int(self.config.max_tokens / TOKENS_PER_WORD))
        words = [m.span() for m in _WORD.finditer(text, start, end)]
        groups = []
        for i in range(0, len(words), max_words):
            group = words[i:i + max_words]
            groups.append(_Unit(group[0][0], group[-1][1], len(group)))
        return groups

    # -------------------------------------------------------------------------
    # Packing
    # -------------------------------------------------------------------------

    def _pack(self, units: list[_Unit]) -> list[tuple[int, int]]:
        max_tokens = self.config.max_tokens
        windows = []
        current: list[_Unit] = []
        current_words = 0

        for unit in units:
            if current and _tokens_for_words(current_words + unit.words) > max_tokens:
                windows.append((current[0].start, current[-1].end))
                current = self._overlap(current)
                current_words = sum(u.words for u in current)
                # Drop overlap from the front until the new unit fits
                while current and _tokens_for_words(current_words + unit.words) > max_tokens:
                    current_words -= current.pop(0).words

            current.append(unit)
            current_words += unit.words

        if current:
            windows.append((current[0].start, current[-1].end))
        return windows

    def _overlap(self, window: list[_Unit]) -> list[_Unit]:
        """Trailing units of a window that fit in overlap_tokens."""
        overlap = []
        words = 0
        for unit in reversed(window):
            if _tokens_for_words(words + unit.words) > self.config.overlap_tokens:
                break
            overlap.insert(0, unit)
            words += unit.words
        return overlap

    def _fold_short_tail(self, windows: list[tuple[int, int]]) -> list[tuple[int, int]]:
        if len(windows) < 2:
            return windows
        last_start, last_end = windows[-1]
        if last_end - last_start >= self.config.min_chunk_chars:
            return windows
        prev_start, prev_end = windows[-2]
        return windows[:-2] + [(prev_start, max(prev_end, last_end))]


def _spans(text: str, separator: re.Pattern, start: int, end: int) -> list[tuple[int, int]]:
    """Non-empty spans between separator matches, trimmed of surrounding whitespace."""
    spans = []
    cursor = start
    for match in separator.finditer(text, start, end):
        spans.append((cursor, match.start()))
        cursor = match.end()
    spans.append((cursor, end))

    trimmed = []
    for s, e in spans:
        while s < e and text[s].isspace():
            s += 1
        while e > s and text[e - 1].isspace():
            e -= 1
        if s < e:
            trimmed.append((s, e))
    return trimmed


def _count_words(text: str, start: int, end: int) -> int:
    return sum(1 for _ in _WORD.finditer(text, start, end))


# =============================================================================
# Page attribution
# =============================================================================

def extract_page_markers(text: str) -> dict[int, int]:
    """
    Find page markers in extracted text.

    Returns:
        Mapping of character offset -> page number. Empty if the text has
        no recognizable markers.
    """
    markers = {}
    for pattern in PAGE_PATTERNS:
        for match in pattern.finditer(text):
            page = int(match.group(1))
            if 0 < page < MAX_PAGE_NUMBER:
                markers[match.start()] = page
    return markers


def apply_page_numbers(chunks: list[TextChunk], markers: dict[int, int]) -> list[TextChunk]:
    """
    Set page_number on each chunk (in place).

    A chunk takes the page of the last marker at or before its start; a
    chunk that starts before any marker takes the first marker inside it.
    With no markers every chunk keeps page_number=None.
    """
    if not markers:
        return chunks

    offsets = sorted(markers)
    for chunk in chunks:
        idx = bisect.bisect_right(offsets, chunk.start_char) - 1
        if idx >= 0:
            chunk.page_number = markers[offsets[idx]]
            continue
        inside = bisect.bisect_left(offsets, chunk.start_char)
        if inside < len(offsets) and offsets[inside] < chunk.end_char:
            chunk.page_number = markers[offsets[inside]]
    return chunks

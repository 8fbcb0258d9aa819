"""
Heading-aware document chunker: structure → split → fall back → filter.

Strategy:
1. Structure: scan lines for heading-like markers (Item N, chapter/unit
   labels, numbered sections, roman numerals, markdown, ALL-CAPS lines).
   A new chunk starts at a heading once the current one holds real content;
   headings that follow each other directly are joined into a path
   ("ITEM 231 > 1. Définition").
2. Split: sections longer than the fixed-size budget are cut into slices
   that keep the section heading.
3. Fall back: if fewer than MIN_HEADING_SECTIONS sections are found, heading
   detection failed and the whole text is cut into equal fixed-size slices.
4. Filter: chunks shorter than MIN_CHUNK_CHARS are dropped; if fewer than
   MIN_FILTERED_CHUNKS survive, the fixed-size fallback runs on the full text.

Never returns an empty list: a document with no usable text raises
EmptyDocumentError instead.
"""

import logging
import math
import os
import re
from bisect import bisect_left
from dataclasses import dataclass
from typing import List, Optional, Tuple

from generation.errors import EmptyDocumentError
from parsing.pdf_text import PAGE_SEPARATOR
from parsing.schemas import Chunk

log = logging.getLogger(__name__)

# Fixed-size budget: ~1500 tokens at ~4 chars per token.
MAX_TOKENS_PER_CHUNK = int(os.getenv("MAX_TOKENS_PER_CHUNK", "1500"))
AVG_CHARS_PER_TOKEN = 4
MIN_CHUNK_CHARS = int(os.getenv("MIN_CHUNK_CHARS", "50"))
MIN_HEADING_SECTIONS = 3
MIN_FILTERED_CHUNKS = 2
# Non-heading characters a section needs before the next heading may close it
NONTRIVIAL_CONTENT_CHARS = 20
MAX_HEADING_CHARS = 120
# How far past a cut point to look for whitespace so words are not split
BOUNDARY_WINDOW = 200
INTRO_HEADING = "Introduction"

# Ordered by priority; the first match labels the line.
HEADING_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("item", re.compile(r"^item\s+\d{1,4}\b", re.I)),
    ("chapter", re.compile(
        r"^(chapitre|chapter|partie|part|section|unit[ée]?|module|le[çc]on|lesson)\s+([IVXLCDM]+|\d+)\b",
        re.I,
    )),
    ("numbered", re.compile(r"^\d{1,2}(\.\d{1,2}){0,3}[.)]?\s+[A-ZÀ-ÖØ-Þ]")),
    ("roman", re.compile(r"^[IVXLC]{1,6}[.)\-]\s+\S")),
    ("lettered", re.compile(r"^[A-H][.)]\s+[A-ZÀ-ÖØ-Þ]")),
    ("markdown", re.compile(r"^#{1,6}\s+\S")),
]
SENTENCE_END = re.compile(r"[.;,:!?]$")


@dataclass
class _Section:
    """A [start, end) span of the source text under one heading (internal)."""
    heading: str
    start: int
    end: int


# ─── Heading detection ─────────────────────────────────────────────────────────

def _is_all_caps_heading(line: str) -> bool:
    letters = [c for c in line if c.isalpha()]
    if len(letters) < 4 or len(line) > 80 or len(line.split()) > 12:
        return False
    if any(c.islower() for c in letters):
        return False
    visible = [c for c in line if not c.isspace()]
    return len(letters) / len(visible) >= 0.6


def heading_kind(line: str) -> Optional[str]:
    """
    Classify a stripped line as a heading.

    Returns the name of the matching rule ("item", "numbered", "caps", ...)
    or None for body text. Sentences (trailing punctuation) and long lines
    are never headings.
    """
    if not line or len(line) > MAX_HEADING_CHARS:
        return None
    if SENTENCE_END.search(line) and not line.endswith(":"):
        return None
    for kind, pattern in HEADING_PATTERNS:
        if pattern.match(line):
            return kind
    if _is_all_caps_heading(line):
        return "caps"
    return None


# ─── Page mapping ──────────────────────────────────────────────────────────────

class _PageLocator:
    """
    Maps a character offset to a 1-based page number.

    Uses the form feeds written by extract_pdf_text when present; otherwise
    spreads page_count evenly across the text.
    """

    def __init__(self, text: str, page_count: int):
        self._length = max(1, len(text))
        self._breaks = [i for i, ch in enumerate(text) if ch == PAGE_SEPARATOR]
        self._page_count = max(page_count, len(self._breaks) + 1, 1)

    def page_at(self, offset: int) -> int:
        if self._breaks:
            return min(self._page_count, bisect_left(self._breaks, offset) + 1)
        page = offset * self._page_count // self._length + 1
        return max(1, min(self._page_count, page))

    def span(self, start: int, end: int) -> Tuple[int, int]:
        first = self.page_at(start)
        last = self.page_at(max(start, end - 1))
        return first, last


def _page_label(start_page: int, end_page: int) -> str:
    if start_page == end_page:
        return str(start_page)
    return f"{start_page}-{end_page}"


# ─── Chunker ───────────────────────────────────────────────────────────────────

class DocumentChunker:
    """
    Splits extracted document text into labelled chunks.

    Args:
        max_tokens_per_chunk: Size budget for fixed-size slices.
        min_chunk_chars: Chunks whose trimmed content is shorter are dropped.
        avg_chars_per_token: Conversion used for the size budget.
    """

    def __init__(
        self,
        max_tokens_per_chunk: int = MAX_TOKENS_PER_CHUNK,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
        avg_chars_per_token: int = AVG_CHARS_PER_TOKEN,
    ) -> None:
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.min_chunk_chars = min_chunk_chars
        self.avg_chars_per_token = avg_chars_per_token

    @property
    def max_chunk_chars(self) -> int:
        return max(1, self.max_tokens_per_chunk * self.avg_chars_per_token)

    def chunk(self, text: str, page_count: int = 1) -> List[Chunk]:
        """
        Split a document into an ordered, non-empty list of chunks.

        Args:
            text: Extracted document text (pages separated by form feeds).
            page_count: Page count of the source, used for page labels.

        Returns:
            Chunks with sequential ids chunk_1..chunk_N.

        Raises:
            EmptyDocumentError: If the text holds less than min_chunk_chars
                of visible content.
        """
        visible = text.replace(PAGE_SEPARATOR, " ").strip() if text else ""
        if len(visible) < self.min_chunk_chars:
            raise EmptyDocumentError(
                f"Document has too little text to chunk ({len(visible)} chars)"
            )

        sections = self._scan_sections(text)
        if len(sections) >= MIN_HEADING_SECTIONS:
            chunks = self._build_chunks(text, self._split_oversized(text, sections), page_count)
            kept = [c for c in chunks if len(c.content.strip()) >= self.min_chunk_chars]
            if len(kept) >= MIN_FILTERED_CHUNKS:
                log.info(f"[CHUNK] heading pass: {len(kept)}/{len(chunks)} chunks kept")
                return _renumber(kept)
            log.info(f"[CHUNK] only {len(kept)} chunks survived filtering, using fixed-size slices")
        else:
            log.info(f"[CHUNK] heading pass found {len(sections)} sections, using fixed-size slices")

        slices = self.fixed_size_chunks(text, page_count)
        kept = [c for c in slices if len(c.content.strip()) >= self.min_chunk_chars]
        if not kept:
            # Whole text is above the minimum but every slice fell below it
            kept = [c for c in slices if c.content.strip()]
        if not kept:
            raise EmptyDocumentError("Chunking produced no usable chunk")
        return _renumber(kept)

    def split_by_headings(self, text: str, page_count: int = 1) -> List[Chunk]:
        """
        Heading-based pass only: no filtering, no fallback.

        Concatenating the returned contents gives back the text modulo
        whitespace at chunk edges.
        """
        sections = self._split_oversized(text, self._scan_sections(text))
        return self._build_chunks(text, sections, page_count)

    def _scan_sections(self, text: str) -> List[_Section]:
        sections: List[_Section] = []
        heading: Optional[str] = None
        section_start = 0
        content_chars = 0
        offset = 0

        for line in text.splitlines(keepends=True):
            stripped = line.strip()
            if stripped and heading_kind(stripped):
                if content_chars >= NONTRIVIAL_CONTENT_CHARS:
                    sections.append(_Section(heading or INTRO_HEADING, section_start, offset))
                    heading = stripped
                    section_start = offset
                    content_chars = 0
                elif heading is None:
                    heading = stripped
                else:
                    heading = f"{heading} > {stripped}"[:2 * MAX_HEADING_CHARS]
            elif stripped:
                content_chars += len(stripped)
            offset += len(line)

        if offset > section_start or not sections:
            sections.append(_Section(heading or INTRO_HEADING, section_start, len(text)))
        return sections

    def _build_chunks(self, text: str, sections: List[_Section], page_count: int) -> List[Chunk]:
        locator = _PageLocator(text, page_count)
        chunks = []
        for section in sections:
            start_page, end_page = locator.span(section.start, section.end)
            chunks.append(Chunk(
                id=f"chunk_{len(chunks) + 1}",
                heading=section.heading[:2 * MAX_HEADING_CHARS],
                content=text[section.start:section.end].strip(),
                page_range=_page_label(start_page, end_page),
                start_page=start_page,
                end_page=end_page,
            ))
        return chunks

    def fixed_size_chunks(self, text: str, page_count: int = 1) -> List[Chunk]:
        """
        Fixed-size pass: ceil(len / max_chunk_chars) slices of roughly equal size.

        Slices are exact (untrimmed), so their contents concatenate back to
        the original text.
        """
        locator = _PageLocator(text, page_count)
        bounds = _slice_bounds(text, 0, len(text), self.max_chunk_chars)
        chunks = []
        for i, (start, end) in enumerate(bounds, start=1):
            start_page, end_page = locator.span(start, end)
            label = _page_label(start_page, end_page)
            chunks.append(Chunk(
                id=f"chunk_{i}",
                heading=f"Part {i} (p. {label})",
                content=text[start:end],
                page_range=label,
                start_page=start_page,
                end_page=end_page,
            ))
        return chunks

    def _split_oversized(self, text: str, sections: List[_Section]) -> List[_Section]:
        result: List[_Section] = []
        for section in sections:
            if section.end - section.start <= self.max_chunk_chars:
                result.append(section)
                continue
            bounds = _slice_bounds(text, section.start, section.end, self.max_chunk_chars)
            for i, (start, end) in enumerate(bounds, start=1):
                result.append(_Section(f"{section.heading} ({i}/{len(bounds)})", start, end))
        return result


# ─── Helpers ───────────────────────────────────────────────────────────────────

def _slice_bounds(text: str, start: int, end: int, max_chars: int) -> List[Tuple[int, int]]:
    """
    Cut text[start:end] into equal slices no longer than ~max_chars.

    Each cut is moved forward to the next whitespace (within BOUNDARY_WINDOW)
    so words stay whole. Bounds are contiguous and cover the whole span.
    """
    length = end - start
    if length <= 0:
        return []
    count = max(1, math.ceil(length / max_chars))
    size = math.ceil(length / count)

    bounds: List[Tuple[int, int]] = []
    pos = start
    for _ in range(count - 1):
        target = pos + size
        if target >= end:
            break
        cut = _next_whitespace(text, target, min(end, target + BOUNDARY_WINDOW))
        bounds.append((pos, cut))
        pos = cut
    if pos < end:
        bounds.append((pos, end))
    return bounds


def _next_whitespace(text: str, target: int, limit: int) -> int:
    for i in range(target, limit):
        if text[i].isspace():
            return i + 1
    return target


def _renumber(chunks: List[Chunk]) -> List[Chunk]:
    return [c.model_copy(update={"id": f"chunk_{i}"}) for i, c in enumerate(chunks, start=1)]

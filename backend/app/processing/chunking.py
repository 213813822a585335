"""
Adaptive Chunker  —  Token-Bounded Text Segmentation
═════════════════════════════════════════════════════

Turns extracted document text into an ordered list of overlapping chunks,
each targeting a token budget, while keeping semantic boundaries where the
text offers them.

Strategy dispatch (chunk_text_smart)
────────────────────────────────────
  1. Markdown headers present   → one chunk per section; sections larger
                                   than the budget are re-split recursively
                                   and every piece keeps the section title.
  2. Blank-line paragraphs      → greedy paragraph aggregation up to the
                                   budget.
  3. Anything else              → recursive splitting.

Recursive splitting
───────────────────
  Separators are tried coarse → fine:

      "\\n\\n"  "\\n"  ". "  "! "  "? "  "; "  ", "  " "

  The first separator present in the text splits it; pieces are
  accumulated greedily. On overflow the running chunk is flushed and the
  next one is seeded with the flushed chunk's trailing words (overlap).
  A piece that alone exceeds the budget recurses with the finer
  separators; when none are left a fixed character window slides over it.

  Separators stay attached to the piece they terminate, so concatenating
  the pieces reproduces the input exactly. Nothing but whitespace is ever
  dropped at a chunk boundary.

Token estimation
────────────────
  estimate_token_count() is ceil(chars / 4). It is a heuristic, NOT an
  exact tokenizer count, and is used uniformly for every sizing decision.
  Callers relying on it for billing must treat it as an approximation.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace

from app.schemas.documents import ChunkingStrategy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE = 1000   # target tokens per chunk
DEFAULT_OVERLAP    = 200    # tokens repeated between neighbouring chunks
MIN_CHUNK_SIZE     = 100
MAX_CHUNK_SIZE     = 2000
MAX_OVERLAP_RATIO  = 0.25   # overlap never exceeds a quarter of the chunk

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 0.75      # tokens → words conversion for the overlap seed

SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ")

# Markdown heading: 1-6 '#' at line start, whitespace, then a title
_HEADER_RE = re.compile(r"^(#{1,6})[ \t]+(\S.*)$", re.MULTILINE)

# Blank line (optionally containing spaces/tabs) between paragraphs
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class TextChunk:
    """A single chunk ready for embedding."""
    content:     str            # trimmed, never empty
    index:       int            # 0-based, contiguous in production order
    token_count: int            # estimate_token_count(content)
    page_number: int | None = None
    section:     str | None = None


# ---------------------------------------------------------------------------
# Sizing helpers
# ---------------------------------------------------------------------------

def estimate_token_count(text: str) -> int:
    """Approximate token count: ceil(characters / 4). Not tokenizer-exact."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def normalize_chunk_params(
    chunk_size: int | None = None,
    overlap:    int | None = None,
) -> tuple[int, int]:
    """
    Apply defaults and clamp to safe bounds.

    chunk_size → [MIN_CHUNK_SIZE, MAX_CHUNK_SIZE]
    overlap    → [0, chunk_size * MAX_OVERLAP_RATIO]

    Clamping the overlap is what guarantees every window advances, so an
    overlap >= chunk_size can never stall the splitter.
    """
    size = DEFAULT_CHUNK_SIZE if chunk_size is None else int(chunk_size)
    size = max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, size))

    ovl = DEFAULT_OVERLAP if overlap is None else int(overlap)
    max_overlap = int(size * MAX_OVERLAP_RATIO)
    ovl = max(0, min(ovl, max_overlap))
    return size, ovl


def detect_strategy(text: str) -> ChunkingStrategy:
    """Inspect the text structure and pick the chunking strategy."""
    if _HEADER_RE.search(text):
        return ChunkingStrategy.SECTIONS
    if _PARAGRAPH_BREAK_RE.search(text):
        return ChunkingStrategy.PARAGRAPHS
    return ChunkingStrategy.RECURSIVE


# ---------------------------------------------------------------------------
# Strategy: recursive splitting
# ---------------------------------------------------------------------------

def chunk_text_recursive(
    text:       str,
    chunk_size: int | None = DEFAULT_CHUNK_SIZE,
    overlap:    int | None = DEFAULT_OVERLAP,
) -> list[TextChunk]:
    """
    Split text with the coarse-to-fine separator cascade.

    Deterministic: the same input and parameters always give the same list.
    """
    if not text or not text.strip():
        return []

    size, ovl = normalize_chunk_params(chunk_size, overlap)
    pieces = _recursive_split(text, size, ovl, SEPARATORS)
    return _build_chunks(pieces)


def _recursive_split(
    text:       str,
    size:       int,
    overlap:    int,
    separators: tuple[str, ...],
) -> list[str]:
    if estimate_token_count(text) <= size:
        return [text]

    for position, separator in enumerate(separators):
        if separator not in text:
            continue

        finer = separators[position + 1:]
        chunks: list[str] = []
        current = ""

        for piece in _split_keep_separator(text, separator):
            candidate = current + piece
            if estimate_token_count(candidate) <= size:
                current = candidate
                continue

            if current:
                chunks.append(current)
                current = ""

            if estimate_token_count(piece) > size:
                chunks.extend(_split_oversized(piece, size, overlap, finer))
                continue

            seeded = _overlap_text(chunks[-1], overlap) + piece if chunks else piece
            # Drop the seed when it would push the new chunk over budget
            current = seeded if estimate_token_count(seeded) <= size else piece

        if current:
            chunks.append(current)
        return chunks

    return _force_split(text, size, overlap)


def _split_oversized(
    piece:      str,
    size:       int,
    overlap:    int,
    finer:      tuple[str, ...],
) -> list[str]:
    if finer:
        return _recursive_split(piece, size, overlap, finer)
    return _force_split(piece, size, overlap)


def _split_keep_separator(text: str, separator: str) -> list[str]:
    """Split on separator, leaving it attached to the preceding piece."""
    parts = text.split(separator)
    pieces = [part + separator for part in parts[:-1]]
    pieces.append(parts[-1])
    return [p for p in pieces if p]


def _overlap_text(chunk: str, overlap_tokens: int) -> str:
    """Trailing ~overlap_tokens of a flushed chunk, measured in words."""
    if overlap_tokens <= 0:
        return ""
    words = chunk.split(" ")
    overlap_words = math.ceil(overlap_tokens / TOKENS_PER_WORD)
    if len(words) <= overlap_words:
        return chunk
    return " ".join(words[-overlap_words:])


def _force_split(text: str, size: int, overlap: int) -> list[str]:
    """Fixed character window used when no separator is left."""
    window = size * CHARS_PER_TOKEN
    step = window - overlap * CHARS_PER_TOKEN

    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + window, len(text))
        chunks.append(text[start:end])
        if end >= len(text):
            break
        start += step
    return chunks


# ---------------------------------------------------------------------------
# Strategy: markdown sections
# ---------------------------------------------------------------------------

def chunk_text_by_sections(text: str) -> list[TextChunk]:
    """
    One chunk per markdown section, tagged with its heading title.

    Text before the first heading becomes an untitled section. No size
    enforcement here — chunk_text_smart re-splits oversized sections.
    """
    chunks: list[TextChunk] = []
    for content, title in _split_sections(text):
        chunks.append(TextChunk(
            content=content,
            index=len(chunks),
            token_count=estimate_token_count(content),
            section=title,
        ))
    return chunks


def _split_sections(text: str) -> list[tuple[str, str | None]]:
    headers = list(_HEADER_RE.finditer(text))
    if not headers:
        stripped = text.strip()
        return [(stripped, None)] if stripped else []

    sections: list[tuple[str, str | None]] = []
    preamble = text[:headers[0].start()].strip()
    if preamble:
        sections.append((preamble, None))

    for i, match in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        block = text[match.start():end].strip()
        if block:
            sections.append((block, match.group(2).strip()))
    return sections


# ---------------------------------------------------------------------------
# Strategy: paragraph aggregation
# ---------------------------------------------------------------------------

def chunk_text_by_paragraphs(
    text:              str,
    max_tokens:        int | None = DEFAULT_CHUNK_SIZE,
    overlap:           int | None = DEFAULT_OVERLAP,
) -> list[TextChunk]:
    """
    Greedily join blank-line separated paragraphs up to max_tokens.

    A single paragraph that is larger than the budget on its own is handed
    to the recursive splitter instead of being emitted oversized.
    """
    size, ovl = normalize_chunk_params(max_tokens, overlap)
    pieces: list[str] = []
    current = ""

    for paragraph in _PARAGRAPH_BREAK_RE.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if estimate_token_count(candidate) <= size:
            current = candidate
            continue

        if current:
            pieces.append(current)
            current = ""

        if estimate_token_count(paragraph) > size:
            pieces.extend(c.content for c in chunk_text_recursive(paragraph, size, ovl))
        else:
            current = paragraph

    if current:
        pieces.append(current)
    return _build_chunks(pieces)


# ---------------------------------------------------------------------------
# Smart dispatch
# ---------------------------------------------------------------------------

def chunk_text_smart(
    text:       str,
    chunk_size: int | None = None,
    overlap:    int | None = None,
) -> list[TextChunk]:
    """Pick a strategy from the text structure and chunk accordingly."""
    if not text or not text.strip():
        return []

    size, ovl = normalize_chunk_params(chunk_size, overlap)
    strategy = detect_strategy(text)

    if strategy is ChunkingStrategy.SECTIONS:
        chunks: list[TextChunk] = []
        for section in chunk_text_by_sections(text):
            if section.token_count > size:
                chunks.extend(
                    replace(sub, section=section.section)
                    for sub in chunk_text_recursive(section.content, size, ovl)
                )
            else:
                chunks.append(section)
        result = _reindex(chunks)
    elif strategy is ChunkingStrategy.PARAGRAPHS:
        result = chunk_text_by_paragraphs(text, size, ovl)
    else:
        result = chunk_text_recursive(text, size, ovl)

    logger.debug(
        "Chunker | strategy=%s size=%d overlap=%d chunks=%d",
        strategy.value, size, ovl, len(result),
    )
    return result


# ---------------------------------------------------------------------------
# Page attribution
# ---------------------------------------------------------------------------

def build_page_map(pages_text: list[tuple[int, str]], separator: str = "\n\n") -> dict[int, int]:
    """
    Build a char_offset → page_number map from (page_num, text) tuples
    joined with `separator`.

    Example:
        build_page_map([(1, "intro text"), (2, "body text")])
        → {0: 1, 12: 2}
    """
    page_map: dict[int, int] = {}
    offset = 0
    for page_num, text in pages_text:
        page_map[offset] = page_num
        offset += len(text) + len(separator)
    return page_map


def assign_page_numbers(
    chunks:   list[TextChunk],
    text:     str,
    page_map: dict[int, int] | None,
) -> list[TextChunk]:
    """
    Tag each chunk with the page its content starts on.

    Chunks are located by their first 40 characters, searching forward from
    the previous chunk's position so repeated phrases resolve in order.
    """
    if not page_map:
        return chunks

    offsets = sorted(page_map.items())
    cursor = 0
    for chunk in chunks:
        found = text.find(chunk.content[:40], cursor)
        if found == -1:
            found = cursor
        cursor = found
        chunk.page_number = _lookup_page(found, offsets)
    return chunks


def _lookup_page(char_offset: int, offsets: list[tuple[int, int]]) -> int:
    page = offsets[0][1]
    for offset_start, page_num in offsets:
        if char_offset >= offset_start:
            page = page_num
        else:
            break
    return page


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_chunks(pieces: list[str]) -> list[TextChunk]:
    chunks: list[TextChunk] = []
    for piece in pieces:
        content = piece.strip()
        if not content:
            continue
        chunks.append(TextChunk(
            content=content,
            index=len(chunks),
            token_count=estimate_token_count(content),
        ))
    return chunks


def _reindex(chunks: list[TextChunk]) -> list[TextChunk]:
    return [replace(chunk, index=i) for i, chunk in enumerate(chunks)]

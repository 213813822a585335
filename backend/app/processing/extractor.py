"""
Text Extraction Registry
════════════════════════

Maps a document's declared file type to the extractor that can read it.

  txt, md   → PlainTextExtractor   (UTF-8, latin-1 fallback)
  json      → JSONExtractor        (pretty-printed, indent=2)
  csv       → CSVExtractor         ("col: value, col: value" per row,
                                    naive line join if parsing fails)
  pdf       → PDFExtractor         (pypdf, page-aware)
  docx      → DOCXExtractor        (python-docx paragraphs)

Extractors are resolved at call time and the format libraries (pypdf,
python-docx) are imported inside the extractor that needs them, so the
pipeline has no hard import-time dependency on every parser.

Every failure — unsupported type, unreadable file, parser error, empty
result — surfaces as a single ExtractionError. Workers and the processor
only ever see ExtractionResult or ExtractionError.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from app.core.exceptions import ExtractionError
from app.processing.chunking import build_page_map
from app.schemas.documents import FileType

logger = logging.getLogger(__name__)

# Common English function words used by detect_language()
_ENGLISH_STOPWORDS = frozenset(
    {"the", "is", "and", "to", "of", "a", "in", "that", "it", "with"}
)
_ENGLISH_THRESHOLD = 0.05

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text        : full extracted text, trimmed
    word_count  : whitespace-delimited word count
    page_count  : number of pages (paged formats only)
    language    : ISO-ish language tag if the extractor knows it
    page_map    : char_offset → page_number, for chunk page attribution
    """
    text:       str
    word_count: int
    page_count: int | None = None
    language:   str | None = None
    page_map:   dict[int, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Text statistics helpers
# ---------------------------------------------------------------------------

def count_words(text: str) -> int:
    return len([w for w in _WHITESPACE_RE.split(text) if w])


def detect_language(text: str) -> str:
    """
    Very small heuristic: "en" when more than 5% of the words are common
    English stopwords, otherwise "unknown".
    """
    words = [w for w in _WHITESPACE_RE.split(text.lower()) if w]
    if not words:
        return "unknown"
    hits = sum(1 for w in words if w in _ENGLISH_STOPWORDS)
    return "en" if hits / len(words) > _ENGLISH_THRESHOLD else "unknown"


def _read_text(path: Path) -> str:
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Extractor interface + variants
# ---------------------------------------------------------------------------

class TextExtractor(ABC):
    """One file format → ExtractionResult."""

    file_types: tuple[FileType, ...] = ()

    @abstractmethod
    def extract(self, path: Path) -> ExtractionResult:
        """Read the file at `path`. May raise any exception; the registry wraps it."""


class PlainTextExtractor(TextExtractor):
    file_types = (FileType.TXT, FileType.MD)

    def extract(self, path: Path) -> ExtractionResult:
        text = _read_text(path).strip()
        return ExtractionResult(text=text, word_count=count_words(text))


class JSONExtractor(TextExtractor):
    file_types = (FileType.JSON,)

    def extract(self, path: Path) -> ExtractionResult:
        data = json.loads(_read_text(path))
        text = json.dumps(data, indent=2, ensure_ascii=False)
        return ExtractionResult(text=text, word_count=count_words(text))


class CSVExtractor(TextExtractor):
    """
    Flatten each row to "header: value, header: value".

    Falls back to joining the non-empty raw lines when the file cannot be
    parsed as CSV (ragged quoting, binary junk, missing header).
    """

    file_types = (FileType.CSV,)

    def extract(self, path: Path) -> ExtractionResult:
        content = _read_text(path)
        try:
            text = self._flatten_rows(content)
        except (csv.Error, ValueError) as exc:
            logger.warning("CSV parse failed, using line fallback | path=%s error=%s", path, exc)
            text = "\n".join(line for line in content.splitlines() if line.strip())
        return ExtractionResult(text=text, word_count=count_words(text))

    @staticmethod
    def _flatten_rows(content: str) -> str:
        reader = csv.DictReader(io.StringIO(content), strict=True)
        if not reader.fieldnames:
            raise ValueError("CSV has no header row")

        lines: list[str] = []
        for row in reader:
            if None in row:
                raise ValueError(f"row {reader.line_num} has more fields than the header")
            lines.append(", ".join(f"{key}: {value or ''}" for key, value in row.items()))
        return "\n".join(lines)


class PDFExtractor(TextExtractor):
    file_types = (FileType.PDF,)

    def extract(self, path: Path) -> ExtractionResult:
        from pypdf import PdfReader

        reader = PdfReader(str(path))
        pages = [
            (number, (page.extract_text() or "").strip())
            for number, page in enumerate(reader.pages, start=1)
        ]
        non_empty = [(n, t) for n, t in pages if t]
        text = "\n\n".join(t for _, t in non_empty)

        return ExtractionResult(
            text=text,
            word_count=count_words(text),
            page_count=len(pages),
            page_map=build_page_map(non_empty),
        )


class DOCXExtractor(TextExtractor):
    file_types = (FileType.DOCX,)

    def extract(self, path: Path) -> ExtractionResult:
        import docx

        document = docx.Document(str(path))
        text = "\n".join(p.text for p in document.paragraphs if p.text.strip()).strip()
        return ExtractionResult(text=text, word_count=count_words(text))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtractorRegistry:
    """
    File type → extractor factory, resolved per call.

    Usage:
        registry = ExtractorRegistry.default()
        result = registry.extract("/data/kb/123/guide.pdf", "pdf")
    """

    def __init__(self) -> None:
        self._factories: dict[FileType, Callable[[], TextExtractor]] = {}

    def register(self, file_type: FileType | str, factory: Callable[[], TextExtractor]) -> None:
        self._factories[FileType(file_type)] = factory

    def supports(self, file_type: FileType | str) -> bool:
        try:
            return FileType(file_type) in self._factories
        except ValueError:
            return False

    def extract(self, path: str | Path, file_type: FileType | str) -> ExtractionResult:
        type_name = getattr(file_type, "value", file_type)
        try:
            factory = self._factories[FileType(file_type)]
        except (ValueError, KeyError):
            raise ExtractionError(f"Unsupported file type: {type_name}", file_type=type_name) from None

        path = Path(path)
        if not path.is_file():
            raise ExtractionError(f"File not found: {path}", file_type=type_name)

        try:
            result = factory().extract(path)
        except ExtractionError:
            raise
        except Exception as exc:
            logger.error("Extraction failed | type=%s path=%s error=%s", type_name, path, exc)
            raise ExtractionError(
                f"Failed to extract text from {type_name.upper()}: {exc}",
                file_type=type_name,
            ) from exc

        logger.info(
            "Extraction | type=%s words=%d pages=%s chars=%d",
            type_name, result.word_count, result.page_count, len(result.text),
        )
        return result

    @classmethod
    def default(cls) -> "ExtractorRegistry":
        registry = cls()
        for extractor_cls in (
            PlainTextExtractor, JSONExtractor, CSVExtractor, PDFExtractor, DOCXExtractor,
        ):
            for file_type in extractor_cls.file_types:
                registry.register(file_type, extractor_cls)
        return registry


def extract_text_from_file(path: str | Path, file_type: FileType | str) -> ExtractionResult:
    """Module-level convenience wrapper around the default registry."""
    return ExtractorRegistry.default().extract(path, file_type)

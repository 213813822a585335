"""
Ingestion pipeline exception hierarchy.

Fatal to a document (status -> FAILED):
    ConfigurationError, ExtractionError, ChunkingError

Recovered locally (document may still reach COMPLETED):
    EmbeddingError, AggregateUpdateError

Caller errors:
    DocumentNotFoundError, KnowledgeBaseNotFoundError, DocumentBusyError
"""

from __future__ import annotations

from uuid import UUID


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class ConfigurationError(IngestionError):
    """Pipeline cannot start, e.g. embedding credentials are missing."""


class ExtractionError(IngestionError):
    """The file could not be turned into text (corrupt, unsupported, empty)."""

    def __init__(self, message: str, file_type: str | None = None) -> None:
        super().__init__(message)
        self.file_type = file_type


class ChunkingError(IngestionError):
    """Extracted text produced no usable chunks."""


class EmbeddingError(IngestionError):
    """A single chunk could not be embedded."""

    def __init__(self, message: str, chunk_index: int | None = None) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index


class AggregateUpdateError(IngestionError):
    """Knowledge base counters could not be written."""


class DocumentNotFoundError(IngestionError):
    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class DocumentBusyError(IngestionError):
    """Another run already holds the document."""

    def __init__(self, document_id: UUID, current_status: str | None = None) -> None:
        super().__init__(
            f"Document {document_id} is already being processed"
            + (f" (status={current_status})" if current_status else "")
        )
        self.document_id = document_id
        self.current_status = current_status


class KnowledgeBaseNotFoundError(IngestionError):
    def __init__(self, knowledge_base_id: UUID) -> None:
        super().__init__(f"Knowledge base {knowledge_base_id} not found")
        self.knowledge_base_id = knowledge_base_id

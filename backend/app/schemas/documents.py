"""
Knowledge Base Documents — Pydantic Request/Response Schemas

Covers the processing lifecycle exposed under /api/v1/documents:
  - Status enum shared by the ORM, the worker and the API
  - Document detail response (status + chunk listing)
  - Reprocess request (optional new chunk parameters)
  - 202 Accepted body for queued runs
  - Structured error bodies (404, 409, 422, 500)

Design decisions:
  - Chunk parameters are validated here only for type and sign; clamping to
    the engine's bounds happens in app.processing.chunking so that every
    entry point (API, worker, direct call) gets identical behaviour.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings in the database)
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: PENDING → PROCESSING → COMPLETED | FAILED
    """
    PENDING     = "PENDING"       # created or reset for reprocess, not yet claimed
    PROCESSING  = "PROCESSING"    # a run owns the document
    COMPLETED   = "COMPLETED"     # text extracted and chunks embedded (possibly partial)
    FAILED      = "FAILED"        # unrecoverable error, see processing_error


class FileType(str, Enum):
    PDF  = "pdf"
    DOCX = "docx"
    TXT  = "txt"
    MD   = "md"
    CSV  = "csv"
    JSON = "json"


class KnowledgeBaseType(str, Enum):
    USER     = "USER"
    WORKFLOW = "WORKFLOW"
    DEMO     = "DEMO"


class ChunkingStrategy(str, Enum):
    SECTIONS   = "sections"
    PARAGRAPHS = "paragraphs"
    RECURSIVE  = "recursive"


STATUS_MESSAGES: dict[ProcessingStatus, str] = {
    ProcessingStatus.PENDING:    "Waiting to be processed",
    ProcessingStatus.PROCESSING: "Extracting text and generating embeddings",
    ProcessingStatus.COMPLETED:  "Ready to use",
    ProcessingStatus.FAILED:     "Processing failed",
}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ReprocessRequest(BaseModel):
    """Body of POST /documents/{id}/reprocess. Omitted fields keep the stored value."""
    chunk_size:    int | None = Field(None, gt=0, description="Target tokens per chunk (clamped to 100-2000)")
    chunk_overlap: int | None = Field(None, ge=0, description="Overlap tokens (clamped to 25% of chunk_size)")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ChunkSummary(BaseModel):
    chunk_index: int
    token_count: int
    section:     str | None = None
    page_number: int | None = None
    content:     str


class DocumentDetailResponse(BaseModel):
    """GET /documents/{id} — polled by clients to track processing progress."""
    document_id:       UUID
    knowledge_base_id: UUID
    original_name:     str
    file_type:         FileType
    status:            ProcessingStatus
    status_message:    str
    processing_error:  str | None = None
    chunk_size:        int | None = None
    chunk_overlap:     int | None = None
    chunking_strategy: str | None = None
    word_count:        int | None = None
    page_count:        int | None = None
    language:          str | None = None
    chunk_count:       int = 0
    chunks:            list[ChunkSummary] = Field(default_factory=list)
    updated_at:        datetime | None = None


class ProcessingAcceptedResponse(BaseModel):
    """202 body for queued process / reprocess runs."""
    document_id: UUID
    status:      ProcessingStatus
    task_id:     str | None = Field(None, description="Celery task id — poll the document for progress")


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """One field-level problem inside an ErrorResponse."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Body of every 4xx/5xx response from the documents API.
    `error_code` is stable; `message` may change between releases.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


class DocumentErrors:
    """Error bodies returned by the documents routes and handlers."""

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def document_busy(document_id: UUID, current_status: str | None) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_BUSY",
            message=f"Document '{document_id}' is already being processed.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Current status is '{current_status}'. Wait for the run to finish.",
                    code="DOCUMENT_BUSY",
                )
            ],
        )

    @staticmethod
    def queue_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_ERROR",
            message="Document could not be queued for processing.",
            details=[
                ErrorDetail(
                    field=None,
                    message="The message broker may be temporarily unavailable. Retry the request.",
                    code="QUEUE_ERROR",
                )
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="Unexpected server error; quote the request id when reporting it.",
            details=[],
            request_id=request_id,
        )

"""
Document Processing API Router

  GET  /api/v1/documents/{document_id}            status + chunk listing
  POST /api/v1/documents/{document_id}/process    queue a run          (202)
  POST /api/v1/documents/{document_id}/reprocess  wipe chunks + rerun  (202)

Request lifecycle (process / reprocess):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Load document (404 if unknown)                        │
  │ 2. Status gate: PROCESSING → 409, except a stale run on  │
  │    /reprocess; COMPLETED → 409 for /process (use         │
  │    /reprocess to rebuild)                                │
  │ 3. Publish Celery task → 202 with task_id                │
  └─────────────────────────────────────────────────────────┘

The status gate here is advisory; the worker's compare-and-swap claim is
what actually prevents two runs of the same document.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse

from app.core.exceptions import DocumentBusyError, DocumentNotFoundError
from app.repository import DocumentRepository, get_repository
from app.schemas.documents import (
    STATUS_MESSAGES,
    ChunkSummary,
    DocumentDetailResponse,
    DocumentErrors,
    ErrorResponse,
    FileType,
    ProcessingAcceptedResponse,
    ProcessingStatus,
    ReprocessRequest,
)
from app.services.processor import TaskPublisher, stale_processing_cutoff

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


def _accepted(document_id: UUID, task_id: str | None) -> JSONResponse:
    body = ProcessingAcceptedResponse(
        document_id=document_id,
        status=ProcessingStatus.PENDING,
        task_id=task_id,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={"Location": f"/api/v1/documents/{document_id}"},
    )


def _is_stale(doc) -> bool:
    return doc.updated_at is not None and doc.updated_at < stale_processing_cutoff()


def _queue_error() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=DocumentErrors.queue_error().model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentDetailResponse,
    summary="Get document processing status and chunks",
    responses={
        200: {"model": DocumentDetailResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document(
    document_id:    UUID,
    include_chunks: bool               = False,
    repo:           DocumentRepository = Depends(get_repository),
) -> DocumentDetailResponse:
    """Polled by clients to follow a run; chunk contents only on request."""
    doc = await repo.get_document(document_id)
    if doc is None:
        raise DocumentNotFoundError(document_id)

    chunks = await repo.list_chunks(document_id)
    current = ProcessingStatus(doc.status)

    return DocumentDetailResponse(
        document_id=doc.id,
        knowledge_base_id=doc.knowledge_base_id,
        original_name=doc.original_name,
        file_type=FileType(doc.file_type),
        status=current,
        status_message=STATUS_MESSAGES[current],
        processing_error=doc.processing_error,
        chunk_size=doc.chunk_size,
        chunk_overlap=doc.chunk_overlap,
        chunking_strategy=doc.chunking_strategy,
        word_count=doc.word_count,
        page_count=doc.page_count,
        language=doc.language,
        chunk_count=len(chunks),
        chunks=[
            ChunkSummary(
                chunk_index=c.chunk_index,
                token_count=c.token_count,
                section=c.section,
                page_number=c.page_number,
                content=c.content,
            )
            for c in chunks
        ] if include_chunks else [],
        updated_at=doc.updated_at,
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ProcessingAcceptedResponse,
    summary="Queue a document for processing",
    responses={
        202: {"model": ProcessingAcceptedResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Already processing or completed"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def process_document(
    document_id: UUID,
    repo:        DocumentRepository = Depends(get_repository),
    publisher:   TaskPublisher      = Depends(get_task_publisher),
) -> JSONResponse:
    doc = await repo.get_document(document_id)
    if doc is None:
        raise DocumentNotFoundError(document_id)
    if ProcessingStatus(doc.status) in (ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED):
        raise DocumentBusyError(document_id, doc.status)

    try:
        result = publisher.publish_process(document_id)
    except Exception:
        logger.exception("Failed to queue processing | document_id=%s", document_id)
        return _queue_error()

    return _accepted(document_id, result.id)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/reprocess
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reprocess",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ProcessingAcceptedResponse,
    summary="Delete a document's chunks and process it again",
    responses={
        202: {"model": ProcessingAcceptedResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is currently processing"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def reprocess_document(
    document_id: UUID,
    payload:     Optional[ReprocessRequest] = Body(None),
    repo:        DocumentRepository         = Depends(get_repository),
    publisher:   TaskPublisher              = Depends(get_task_publisher),
) -> JSONResponse:
    payload = payload or ReprocessRequest()

    doc = await repo.get_document(document_id)
    if doc is None:
        raise DocumentNotFoundError(document_id)
    if ProcessingStatus(doc.status) is ProcessingStatus.PROCESSING and not _is_stale(doc):
        raise DocumentBusyError(document_id, doc.status)

    try:
        result = publisher.publish_reprocess(
            document_id,
            chunk_size=payload.chunk_size,
            chunk_overlap=payload.chunk_overlap,
        )
    except Exception:
        logger.exception("Failed to queue reprocess | document_id=%s", document_id)
        return _queue_error()

    logger.info(
        "Reprocess requested | document_id=%s chunk_size=%s chunk_overlap=%s",
        document_id, payload.chunk_size, payload.chunk_overlap,
    )
    return _accepted(document_id, result.id)

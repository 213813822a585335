"""
Document Processing Service

Orchestrates the post-upload pipeline for ONE document:
  1. Load the document and its knowledge base
  2. Check embedding credentials (missing → FAILED, nothing else touched)
  3. Claim the document: PENDING | FAILED → PROCESSING (compare-and-swap,
     persisted before any work starts)
  4. Extract text from the stored file
  5. Chunk the text (strategy chosen from its structure)
  6. Embed chunks one at a time, in index order; a failed chunk is skipped
  7. Mark the document COMPLETED with its extraction stats
  8. Recount the knowledge base's chunk / token totals
  9. Return a ProcessingSummary

Failure policy:
  - Steps 4-7 are fatal: status → FAILED with processing_error, the chunks
    this run wrote are deleted, and the exception is re-raised.
  - Step 6 failures are per chunk: the attempt is logged in the usage
    ledger and the loop moves on. A COMPLETED document may therefore have
    fewer chunk rows than the chunker produced, with gaps in chunk_index.
  - Step 8 is isolated: a counter write failure is logged and reported in
    the summary; the document stays COMPLETED. The totals are recounted
    from live rows, so the next recount of that knowledge base repairs them.

Concurrency:
  Work inside one document is strictly sequential. A process-local claim
  set plus the database compare-and-swap keep two runs of the same
  document from overlapping.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    AggregateUpdateError,
    ChunkingError,
    ConfigurationError,
    DocumentBusyError,
    DocumentNotFoundError,
    EmbeddingError,
    ExtractionError,
    KnowledgeBaseNotFoundError,
)
from app.models.documents import Document, DocumentChunk
from app.observability.usage_ledger import UsageLedger
from app.processing.chunking import (
    TextChunk,
    assign_page_numbers,
    chunk_text_smart,
    detect_strategy,
)
from app.processing.embeddings import (
    EmbeddingContext,
    EmbeddingGenerator,
    build_embedding_provider,
)
from app.processing.extractor import ExtractorRegistry, detect_language
from app.repository.base import DocumentRepository
from app.schemas.documents import ProcessingStatus

if TYPE_CHECKING:
    from celery.result import AsyncResult

logger = logging.getLogger(__name__)

# Statuses a new run may start from
CLAIMABLE_STATUSES = (ProcessingStatus.PENDING, ProcessingStatus.FAILED)


def stale_processing_cutoff(config: Settings | None = None) -> datetime:
    """PROCESSING rows last updated before this instant belong to a crashed run."""
    config = config or default_settings
    return datetime.now(timezone.utc) - timedelta(seconds=config.processing_stale_after_seconds)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ProcessingSummary:
    """
    Outcome of one completed run.

    chunks_produced      : chunks the chunker emitted
    chunks_persisted     : chunk rows actually written (≤ chunks_produced)
    failed_chunk_indices : chunk_index values skipped after an embedding failure
    total_tokens         : token sum of the persisted chunks
    aggregate_error      : set when the knowledge base counter write failed
    """
    document_id:          UUID
    status:               ProcessingStatus
    chunks_produced:      int
    chunks_persisted:     int
    failed_chunk_indices: list[int] = field(default_factory=list)
    total_tokens:         int = 0
    strategy:             Optional[str] = None
    aggregate_error:      Optional[str] = None


# ---------------------------------------------------------------------------
# Process-local single-flight guard
# ---------------------------------------------------------------------------

class _ClaimSet:
    """Document ids currently being processed by this process."""

    def __init__(self) -> None:
        self._ids: set[UUID] = set()
        self._lock = threading.Lock()

    def acquire(self, document_id: UUID) -> bool:
        with self._lock:
            if document_id in self._ids:
                return False
            self._ids.add(document_id)
            return True

    def release(self, document_id: UUID) -> None:
        with self._lock:
            self._ids.discard(document_id)

    def __contains__(self, document_id: UUID) -> bool:
        with self._lock:
            return document_id in self._ids


_claims = _ClaimSet()


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class DocumentProcessor:
    """
    Stateless service object. All dependencies are injected (testable, no
    hidden globals); build_document_processor() wires the production ones.

    Usage:
        processor = build_document_processor()
        summary = await processor.process_document(document_id)
    """

    def __init__(
        self,
        repository:          DocumentRepository,
        embedding_generator: EmbeddingGenerator,
        extractor_registry:  ExtractorRegistry | None = None,
        config:              Settings | None = None,
    ) -> None:
        self._repo      = repository
        self._embedder  = embedding_generator
        self._extractor = extractor_registry or ExtractorRegistry.default()
        self._settings  = config or default_settings

    # ------------------------------------------------------------------
    # Document creation
    # ------------------------------------------------------------------

    async def create_document(
        self,
        knowledge_base_id: UUID,
        *,
        filename:      str,
        original_name: str,
        file_type:     str,
        file_path:     str,
        file_size:     int = 0,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
    ) -> Document:
        """Register an uploaded file as a PENDING document of the knowledge base."""
        file_type = file_type.lower()
        if not self._extractor.supports(file_type):
            raise ExtractionError(f"Unsupported file type: {file_type}", file_type=file_type)
        if await self._repo.get_knowledge_base(knowledge_base_id) is None:
            raise KnowledgeBaseNotFoundError(knowledge_base_id)

        document = Document(
            id=uuid.uuid4(),
            knowledge_base_id=knowledge_base_id,
            filename=filename,
            original_name=original_name,
            file_type=file_type,
            file_size=file_size,
            file_path=file_path,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            status=ProcessingStatus.PENDING.value,
        )
        return await self._repo.create_document(document)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def process_document(self, document_id: UUID) -> ProcessingSummary:
        """
        Run the full pipeline for one document.

        Raises:
            DocumentNotFoundError: unknown id.
            DocumentBusyError:     another run holds the document, or it is
                                   already COMPLETED.
            ConfigurationError:    embedding credentials missing (document → FAILED).
            ExtractionError / ChunkingError / other: fatal step error
                                   (document → FAILED, then re-raised).
        """
        document = await self._repo.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        knowledge_base = await self._repo.get_knowledge_base(document.knowledge_base_id)
        if knowledge_base is None:
            raise KnowledgeBaseNotFoundError(document.knowledge_base_id)

        if not _claims.acquire(document_id):
            raise DocumentBusyError(document_id, ProcessingStatus.PROCESSING.value)

        try:
            if not self._embedder.is_configured():
                await self._fail_unconfigured(document, CLAIMABLE_STATUSES)

            if not await self._repo.claim_document(document_id, CLAIMABLE_STATUSES):
                logger.warning(
                    "Claim refused | document_id=%s status=%s", document_id, document.status,
                )
                raise DocumentBusyError(document_id, document.status)

            logger.info(
                "Processing started | document_id=%s kb=%s file=%s type=%s",
                document_id, document.knowledge_base_id, document.original_name, document.file_type,
            )
            return await self._run(document, knowledge_base.user_id)
        finally:
            _claims.release(document_id)

    async def reprocess_document(
        self,
        document_id:   UUID,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
    ) -> ProcessingSummary:
        """
        Wipe the document's chunks, optionally store new chunk parameters,
        then run the pipeline again from scratch.

        The wipe also claims the document, so no other run can start between
        the wipe and the new run. A PROCESSING document is refused unless no
        run in this process holds it and its row has not changed for
        `processing_stale_after_seconds` (a crashed run).
        """
        document = await self._repo.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        knowledge_base = await self._repo.get_knowledge_base(document.knowledge_base_id)
        if knowledge_base is None:
            raise KnowledgeBaseNotFoundError(document.knowledge_base_id)

        if not _claims.acquire(document_id):
            raise DocumentBusyError(document_id, ProcessingStatus.PROCESSING.value)

        try:
            removal = await self._repo.reset_for_reprocess(
                document_id,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                stale_before=stale_processing_cutoff(self._settings),
            )
            if removal is None:
                raise DocumentBusyError(document_id, ProcessingStatus.PROCESSING.value)

            logger.info(
                "Reprocess | document_id=%s removed_chunks=%d removed_tokens=%d "
                "chunk_size=%s chunk_overlap=%s",
                document_id, removal.chunks, removal.tokens, chunk_size, chunk_overlap,
            )

            if not self._embedder.is_configured():
                await self._fail_unconfigured(document, (ProcessingStatus.PROCESSING,))

            # Reload for the chunk params the reset may have stored
            document = await self._repo.get_document(document_id)
            return await self._run(document, knowledge_base.user_id)
        finally:
            _claims.release(document_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, document: Document, user_id: UUID) -> ProcessingSummary:
        document_id = document.id

        try:
            # Parsers are synchronous; run them off the event loop
            extraction = await asyncio.to_thread(
                self._extractor.extract, document.file_path, document.file_type,
            )
            text = extraction.text
            if not text or not text.strip():
                raise ExtractionError(
                    "No text content could be extracted from the document",
                    file_type=document.file_type,
                )

            chunk_size = document.chunk_size or self._settings.default_chunk_size
            chunk_overlap = (
                document.chunk_overlap
                if document.chunk_overlap is not None
                else self._settings.default_chunk_overlap
            )
            strategy = detect_strategy(text)
            chunks = chunk_text_smart(text, chunk_size, chunk_overlap)
            if not chunks:
                raise ChunkingError("No chunks were generated from the extracted text")
            assign_page_numbers(chunks, text, extraction.page_map)

            logger.info(
                "Chunked | document_id=%s strategy=%s chunks=%d words=%d",
                document_id, strategy.value, len(chunks), extraction.word_count,
            )

            persisted, failed, tokens = await self._embed_chunks(document, user_id, chunks)

            await self._repo.update_document(
                document_id,
                status=ProcessingStatus.COMPLETED,
                processing_error=None,
                extracted_text=text,
                word_count=extraction.word_count,
                page_count=extraction.page_count,
                language=extraction.language or detect_language(text),
                chunking_strategy=strategy.value,
            )
        except Exception as exc:
            logger.error(
                "Processing failed | document_id=%s error=%s: %s",
                document_id, type(exc).__name__, exc,
            )
            await self._mark_failed(document_id, str(exc))
            raise

        summary = ProcessingSummary(
            document_id=document_id,
            status=ProcessingStatus.COMPLETED,
            chunks_produced=len(chunks),
            chunks_persisted=persisted,
            failed_chunk_indices=failed,
            total_tokens=tokens,
            strategy=strategy.value,
        )

        try:
            await self._repo.refresh_knowledge_base_stats(
                document.knowledge_base_id,
                synced_at=datetime.now(timezone.utc),
            )
        except Exception as exc:
            error = AggregateUpdateError(
                f"Failed to update knowledge base {document.knowledge_base_id} stats: {exc}"
            )
            logger.error(
                "Aggregate update failed (document stays COMPLETED) | document_id=%s: %s",
                document_id, error,
            )
            summary.aggregate_error = str(error)

        logger.info(
            "Processing completed | document_id=%s chunks=%d/%d failed=%s tokens=%d",
            document_id, persisted, len(chunks), failed, tokens,
        )
        return summary

    async def _embed_chunks(
        self,
        document: Document,
        user_id:  UUID,
        chunks:   list[TextChunk],
    ) -> tuple[int, list[int], int]:
        """Sequential embed-and-persist loop. Returns (persisted, failed_indices, tokens)."""
        persisted = 0
        tokens = 0
        failed: list[int] = []

        for chunk in chunks:
            context = EmbeddingContext(
                user_id=user_id,
                document_id=document.id,
                knowledge_base_id=document.knowledge_base_id,
                chunk_index=chunk.index,
            )
            try:
                vector = await self._embedder.embed(chunk.content, context)
            except EmbeddingError as exc:
                logger.warning(
                    "Chunk skipped | document_id=%s chunk=%d: %s", document.id, chunk.index, exc,
                )
                failed.append(chunk.index)
                continue

            try:
                await self._repo.add_chunk(DocumentChunk(
                    id=uuid.uuid4(),
                    document_id=document.id,
                    content=chunk.content,
                    chunk_index=chunk.index,
                    token_count=chunk.token_count,
                    page_number=chunk.page_number,
                    section=chunk.section,
                    embedding=vector,
                    embedding_model=self._embedder.model,
                ))
            except Exception as exc:
                logger.error(
                    "Chunk write failed, skipping | document_id=%s chunk=%d: %s",
                    document.id, chunk.index, exc,
                )
                failed.append(chunk.index)
                continue

            persisted += 1
            tokens += chunk.token_count

        return persisted, failed, tokens

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    async def _fail_unconfigured(
        self,
        document:      Document,
        from_statuses: tuple[ProcessingStatus, ...],
    ) -> None:
        """
        Record the configuration failure and raise ConfigurationError.

        The FAILED write only lands while the status is still one of
        `from_statuses`; a run another worker claimed in the meantime is
        reported as DocumentBusyError instead.
        """
        message = (
            f"Embedding provider '{self._embedder.provider.provider_name}' "
            "is not configured (missing API key)"
        )
        if not await self._repo.mark_failed(document.id, message, from_statuses):
            raise DocumentBusyError(document.id, document.status)

        logger.error("Configuration error | document_id=%s: %s", document.id, message)
        raise ConfigurationError(message)

    async def _mark_failed(self, document_id: UUID, message: str) -> None:
        try:
            # Chunks this run already wrote go with it
            await self._repo.mark_failed(
                document_id, message, from_statuses=(ProcessingStatus.PROCESSING,),
            )
        except Exception as exc:
            # Keep raising the pipeline error; this one is only logged
            logger.error(
                "Could not mark document FAILED | document_id=%s: %s", document_id, exc,
            )


# ---------------------------------------------------------------------------
# Wiring helpers (used by the Celery tasks and the API)
# ---------------------------------------------------------------------------

def build_document_processor(
    repository: DocumentRepository | None = None,
    config:     Settings | None = None,
) -> DocumentProcessor:
    """Processor wired to the configured database and embedding provider."""
    from app.repository.factory import get_repository

    config = config or default_settings
    repository = repository or get_repository()
    generator = EmbeddingGenerator(
        build_embedding_provider(config),
        UsageLedger(repository),
    )
    return DocumentProcessor(repository, generator, ExtractorRegistry.default(), config)


def process_document_async(document_id: UUID) -> "AsyncResult":
    """
    Queue a processing run on the Celery `documents.ingest` queue.

    Returns the AsyncResult immediately; the outcome (including failures)
    is observable through it and the worker logs.
    """
    from app.workers.tasks import process_document_task

    result = process_document_task.apply_async(args=[str(document_id)])
    logger.info("Processing queued | document_id=%s task_id=%s", document_id, result.id)
    return result


def reprocess_document_async(
    document_id:   UUID,
    chunk_size:    int | None = None,
    chunk_overlap: int | None = None,
) -> "AsyncResult":
    """Queue a reprocess run; same contract as process_document_async()."""
    from app.workers.tasks import reprocess_document_task

    result = reprocess_document_task.apply_async(
        args=[str(document_id)],
        kwargs={"chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
    )
    logger.info("Reprocess queued | document_id=%s task_id=%s", document_id, result.id)
    return result


class TaskPublisher:
    """Thin seam over the queueing helpers so the API can be tested without a broker."""

    def publish_process(self, document_id: UUID) -> "AsyncResult":
        return process_document_async(document_id)

    def publish_reprocess(
        self,
        document_id:   UUID,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
    ) -> "AsyncResult":
        return reprocess_document_async(document_id, chunk_size, chunk_overlap)

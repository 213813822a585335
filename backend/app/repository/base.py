"""
Document Repository — Abstract Base

Persistence boundary of the ingestion pipeline. The processor, the usage
ledger and the API only speak this interface, so the SQL backend can be
swapped (or faked in tests) without touching pipeline code.

Atomicity contract (enforced by ALL implementations):
  - claim_document() is a compare-and-swap: it moves the status to
    PROCESSING only if the current status is one of `from_statuses`, and
    reports whether it won. Two concurrent claims never both succeed.
  - refresh_knowledge_base_stats() recomputes total_chunks / total_tokens
    from the chunk rows of the knowledge base's COMPLETED documents, so a
    missed refresh is repaired by the next one instead of drifting.
  - reset_for_reprocess() deletes the chunks, recounts the knowledge base
    and claims the document (status PROCESSING) in ONE unit of work.
  - mark_failed() sets FAILED and deletes the document's chunks in ONE
    unit of work; a FAILED document never keeps chunk rows.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from app.models.documents import ApiCallLog, Document, DocumentChunk, KnowledgeBase
from app.schemas.documents import ProcessingStatus


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ChunkRemoval:
    """Chunk rows and tokens a reprocess reset deleted."""
    chunks: int = 0
    tokens: int = 0


@dataclass
class UsageStats:
    """Aggregated usage-ledger figures for one user over a time window."""
    total_calls:  int = 0
    failed_calls: int = 0
    total_tokens: int = 0
    total_cost:   Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_document(self, document_id: UUID) -> Document | None:
        """Return the document or None."""

    @abstractmethod
    async def get_knowledge_base(self, knowledge_base_id: UUID) -> KnowledgeBase | None:
        """Return the knowledge base or None."""

    @abstractmethod
    async def list_chunks(self, document_id: UUID) -> list[DocumentChunk]:
        """All persisted chunks of a document ordered by chunk_index."""

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        """Insert a PENDING document and bump the parent's total_documents."""

    @abstractmethod
    async def claim_document(
        self,
        document_id:   UUID,
        from_statuses: Iterable[ProcessingStatus],
    ) -> bool:
        """Atomically move status to PROCESSING if it is in from_statuses."""

    @abstractmethod
    async def update_document(self, document_id: UUID, **values: Any) -> None:
        """Write the given columns on one document."""

    @abstractmethod
    async def mark_failed(
        self,
        document_id:   UUID,
        message:       str,
        from_statuses: Iterable[ProcessingStatus] | None = None,
    ) -> bool:
        """
        Set status FAILED with `message`, clear extracted_text and delete the
        document's chunks. With `from_statuses`, only when the current status
        is one of them. Returns whether the document was changed.
        """

    @abstractmethod
    async def reset_for_reprocess(
        self,
        document_id:   UUID,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
        stale_before:  datetime | None = None,
    ) -> ChunkRemoval | None:
        """
        Delete chunks, recount the knowledge base and claim the document for
        a new run: status PROCESSING, extracted_text / processing_error
        cleared, new chunk params stored when given.

        Returns None and changes nothing when the document is missing, or is
        PROCESSING with updated_at at or after `stale_before` (a live run).
        Without `stale_before` every PROCESSING document is refused.
        """

    # ------------------------------------------------------------------
    # Chunks + aggregates
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_chunk(self, chunk: DocumentChunk) -> None:
        """Persist one embedded chunk."""

    @abstractmethod
    async def refresh_knowledge_base_stats(
        self,
        knowledge_base_id: UUID,
        synced_at:         datetime | None = None,
    ) -> None:
        """Recount total_chunks / total_tokens over COMPLETED documents."""

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_api_call_log(self, log: ApiCallLog) -> None:
        """Append one usage-ledger row."""

    @abstractmethod
    async def get_usage_stats(
        self,
        user_id: UUID,
        start:   datetime | None = None,
        end:     datetime | None = None,
    ) -> UsageStats:
        """Sum the ledger for a user, optionally bounded by created_at."""

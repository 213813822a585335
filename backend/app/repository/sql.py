"""
PostgreSQL Document Repository

SQLAlchemy 2 async implementation of DocumentRepository.

Every method runs in its own short transaction via session_scope(): the
pipeline relies on PROCESSING being visible to other readers before
extraction starts, and on each chunk row being durable as soon as it is
embedded. One long transaction around a whole run would defeat both.

Atomic primitives:
  claim_document      UPDATE documents SET status='PROCESSING'
                      WHERE id=:id AND status IN (:from_statuses)
                      → rowcount == 1 means this caller owns the run
  mark_failed         the same guarded UPDATE to FAILED, plus DELETE of the
                      document's chunks in that transaction
  counter recount     SELECT ... FOR UPDATE on the knowledge base, then
                      UPDATE knowledge_bases SET total_chunks = (SELECT count(*)
                      FROM document_chunks JOIN documents ... status='COMPLETED')
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import AsyncSessionLocal, session_scope
from app.models.documents import ApiCallLog, Document, DocumentChunk, KnowledgeBase
from app.repository.base import ChunkRemoval, DocumentRepository, UsageStats
from app.schemas.documents import ProcessingStatus

logger = logging.getLogger(__name__)


class SQLDocumentRepository(DocumentRepository):
    """
    Usage:
        repo = SQLDocumentRepository()
        won = await repo.claim_document(doc_id, [ProcessingStatus.PENDING])
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    def _scope(self):
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_document(self, document_id: UUID) -> Document | None:
        async with self._scope() as session:
            return await session.get(Document, document_id)

    async def get_knowledge_base(self, knowledge_base_id: UUID) -> KnowledgeBase | None:
        async with self._scope() as session:
            return await session.get(KnowledgeBase, knowledge_base_id)

    async def list_chunks(self, document_id: UUID) -> list[DocumentChunk]:
        async with self._scope() as session:
            result = await session.execute(
                select(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        document.status = ProcessingStatus.PENDING.value
        async with self._scope() as session:
            session.add(document)
            await session.flush()
            await session.execute(
                update(KnowledgeBase)
                .where(KnowledgeBase.id == document.knowledge_base_id)
                .values(total_documents=KnowledgeBase.total_documents + 1)
            )
        logger.info(
            "Document created | document_id=%s kb=%s file=%s",
            document.id, document.knowledge_base_id, document.original_name,
        )
        return document

    async def claim_document(
        self,
        document_id:   UUID,
        from_statuses: Iterable[ProcessingStatus],
    ) -> bool:
        allowed = [ProcessingStatus(s).value for s in from_statuses]
        async with self._scope() as session:
            result = await session.execute(
                update(Document)
                .where(Document.id == document_id, Document.status.in_(allowed))
                .values(status=ProcessingStatus.PROCESSING.value, processing_error=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def update_document(self, document_id: UUID, **values: Any) -> None:
        if "status" in values:
            values["status"] = ProcessingStatus(values["status"]).value
        async with self._scope() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def mark_failed(
        self,
        document_id:   UUID,
        message:       str,
        from_statuses: Iterable[ProcessingStatus] | None = None,
    ) -> bool:
        stmt = update(Document).where(Document.id == document_id)
        if from_statuses is not None:
            allowed = [ProcessingStatus(s).value for s in from_statuses]
            stmt = stmt.where(Document.status.in_(allowed))

        async with self._scope() as session:
            result = await session.execute(
                stmt.values(
                    status=ProcessingStatus.FAILED.value,
                    processing_error=message,
                    extracted_text=None,
                ).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            await session.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
        return True

    async def reset_for_reprocess(
        self,
        document_id:   UUID,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
        stale_before:  datetime | None = None,
    ) -> ChunkRemoval | None:
        async with self._scope() as session:
            # Row lock so a concurrent claim cannot slip in between the
            # status check and the delete.
            document = (
                await session.execute(
                    select(Document).where(Document.id == document_id).with_for_update()
                )
            ).scalar_one_or_none()
            if document is None:
                return None
            if document.status == ProcessingStatus.PROCESSING.value:
                if stale_before is None or document.updated_at is None \
                        or document.updated_at >= stale_before:
                    return None
                logger.warning(
                    "Taking over stale run | document_id=%s last_update=%s",
                    document_id, document.updated_at,
                )

            totals = (
                await session.execute(
                    select(
                        func.count(DocumentChunk.id),
                        func.coalesce(func.sum(DocumentChunk.token_count), 0),
                    ).where(DocumentChunk.document_id == document_id)
                )
            ).one()
            removal = ChunkRemoval(chunks=int(totals[0]), tokens=int(totals[1]))

            await session.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )

            document.status = ProcessingStatus.PROCESSING.value
            document.extracted_text = None
            document.processing_error = None
            if chunk_size is not None:
                document.chunk_size = chunk_size
            if chunk_overlap is not None:
                document.chunk_overlap = chunk_overlap
            # Sessions do not autoflush; the recount must see the new status
            await session.flush()
            await self._recount(session, document.knowledge_base_id)

        logger.info(
            "Document reset | document_id=%s removed_chunks=%d removed_tokens=%d",
            document_id, removal.chunks, removal.tokens,
        )
        return removal

    # ------------------------------------------------------------------
    # Chunks + aggregates
    # ------------------------------------------------------------------

    async def add_chunk(self, chunk: DocumentChunk) -> None:
        async with self._scope() as session:
            session.add(chunk)

    async def refresh_knowledge_base_stats(
        self,
        knowledge_base_id: UUID,
        synced_at:         datetime | None = None,
    ) -> None:
        async with self._scope() as session:
            await self._recount(session, knowledge_base_id, synced_at)

    async def _recount(
        self,
        session:           AsyncSession,
        knowledge_base_id: UUID,
        synced_at:         datetime | None = None,
    ) -> None:
        # Recounts of one knowledge base run one at a time; each reads every
        # completion committed before it took the lock.
        await session.execute(
            select(KnowledgeBase.id)
            .where(KnowledgeBase.id == knowledge_base_id)
            .with_for_update()
        )

        def completed_chunks(*columns):
            return (
                select(*columns)
                .join(Document, Document.id == DocumentChunk.document_id)
                .where(
                    Document.knowledge_base_id == knowledge_base_id,
                    Document.status == ProcessingStatus.COMPLETED.value,
                )
                .scalar_subquery()
            )

        values: dict[str, Any] = {
            "total_chunks": completed_chunks(func.count(DocumentChunk.id)),
            "total_tokens": completed_chunks(
                func.coalesce(func.sum(DocumentChunk.token_count), 0)
            ),
        }
        if synced_at is not None:
            values["last_synced_at"] = synced_at

        await session.execute(
            update(KnowledgeBase)
            .where(KnowledgeBase.id == knowledge_base_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    async def add_api_call_log(self, log: ApiCallLog) -> None:
        async with self._scope() as session:
            session.add(log)

    async def get_usage_stats(
        self,
        user_id: UUID,
        start:   datetime | None = None,
        end:     datetime | None = None,
    ) -> UsageStats:
        stmt = select(
            func.count(ApiCallLog.id),
            func.coalesce(func.sum(case((ApiCallLog.success.is_(False), 1), else_=0)), 0),
            func.coalesce(func.sum(ApiCallLog.total_tokens), 0),
            func.coalesce(func.sum(ApiCallLog.cost), 0),
        ).where(ApiCallLog.user_id == user_id)
        if start is not None:
            stmt = stmt.where(ApiCallLog.created_at >= start)
        if end is not None:
            stmt = stmt.where(ApiCallLog.created_at <= end)

        async with self._scope() as session:
            calls, failed, tokens, cost = (await session.execute(stmt)).one()

        return UsageStats(
            total_calls=int(calls or 0),
            failed_calls=int(failed or 0),
            total_tokens=int(tokens or 0),
            total_cost=Decimal(str(cost or 0)),
        )

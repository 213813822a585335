"""
SQLAlchemy ORM Models — Knowledge Bases, Documents, Chunks & Usage Ledger

Using SQLAlchemy mapped classes (2.x style) for full async support.

Ownership:
    KnowledgeBase ─┬─< Document ─┬─< DocumentChunk
                   │             └── (chunks bulk-deleted on reprocess)
                   └── aggregate counters (additive, never recomputed)

    ApiCallLog is append-only: one row per embedding attempt.

Schema: kb (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.schemas.documents import KnowledgeBaseType, ProcessingStatus


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in ProcessingStatus)


# ---------------------------------------------------------------------------
# KnowledgeBase model: kb.knowledge_bases
# ---------------------------------------------------------------------------

class KnowledgeBase(Base):
    """
    Aggregate container of documents for one user, workflow or demo.

    total_documents, total_chunks and total_tokens are additive counters
    updated with `col = col + :n`, so concurrent workers never lose an
    increment. They are not recomputed from the child rows.
    """

    __tablename__ = "knowledge_bases"
    __table_args__ = (
        Index("idx_knowledge_bases_user_id", "user_id"),
        {"schema": "kb"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=KnowledgeBaseType.USER.value,
        server_default=KnowledgeBaseType.USER.value,
    )

    total_documents: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_chunks:    Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_tokens:    Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    last_synced_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    documents: Mapped[list["Document"]] = relationship(
        back_populates="knowledge_base",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeBase id={self.id} docs={self.total_documents} "
            f"chunks={self.total_chunks} tokens={self.total_tokens}>"
        )


# ---------------------------------------------------------------------------
# Document model: kb.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → chunk embedding.

    State machine (status column):
        PENDING    — created, or reset by a reprocess request
        PROCESSING — claimed by a run; persisted BEFORE extraction starts so
                     a crashed run is visible as stuck-in-PROCESSING
        COMPLETED  — extracted and embedded (chunk set may be partial)
        FAILED     — unrecoverable pipeline error (see processing_error)

    Invariant: extracted_text is non-null only in PROCESSING / COMPLETED.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="documents_status_check"),
        CheckConstraint(
            "extracted_text IS NULL OR status IN ('PROCESSING', 'COMPLETED')",
            name="documents_extracted_text_status_check",
        ),
        Index("idx_documents_knowledge_base_id", "knowledge_base_id"),
        Index("idx_documents_status", "knowledge_base_id", "status"),
        {"schema": "kb"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    knowledge_base_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("kb.knowledge_bases.id", ondelete="CASCADE"),
        nullable=False,
    )

    # File reference; storage layout is owned by the upload layer
    filename:      Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type:     Mapped[str] = mapped_column(String(16), nullable=False)
    file_size:     Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    file_path:     Mapped[str] = mapped_column(Text, nullable=False)

    # Chunking parameters: NULL means "use defaults at processing time"
    chunk_size:        Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chunk_overlap:     Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chunking_strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Processing state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=ProcessingStatus.PENDING.value,
        server_default=ProcessingStatus.PENDING.value,
    )
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='FAILED'",
    )

    # Extraction output
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    word_count:     Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_count:     Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    language:       Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    knowledge_base: Mapped[KnowledgeBase] = relationship(back_populates="documents")
    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} kb={self.knowledge_base_id} "
            f"status={self.status} file={self.original_name!r}>"
        )


# ---------------------------------------------------------------------------
# DocumentChunk model: kb.document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One embedded text chunk of a Document.

    chunk_index is unique per document and increasing in production order,
    but NOT gap-free: a chunk whose embedding call failed is skipped.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        CheckConstraint("length(content) > 0", name="document_chunks_content_check"),
        Index("idx_document_chunks_document_id", "document_id"),
        {"schema": "kb"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("kb.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    section:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stored as a JSON float array; dimensionality depends on embedding_model
    embedding:       Mapped[list] = mapped_column(JSONB, nullable=False)
    embedding_model: Mapped[str]  = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")


# ---------------------------------------------------------------------------
# ApiCallLog model: kb.api_call_logs
# ---------------------------------------------------------------------------

class ApiCallLog(Base):
    """
    Append-only usage ledger: one row per external model call, success or not.

    Not transactionally tied to the chunk write it accompanies; a crash
    between the two can leave an orphan on either side.
    """

    __tablename__ = "api_call_logs"
    __table_args__ = (
        Index("idx_api_call_logs_user_id",    "user_id"),
        Index("idx_api_call_logs_document_id", "document_id"),
        Index("idx_api_call_logs_created_at", "created_at"),
        {"schema": "kb"},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    model:    Mapped[str] = mapped_column(Text, nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)

    input_tokens:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens:  Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(Numeric(18, 9), nullable=False, default=Decimal("0"))
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    knowledge_base_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    call_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ApiCallLog id={self.id} model={self.model!r} "
            f"tokens={self.total_tokens} success={self.success}>"
        )

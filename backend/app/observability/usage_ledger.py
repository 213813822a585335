"""
Usage Ledger — Per-Call Embedding Usage Accounting

Appends one row to kb.api_call_logs for EVERY external model call made by
the ingestion pipeline, successful or not:

    user_id, provider, model, endpoint,
    input_tokens / output_tokens / total_tokens,
    cost (USD, Decimal), response_time_ms,
    context, document_id, knowledge_base_id, metadata,
    success, error_message

Rows are append-only; totals are computed at read time by
get_usage_stats(), so concurrent workers never contend on a shared row.

Model pricing catalogue (USD per 1 000 input tokens):
  Embedding calls have no output tokens. Public list prices; update
  MODEL_PRICING when rates change. Unknown models fall back to
  _DEFAULT_PRICE so a new model is never logged as free.

Failure policy:
  Usage logging is non-critical. record() logs a write failure and returns
  False; it never raises into the pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from app.models.documents import ApiCallLog
from app.repository.base import DocumentRepository, UsageStats

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing catalogue (public list prices, USD per 1K input tokens)
# ---------------------------------------------------------------------------

MODEL_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
    "text-embedding-ada-002": 0.0001,
}

_DEFAULT_PRICE = 0.0001   # fallback for unknown models


def compute_embedding_cost(model: str, tokens: int) -> Decimal:
    """
    USD cost of one embedding call.

    Returns a Decimal (exact arithmetic) so summing millions of
    micro-charges in reports does not drift.
    """
    price = MODEL_PRICING.get(model, _DEFAULT_PRICE)
    return Decimal(str(round(tokens / 1000.0 * price, 9)))


# ---------------------------------------------------------------------------
# Record dataclass (one per call)
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    """Mirrors kb.api_call_logs."""
    user_id:           UUID
    provider:          str
    model:             str
    endpoint:          str
    input_tokens:      int = 0
    output_tokens:     int = 0
    cost:              Decimal = Decimal("0")
    response_time_ms:  int = 0
    context:           Optional[str] = None
    document_id:       Optional[UUID] = None
    knowledge_base_id: Optional[UUID] = None
    metadata:          dict = field(default_factory=dict)
    success:           bool = True
    error_message:     Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_model(self) -> ApiCallLog:
        return ApiCallLog(
            user_id=self.user_id,
            provider=self.provider,
            model=self.model,
            endpoint=self.endpoint,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            cost=self.cost,
            response_time_ms=self.response_time_ms,
            context=self.context,
            document_id=self.document_id,
            knowledge_base_id=self.knowledge_base_id,
            call_metadata=dict(self.metadata),
            success=self.success,
            error_message=self.error_message,
        )


# ---------------------------------------------------------------------------
# UsageLedger
# ---------------------------------------------------------------------------

class UsageLedger:
    """
    Records and queries per-user model usage.

    Usage::

        ledger = UsageLedger(repository)
        await ledger.record(UsageRecord(
            user_id=user_uuid,
            provider="openai",
            model="text-embedding-3-small",
            endpoint="embeddings",
            input_tokens=250,
        ))
    """

    def __init__(self, repository: DocumentRepository) -> None:
        self._repository = repository

    # -----------------------------------------------------------------------
    # Write path: called after every embedding attempt
    # -----------------------------------------------------------------------

    async def record(self, record: UsageRecord) -> bool:
        """Append one ledger row. Returns False (never raises) if the write fails."""
        try:
            await self._repository.add_api_call_log(record.to_model())
        except Exception as exc:
            # Non-critical: log and continue
            logger.error(
                "UsageLedger | write failed (non-fatal) | user=%s model=%s document=%s: %s",
                record.user_id, record.model, record.document_id, exc,
            )
            return False
        return True

    # -----------------------------------------------------------------------
    # Read path: for billing / dashboard queries
    # -----------------------------------------------------------------------

    async def get_usage_stats(
        self,
        user_id: UUID,
        start:   Optional[datetime] = None,
        end:     Optional[datetime] = None,
    ) -> UsageStats:
        """
        Totals for one user, optionally bounded by created_at.

        Args:
            user_id: Owner of the calls.
            start:   Inclusive lower bound.
            end:     Inclusive upper bound.
        """
        if start is not None and end is not None and start > end:
            raise ValueError("start must not be after end")
        return await self._repository.get_usage_stats(user_id, start=start, end=end)

"""
Observability Package — Usage Accounting

Provides:
  UsageLedger            — append-only per-call usage log (kb.api_call_logs)
  UsageRecord            — one ledger row
  compute_embedding_cost — USD cost from the MODEL_PRICING catalogue

Usage::

    from app.observability import UsageLedger, UsageRecord
    await UsageLedger(repository).record(UsageRecord(...))
"""

from app.observability.usage_ledger import (
    MODEL_PRICING,
    UsageLedger,
    UsageRecord,
    compute_embedding_cost,
)

__all__ = ["MODEL_PRICING", "UsageLedger", "UsageRecord", "compute_embedding_cost"]

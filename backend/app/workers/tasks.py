"""
Celery Tasks — Document Processing Pipeline

Task: process_document
  Runs DocumentProcessor.process_document() for one document id and returns
  the ProcessingSummary as a JSON-safe dict.

Task: reprocess_document
  Runs DocumentProcessor.reprocess_document(): wipes the chunks, applies
  the optional new chunk parameters and processes again.

Neither task retries. Pipeline errors have already been written to the
document (status FAILED + processing_error) by the processor; the task
re-raises so the failure is also visible on the AsyncResult and in the
task_failure log.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any, Optional

from celery import Task

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Eager mode inside a running loop (e.g. called from the API process)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _in_fresh_pool(coro):
    """
    asyncpg connections are bound to the loop that opened them and every
    task runs in a new loop, so the pool is emptied when the task ends.
    """
    from app.db.session import engine

    try:
        return await coro
    finally:
        await engine.dispose()


def _summary_dict(summary) -> dict[str, Any]:
    data = asdict(summary)
    data["document_id"] = str(summary.document_id)
    data["status"] = summary.status.value
    return data


# ---------------------------------------------------------------------------
# Processing tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_document",
    bind=True,
    max_retries=0,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document_task(self: Task, document_id: str) -> dict[str, Any]:
    """Extract → chunk → embed → persist for one document."""
    from app.services.processor import build_document_processor

    processor = build_document_processor()
    summary = run_async(_in_fresh_pool(processor.process_document(uuid.UUID(document_id))))
    logger.info(
        "Task summary | task_id=%s doc=%s persisted=%d/%d",
        self.request.id, document_id, summary.chunks_persisted, summary.chunks_produced,
    )
    return _summary_dict(summary)


@celery_app.task(
    name="app.workers.tasks.reprocess_document",
    bind=True,
    max_retries=0,
    acks_late=True,
    reject_on_worker_lost=True,
)
def reprocess_document_task(
    self: Task,
    document_id:   str,
    chunk_size:    Optional[int] = None,
    chunk_overlap: Optional[int] = None,
) -> dict[str, Any]:
    """Wipe chunks, store new parameters and rerun the pipeline."""
    from app.services.processor import build_document_processor

    processor = build_document_processor()
    summary = run_async(_in_fresh_pool(processor.reprocess_document(
        uuid.UUID(document_id),
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )))
    logger.info(
        "Task summary | task_id=%s doc=%s persisted=%d/%d",
        self.request.id, document_id, summary.chunks_persisted, summary.chunks_produced,
    )
    return _summary_dict(summary)


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}

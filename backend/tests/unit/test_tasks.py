"""
Unit Tests — Celery Tasks
══════════════════════════
Tasks run in-process against the in-memory repository: the processor
factory is patched and the engine is replaced so no pool is disposed.

Coverage targets:
  ✅ process / reprocess tasks return the summary as a JSON-safe dict
  ✅ Pipeline errors propagate out of the task (no retry)
  ✅ Queueing helpers call apply_async with the document id only
  ✅ Eager mode runs the whole pipeline through apply_async
  ✅ Routing: ingest tasks → documents.ingest
  ✅ run_async works with and without a running loop
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.exceptions import DocumentNotFoundError, ExtractionError
from app.services.processor import process_document_async, reprocess_document_async
from app.workers.celery_app import TASK_ROUTES, celery_app
from app.workers.tasks import (
    health_check,
    process_document_task,
    reprocess_document_task,
    run_async,
)


@pytest.fixture
def patched_worker(processor):
    """Point the tasks at the test processor and stub out engine.dispose()."""
    engine = MagicMock()
    engine.dispose = AsyncMock()
    with patch("app.services.processor.build_document_processor", return_value=processor), \
         patch("app.db.session.engine", engine):
        yield engine


# ─────────────────────────────────────────────────────────────────────────────
# Task bodies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessingTasks:

    def test_process_task_returns_summary_dict(self, patched_worker, make_document, repo):
        doc = make_document("# A\n\nalpha\n\n# B\n\nbeta", file_type="md")

        result = process_document_task(str(doc.id))

        assert result["document_id"] == str(doc.id)
        assert result["status"] == "COMPLETED"
        assert result["chunks_produced"] == 2
        assert result["chunks_persisted"] == 2
        assert result["failed_chunk_indices"] == []
        assert result["strategy"] == "sections"
        assert repo.documents[doc.id].status == "COMPLETED"
        patched_worker.dispose.assert_awaited_once()

    def test_reprocess_task_passes_chunk_params(self, patched_worker, make_document, repo):
        doc = make_document("Some plain text.", status="COMPLETED")

        result = reprocess_document_task(str(doc.id), chunk_size=300, chunk_overlap=30)

        assert result["status"] == "COMPLETED"
        assert repo.documents[doc.id].chunk_size == 300
        assert repo.documents[doc.id].chunk_overlap == 30

    def test_pipeline_error_propagates(self, patched_worker, make_document, repo):
        doc = make_document(b"not a pdf", file_type="pdf")

        with pytest.raises(ExtractionError):
            process_document_task(str(doc.id))

        assert repo.documents[doc.id].status == "FAILED"
        patched_worker.dispose.assert_awaited_once()

    def test_unknown_document_propagates(self, patched_worker):
        with pytest.raises(DocumentNotFoundError):
            process_document_task(str(uuid.uuid4()))

    def test_tasks_never_retry(self):
        assert process_document_task.max_retries == 0
        assert reprocess_document_task.max_retries == 0

    def test_health_check(self):
        assert health_check() == {"status": "ok", "worker": "healthy"}


# ─────────────────────────────────────────────────────────────────────────────
# Queueing helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestQueueing:

    def test_process_document_async_publishes_id(self):
        document_id = uuid.uuid4()
        with patch.object(
            process_document_task, "apply_async", return_value=MagicMock(id="t-1"),
        ) as apply_async:
            result = process_document_async(document_id)

        assert result.id == "t-1"
        apply_async.assert_called_once_with(args=[str(document_id)])

    def test_reprocess_document_async_publishes_params(self):
        document_id = uuid.uuid4()
        with patch.object(
            reprocess_document_task, "apply_async", return_value=MagicMock(id="t-2"),
        ) as apply_async:
            reprocess_document_async(document_id, chunk_size=500)

        apply_async.assert_called_once_with(
            args=[str(document_id)],
            kwargs={"chunk_size": 500, "chunk_overlap": None},
        )

    def test_eager_mode_runs_pipeline(self, patched_worker, make_document, repo):
        assert celery_app.conf.task_always_eager is True
        doc = make_document("Eagerly processed text.")

        result = process_document_async(doc.id)

        assert result.successful()
        assert result.result["chunks_persisted"] == 1
        assert repo.documents[doc.id].status == "COMPLETED"

    def test_ingest_tasks_routed_to_ingest_queue(self):
        assert TASK_ROUTES[process_document_task.name]["queue"] == "documents.ingest"
        assert TASK_ROUTES[reprocess_document_task.name]["queue"] == "documents.ingest"
        assert celery_app.conf.worker_prefetch_multiplier == 1


# ─────────────────────────────────────────────────────────────────────────────
# run_async
# ─────────────────────────────────────────────────────────────────────────────

async def _answer() -> int:
    return 42


@pytest.mark.unit
class TestRunAsync:

    def test_without_running_loop(self):
        assert run_async(_answer()) == 42

    async def test_inside_running_loop(self):
        assert run_async(_answer()) == 42

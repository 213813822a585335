"""
Integration Tests — /api/v1/documents
══════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Dependency injection chain (repository + task publisher overridden)
  - Status gate on /process and /reprocess
  - Exception handler mapping (404 / 409 / 422 / 503)
  - Response bodies and headers

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic validation, DocumentProcessor (for the
           read-after-run tests), error schemas
  🔲 Mock: PostgreSQL     (InMemoryDocumentRepository)
  🔲 Mock: Celery broker  (mock_publisher fixture)

How to run
──────────
  pytest -m integration tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest


def _url(document_id, action: str = "") -> str:
    suffix = f"/{action}" if action else ""
    return f"/api/v1/documents/{document_id}{suffix}"


# ─────────────────────────────────────────────────────────────────────────────
# GET /documents/{id}
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestGetDocument:

    async def test_pending_document(self, async_client, make_document):
        doc = make_document("Body text.")

        resp = await async_client.get(_url(doc.id))

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["document_id"] == str(doc.id)
        assert body["status"] == "PENDING"
        assert body["status_message"] == "Waiting to be processed"
        assert body["chunk_count"] == 0
        assert body["chunks"] == []
        assert "x-request-id" in resp.headers

    async def test_completed_document_with_chunks(self, async_client, processor, make_document):
        doc = make_document("# Setup\n\nInstall it.\n\n# Usage\n\nRun it.", file_type="md")
        await processor.process_document(doc.id)

        resp = await async_client.get(_url(doc.id), params={"include_chunks": "true"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "COMPLETED"
        assert body["chunking_strategy"] == "sections"
        assert body["word_count"] > 0
        assert body["chunk_count"] == 2
        assert [c["section"] for c in body["chunks"]] == ["Setup", "Usage"]
        assert body["chunks"][0]["content"].startswith("# Setup")

    async def test_chunks_hidden_by_default(self, async_client, processor, make_document):
        doc = make_document("Some text to chunk.")
        await processor.process_document(doc.id)

        body = (await async_client.get(_url(doc.id))).json()

        assert body["chunk_count"] == 1
        assert body["chunks"] == []

    async def test_failed_document_exposes_error(self, async_client, make_document):
        doc = make_document("x", status="FAILED")
        doc.processing_error = "Failed to extract text from PDF: EOF marker not found"

        body = (await async_client.get(_url(doc.id))).json()

        assert body["status"] == "FAILED"
        assert body["processing_error"].startswith("Failed to extract")

    async def test_unknown_document_returns_404(self, async_client):
        resp = await async_client.get(_url(uuid.uuid4()))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_invalid_uuid_returns_422(self, async_client):
        resp = await async_client.get(_url("not-a-uuid"))
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# POST /documents/{id}/process
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestProcessEndpoint:

    @pytest.mark.parametrize("status", ["PENDING", "FAILED"])
    async def test_queues_claimable_document(self, async_client, make_document, mock_publisher, status):
        doc = make_document("Body.", status=status)

        resp = await async_client.post(_url(doc.id, "process"))

        assert resp.status_code == 202, resp.text
        body = resp.json()
        assert body["document_id"] == str(doc.id)
        assert body["task_id"] == "task-process-1"
        assert resp.headers["location"] == _url(doc.id)
        mock_publisher.publish_process.assert_called_once_with(doc.id)

    @pytest.mark.parametrize("status", ["PROCESSING", "COMPLETED"])
    async def test_busy_document_returns_409(self, async_client, make_document, mock_publisher, status):
        doc = make_document("Body.", status=status)

        resp = await async_client.post(_url(doc.id, "process"))

        assert resp.status_code == 409
        body = resp.json()
        assert body["error_code"] == "DOCUMENT_BUSY"
        assert status in body["details"][0]["message"]
        mock_publisher.publish_process.assert_not_called()

    async def test_unknown_document_returns_404(self, async_client, mock_publisher):
        resp = await async_client.post(_url(uuid.uuid4(), "process"))
        assert resp.status_code == 404
        mock_publisher.publish_process.assert_not_called()

    async def test_broker_down_returns_503(self, async_client, make_document, mock_publisher, repo):
        mock_publisher.publish_process.side_effect = ConnectionError("broker unreachable")
        doc = make_document("Body.")

        resp = await async_client.post(_url(doc.id, "process"))

        assert resp.status_code == 503
        assert resp.json()["error_code"] == "QUEUE_ERROR"
        assert repo.documents[doc.id].status == "PENDING"


# ─────────────────────────────────────────────────────────────────────────────
# POST /documents/{id}/reprocess
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReprocessEndpoint:

    async def test_reprocess_without_body(self, async_client, make_document, mock_publisher):
        doc = make_document("Body.", status="COMPLETED")

        resp = await async_client.post(_url(doc.id, "reprocess"))

        assert resp.status_code == 202, resp.text
        assert resp.json()["task_id"] == "task-reprocess-1"
        mock_publisher.publish_reprocess.assert_called_once_with(
            doc.id, chunk_size=None, chunk_overlap=None,
        )

    async def test_reprocess_with_chunk_params(self, async_client, make_document, mock_publisher):
        doc = make_document("Body.", status="FAILED")

        resp = await async_client.post(
            _url(doc.id, "reprocess"),
            json={"chunk_size": 500, "chunk_overlap": 50},
        )

        assert resp.status_code == 202
        mock_publisher.publish_reprocess.assert_called_once_with(
            doc.id, chunk_size=500, chunk_overlap=50,
        )

    async def test_invalid_chunk_size_returns_422(self, async_client, make_document, mock_publisher):
        doc = make_document("Body.", status="COMPLETED")

        resp = await async_client.post(_url(doc.id, "reprocess"), json={"chunk_size": 0})

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"
        mock_publisher.publish_reprocess.assert_not_called()

    async def test_processing_document_returns_409(self, async_client, make_document, mock_publisher):
        doc = make_document("Body.", status="PROCESSING")

        resp = await async_client.post(_url(doc.id, "reprocess"))

        assert resp.status_code == 409
        mock_publisher.publish_reprocess.assert_not_called()

    async def test_stale_processing_document_is_queued(self, async_client, make_document, mock_publisher):
        doc = make_document("Body.", status="PROCESSING")
        doc.updated_at = datetime.now(timezone.utc) - timedelta(hours=2)

        resp = await async_client.post(_url(doc.id, "reprocess"))

        assert resp.status_code == 202, resp.text
        mock_publisher.publish_reprocess.assert_called_once_with(
            doc.id, chunk_size=None, chunk_overlap=None,
        )

    async def test_broker_down_returns_503(self, async_client, make_document, mock_publisher):
        mock_publisher.publish_reprocess.side_effect = ConnectionError("broker unreachable")
        doc = make_document("Body.", status="COMPLETED")

        resp = await async_client.post(_url(doc.id, "reprocess"))

        assert resp.status_code == 503

    async def test_unknown_document_returns_404(self, async_client):
        resp = await async_client.post(_url(uuid.uuid4(), "reprocess"))
        assert resp.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestHealth:

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_ready_when_database_answers(self, async_client):
        with patch("app.main.check_db_health", AsyncMock(return_value={"status": "ok"})):
            resp = await async_client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    async def test_not_ready_when_database_down(self, async_client):
        down = {"status": "error", "detail": "connection refused"}
        with patch("app.main.check_db_health", AsyncMock(return_value=down)):
            resp = await async_client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["database"]["detail"] == "connection refused"

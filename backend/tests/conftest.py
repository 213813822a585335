"""
Shared fixtures: in-memory repository, fake embedder, processor, API client.

Fixture hierarchy:
  function-scoped : repo, knowledge_base, make_document, provider, ledger,
                    generator, processor, mock_publisher, async_client

Environment strategy:
  - No test touches PostgreSQL, OpenAI or a broker. The repository is the
    in-memory fake from tests/fakes.py; the embedding provider is a
    deterministic fake that can be told to fail on chosen chunk contents.
  - Celery runs eagerly with an in-memory broker.

How to run:
  pytest                              # all tests
  pytest -m unit                      # unit tests only (fast, no I/O)
  pytest -m integration               # API tests through the ASGI stack
  pytest tests/unit/test_chunking.py  # single file
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",
    "postgresql+asyncpg://kb:kb@localhost:5432/kb_ingest_test")
os.environ.setdefault("OPENAI_API_KEY",           "sk-test-key")
os.environ.setdefault("EMBEDDING_MODEL",          "text-embedding-3-small")
os.environ.setdefault("CELERY_BROKER_URL",        "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND",    "cache+memory://")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("APP_ENV",                  "development")
os.environ.setdefault("DEBUG",                    "true")

from tests.fakes import FakeEmbeddingProvider, InMemoryDocumentRepository  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Identity fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_user_id() -> uuid.UUID:
    """A stable UUID used as the knowledge base owner across all tests."""
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.fixture
def test_kb_id() -> uuid.UUID:
    return uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


# ─────────────────────────────────────────────────────────────────────────────
# Repository + seeded rows
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def repo() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def knowledge_base(repo, test_kb_id, test_user_id):
    return repo.seed_knowledge_base(id=test_kb_id, user_id=test_user_id)


@pytest.fixture
def make_document(repo, knowledge_base, tmp_path: Path):
    """
    Factory fixture: write `content` to a temp file and register a document.

    Usage:
        doc = make_document("# Title\\n\\nbody", file_type="md")
        doc = make_document(b"...", file_type="pdf", status="FAILED")
    """
    def _build(
        content:       str | bytes = "Plain text body.",
        file_type:     str = "txt",
        status:        str = "PENDING",
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
    ):
        doc_id = uuid.uuid4()
        path = tmp_path / f"{doc_id}.{file_type}"
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")

        return repo.seed_document(
            id=doc_id,
            knowledge_base_id=knowledge_base.id,
            filename=path.name,
            original_name=f"upload.{file_type}",
            file_type=file_type,
            file_size=path.stat().st_size,
            file_path=str(path),
            status=status,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Embedding stack
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def ledger(repo):
    from app.observability.usage_ledger import UsageLedger
    return UsageLedger(repo)


@pytest.fixture
def generator(provider, ledger):
    from app.processing.embeddings import EmbeddingGenerator
    return EmbeddingGenerator(provider, ledger)


@pytest.fixture
def processor(repo, generator):
    from app.core.config import Settings
    from app.processing.extractor import ExtractorRegistry
    from app.services.processor import DocumentProcessor

    return DocumentProcessor(
        repository=repo,
        embedding_generator=generator,
        extractor_registry=ExtractorRegistry.default(),
        config=Settings(),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Mock task publisher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher():
    """TaskPublisher double returning fixed task ids."""
    from app.services.processor import TaskPublisher
    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_process.return_value = MagicMock(id="task-process-1")
    publisher.publish_reprocess.return_value = MagicMock(id="task-reprocess-1")
    return publisher


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(repo, mock_publisher):
    """
    FastAPI app with ALL external dependencies overridden:
      - get_repository     → in-memory fake (no PostgreSQL)
      - get_task_publisher → mock_publisher (no broker)
    """
    from app.api.v1.documents import get_task_publisher
    from app.main import app
    from app.repository import get_repository

    app.dependency_overrides[get_repository]     = lambda: repo
    app.dependency_overrides[get_task_publisher] = lambda: mock_publisher

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app.

    Lifespan is not run, so the database ping never fires.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

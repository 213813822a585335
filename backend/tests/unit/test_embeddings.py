"""
Unit Tests — Embedding Provider + Generator
════════════════════════════════════════════
The OpenAI client is replaced with an AsyncMock; asyncio.sleep is patched so
back-off never actually waits.

Coverage targets:
  ✅ Generator logs ONE usage row per attempt — success and failure
  ✅ Provider failure surfaces as EmbeddingError carrying the chunk index
  ✅ Cost priced from the catalogue; output tokens always 0
  ✅ OpenAI provider: retry on rate limit / connection / 5xx, fail fast on auth
  ✅ Missing API key → ConfigurationError, no request made
  ✅ Provider factory honours settings
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, EmbeddingError
from app.observability.usage_ledger import compute_embedding_cost
from app.processing.chunking import estimate_token_count
from app.processing.embeddings import (
    EmbeddingContext,
    OpenAIEmbeddingProvider,
    build_embedding_provider,
)
from tests.fakes import FakeEmbeddingProvider

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _status_error(cls, code: int):
    return cls(
        f"HTTP {code}",
        response=httpx.Response(code, request=_REQUEST),
        body=None,
    )


def _embedding_response(vector):
    return MagicMock(data=[MagicMock(embedding=vector)])


@pytest.fixture
def context(test_user_id, test_kb_id):
    return EmbeddingContext(
        user_id=test_user_id,
        document_id=uuid.uuid4(),
        knowledge_base_id=test_kb_id,
        chunk_index=3,
    )


@pytest.fixture
def openai_provider():
    provider = OpenAIEmbeddingProvider(api_key="sk-test", max_retries=2, retry_base_delay=0.01)
    provider._client = MagicMock()
    provider._client.embeddings.create = AsyncMock()
    return provider


# ─────────────────────────────────────────────────────────────────────────────
# EmbeddingGenerator
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEmbeddingGenerator:

    async def test_success_returns_vector_and_logs_usage(self, generator, provider, repo, context):
        content = "chunk body " * 20

        vector = await generator.embed(content, context)

        assert len(vector) == provider.dimensions
        assert len(repo.api_calls) == 1
        row = repo.api_calls[0]
        tokens = estimate_token_count(content)
        assert row.success is True
        assert row.error_message is None
        assert row.provider == "openai"
        assert row.model == "text-embedding-3-small"
        assert row.endpoint == "embeddings"
        assert row.context == "knowledge_base_processing"
        assert row.input_tokens == tokens
        assert row.output_tokens == 0
        assert row.total_tokens == tokens
        assert row.cost == compute_embedding_cost("text-embedding-3-small", tokens)
        assert row.user_id == context.user_id
        assert row.document_id == context.document_id
        assert row.knowledge_base_id == context.knowledge_base_id
        assert row.call_metadata == {"chunk_index": 3}

    async def test_failure_logs_failed_row_and_raises(self, generator, provider, repo, context):
        provider.fail_markers.add("boom")

        with pytest.raises(EmbeddingError) as exc_info:
            await generator.embed("this will boom", context)

        assert exc_info.value.chunk_index == 3
        assert len(repo.api_calls) == 1
        row = repo.api_calls[0]
        assert row.success is False
        assert row.output_tokens == 0
        assert "rate limit exceeded" in row.error_message

    async def test_ledger_outage_does_not_break_embedding(self, generator, repo, context):
        repo.fail_api_call_log = True
        vector = await generator.embed("still works", context)
        assert vector
        assert repo.api_calls == []

    def test_generator_exposes_provider_model(self, generator):
        assert generator.model == "text-embedding-3-small"
        assert generator.is_configured() is True


# ─────────────────────────────────────────────────────────────────────────────
# OpenAIEmbeddingProvider
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOpenAIProvider:

    async def test_embed_calls_api_with_float_encoding(self, openai_provider):
        openai_provider._client.embeddings.create.return_value = _embedding_response([0.1, 0.2])

        vector = await openai_provider.embed("hello")

        assert vector == [0.1, 0.2]
        openai_provider._client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small",
            input="hello",
            encoding_format="float",
        )

    async def test_rate_limit_is_retried(self, openai_provider):
        openai_provider._client.embeddings.create.side_effect = [
            _status_error(openai.RateLimitError, 429),
            openai.APIConnectionError(request=_REQUEST),
            _embedding_response([0.5]),
        ]

        with patch("app.processing.embeddings.asyncio.sleep", new=AsyncMock()) as sleep:
            vector = await openai_provider.embed("hello")

        assert vector == [0.5]
        assert openai_provider._client.embeddings.create.await_count == 3
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [0.01, 0.02]

    async def test_server_error_exhausts_retries(self, openai_provider):
        openai_provider._client.embeddings.create.side_effect = _status_error(
            openai.InternalServerError, 503,
        )

        with patch("app.processing.embeddings.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(openai.InternalServerError):
                await openai_provider.embed("hello")

        assert openai_provider._client.embeddings.create.await_count == 3

    async def test_authentication_error_fails_fast(self, openai_provider):
        openai_provider._client.embeddings.create.side_effect = _status_error(
            openai.AuthenticationError, 401,
        )

        with patch("app.processing.embeddings.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(openai.AuthenticationError):
                await openai_provider.embed("hello")

        assert openai_provider._client.embeddings.create.await_count == 1
        sleep.assert_not_awaited()

    async def test_bad_request_fails_fast(self, openai_provider):
        openai_provider._client.embeddings.create.side_effect = _status_error(
            openai.BadRequestError, 400,
        )
        with pytest.raises(openai.BadRequestError):
            await openai_provider.embed("x" * 10)
        assert openai_provider._client.embeddings.create.await_count == 1

    async def test_missing_key_raises_configuration_error(self):
        provider = OpenAIEmbeddingProvider(api_key="   ")
        assert provider.is_configured() is False
        with pytest.raises(ConfigurationError):
            await provider.embed("hello")


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProviderFactory:

    def test_openai_from_settings(self):
        provider = build_embedding_provider(Settings(
            openai_api_key="sk-abc",
            embedding_model="text-embedding-3-large",
        ))
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.model == "text-embedding-3-large"
        assert provider.is_configured()

    def test_unknown_backend_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown embedding provider"):
            build_embedding_provider(Settings(embedding_provider="cohere"))

    async def test_fake_provider_is_deterministic(self):
        fake = FakeEmbeddingProvider()
        assert await fake.embed("same text") == await fake.embed("same text")
        assert await fake.embed("same text") != await fake.embed("other text")

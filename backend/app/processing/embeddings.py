"""
Embedding Generation  —  Per-Chunk Embeddings with Retry & Usage Accounting
══════════════════════════════════════════════════════════════════════════════

Two layers:

  EmbeddingProvider     text → vector. The external model call and nothing
                        else. Injected into the processor so tests can swap
                        in a deterministic fake.
  EmbeddingGenerator    wraps a provider: times the call, prices it, writes
                        ONE usage-ledger row per attempt (success or failure)
                        and re-raises provider failures as EmbeddingError.

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims, ~$0.00002/1K tokens  (default)
  text-embedding-3-large  → 3072 dims, ~$0.00013/1K tokens  (higher accuracy)

Calls are strictly one chunk at a time: the processor awaits each embedding
before starting the next, which bounds memory and keeps the pipeline under
provider rate limits.

Retry policy (OpenAIEmbeddingProvider):
  On RateLimitError        → wait base_delay × 2^(attempt-1), capped at 30s
  On APIStatusError (5xx)  → same back-off
  On APIConnectionError    → same back-off (covers timeouts)
  On AuthenticationError / BadRequestError / other 4xx → fail immediately

Token accounting:
  Input tokens are the chunk's heuristic estimate (4 chars ≈ 1 token), the
  same figure stored on the chunk row and summed into the knowledge base.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ConfigurationError, EmbeddingError
from app.observability.usage_ledger import UsageLedger, UsageRecord, compute_embedding_cost
from app.processing.chunking import estimate_token_count

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

RETRY_MAX_DELAY  = 30.0   # cap, seconds
ENDPOINT         = "embeddings"
DEFAULT_CONTEXT  = "knowledge_base_processing"


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """External embedding model: `embed(text) -> vector`."""

    provider_name: str = "unknown"

    @property
    @abstractmethod
    def model(self) -> str:
        """Model tag persisted alongside every chunk."""

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials are present; checked before any work starts."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for `text`. Raises on any failure."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI embeddings over openai.AsyncOpenAI — does not block the event loop.

    The client is created lazily on first use, so constructing the provider
    without an API key is allowed; is_configured() reports the gap.
    """

    provider_name = "openai"

    def __init__(
        self,
        api_key:          str   = "",
        model:            str   = "text-embedding-3-small",
        max_retries:      int   = 2,
        retry_base_delay: float = 1.0,
        timeout:          float = 60.0,
    ) -> None:
        self._api_key          = api_key
        self._model            = model
        self._max_retries      = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout          = timeout
        self._client           = None

    @property
    def model(self) -> str:
        return self._model

    def is_configured(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            # Retries are handled here so every attempt is visible in the logs
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        if not self.is_configured():
            raise ConfigurationError("OpenAI API key is not configured")

        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | model=%s attempt=%d delay=%.1fs error=%s",
                    self._model, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                response = await self._get_client().embeddings.create(
                    model=self._model,
                    input=text,
                    encoding_format="float",
                )
                return list(response.data[0].embedding)
            except Exception as exc:
                if not _is_retryable(exc):
                    logger.error("Non-retryable embedding error | model=%s: %s", self._model, exc)
                    raise
                last_error = exc
                logger.warning(
                    "Retryable embedding error | model=%s attempt=%d: %s %s",
                    self._model, attempt, type(exc).__name__, exc,
                )

        raise last_error or RuntimeError(
            f"Embedding failed after {self._max_retries} retries"
        )


def _is_retryable(exc: Exception) -> bool:
    import openai

    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError, openai.BadRequestError)):
        return False
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return False


def build_embedding_provider(config: Settings | None = None) -> EmbeddingProvider:
    """Provider for the configured backend. Only 'openai' is supported."""
    config = config or default_settings
    backend = config.embedding_provider.lower()

    if backend == "openai":
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key,
            model=config.embedding_model,
            max_retries=config.embedding_max_retries,
            retry_base_delay=config.embedding_retry_base_delay,
            timeout=config.embedding_request_timeout,
        )

    raise ConfigurationError(
        f"Unknown embedding provider: '{backend}'. Valid options: 'openai'"
    )


# ---------------------------------------------------------------------------
# Generator (provider + usage ledger)
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingContext:
    """Ownership of one embedding call, copied onto its ledger row."""
    user_id:           UUID
    document_id:       Optional[UUID] = None
    knowledge_base_id: Optional[UUID] = None
    chunk_index:       Optional[int]  = None
    label:             str            = DEFAULT_CONTEXT


class EmbeddingGenerator:
    """
    Usage:
        generator = EmbeddingGenerator(provider, UsageLedger(repo))
        vector = await generator.embed(chunk.content, EmbeddingContext(user_id=uid))
    """

    def __init__(self, provider: EmbeddingProvider, ledger: UsageLedger) -> None:
        self._provider = provider
        self._ledger   = ledger

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def model(self) -> str:
        return self._provider.model

    def is_configured(self) -> bool:
        return self._provider.is_configured()

    async def embed(self, content: str, context: EmbeddingContext) -> list[float]:
        """
        Embed one chunk and log the attempt.

        Raises:
            EmbeddingError if the provider fails (after its own retries).
        """
        tokens = estimate_token_count(content)
        t0 = time.monotonic()

        try:
            vector = await self._provider.embed(content)
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            logger.warning(
                "Embedding failed | document_id=%s chunk=%s elapsed_ms=%d error=%s",
                context.document_id, context.chunk_index, elapsed_ms, exc,
            )
            await self._ledger.record(
                self._usage(context, tokens, elapsed_ms, success=False, error=str(exc))
            )
            raise EmbeddingError(str(exc), chunk_index=context.chunk_index) from exc

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        logger.debug(
            "Embedding | document_id=%s chunk=%s tokens=%d dims=%d elapsed_ms=%d",
            context.document_id, context.chunk_index, tokens, len(vector), elapsed_ms,
        )
        await self._ledger.record(self._usage(context, tokens, elapsed_ms, success=True))
        return vector

    def _usage(
        self,
        context:    EmbeddingContext,
        tokens:     int,
        elapsed_ms: int,
        success:    bool,
        error:      Optional[str] = None,
    ) -> UsageRecord:
        metadata = {} if context.chunk_index is None else {"chunk_index": context.chunk_index}
        return UsageRecord(
            user_id=context.user_id,
            provider=self._provider.provider_name,
            model=self._provider.model,
            endpoint=ENDPOINT,
            input_tokens=tokens,
            output_tokens=0,
            cost=compute_embedding_cost(self._provider.model, tokens),
            response_time_ms=elapsed_ms,
            context=context.label,
            document_id=context.document_id,
            knowledge_base_id=context.knowledge_base_id,
            metadata=metadata,
            success=success,
            error_message=error,
        )

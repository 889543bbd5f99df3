"""
Embedding Client  —  Guarded Single-Text Embeddings with Retry
══════════════════════════════════════════════════════════════

embed(text) → list[float]

Input guard (runs before any network call):
  • non-string input is coerced: list/tuple → space-joined, dict → JSON
  • empty or whitespace-only text is rejected
  • C0 control characters other than tab/LF/CR, and DEL, are rejected;
    they only appear when binary garbage leaked into the text

One provider call per logical chunk. embed_chunks() fans chunks out with
bounded concurrency; chunk boundaries are decided by the chunker.

Retry policy:
  On RateLimitError      → wait RETRY_BASE_DELAY × 2^attempt (exponential)
  On InternalServerError → wait RETRY_BASE_DELAY × 2^attempt
  On APIConnectionError  → same, covers timeouts
  On any other API error → fail immediately (auth, bad request, not found)

Errors are wrapped in EmbeddingUpstreamError carrying the input length and
a short preview, never the full chunk text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Sequence

import openai

from app.core.config import settings
from app.processing.errors import EmbeddingUpstreamError, EmbeddingValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_CONCURRENT_CALLS = 4      # concurrent embedding requests per document
MAX_RETRIES          = 3      # retry limit per text
RETRY_BASE_DELAY     = 2.0    # seconds — doubles each retry
RETRY_MAX_DELAY      = 60.0   # cap
PREVIEW_CHARS        = 80

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_RETRYABLE_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,      # includes APITimeoutError
    openai.InternalServerError,
)


# ---------------------------------------------------------------------------
# Input guard
# ---------------------------------------------------------------------------

def normalize_embedding_input(value: Any) -> str:
    """Coerce to str, then validate. Raises EmbeddingValidationError."""
    if isinstance(value, str):
        text = value
    elif isinstance(value, (list, tuple)):
        text = " ".join(str(v) for v in value)
    elif value is None:
        text = ""
    elif isinstance(value, dict):
        text = json.dumps(value, ensure_ascii=False)
    else:
        text = str(value)

    if not text.strip():
        raise EmbeddingValidationError("Embedding input is empty after trimming whitespace.")

    match = _CONTROL_CHARS_RE.search(text)
    if match:
        raise EmbeddingValidationError(
            f"Embedding input contains a control character "
            f"(U+{ord(match.group()):04X} at position {match.start()})."
        )
    return text


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS] + ("…" if len(text) > PREVIEW_CHARS else "")


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, _RETRYABLE_ERRORS):
        return True
    return isinstance(exc, openai.APIStatusError) and exc.status_code >= 500


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def create_openai_client() -> openai.AsyncOpenAI:
    """Azure OpenAI when an endpoint is configured, OpenAI otherwise."""
    if settings.azure_openai_endpoint:
        return openai.AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            azure_endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
        )
    return openai.AsyncOpenAI(api_key=settings.openai_api_key)


class EmbeddingClient:
    """
    Usage:
        client = EmbeddingClient()
        vector = await client.embed("quarterly travel policy")
        pairs  = await client.embed_chunks(chunks)   # [(chunk, vector), ...]
    """

    def __init__(
        self,
        client: openai.AsyncOpenAI | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._client      = client
        self._model       = model or (
            settings.azure_openai_embedding_deployment
            if settings.azure_openai_endpoint else settings.embedding_model
        )
        self._dimensions  = dimensions or settings.embedding_dimensions
        self._max_retries = max_retries
        self._base_delay  = retry_base_delay

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = create_openai_client()
        return self._client

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def embed(self, value: Any) -> list[float]:
        text = normalize_embedding_input(value)
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | attempt=%d delay=%.1fs input_length=%d error=%s",
                    attempt, delay, len(text), type(last_error).__name__,
                )
                await asyncio.sleep(delay)

            try:
                return await self._call(text)
            except openai.OpenAIError as exc:
                last_error = exc
                if not _is_retryable(exc):
                    logger.error(
                        "Non-retryable embedding error | input_length=%d error=%s",
                        len(text), type(exc).__name__,
                    )
                    raise EmbeddingUpstreamError(
                        f"Embedding request failed: {type(exc).__name__}: {exc}",
                        input_length=len(text),
                        input_preview=_preview(text),
                    ) from exc

        raise EmbeddingUpstreamError(
            f"Embedding request failed after {self._max_retries} retries: "
            f"{type(last_error).__name__}: {last_error}",
            input_length=len(text),
            input_preview=_preview(text),
            retryable=True,
        ) from last_error

    async def embed_chunks(self, chunks: Sequence) -> list[tuple[Any, list[float]]]:
        """
        Embed every chunk (anything with a `.text`), preserving order.
        The first failure propagates; the pipeline marks the document failed.
        """
        if not chunks:
            return []

        t0 = time.monotonic()
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_CALLS)

        async def _one(chunk):
            async with semaphore:
                return chunk, await self.embed(chunk.text)

        pairs = await asyncio.gather(*(_one(c) for c in chunks))
        logger.info(
            "Embedded chunks | count=%d model=%s elapsed_ms=%.0f",
            len(pairs), self._model, (time.monotonic() - t0) * 1000,
        )
        return list(pairs)

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    async def _call(self, text: str) -> list[float]:
        kwargs: dict = {"model": self._model, "input": [text]}
        if self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions   # text-embedding-3-* only
        response = await self._get_client().embeddings.create(**kwargs)
        return list(response.data[0].embedding)

"""
Embedding Generator  —  Enhanced Question Embeddings with Per-Item Fallback
═════════════════════════════════════════════════════════════════════════════

What gets embedded
──────────────────
  Short questions embed poorly on their own.  When a context is supplied
  (the answer, for QA items) the text sent to the model is enhanced:

      <context>
      <normalized question>
      キーワード: <key term>, <key term>, …

  normalize_text() folds full-width digits/letters and collapses whitespace
  first, so "ＧＰＴ４" and "GPT4" land on the same vector.

Failure ladder (per batch)
──────────────────────────
  1. One embeddings call for the whole batch of enhanced texts
  2. Batch fails → embed each item on its own (enhanced text)
  3. Item fails  → retry once with the plain normalized question
  4. Still fails → item keeps a null vector and is persisted anyway

  A QuotaOrAuthError is never degraded: bad credentials would null every
  vector, so it aborts the stage instead.

Retry policy (inside a single call)
───────────────────────────────────
  RateLimitError / 5xx / timeouts → RETRY_BASE_DELAY × 2^attempt, MAX_RETRIES times
  AuthenticationError             → QuotaOrAuthError immediately
  Anything else                   → EmbeddingError immediately
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from docqa.core.config import Settings
from docqa.core.errors import (
    EmbeddingError,
    QuotaOrAuthError,
    classify_provider_error,
    is_rate_limit,
)
from docqa.processing.qa_generator import GeneratedQA
from docqa.processing.text_analysis import extract_key_terms, normalize_text

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_RETRIES      = 3      # per call, transient errors only
RETRY_BASE_DELAY = 1.0    # seconds — doubles each retry
RETRY_MAX_DELAY  = 20.0

KEY_TERMS_LABEL = "キーワード"


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingOutcome:
    vector:        list[float]
    key_terms:     list[str]
    enhanced_text: str


@dataclass
class EmbeddedQA:
    """A GeneratedQA plus its vector; vector is None when every attempt failed."""
    qa:              GeneratedQA
    vector:          list[float] | None
    key_terms:       list[str] = field(default_factory=list)
    enhanced_text:   str       = ""
    used_plain_text: bool      = False


@dataclass
class EmbeddingBatchResult:
    items:        list[EmbeddedQA]
    elapsed_ms:   float = 0.0

    @property
    def null_vectors(self) -> int:
        return sum(1 for i in self.items if i.vector is None)

    @property
    def plain_text_fallbacks(self) -> int:
        return sum(1 for i in self.items if i.used_plain_text and i.vector is not None)


def build_enhanced_text(text: str, context: str | None = None) -> tuple[str, list[str]]:
    """Return (text to embed, key terms). Without context the normalized text is used as-is."""
    normalized = normalize_text(text)
    if not context:
        return normalized, []
    terms = extract_key_terms(normalized)
    lines = [normalize_text(context), normalized]
    if terms:
        lines.append(f"{KEY_TERMS_LABEL}: {', '.join(terms)}")
    return "\n".join(lines), terms


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    Usage:
        generator = EmbeddingGenerator(settings)
        outcome   = await generator.embed("質問は？", context="回答です。")
        batch     = await generator.embed_items(qa_items)
    """

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._model       = settings.embedding_model
        self._dimensions  = settings.embedding_dimensions
        self._batch_size  = max(1, settings.embedding_batch_size)
        self._concurrency = max(1, settings.embedding_max_concurrency)
        if client is None:
            from openai import AsyncOpenAI
            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self._client = client

    # ------------------------------------------------------------------
    # Single text
    # ------------------------------------------------------------------

    async def embed(self, text: str, context: str | None = None) -> EmbeddingOutcome:
        """
        Embed one text, enhanced with key terms when context is given.

        Raises:
            EmbeddingError:   the service failed or returned a malformed vector.
            QuotaOrAuthError: credentials rejected or rate limit never cleared.
        """
        enhanced, terms = build_enhanced_text(text, context)
        vectors = await self._create([enhanced])
        return EmbeddingOutcome(vector=vectors[0], key_terms=terms, enhanced_text=enhanced)

    # ------------------------------------------------------------------
    # QA items
    # ------------------------------------------------------------------

    async def embed_items(self, items: Sequence[GeneratedQA]) -> EmbeddingBatchResult:
        """Embed every item's question (answer as context); never fails per item."""
        if not items:
            return EmbeddingBatchResult(items=[])

        t0 = time.monotonic()
        prepared = [
            (qa, *build_enhanced_text(qa.question, qa.answer))
            for qa in items
        ]
        batches = [
            prepared[i:i + self._batch_size]
            for i in range(0, len(prepared), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._concurrency)

        tasks = [
            asyncio.ensure_future(self._embed_batch(batch, idx, semaphore))
            for idx, batch in enumerate(batches)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # First failure (QuotaOrAuthError, stage timeout) stops the other batches
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        embedded = [item for batch in results for item in batch]
        result   = EmbeddingBatchResult(items=embedded, elapsed_ms=(time.monotonic() - t0) * 1000)

        logger.info(
            "EmbeddingGenerator | items=%d batches=%d null_vectors=%d plain_fallbacks=%d "
            "model=%s elapsed_ms=%.0f",
            len(embedded), len(batches), result.null_vectors,
            result.plain_text_fallbacks, self._model, result.elapsed_ms,
        )
        return result

    async def _embed_batch(
        self,
        batch:     list[tuple[GeneratedQA, str, list[str]]],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[EmbeddedQA]:
        async with semaphore:
            try:
                vectors = await self._create([enhanced for _, enhanced, _ in batch])
                return [
                    EmbeddedQA(qa=qa, vector=vec, key_terms=terms, enhanced_text=enhanced)
                    for (qa, enhanced, terms), vec in zip(batch, vectors)
                ]
            except EmbeddingError as exc:
                logger.warning(
                    "EmbeddingGenerator | batch=%d size=%d failed, embedding items one by one: %s",
                    batch_idx, len(batch), exc,
                )
            return [await self._embed_one(qa, enhanced, terms) for qa, enhanced, terms in batch]

    async def _embed_one(self, qa: GeneratedQA, enhanced: str, terms: list[str]) -> EmbeddedQA:
        try:
            vector = (await self._create([enhanced]))[0]
            return EmbeddedQA(qa=qa, vector=vector, key_terms=terms, enhanced_text=enhanced)
        except EmbeddingError as exc:
            logger.warning("EmbeddingGenerator | enhanced text failed, retrying plain: %s", exc)

        plain = normalize_text(qa.question)
        try:
            vector = (await self._create([plain]))[0]
        except EmbeddingError as exc:
            logger.error(
                "EmbeddingGenerator | item persisted without vector question=%.60s: %s",
                qa.question, exc,
            )
            vector = None
        return EmbeddedQA(
            qa=qa, vector=vector, key_terms=terms, enhanced_text=enhanced, used_plain_text=True,
        )

    # ------------------------------------------------------------------
    # Service call with retry
    # ------------------------------------------------------------------

    async def _create(self, texts: list[str]) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | size=%d attempt=%d delay=%.1fs error=%s",
                    len(texts), attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                response = await self._client.embeddings.create(
                    model=self._model,
                    input=texts,
                    dimensions=self._dimensions,
                )
            except Exception as exc:
                kind = classify_provider_error(exc)
                if kind == "quota_or_auth":
                    raise QuotaOrAuthError(
                        f"{type(exc).__name__}: {exc}", stage="embedding",
                        detail={"model": self._model},
                    ) from exc
                if kind != "retryable":
                    raise EmbeddingError(
                        f"{type(exc).__name__}: {exc}", stage="embedding",
                    ) from exc
                last_error = exc
                continue

            vectors = [d.embedding for d in response.data]
            if len(vectors) != len(texts) or any(len(v) != self._dimensions for v in vectors):
                raise EmbeddingError(
                    f"Embedding service returned {len(vectors)} vector(s) for {len(texts)} "
                    f"input(s); expected dimension {self._dimensions}",
                    stage="embedding",
                )
            return vectors

        if last_error is not None and is_rate_limit(last_error):
            raise QuotaOrAuthError(
                f"Rate limit not cleared after {MAX_RETRIES} retries: {last_error}",
                stage="embedding", detail={"model": self._model},
            ) from last_error
        raise EmbeddingError(
            f"Embedding failed after {MAX_RETRIES} retries: {last_error}", stage="embedding",
        ) from last_error

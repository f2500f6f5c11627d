"""
Document Pipeline Orchestrator
══════════════════════════════

Drives one ProcessingSession from pending to a terminal state:

  ┌──────────────┐   ┌────────────┐   ┌──────────────┐   ┌──────────────┐
  │ download +   │──→│ chunking   │──→│ QA generation│──→│ embedding    │──→ persist ──→ completed
  │ extraction   │   │ (thread)   │   │ per segment  │   │ batched      │
  └──────────────┘   └────────────┘   └──────────────┘   └──────────────┘
      300 s               180 s          no budget            300 s
   10 → 20 → 30            30           50 ──────→ 80           80          80 → 90 → 100

Failure model:
  - Every stage write goes through SessionStateMachine.update_status(), which
    raises SessionCancelled when the caller cancelled; the run stops there and
    writes nothing else.
  - A PipelineError (including StageTimeoutError) is recorded on the session
    with its stage and code; any other exception is recorded as UNKNOWN_ERROR.
  - Per-segment QA failures and per-item embedding failures never reach this
    level; they show up in processing_stats instead.

run() never raises for pipeline failures: it returns the final session
snapshot so a queue worker can decide whether the attempt failed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar
from uuid import UUID

from docqa.core.config import Settings
from docqa.core.errors import (
    InvalidTransitionError,
    PipelineError,
    SessionCancelled,
    SessionNotFoundError,
    StageTimeoutError,
)
from docqa.observability.tracing import traced
from docqa.processing.chunking import segment_for_generation
from docqa.processing.embeddings import EmbeddingBatchResult, EmbeddingGenerator
from docqa.processing.extractor import ContentExtractor, DocumentSegment, ExtractionResult
from docqa.processing.qa_generator import QAGenerationResult, QAGenerator
from docqa.schemas.sessions import ProcessingOptions, SessionStatus
from docqa.services import session_state as steps
from docqa.services.persister import CollectionPersister
from docqa.services.session_state import SessionStateMachine
from docqa.services.usage import NullUsageCounter, UsageCounter, UsageCounterError
from docqa.store.base import PipelineStore, SessionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Run:
    """Mutable state of one run; stage names what a failure is attributed to."""
    session:       SessionRecord
    options:       ProcessingOptions
    started:       float
    stage:         str = "start"
    collection_id: UUID | None = None
    stats:         dict[str, Any] = field(default_factory=dict)
    decode_layers: Counter = field(default_factory=Counter)

    def elapsed(self) -> float:
        return round(time.monotonic() - self.started, 2)


class DocumentPipeline:
    """
    Usage:
        pipeline = DocumentPipeline(store, state_machine, extractor, generator,
                                    embedder, persister, settings)
        final    = await pipeline.run(session_id)
    """

    def __init__(
        self,
        store:         PipelineStore,
        state_machine: SessionStateMachine,
        extractor:     ContentExtractor,
        qa_generator:  QAGenerator,
        embedder:      EmbeddingGenerator,
        persister:     CollectionPersister,
        settings:      Settings,
        usage_counter: UsageCounter | None = None,
    ) -> None:
        self._store     = store
        self._state     = state_machine
        self._extractor = extractor
        self._generator = qa_generator
        self._embedder  = embedder
        self._persister = persister
        self._settings  = settings
        self._usage     = usage_counter or NullUsageCounter()

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def run(self, session_id: UUID) -> SessionRecord | None:
        """Process one session end to end; returns the final snapshot."""
        run: _Run | None = None
        try:
            session = await self._state.begin(session_id)
            options = ProcessingOptions.model_validate(session.processing_options or {})
            run = _Run(session=session, options=options, started=time.monotonic())
            await self._execute(run)
        except SessionCancelled:
            logger.info("DocumentPipeline | session=%s cancelled; stopping", session_id)
            if run is not None and run.collection_id is not None:
                await self._discard_collection(run.collection_id)
        except SessionNotFoundError:
            logger.warning("DocumentPipeline | session=%s does not exist", session_id)
            return None
        except InvalidTransitionError as exc:
            logger.warning("DocumentPipeline | session=%s not runnable: %s", session_id, exc)
            # Another writer (the Reaper) finished the session after persist
            if run is not None and run.collection_id is not None:
                await self._discard_collection(run.collection_id)
        except PipelineError as exc:
            await self._record_failure(session_id, run, exc)
        except Exception as exc:
            logger.exception("DocumentPipeline | session=%s unexpected error", session_id)
            await self._record_failure(session_id, run, exc)

        return await self._store.get_session(session_id)

    async def _execute(self, run: _Run) -> None:
        sid = run.session.id

        extraction = await self._extract(run)
        segments   = await self._segment(run, extraction.segments)
        qa         = await self._generate(run, segments)
        embedded   = await self._embed(run, qa)

        run.stage = "persistence"
        await self._advance(run, steps.PERSIST)
        run.collection_id = await self._persister.persist(run.session, embedded.items)

        run.stage = "finalize"
        run.stats.update({
            "total_questions":         len(embedded.items),
            "null_vectors":            embedded.null_vectors,
            "plain_text_fallbacks":    embedded.plain_text_fallbacks,
            "processing_time_seconds": run.elapsed(),
        })
        await self._advance(run, steps.FINALIZE, stats=self._stats(run))

        final = await self._state.update_status(
            sid, SessionStatus.COMPLETED, *steps.DONE,
            collection_id=run.collection_id,
            stats=self._stats(run),
        )
        logger.info(
            "DocumentPipeline | session=%s completed collection=%s items=%d elapsed=%.2fs",
            sid, run.collection_id, len(embedded.items), run.elapsed(),
        )
        await self._count_usage(final, len(embedded.items))

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    @traced("pipeline.extraction")
    async def _extract(self, run: _Run) -> ExtractionResult:
        async def download_and_extract() -> ExtractionResult:
            run.stage = "download"
            await self._advance(run, steps.DOWNLOAD)
            data = await self._extractor.fetch(run.session.storage_url)

            run.stage = "extraction"
            await self._advance(run, steps.EXTRACTION)
            return await self._extractor.extract_detailed(data, run.session.mime_type)

        result = await self._within(run, self._settings.extraction_timeout_seconds, download_and_extract())
        run.decode_layers.update(result.decode_layers)
        run.stats.update({
            "extracted_segments": len(result.segments),
            "discarded_segments": result.discarded,
            "ocr_escalated":      result.ocr_escalated,
            "extraction_passes":  result.extraction_calls,
            "raster_pages":       len(result.layout.raster_pages),
        })
        return result

    @traced("pipeline.chunking")
    async def _segment(self, run: _Run, segments: list[DocumentSegment]) -> list[DocumentSegment]:
        run.stage = "chunking"
        out = await self._within(
            run,
            self._settings.chunking_timeout_seconds,
            asyncio.to_thread(
                segment_for_generation,
                segments,
                run.options.segmentation_strategy,
                self._settings.chunk_max_chars,
                self._settings.chunk_merge_under,
            ),
        )
        run.stats["total_segments"] = len(out)
        return out

    @traced("pipeline.qa_generation")
    async def _generate(self, run: _Run, segments: list[DocumentSegment]) -> QAGenerationResult:
        run.stage = "qa_generation"
        await self._advance(run, steps.QA_START)

        async def report(done: int, total: int) -> None:
            await self._state.update_status(
                run.session.id,
                SessionStatus.PROCESSING,
                steps.qa_band_progress(done, total),
                f"{steps.QA_START.label} ({done}/{total})",
            )

        result = await self._generator.generate(segments, run.options, progress=report)
        run.decode_layers.update(result.decode_layers)
        scores = [qa.quality_score for qa in result.items]
        run.stats.update({
            "generated_questions": result.generated,
            "filtered_out":        result.filtered_out,
            "failed_segments":     result.failed_segments,
            "avg_quality_score":   round(sum(scores) / len(scores), 3) if scores else 0.0,
        })
        return result

    @traced("pipeline.embedding")
    async def _embed(self, run: _Run, qa: QAGenerationResult) -> EmbeddingBatchResult:
        run.stage = "embedding"
        await self._advance(run, steps.EMBEDDING)
        return await self._within(
            run, self._settings.embedding_timeout_seconds, self._embedder.embed_items(qa.items),
        )

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _advance(
        self,
        run:       _Run,
        milestone: steps.Milestone,
        stats:     dict[str, Any] | None = None,
    ) -> None:
        run.session = await self._state.update_status(
            run.session.id, SessionStatus.PROCESSING, milestone.progress, milestone.label, stats=stats,
        )

    async def _within(self, run: _Run, budget: float, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=budget)
        except asyncio.TimeoutError:
            raise StageTimeoutError(run.stage, budget) from None

    @staticmethod
    def _stats(run: _Run) -> dict[str, Any]:
        return {**run.stats, "decode_layers": dict(run.decode_layers)}

    async def _record_failure(self, session_id: UUID, run: _Run | None, exc: BaseException) -> None:
        stage = run.stage if run is not None else "start"
        stats = None
        if run is not None:
            run.stats["processing_time_seconds"] = run.elapsed()
            stats = self._stats(run)
        await self._state.fail(session_id, exc, stage, stats=stats)
        if run is not None and run.collection_id is not None:
            await self._discard_collection(run.collection_id)

    async def _discard_collection(self, collection_id: UUID) -> None:
        try:
            await self._store.delete_collection(collection_id)
        except Exception:
            logger.exception(
                "DocumentPipeline | collection=%s left behind by an unfinished session", collection_id,
            )

    async def _count_usage(self, session: SessionRecord, items: int) -> None:
        try:
            await self._usage.increment(user_id=session.user_id, session_id=session.id, items=items)
        except UsageCounterError as exc:
            logger.warning("DocumentPipeline | session=%s usage counter not updated: %s", session.id, exc)

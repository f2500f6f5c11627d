"""
QA Generator
════════════

Prompts the language model once per segment for question/answer pairs and
collects the results in an explicit partial-results accumulator:

  segment 0 ──→ SegmentOutcome(ok=True,  items=[…3])
  segment 1 ──→ SegmentOutcome(ok=False, error="DecodeError: …")   ← isolated
  segment 2 ──→ SegmentOutcome(ok=True,  items=[…2])
                      │
                      ▼
         filter_by_quality(all items, threshold)

A segment failure (model error, undecodable output, reconstruction
placeholder) yields zero items and the batch continues.  Only a
QuotaOrAuthError aborts the batch, since every later call would fail the same
way.

Segments run sequentially so language-model concurrency stays at one per
session and progress callbacks arrive in order.  The progress callback runs
outside the per-segment error isolation, so a SessionCancelled raised by a
status write stops generation immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from docqa.core.errors import DecodeError, LanguageModelError, QuotaOrAuthError
from docqa.llm.gateway import LLMGateway
from docqa.processing.decoder import decode_with_layer
from docqa.processing.extractor import DocumentSegment
from docqa.processing.prompts import QA_SYSTEM_PROMPT, render_qa_prompt
from docqa.schemas.sessions import ProcessingOptions

logger = logging.getLogger(__name__)

SOURCE_EXCERPT_CHARS = 200

# progress(done, total) — awaited after each segment
ProgressCallback = Callable[[int, int], Awaitable[None]]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class GeneratedQA:
    """A candidate QA pair; ephemeral until it passes the quality filter."""
    question:       str
    answer:         str
    question_type:  str
    quality_score:  float
    confidence:     float
    source_excerpt: str
    segment_index:  int = 0


@dataclass
class SegmentOutcome:
    """Tagged per-segment result: ok with items, or failed with a reason."""
    segment_index: int
    ok:            bool
    items:         list[GeneratedQA] = field(default_factory=list)
    error:         str | None = None
    decode_layer:  str | None = None


@dataclass
class QAGenerationResult:
    outcomes:     list[SegmentOutcome]
    items:        list[GeneratedQA]      # after the quality filter
    generated:    int                    # before the quality filter
    filtered_out: int

    @property
    def failed_segments(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def decode_layers(self) -> list[str]:
        return [o.decode_layer for o in self.outcomes if o.decode_layer]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def filter_by_quality(items: Sequence[GeneratedQA], threshold: float) -> list[GeneratedQA]:
    """Keep exactly the items whose quality_score is at or above threshold."""
    return [qa for qa in items if qa.quality_score >= threshold]


def _score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return min(1.0, max(0.0, score))


def parse_qa_pairs(
    value:         Any,
    segment:       DocumentSegment,
    segment_index: int,
    options:       ProcessingOptions,
) -> list[GeneratedQA]:
    """Coerce a decoded response into GeneratedQA items for one segment."""
    raw_items = value.get("qa_pairs") if isinstance(value, dict) else value
    if not isinstance(raw_items, list):
        return []

    allowed = [t.value for t in options.question_types]
    excerpt = segment.text[:SOURCE_EXCERPT_CHARS]
    items: list[GeneratedQA] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        question = str(raw.get("question") or "").strip()
        answer   = str(raw.get("answer") or "").strip()
        if not question or not answer:
            continue
        q_type = str(raw.get("question_type") or raw.get("type") or "").lower()
        items.append(GeneratedQA(
            question       = question,
            answer         = answer,
            question_type  = q_type if q_type in allowed else allowed[0],
            quality_score  = _score(raw.get("quality_score")),
            confidence     = _score(raw.get("confidence")),
            source_excerpt = excerpt,
            segment_index  = segment_index,
        ))
        if len(items) == options.max_questions_per_segment:
            break
    return items


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class QAGenerator:

    def __init__(self, gateway: LLMGateway) -> None:
        self._gateway = gateway

    async def generate(
        self,
        segments: Sequence[DocumentSegment],
        options:  ProcessingOptions,
        progress: ProgressCallback | None = None,
    ) -> QAGenerationResult:
        outcomes: list[SegmentOutcome] = []
        total = len(segments)

        for index, segment in enumerate(segments):
            outcome = await self._generate_for_segment(segment, index, total, options)
            outcomes.append(outcome)
            if progress is not None:
                await progress(index + 1, total)

        generated = [qa for o in outcomes for qa in o.items]
        kept      = filter_by_quality(generated, options.quality_threshold)

        logger.info(
            "QAGenerator | segments=%d failed=%d generated=%d kept=%d threshold=%.2f",
            total, sum(1 for o in outcomes if not o.ok),
            len(generated), len(kept), options.quality_threshold,
        )
        return QAGenerationResult(
            outcomes     = outcomes,
            items        = kept,
            generated    = len(generated),
            filtered_out = len(generated) - len(kept),
        )

    async def _generate_for_segment(
        self,
        segment: DocumentSegment,
        index:   int,
        total:   int,
        options: ProcessingOptions,
    ) -> SegmentOutcome:
        prompt = render_qa_prompt(
            segment_text   = segment.text,
            role           = segment.role,
            segment_index  = index,
            segment_total  = total,
            max_questions  = options.max_questions_per_segment,
            question_types = [t.value for t in options.question_types],
            language       = options.language,
        )
        try:
            response = await self._gateway.invoke(
                prompt, system_prompt=QA_SYSTEM_PROMPT, purpose="qa_generation",
            )
            decoded = decode_with_layer(response.content)
        except QuotaOrAuthError:
            raise
        except (LanguageModelError, DecodeError) as exc:
            logger.warning("QAGenerator | segment=%d failed: %s", index, exc)
            return SegmentOutcome(index, ok=False, error=f"{type(exc).__name__}: {exc}")

        if decoded.is_placeholder:
            logger.warning(
                "QAGenerator | segment=%d unparseable output layer=%s", index, decoded.layer.value,
            )
            return SegmentOutcome(
                index, ok=False,
                error="unparseable model output",
                decode_layer=decoded.layer.value,
            )

        items = parse_qa_pairs(decoded.value, segment, index, options)
        logger.debug("QAGenerator | segment=%d items=%d layer=%s", index, len(items), decoded.layer.value)
        return SegmentOutcome(index, ok=True, items=items, decode_layer=decoded.layer.value)

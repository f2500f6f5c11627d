"""
Segmentation Stage  —  Shaping Extracted Segments for QA Generation
═══════════════════════════════════════════════════════════════════

The extractor returns layout segments: sometimes a whole page of body text,
sometimes a three-word slide title.  Neither makes a good QA prompt.  This
stage applies the session's segmentation strategy:

  structural   keep layout segments as they are; hard-split oversize ones
  size-based   concatenate everything in reading order, re-chunk by size
  semantic     sentence-chunk each segment, then merge short same-role
               neighbours until they reach merge_under characters
  auto         structural for slide-like documents, semantic otherwise

A document is "slide-like" when at least half of its segments carry a
title/bullet/table/caption role.  Slide-like segments also get a
"Slide {page}: " prefix so the QA prompt knows where the text came from.

Pure CPU work; the pipeline runs it in a worker thread under the chunking
budget.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

from docqa.processing.extractor import DocumentSegment
from docqa.processing.text_analysis import (
    DEFAULT_MAX_CHUNK_CHARS,
    DEFAULT_MIN_CHUNK_CHARS,
    TextChunk,
    chunk_text,
    merge_short_chunks,
)
from docqa.schemas.sessions import SegmentationStrategy

logger = logging.getLogger(__name__)

SLIDE_ROLES = frozenset({"title", "bullet", "table", "caption"})
SLIDE_RATIO = 0.5


def is_slide_like(segments: Sequence[DocumentSegment]) -> bool:
    if not segments:
        return False
    slide_roles = sum(1 for s in segments if s.role in SLIDE_ROLES)
    return slide_roles / len(segments) >= SLIDE_RATIO


def resolve_strategy(
    strategy: SegmentationStrategy,
    segments: Sequence[DocumentSegment],
) -> SegmentationStrategy:
    if strategy is not SegmentationStrategy.AUTO:
        return strategy
    if is_slide_like(segments):
        return SegmentationStrategy.STRUCTURAL
    return SegmentationStrategy.SEMANTIC


def _slide_prefixed(segment: DocumentSegment) -> DocumentSegment:
    if segment.page_number is None:
        return segment
    return replace(segment, text=f"Slide {segment.page_number}: {segment.text}")


def _from_chunk(chunk: TextChunk, template: DocumentSegment) -> DocumentSegment:
    return replace(template, text=chunk.content, role=chunk.role)


def _structural(segments: Sequence[DocumentSegment], max_chars: int) -> list[DocumentSegment]:
    out: list[DocumentSegment] = []
    for seg in segments:
        if len(seg.text) <= max_chars:
            out.append(seg)
            continue
        out.extend(_from_chunk(c, seg) for c in chunk_text(seg.text, max_chars, seg.role))
    return out


def _size_based(segments: Sequence[DocumentSegment], max_chars: int) -> list[DocumentSegment]:
    if not segments:
        return []
    template = replace(segments[0], role="body", type="text")
    full = "\n".join(s.text for s in segments)
    return [_from_chunk(c, template) for c in chunk_text(full, max_chars, "body")]


def _semantic(
    segments:    Sequence[DocumentSegment],
    max_chars:   int,
    merge_under: int,
) -> list[DocumentSegment]:
    # Keep the source segment of each chunk so page/type/confidence survive merging
    chunks:  list[TextChunk]       = []
    sources: list[DocumentSegment] = []
    for seg in segments:
        for chunk in chunk_text(seg.text, max_chars, seg.role):
            chunks.append(chunk)
            sources.append(seg)

    merged = merge_short_chunks(chunks, merge_under)

    out: list[DocumentSegment] = []
    cursor = 0
    for chunk in merged:
        out.append(_from_chunk(chunk, sources[cursor]))
        # merged chunk consumed as many source chunks as it has sentences
        consumed = 0
        while cursor < len(chunks) and consumed < chunk.sentence_count:
            consumed += chunks[cursor].sentence_count
            cursor += 1
    return out


def segment_for_generation(
    segments:    Sequence[DocumentSegment],
    strategy:    SegmentationStrategy = SegmentationStrategy.AUTO,
    max_chars:   int = DEFAULT_MAX_CHUNK_CHARS,
    merge_under: int = DEFAULT_MIN_CHUNK_CHARS,
) -> list[DocumentSegment]:
    """
    Apply a segmentation strategy to extracted segments.

    Returns segments in reading order; never returns an empty list for a
    non-empty input.
    """
    resolved   = resolve_strategy(strategy, segments)
    slide_like = is_slide_like(segments)

    if resolved is SegmentationStrategy.STRUCTURAL:
        out = _structural(segments, max_chars)
    elif resolved is SegmentationStrategy.SIZE_BASED:
        out = _size_based(segments, max_chars)
    else:
        out = _semantic(segments, max_chars, merge_under)

    if slide_like and resolved is SegmentationStrategy.STRUCTURAL:
        out = [_slide_prefixed(s) for s in out]

    logger.info(
        "Segmentation | strategy=%s resolved=%s segments_in=%d segments_out=%d",
        strategy.value, resolved.value, len(segments), len(out),
    )
    return out or list(segments)

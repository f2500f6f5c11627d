"""
Content Extractor
═════════════════

Turns document bytes into ordered, role-tagged DocumentSegments by asking the
language model to read the file, with an OCR-escalation branch for scans.

  bytes + mime_type
        │
        ├── image/*  ──────────────→  vision pass (single, no escalation)
        │
        ▼
  inspect_document()        ← PyMuPDF: which pages are raster?
        │
        ▼
  standard pass             ← EXTRACTION_PROMPT, decoded by ResilientDecoder
        │
        ▼
  needs_ocr(combined text, has_raster_pages)?
        │ yes                               │ no
        ▼                                   ▼
  OCR pass (replaces standard output)   keep standard output
        │                                   │
        └──────────────┬────────────────────┘
                       ▼
        drop segments shorter than 50 chars
                       │
                       ▼
        nothing left → ExtractionError

A standard pass that fails or decodes to nothing is not fatal on its own: an
empty result is below the 50-character boundary, so a document with raster
pages escalates to the OCR pass instead.  Without raster pages there is no
second chance and the failure becomes an ExtractionError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from docqa.core.errors import ExtractionError, LanguageModelError
from docqa.llm.gateway import LLMGateway
from docqa.processing.decoder import decode_with_layer
from docqa.processing.layout import DocumentLayout, inspect_document
from docqa.processing.prompts import (
    EXTRACTION_PROMPT,
    EXTRACTION_SYSTEM_PROMPT,
    OCR_EXTRACTION_PROMPT,
    VISION_EXTRACTION_PROMPT,
)
from docqa.processing.text_analysis import needs_ocr
from docqa.storage.s3 import DocumentStorage

logger = logging.getLogger(__name__)

MIN_SEGMENT_CHARS = 50

SEGMENT_TYPES = ("text", "image", "table")
SEGMENT_ROLES = ("title", "bullet", "body", "table", "caption")

LayoutInspector = Callable[[bytes, str], Awaitable[DocumentLayout]]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DocumentSegment:
    """A unit of extracted content; ephemeral, never persisted directly."""
    text:        str
    type:        str        = "text"
    page_number: int | None = None
    role:        str        = "body"
    confidence:  float      = 1.0


@dataclass
class ExtractionPass:
    name:         str               # "standard" | "ocr" | "vision"
    segments:     int               # decoded segments, before the length filter
    decode_layer: str | None = None
    error:        str | None = None


@dataclass
class ExtractionResult:
    """
    segments      : surviving segments in reading order
    passes        : one entry per model call, in call order
    layout        : raster-page inspection of the source
    ocr_escalated : True when the OCR pass replaced the standard pass
    discarded     : segments dropped for being shorter than the minimum
    """
    segments:      list[DocumentSegment]
    passes:        list[ExtractionPass]
    layout:        DocumentLayout
    ocr_escalated: bool = False
    discarded:     int  = 0

    @property
    def extraction_calls(self) -> int:
        return len(self.passes)

    @property
    def decode_layers(self) -> list[str]:
        return [p.decode_layer for p in self.passes if p.decode_layer]


# ---------------------------------------------------------------------------
# Segment parsing
# ---------------------------------------------------------------------------

def _clamp(value: Any, default: float = 1.0) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return default


def _page_number(value: Any) -> int | None:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return None
    return page if page >= 1 else None


def parse_segments(value: Any) -> list[DocumentSegment]:
    """Coerce a decoded model response into segments, skipping unusable entries."""
    if isinstance(value, dict):
        items = value.get("segments") or []
    elif isinstance(value, list):
        items = value
    else:
        return []
    if not isinstance(items, list):
        return []

    segments: list[DocumentSegment] = []
    for item in items:
        if isinstance(item, str):
            item = {"text": item}
        if not isinstance(item, dict):
            continue
        text = item.get("text") or item.get("content") or ""
        if not isinstance(text, str) or not text.strip():
            continue
        seg_type = str(item.get("type", "text")).lower()
        role     = str(item.get("role", "body")).lower()
        segments.append(DocumentSegment(
            text        = text.strip(),
            type        = seg_type if seg_type in SEGMENT_TYPES else "text",
            page_number = _page_number(item.get("page_number", item.get("page"))),
            role        = role if role in SEGMENT_ROLES else "body",
            confidence  = _clamp(item.get("confidence", 1.0)),
        ))
    return segments


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ContentExtractor:
    """
    Usage:
        extractor = ContentExtractor(gateway, storage)
        data      = await extractor.fetch(session.storage_url)
        result    = await extractor.extract_detailed(data, "application/pdf")
    """

    def __init__(
        self,
        gateway:           LLMGateway,
        storage:           DocumentStorage | None = None,
        inspector:         LayoutInspector = inspect_document,
        min_segment_chars: int = MIN_SEGMENT_CHARS,
    ) -> None:
        self._gateway   = gateway
        self._storage   = storage
        self._inspector = inspector
        self._min_chars = min_segment_chars

    async def fetch(self, storage_url: str) -> bytes:
        """Download the source document; DownloadError propagates unchanged."""
        if self._storage is None:
            raise ExtractionError("No document storage configured", stage="download")
        return await self._storage.fetch(storage_url)

    async def extract(self, file_bytes: bytes, mime_type: str) -> list[DocumentSegment]:
        return (await self.extract_detailed(file_bytes, mime_type)).segments

    async def extract_detailed(self, file_bytes: bytes, mime_type: str) -> ExtractionResult:
        """
        Run the standard pass, escalate to OCR when needed, filter short segments.

        Raises:
            ExtractionError:  no usable content after every applicable pass.
            QuotaOrAuthError: credentials problem; never retried as an OCR pass.
        """
        layout = await self._inspector(file_bytes, mime_type)
        passes: list[ExtractionPass] = []
        escalated = False

        if layout.is_image:
            segments, vision = await self._run_pass("vision", VISION_EXTRACTION_PROMPT, file_bytes, mime_type)
            passes.append(vision)
        else:
            segments, standard = await self._run_pass("standard", EXTRACTION_PROMPT, file_bytes, mime_type)
            passes.append(standard)

            combined = "\n".join(s.text for s in segments)
            if needs_ocr(combined, layout.has_raster_pages):
                logger.info(
                    "ContentExtractor | escalating to OCR chars=%d raster_pages=%d",
                    len(combined), len(layout.raster_pages),
                )
                segments, ocr = await self._run_pass("ocr", OCR_EXTRACTION_PROMPT, file_bytes, mime_type)
                passes.append(ocr)
                escalated = True

        last = passes[-1]
        if last.error and not segments:
            raise ExtractionError(
                f"Extraction {last.name} pass failed: {last.error}",
                stage="extraction",
                detail={"passes": [vars(p) for p in passes]},
            )

        kept = [s for s in segments if len(s.text) >= self._min_chars]
        discarded = len(segments) - len(kept)
        if not kept:
            raise ExtractionError(
                "No usable content extracted from document",
                stage="extraction",
                detail={
                    "passes":         [vars(p) for p in passes],
                    "segments_found": len(segments),
                    "min_chars":      self._min_chars,
                },
            )

        logger.info(
            "ContentExtractor | calls=%d escalated=%s segments=%d discarded=%d",
            len(passes), escalated, len(kept), discarded,
        )
        return ExtractionResult(
            segments      = kept,
            passes        = passes,
            layout        = layout,
            ocr_escalated = escalated,
            discarded     = discarded,
        )

    async def _run_pass(
        self,
        name:       str,
        prompt:     str,
        file_bytes: bytes,
        mime_type:  str,
    ) -> tuple[list[DocumentSegment], ExtractionPass]:
        """One model call + decode.  Model failures become a recorded pass error."""
        try:
            response = await self._gateway.invoke(
                prompt,
                payload       = file_bytes,
                mime_type     = mime_type,
                system_prompt = EXTRACTION_SYSTEM_PROMPT,
                purpose       = f"extract_{name}",
            )
        except LanguageModelError as exc:
            logger.warning("ContentExtractor | pass=%s model call failed: %s", name, exc)
            return [], ExtractionPass(name=name, segments=0, error=str(exc))

        decoded  = decode_with_layer(response.content, fallback={"segments": []})
        segments = parse_segments(decoded.value)
        logger.debug(
            "ContentExtractor | pass=%s decode_layer=%s segments=%d",
            name, decoded.layer.value, len(segments),
        )
        return segments, ExtractionPass(
            name         = name,
            segments     = len(segments),
            decode_layer = decoded.layer.value,
        )

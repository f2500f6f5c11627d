"""
Document Processing Package
════════════════════════════

Turns a stored document into embedded question/answer pairs:

  Layout inspection → Extraction (+ OCR escalation) → Segmentation → QA generation → Embedding

Modules
───────
  text_analysis.py  Pure text heuristics: CJK density, OCR decision, sentences, chunks, key terms
  decoder.py        Layered repair of malformed model JSON, with reconstruction fallback
  layout.py         PyMuPDF raster-page detection
  prompts.py        Extraction and QA-generation prompt templates
  extractor.py      ContentExtractor: standard / OCR / vision extraction passes
  chunking.py       Segmentation strategies applied before QA generation
  qa_generator.py   Per-segment QA generation with isolated failures + quality filter
  embeddings.py     Enhanced question embeddings with per-item fallback

Design principles
─────────────────
  • text_analysis and decoder do no I/O and hold no state.
  • Services receive their collaborators through constructors.
  • Partial failures are returned as data (SegmentOutcome, EmbeddedQA.vector=None),
    stage failures are raised as PipelineError subclasses.
"""

from docqa.processing.decoder import DecodeResult, RepairLayer, decode, decode_with_layer
from docqa.processing.text_analysis import (
    CJKAnalysis,
    TextChunk,
    analyze_cjk_content,
    chunk_text,
    extract_key_terms,
    merge_short_chunks,
    needs_ocr,
    normalize_text,
    split_sentences,
)

__all__ = [
    "CJKAnalysis",
    "DecodeResult",
    "RepairLayer",
    "TextChunk",
    "analyze_cjk_content",
    "chunk_text",
    "decode",
    "decode_with_layer",
    "extract_key_terms",
    "merge_short_chunks",
    "needs_ocr",
    "normalize_text",
    "split_sentences",
]

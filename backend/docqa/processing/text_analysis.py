"""
Text Analyzer  —  Pure CJK-Aware Text Heuristics
════════════════════════════════════════════════

Small, synchronous functions with no I/O.  They answer three questions for
the rest of the pipeline:

  1. Is this text mostly CJK, and did extraction actually work?
       analyze_cjk_content()  →  CJKAnalysis
       needs_ocr()            →  the OCR-escalation decision boundary

  2. Where are the sentence and chunk boundaries?
       split_sentences()      →  punctuation-preserving sentence split
       chunk_text()           →  greedy sentence packing up to max_chars
       merge_short_chunks()   →  glue undersized same-role neighbours

  3. Which terms should boost an embedding?
       extract_key_terms()    →  katakana runs, kanji compounds, 「quoted」 terms
       normalize_text()       →  full-width folding + whitespace collapse

OCR escalation boundary
───────────────────────
  has_raster_pages  len(text) < 50   cjk_ratio < 0.15   →  needs_ocr
  ────────────────  ──────────────   ────────────────      ─────────
  False             any              any                    False
  True              True             any                    True
  True              False            True                   True
  True              False            False                  False

  The ratio boundary is exclusive: a ratio of exactly 0.15 does not escalate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Hiragana + katakana (U+3040–U+30FF) and CJK unified ideographs (U+4E00–U+9FFF)
_CJK_RE = re.compile(r"[\u3040-\u30FF\u4E00-\u9FFF]")

# Corner brackets and other paired punctuation typical of vertical typesetting
_VERTICAL_MARKS_RE = re.compile(r"[「」『』（）｛｝〔〕【】〈〉《》]")

JAPANESE_RATIO_THRESHOLD = 0.15
OCR_MIN_TEXT_CHARS       = 50
MAX_KEY_TERMS            = 10

DEFAULT_MAX_CHUNK_CHARS  = 1000
DEFAULT_MIN_CHUNK_CHARS  = 200

# CJK sentence enders split unconditionally; ASCII enders only before whitespace
# so "3.5" and "e.g." mid-token stay intact.
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[。！？])|(?<=[.!?])(?=\s)")

_KEY_TERM_PATTERNS = (
    re.compile(r"[\u30A0-\u30FF]{3,}"),   # katakana runs (loanwords, product names)
    re.compile(r"[\u4E00-\u9FFF]{2,}"),   # kanji compounds
    re.compile(r"「[^」]+」"),
    re.compile(r"『[^』]+』"),
)
_BRACKETS_RE = re.compile(r"[「」『』]")

_WHITESPACE_RE = re.compile(r"\s+")

# Full-width digits and Latin letters fold onto ASCII by a fixed offset
_FULLWIDTH_OFFSET = 0xFEE0
_FULLWIDTH_ALNUM = {
    code: code - _FULLWIDTH_OFFSET
    for lo, hi in ((0xFF10, 0xFF19), (0xFF21, 0xFF3A), (0xFF41, 0xFF5A))
    for code in range(lo, hi + 1)
}


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CJKAnalysis:
    cjk_ratio:          float
    is_likely_japanese: bool
    has_vertical_text:  bool
    char_count:         int
    cjk_char_count:     int


@dataclass
class TextChunk:
    """A run of whole sentences; offsets index into the text passed to chunk_text()."""
    content:        str
    start_index:    int
    end_index:      int
    sentence_count: int
    char_count:     int
    role:           str = "body"


# ---------------------------------------------------------------------------
# Script analysis
# ---------------------------------------------------------------------------

def analyze_cjk_content(text: str) -> CJKAnalysis:
    if not text:
        return CJKAnalysis(0.0, False, False, 0, 0)

    cjk_count = len(_CJK_RE.findall(text))
    ratio     = cjk_count / max(len(text), 1)
    return CJKAnalysis(
        cjk_ratio          = ratio,
        is_likely_japanese = ratio > JAPANESE_RATIO_THRESHOLD,
        has_vertical_text  = bool(_VERTICAL_MARKS_RE.search(text)),
        char_count         = len(text),
        cjk_char_count     = cjk_count,
    )


def needs_ocr(text: str, has_raster_pages: bool) -> bool:
    """
    Decide whether a first-pass extraction should be redone OCR-style.

    Without raster pages there is nothing an OCR pass could read better, so
    the answer is always False.  With raster pages, escalate when the first
    pass found almost nothing or found text that is not CJK-dense.
    """
    if not has_raster_pages:
        return False
    if len(text) < OCR_MIN_TEXT_CHARS:
        return True
    return analyze_cjk_content(text).cjk_ratio < JAPANESE_RATIO_THRESHOLD


# ---------------------------------------------------------------------------
# Sentences and chunks
# ---------------------------------------------------------------------------

def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def _hard_split(piece: str, start: int, max_chars: int) -> list[tuple[str, int]]:
    """Cut one oversize sentence into max_chars windows."""
    return [
        (piece[i:i + max_chars], start + i)
        for i in range(0, len(piece), max_chars)
    ]


def chunk_text(
    text:      str,
    max_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    role:      str = "body",
) -> list[TextChunk]:
    """
    Greedily pack consecutive sentences into chunks of at most max_chars.

    A sentence that would push the current chunk past the limit starts a new
    chunk instead.  A single sentence longer than max_chars is cut into
    max_chars windows, the only case where a sentence is split.
    """
    if max_chars < 1:
        raise ValueError("max_chars must be positive")

    # (stripped sentence, offset in text); offsets survive the strip
    pieces: list[tuple[str, int]] = []
    offset = 0
    for raw in _SENTENCE_SPLIT_RE.split(text):
        stripped = raw.strip()
        if stripped:
            lead = offset + (len(raw) - len(raw.lstrip()))
            if len(stripped) > max_chars:
                pieces.extend(_hard_split(stripped, lead, max_chars))
            else:
                pieces.append((stripped, lead))
        offset += len(raw)

    chunks: list[TextChunk] = []
    start, end, count = 0, 0, 0

    def flush() -> None:
        # Slice the source so inter-sentence spacing is preserved
        content = text[start:end]
        chunks.append(TextChunk(
            content        = content,
            start_index    = start,
            end_index      = end,
            sentence_count = count,
            char_count     = len(content),
            role           = role,
        ))

    for piece, piece_start in pieces:
        piece_end = piece_start + len(piece)
        if count and piece_end - start > max_chars:
            flush()
            count = 0
        if not count:
            start = piece_start
        end    = piece_end
        count += 1

    if count:
        flush()
    return chunks


def merge_short_chunks(
    chunks:    list[TextChunk],
    min_chars: int = DEFAULT_MIN_CHUNK_CHARS,
) -> list[TextChunk]:
    """Fold the following same-role chunk into the current one while it is under min_chars."""
    merged: list[TextChunk] = []
    i = 0
    while i < len(chunks):
        current = TextChunk(**vars(chunks[i]))
        while (
            current.char_count < min_chars
            and i + 1 < len(chunks)
            and chunks[i + 1].role == current.role
        ):
            nxt = chunks[i + 1]
            current.content         = f"{current.content}\n{nxt.content}"
            current.end_index       = nxt.end_index
            current.sentence_count += nxt.sentence_count
            current.char_count      = len(current.content)
            i += 1
        merged.append(current)
        i += 1
    return merged


# ---------------------------------------------------------------------------
# Key terms + normalisation
# ---------------------------------------------------------------------------

def extract_key_terms(text: str) -> list[str]:
    """Up to ten distinct terms, in pattern order then position order."""
    seen:  set[str]  = set()
    terms: list[str] = []
    for pattern in _KEY_TERM_PATTERNS:
        for match in pattern.findall(text):
            term = _BRACKETS_RE.sub("", match).strip()
            if len(term) < 2 or term in seen:
                continue
            seen.add(term)
            terms.append(term)
            if len(terms) == MAX_KEY_TERMS:
                return terms
    return terms


def normalize_text(text: str) -> str:
    """Fold full-width digits/letters to ASCII and collapse all whitespace runs."""
    return _WHITESPACE_RE.sub(" ", text.translate(_FULLWIDTH_ALNUM)).strip()

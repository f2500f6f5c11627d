"""
Resilient Decoder  —  Best-Effort JSON Recovery for LLM Output
══════════════════════════════════════════════════════════════

Language models are asked for JSON but answer with whatever they like:

  Sure! Here are the questions:
  ```json
  {"qa_pairs": [{"question": "…", "answer": "…"}
                {"question": "…", "answer": "…"},]}      ← missing + trailing comma
  ```

decode() recovers a structured value with a fixed ladder of layers.  Repair
layers are cumulative: each one runs on the output of the previous, and the
candidate is re-parsed after every layer.

  Layer              What it does
  ─────────────────  ───────────────────────────────────────────────────────
  direct             json.loads on the raw text, then on the {…} / […] slice
                     found after stripping code fences and leading prose
  structural         insert missing commas between adjacent values, drop
                     trailing commas, remove non-printable control chars
  multibyte_escape   double a lone backslash in front of non-ASCII text,
                     escape raw newlines/tabs inside string literals
  quoting            quote bare or single-quoted keys, quote bare scalar values
  aggressive         escape every backslash that does not start a valid escape
  reconstructed      regex-scan for known array keys ("segments", "qa_pairs")
                     and emit an empty placeholder marked as a parse failure
  fallback           the caller-supplied fallback object

The layer that succeeded is returned (decode_with_layer) and logged so
operators can watch model-output drift.  This is a heuristic layer: a
successful decode means "valid JSON", not "what the model meant".
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from docqa.core.errors import DecodeError

logger = logging.getLogger(__name__)

# Marker key set on reconstruction placeholders; consumers must treat the
# structure as "zero real items".
PLACEHOLDER_KEY = "_parse_failure"

DEFAULT_ARRAY_KEYS: tuple[str, ...] = ("segments", "qa_pairs")

_MISSING: Any = object()


class RepairLayer(str, Enum):
    DIRECT           = "direct"
    STRUCTURAL       = "structural"
    MULTIBYTE_ESCAPE = "multibyte_escape"
    QUOTING          = "quoting"
    AGGRESSIVE       = "aggressive"
    RECONSTRUCTED    = "reconstructed"
    FALLBACK         = "fallback"


@dataclass
class DecodeResult:
    value: Any
    layer: RepairLayer

    @property
    def is_placeholder(self) -> bool:
        """True when the value carries no model content (reconstruction or fallback)."""
        return self.layer in (RepairLayer.RECONSTRUCTED, RepairLayer.FALLBACK)


# ---------------------------------------------------------------------------
# Candidate isolation
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\r?\n?")


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _isolate(text: str) -> list[str]:
    """
    Candidate slices, first opening bracket to last matching closing bracket.

    Both the object and the array slice are returned, whichever opens first
    leading, so a bracket in surrounding prose never hides a well-formed object.
    """
    spans: list[tuple[int, str]] = []
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end   = text.rfind(closer)
        if start != -1 and end > start:
            spans.append((start, text[start:end + 1]))
    return [candidate for _, candidate in sorted(spans)]


def _try_load(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


# ---------------------------------------------------------------------------
# Repair passes
# ---------------------------------------------------------------------------

_ADJACENT_VALUES_RE = re.compile(r'([}\]"])(\s*)(?=[{\["])')
_TRAILING_COMMA_RE  = re.compile(r",(\s*[}\]])")
_CONTROL_CHARS_RE   = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _repair_structural(text: str) -> str:
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)

    # A closing bracket/quote directly followed (across whitespace) by an
    # opening bracket/quote is two values with the comma missing.  The quote
    # case only applies across a line break so "a" "b" on one line inside a
    # string literal is left alone.
    def _insert_comma(match: re.Match[str]) -> str:
        closer, gap = match.group(1), match.group(2)
        if closer == '"' and "\n" not in gap:
            return match.group(0)
        return f"{closer},{gap}"

    return _ADJACENT_VALUES_RE.sub(_insert_comma, text)


_LONE_BACKSLASH_BEFORE_MB_RE = re.compile(r"(?<!\\)\\(?=[^\x00-\x7f])")
_BROKEN_UNICODE_ESCAPE_RE    = re.compile(r"(?<!\\)\\u(?![0-9a-fA-F]{4})")

_IN_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _escape_raw_newlines(text: str) -> str:
    """Escape literal newlines/tabs that sit inside string literals."""
    out: list[str] = []
    in_string = escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch in _IN_STRING_ESCAPES:
                out.append(_IN_STRING_ESCAPES[ch])
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _repair_multibyte_escape(text: str) -> str:
    text = _LONE_BACKSLASH_BEFORE_MB_RE.sub(r"\\\\", text)
    text = _BROKEN_UNICODE_ESCAPE_RE.sub(r"\\\\u", text)
    return _escape_raw_newlines(text)


_SINGLE_QUOTED_KEY_RE = re.compile(r"([{,]\s*)'([^'\n]+)'(\s*:)")
_BARE_KEY_RE          = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)")
# A value after ':' that is not a string, number, literal, object or array
_BARE_VALUE_RE = re.compile(
    r"(:\s*)(?!true\b|false\b|null\b|-?\d)([^\s\"'{\[,}\]][^,}\]\n]*?)(\s*)(?=[,}\]\n])"
)


def _repair_quoting(text: str) -> str:
    text = _SINGLE_QUOTED_KEY_RE.sub(r'\1"\2"\3', text)
    text = _BARE_KEY_RE.sub(r'\1"\2"\3', text)

    def _quote_value(match: re.Match[str]) -> str:
        value = match.group(2).replace('"', '\\"')
        return f'{match.group(1)}"{value}"{match.group(3)}'

    return _BARE_VALUE_RE.sub(_quote_value, text)


_STRAY_BACKSLASH_RE = re.compile(r'\\(?!["\\/bfnrtu])')


def _repair_aggressive(text: str) -> str:
    return _STRAY_BACKSLASH_RE.sub(r"\\\\", text)


_REPAIR_PASSES: tuple[tuple[RepairLayer, Callable[[str], str]], ...] = (
    (RepairLayer.STRUCTURAL,       _repair_structural),
    (RepairLayer.MULTIBYTE_ESCAPE, _repair_multibyte_escape),
    (RepairLayer.QUOTING,          _repair_quoting),
    (RepairLayer.AGGRESSIVE,       _repair_aggressive),
)


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------

def _reconstruct(text: str, known_keys: Iterable[str]) -> dict[str, Any] | None:
    found = [
        key for key in known_keys
        if re.search(rf'["\']?{re.escape(key)}["\']?\s*:\s*\[', text)
    ]
    if not found:
        return None
    placeholder: dict[str, Any] = {key: [] for key in found}
    placeholder[PLACEHOLDER_KEY] = True
    return placeholder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_with_layer(
    raw:        str,
    fallback:   Any = _MISSING,
    known_keys: Iterable[str] = DEFAULT_ARRAY_KEYS,
) -> DecodeResult:
    """
    Decode model output, reporting which layer produced the value.

    Raises:
        DecodeError: every layer failed and no fallback was supplied.
    """
    text = raw if isinstance(raw, str) else ""

    # Well-formed input round-trips untouched, whatever its top-level type
    ok, value = _try_load(text.strip())
    if ok:
        return DecodeResult(value, RepairLayer.DIRECT)

    candidates = _isolate(_strip_fences(text))
    for candidate in candidates:
        ok, value = _try_load(candidate)
        if ok:
            return DecodeResult(value, RepairLayer.DIRECT)

    # Repairs are cumulative per candidate; the lowest layer that loads wins
    for layer, repair in _REPAIR_PASSES:
        for i, candidate in enumerate(candidates):
            candidates[i] = repair(candidate)
            ok, value = _try_load(candidates[i])
            if ok:
                logger.info("ResilientDecoder | recovered layer=%s chars=%d", layer.value, len(text))
                return DecodeResult(value, layer)

    placeholder = _reconstruct(text, known_keys)
    if placeholder is not None:
        logger.warning(
            "ResilientDecoder | reconstructed placeholder keys=%s chars=%d",
            [k for k in placeholder if k != PLACEHOLDER_KEY], len(text),
        )
        return DecodeResult(placeholder, RepairLayer.RECONSTRUCTED)

    if fallback is not _MISSING:
        logger.warning("ResilientDecoder | using fallback chars=%d", len(text))
        return DecodeResult(fallback, RepairLayer.FALLBACK)

    raise DecodeError(
        "Model output could not be decoded after all repair layers",
        detail={"excerpt": text[:200], "chars": len(text)},
    )


def decode(
    raw:        str,
    fallback:   Any = _MISSING,
    known_keys: Iterable[str] = DEFAULT_ARRAY_KEYS,
) -> Any:
    """Decode model output into a structured value; see decode_with_layer()."""
    return decode_with_layer(raw, fallback, known_keys).value


def is_placeholder(value: Any) -> bool:
    return isinstance(value, dict) and value.get(PLACEHOLDER_KEY) is True

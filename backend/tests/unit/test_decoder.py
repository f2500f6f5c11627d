"""
Unit tests — Resilient Decoder (docqa.processing.decoder)
═════════════════════════════════════════════════════════

Coverage:
  ✅ Well-formed input decodes unchanged at the direct layer
  ✅ Prose + code fence + missing comma recovered by the structural layer
  ✅ Square brackets in surrounding prose never hide the JSON object
  ✅ Lone backslash before multibyte text / raw newlines in strings
  ✅ Single-quoted keys recovered by the quoting layer
  ✅ Stray ASCII backslash recovered by the aggressive layer
  ✅ Truncated output reconstructed as an empty, marked placeholder
  ✅ Fallback returned (never raised) when nothing else works
  ✅ DecodeError when there is no fallback

Run:
  pytest backend/tests/unit/test_decoder.py -v
"""

from __future__ import annotations

import json

import pytest

from docqa.core.errors import DecodeError
from docqa.processing.decoder import (
    PLACEHOLDER_KEY,
    RepairLayer,
    decode,
    decode_with_layer,
    is_placeholder,
)

FENCED_MISSING_COMMA = """Sure! Here are the questions you asked for:

```json
{"qa_pairs": [
  {"question": "機械学習とは何ですか？", "answer": "データから学習する技術です。", "quality_score": 0.9}
  {"question": "教師あり学習の特徴は？", "answer": "正解ラベルを使います。", "quality_score": 0.8}
]}
```

Let me know if you need more."""


# ─────────────────────────────────────────────────────────────────────────────
# Layer ladder
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRepairLayers:

    @pytest.mark.parametrize("value", [
        {"segments": [{"text": "本文", "role": "body"}]},
        [{"question": "Q", "answer": "A"}],
        {"nested": {"list": [1, 2.5, None, True]}},
        "just a string",
    ])
    def test_well_formed_input_round_trips(self, value):
        result = decode_with_layer(json.dumps(value, ensure_ascii=False))
        assert result.value == value
        assert result.layer is RepairLayer.DIRECT

    def test_fenced_object_with_prose_decodes_directly(self):
        raw = 'Here you go:\n```json\n{"segments": []}\n```'
        assert decode_with_layer(raw).layer is RepairLayer.DIRECT

    def test_square_brackets_in_prose_do_not_hide_object(self):
        pairs = [
            {"question": "機械学習とは？", "answer": "データから学ぶ技術です。"},
            {"question": "教師あり学習とは？", "answer": "正解ラベルを使う学習です。"},
        ]
        raw = f'Here are [2] pairs:\n```json\n{json.dumps({"qa_pairs": pairs}, ensure_ascii=False)}\n```'

        result = decode_with_layer(raw)

        assert result.layer is RepairLayer.DIRECT
        assert result.value == {"qa_pairs": pairs}

    def test_square_brackets_in_prose_with_structural_repair(self):
        raw = "See [note 1] below.\n" + FENCED_MISSING_COMMA
        result = decode_with_layer(raw)
        assert result.layer is RepairLayer.STRUCTURAL
        assert len(result.value["qa_pairs"]) == 2

    def test_array_after_prose_stays_an_array(self):
        result = decode_with_layer('Result: [{"question": "Q", "answer": "A"}]')
        assert result.layer is RepairLayer.DIRECT
        assert result.value == [{"question": "Q", "answer": "A"}]

    def test_missing_comma_recovered_structurally(self):
        result = decode_with_layer(FENCED_MISSING_COMMA)
        assert result.layer is RepairLayer.STRUCTURAL
        assert len(result.value["qa_pairs"]) == 2
        assert result.value["qa_pairs"][1]["question"] == "教師あり学習の特徴は？"

    def test_trailing_comma_recovered_structurally(self):
        result = decode_with_layer('{"qa_pairs": [{"question": "Q", "answer": "A"},]}')
        assert result.layer is RepairLayer.STRUCTURAL
        assert result.value == {"qa_pairs": [{"question": "Q", "answer": "A"}]}

    def test_backslash_before_multibyte_text(self):
        result = decode_with_layer('{"answer": "値\\段"}')
        assert result.layer is RepairLayer.MULTIBYTE_ESCAPE
        assert result.value == {"answer": "値\\段"}

    def test_raw_newline_inside_string(self):
        result = decode_with_layer('{"answer": "一行目\n二行目"}')
        assert result.layer is RepairLayer.MULTIBYTE_ESCAPE
        assert result.value == {"answer": "一行目\n二行目"}

    def test_single_quoted_keys(self):
        result = decode_with_layer("{'question': \"何ですか\", 'answer': \"答え\"}")
        assert result.layer is RepairLayer.QUOTING
        assert result.value == {"question": "何ですか", "answer": "答え"}

    def test_stray_ascii_backslash(self):
        result = decode_with_layer('{"path": "dir\\data"}')
        assert result.layer is RepairLayer.AGGRESSIVE
        assert result.value == {"path": "dir\\data"}


# ─────────────────────────────────────────────────────────────────────────────
# Reconstruction and fallback
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestReconstructionAndFallback:

    def test_truncated_output_becomes_marked_placeholder(self):
        result = decode_with_layer('{"qa_pairs": [{"question": "途中で切れた質問", "answer": ')
        assert result.layer is RepairLayer.RECONSTRUCTED
        assert result.is_placeholder is True
        assert result.value["qa_pairs"] == []
        assert result.value[PLACEHOLDER_KEY] is True
        assert is_placeholder(result.value)

    def test_reconstruction_only_names_keys_that_appear(self):
        value = decode('garbage "segments": [ {{{')
        assert set(value) == {"segments", PLACEHOLDER_KEY}

    def test_fallback_returned_for_garbage(self):
        result = decode_with_layer("the model refused to answer", fallback={"segments": []})
        assert result.layer is RepairLayer.FALLBACK
        assert result.value == {"segments": []}
        assert result.is_placeholder is True

    @pytest.mark.parametrize("raw", ["", "   ", "{{{{", "]][[", "null garbage", "\x00\x01"])
    def test_fallback_never_raises(self, raw):
        assert decode(raw, fallback=[]) == []

    def test_non_string_input_uses_fallback(self):
        assert decode(None, fallback="fb") == "fb"  # type: ignore[arg-type]

    def test_no_fallback_raises_decode_error(self):
        with pytest.raises(DecodeError) as exc_info:
            decode("no json here at all")
        assert exc_info.value.code == "DECODE_FAILED"
        assert exc_info.value.detail["excerpt"] == "no json here at all"

    def test_real_content_is_not_a_placeholder(self):
        assert is_placeholder({"qa_pairs": []}) is False

"""
Unit tests — Text Analyzer (docqa.processing.text_analysis)
═══════════════════════════════════════════════════════════

Coverage:
  ✅ CJK density: empty input, pure CJK, pure ASCII, vertical-text marks
  ✅ needs_ocr decision table, including the 50-char and 0.15 boundaries
  ✅ Sentence split on CJK and ASCII enders, decimals kept intact
  ✅ chunk_text: greedy packing, hard split of oversize sentences, bad max
  ✅ merge_short_chunks: same-role folding only
  ✅ extract_key_terms: pattern order, dedupe, ten-term cap
  ✅ normalize_text: full-width folding and whitespace collapse

Run:
  pytest backend/tests/unit/test_text_analysis.py -v
"""

from __future__ import annotations

import pytest

from docqa.processing.text_analysis import (
    JAPANESE_RATIO_THRESHOLD,
    TextChunk,
    analyze_cjk_content,
    chunk_text,
    extract_key_terms,
    merge_short_chunks,
    needs_ocr,
    normalize_text,
    split_sentences,
)
from tests.conftest import CJK_PARAGRAPH


# ─────────────────────────────────────────────────────────────────────────────
# analyze_cjk_content
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestAnalyzeCjkContent:

    def test_empty_text_is_all_zero(self):
        result = analyze_cjk_content("")
        assert result.cjk_ratio == 0.0
        assert result.is_likely_japanese is False
        assert result.char_count == 0

    def test_japanese_paragraph_is_dense(self):
        result = analyze_cjk_content(CJK_PARAGRAPH)
        assert result.cjk_ratio > 0.9
        assert result.is_likely_japanese is True
        assert result.cjk_char_count <= result.char_count

    def test_english_text_has_zero_ratio(self):
        result = analyze_cjk_content("The quick brown fox jumps over the lazy dog.")
        assert result.cjk_ratio == 0.0
        assert result.is_likely_japanese is False

    def test_vertical_marks_detected(self):
        assert analyze_cjk_content("彼は「重要」と言った").has_vertical_text is True
        assert analyze_cjk_content("plain text").has_vertical_text is False

    def test_ratio_is_bounded(self):
        for text in ("あ", "abc", "あa", CJK_PARAGRAPH):
            assert 0.0 <= analyze_cjk_content(text).cjk_ratio <= 1.0


# ─────────────────────────────────────────────────────────────────────────────
# needs_ocr
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestNeedsOcr:

    def test_never_escalates_without_raster_pages(self):
        assert needs_ocr("", has_raster_pages=False) is False
        assert needs_ocr("short", has_raster_pages=False) is False
        assert needs_ocr("x" * 500, has_raster_pages=False) is False

    def test_short_text_with_raster_pages_escalates(self):
        assert needs_ocr("", has_raster_pages=True) is True
        assert needs_ocr("あ" * 49, has_raster_pages=True) is True

    def test_fifty_cjk_chars_do_not_escalate(self):
        assert needs_ocr("あ" * 50, has_raster_pages=True) is False

    def test_long_latin_text_with_raster_pages_escalates(self):
        assert needs_ocr("a" * 50, has_raster_pages=True) is True

    def test_ratio_boundary_is_exclusive(self):
        text = "あ" * 15 + "a" * 85
        assert analyze_cjk_content(text).cjk_ratio == pytest.approx(JAPANESE_RATIO_THRESHOLD)
        assert needs_ocr(text, has_raster_pages=True) is False

    def test_just_below_ratio_escalates(self):
        text = "あ" * 14 + "a" * 86
        assert needs_ocr(text, has_raster_pages=True) is True


# ─────────────────────────────────────────────────────────────────────────────
# Sentences and chunks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSplitSentences:

    def test_cjk_and_ascii_enders(self):
        assert split_sentences("今日は晴れ。明日は雨！ Really? Yes.") == [
            "今日は晴れ。", "明日は雨！", "Really?", "Yes.",
        ]

    def test_decimal_points_are_not_boundaries(self):
        assert split_sentences("Version 3.5 is out. Upgrade now.") == [
            "Version 3.5 is out.", "Upgrade now.",
        ]

    def test_blank_input(self):
        assert split_sentences("   ") == []


@pytest.mark.unit
class TestChunkText:

    def test_sentences_packed_up_to_max(self):
        chunks = chunk_text("一文目です。二文目です。三文目です。", max_chars=12)
        assert [c.content for c in chunks] == ["一文目です。二文目です。", "三文目です。"]
        assert [c.sentence_count for c in chunks] == [2, 1]

    def test_every_chunk_respects_max_chars(self):
        text = CJK_PARAGRAPH * 20
        chunks = chunk_text(text, max_chars=100)
        assert chunks
        assert all(c.char_count <= 100 for c in chunks)

    def test_oversize_sentence_is_hard_split(self):
        chunks = chunk_text("a" * 25, max_chars=10)
        assert [c.char_count for c in chunks] == [10, 10, 5]
        assert [c.start_index for c in chunks] == [0, 10, 20]

    def test_offsets_slice_the_source(self):
        text = "First one. Second one. Third one."
        for chunk in chunk_text(text, max_chars=15):
            assert text[chunk.start_index:chunk.end_index] == chunk.content

    def test_role_is_carried(self):
        assert all(c.role == "bullet" for c in chunk_text(CJK_PARAGRAPH, role="bullet"))

    def test_non_positive_max_rejected(self):
        with pytest.raises(ValueError):
            chunk_text("text", max_chars=0)


def _chunk(content: str, role: str = "body") -> TextChunk:
    return TextChunk(
        content=content, start_index=0, end_index=len(content),
        sentence_count=1, char_count=len(content), role=role,
    )


@pytest.mark.unit
class TestMergeShortChunks:

    def test_short_same_role_chunks_merge(self):
        merged = merge_short_chunks([_chunk("aaaa"), _chunk("bbbb"), _chunk("cccc")], min_chars=20)
        assert len(merged) == 1
        assert merged[0].content == "aaaa\nbbbb\ncccc"
        assert merged[0].sentence_count == 3

    def test_different_roles_never_merge(self):
        merged = merge_short_chunks([_chunk("title", "title"), _chunk("body text")], min_chars=200)
        assert [c.role for c in merged] == ["title", "body"]

    def test_long_chunks_untouched(self):
        chunks = [_chunk("x" * 300), _chunk("y" * 300)]
        merged = merge_short_chunks(chunks, min_chars=200)
        assert [c.content for c in merged] == [c.content for c in chunks]

    def test_input_not_mutated(self):
        chunks = [_chunk("aa"), _chunk("bb")]
        merge_short_chunks(chunks, min_chars=10)
        assert chunks[0].content == "aa"


# ─────────────────────────────────────────────────────────────────────────────
# Key terms + normalisation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestKeyTermsAndNormalize:

    def test_katakana_then_kanji_then_quoted(self):
        terms = extract_key_terms("「量子コンピュータ」とアルゴリズムの研究")
        assert terms[:2] == ["コンピュータ", "アルゴリズム"]
        assert "研究" in terms
        assert "量子コンピュータ" in terms

    def test_terms_are_distinct(self):
        terms = extract_key_terms("研究と研究と研究")
        assert terms == ["研究"]

    def test_at_most_ten_terms(self):
        text = "と".join(["東京", "大阪", "京都", "奈良", "福岡", "札幌", "仙台", "広島", "神戸", "横浜", "千葉", "埼玉"])
        assert len(extract_key_terms(text)) == 10

    def test_english_text_has_no_terms(self):
        assert extract_key_terms("machine learning basics") == []

    def test_normalize_folds_fullwidth_and_whitespace(self):
        assert normalize_text("ＡＢＣ　１２３\n\tテスト  ") == "ABC 123 テスト"

"""
Prompt templates for the extraction and QA-generation model calls.

Every template asks for a single JSON object with a known top-level array key
("segments" or "qa_pairs"); those keys are what the decoder's reconstruction
layer scans for when the output is beyond repair.
"""

from __future__ import annotations

from typing import Final

EXTRACTION_SYSTEM_PROMPT: Final[str] = """\
You are a document analysis engine. You read the attached document and return
its text content as structured JSON. You never summarise, translate or invent
content. Respond with JSON only, without commentary or code fences.
"""

_SEGMENT_SCHEMA: Final[str] = """\
{
  "segments": [
    {
      "text": "<verbatim text of the segment>",
      "type": "text | image | table",
      "page_number": <1-based page number or null>,
      "role": "title | bullet | body | table | caption",
      "confidence": <0.0-1.0>
    }
  ]
}"""

EXTRACTION_PROMPT: Final[str] = f"""\
Extract all text from the attached document and split it into logical segments.

Rules:
- Preserve the reading order of the original document.
- One segment per logical unit: a heading, a bullet list, a paragraph, a table, a caption.
- Tag each segment with its layout role.
- Keep the original language and characters exactly as written.

Return JSON in exactly this shape:
{_SEGMENT_SCHEMA}
"""

OCR_EXTRACTION_PROMPT: Final[str] = f"""\
The attached document is a scan or contains text rendered as images. Perform
careful OCR and split the result into logical segments.

Rules:
- Read every page image, including text inside figures and screenshots.
- Japanese and Chinese text may be set vertically (top-to-bottom, right-to-left
  columns) and mixed with horizontal text on the same page. Reconstruct the
  correct reading order for each block before emitting it.
- Keep furigana out of the main text unless it is the only reading available.
- Render tables row by row with cells separated by " | " and tag them role "table".
- Do not guess characters you cannot read; omit them instead.

Return JSON in exactly this shape:
{_SEGMENT_SCHEMA}
"""

VISION_EXTRACTION_PROMPT: Final[str] = f"""\
The attached file is a single image (photo, screenshot or slide). Read all
visible text, in reading order, and split it into logical segments. Text may be
vertical or horizontal. Describe charts or diagrams only when they carry labels
or numbers, using type "image".

Return JSON in exactly this shape:
{_SEGMENT_SCHEMA}
"""

QA_SYSTEM_PROMPT: Final[str] = """\
You write study questions from source material. Every question must be
answerable from the given text alone, and every answer must be supported by it.
Respond with JSON only, without commentary or code fences.
"""

_QUESTION_TYPE_GUIDE: Final[dict[str, str]] = {
    "factual":    "factual: recall of a specific fact, name, number or definition",
    "conceptual": "conceptual: understanding of an idea, relationship or reason",
    "application": "application: using the content in a concrete situation",
    "analytical": "analytical: comparing, evaluating or drawing conclusions",
}

QA_GENERATION_TEMPLATE: Final[str] = """\
Source text (segment {segment_index} of {segment_total}, role: {role}):
\"\"\"
{segment_text}
\"\"\"

Write up to {max_questions} question/answer pairs about the source text.
Language: write questions and answers in {language}.
Allowed question types:
{question_types}

For each pair give a quality_score (0.0-1.0: how useful and well-grounded the
pair is) and a confidence (0.0-1.0: how sure you are the answer is correct).

Return JSON in exactly this shape:
{{
  "qa_pairs": [
    {{
      "question": "...",
      "answer": "...",
      "question_type": "<one of the allowed types>",
      "quality_score": 0.0,
      "confidence": 0.0
    }}
  ]
}}
"""

_LANGUAGE_NAMES: Final[dict[str, str]] = {
    "ja": "Japanese",
    "en": "English",
    "zh": "Chinese",
    "ko": "Korean",
}


def render_qa_prompt(
    segment_text:   str,
    role:           str,
    segment_index:  int,
    segment_total:  int,
    max_questions:  int,
    question_types: list[str],
    language:       str,
) -> str:
    types = "\n".join(f"- {_QUESTION_TYPE_GUIDE.get(t, t)}" for t in question_types)
    return QA_GENERATION_TEMPLATE.format(
        segment_index  = segment_index + 1,
        segment_total  = segment_total,
        role           = role,
        segment_text   = segment_text,
        max_questions  = max_questions,
        language       = _LANGUAGE_NAMES.get(language, language),
        question_types = types,
    )

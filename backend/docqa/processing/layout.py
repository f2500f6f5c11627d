"""
Document layout inspection  —  raster-page detection with PyMuPDF
═══════════════════════════════════════════════════════════════════

The OCR-escalation decision needs one fact the language model cannot be
trusted to report: does the source contain pages whose text only exists as
pixels?  PyMuPDF answers that in-process, without an API call:

  page has embedded images       ─┐
                                  ├─→  raster page
  page text layer < 50 chars     ─┘

Images are one raster page by definition.  A PDF that PyMuPDF cannot open
(encrypted, truncated) is reported as raster so escalation stays possible;
the model may still read what PyMuPDF could not.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Below this many text-layer characters a page is treated as scanned
MIN_CHARS_PER_PAGE_THRESHOLD = 50

PDF_MIME_TYPE = "application/pdf"


@dataclass
class DocumentLayout:
    """
    page_count      : pages in the document (1 for images)
    raster_pages    : 1-based numbers of pages that need OCR to be read
    text_layer_chars: characters in the native PDF text layer
    is_image        : True for image MIME types
    readable        : False when PyMuPDF could not open the file
    """
    page_count:       int
    raster_pages:     list[int] = field(default_factory=list)
    text_layer_chars: int  = 0
    is_image:         bool = False
    readable:         bool = True

    @property
    def has_raster_pages(self) -> bool:
        return bool(self.raster_pages)


def is_image_mime(mime_type: str) -> bool:
    return mime_type.lower().startswith("image/")


def _inspect_pdf_sync(file_bytes: bytes) -> DocumentLayout:
    """Blocking inspection — runs in a worker thread."""
    import fitz  # PyMuPDF; imported here to avoid module-level import cost

    raster: list[int] = []
    total_chars = 0
    with fitz.open(stream=file_bytes, filetype="pdf") as doc:
        page_count = doc.page_count
        for page_num, page in enumerate(doc, start=1):
            chars = len((page.get_text("text") or "").strip())
            total_chars += chars
            if page.get_images(full=True) or chars < MIN_CHARS_PER_PAGE_THRESHOLD:
                raster.append(page_num)

    return DocumentLayout(
        page_count       = page_count,
        raster_pages     = raster,
        text_layer_chars = total_chars,
    )


async def inspect_document(file_bytes: bytes, mime_type: str) -> DocumentLayout:
    if is_image_mime(mime_type):
        return DocumentLayout(page_count=1, raster_pages=[1], is_image=True)

    try:
        layout = await asyncio.to_thread(_inspect_pdf_sync, file_bytes)
    except Exception as exc:  # fitz raises its own FileDataError / RuntimeError types
        logger.warning("LayoutInspector | unreadable pdf bytes=%d error=%s", len(file_bytes), exc)
        return DocumentLayout(page_count=0, raster_pages=[0], readable=False)

    logger.info(
        "LayoutInspector | pages=%d raster_pages=%d text_layer_chars=%d",
        layout.page_count, len(layout.raster_pages), layout.text_layer_chars,
    )
    return layout

# storage/pdf_text.py
"""
PDF -> plain text for the text import path.

Each page is rasterized with pdf2image (+poppler), lightly cleaned with
Pillow and read with Tesseract. Column gaps (runs of 2+ spaces, kept by
preserve_interword_spaces) become tabs so the line parser can split
code / name / price / category.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional

import pytesseract
from PIL import Image, ImageFilter, ImageOps
from pdf2image import convert_from_bytes

from .errors import TextExtractionError

log = logging.getLogger(__name__)

# --- OCR settings from env ---
TESSERACT_CMD = os.getenv("TESSERACT_CMD")
POPPLER_PATH = os.getenv("POPPLER_PATH") or None
TESSERACT_LANG = os.getenv("TESSERACT_LANG") or "eng+deu"
TESSERACT_CONFIG = os.getenv("TESSERACT_CONFIG") or "--oem 1 --psm 6 -c preserve_interword_spaces=1"
PDF_DPI = int(os.getenv("PDF_DPI") or 300)

if TESSERACT_CMD and Path(TESSERACT_CMD).exists():
    pytesseract.pytesseract.tesseract_cmd = TESSERACT_CMD
else:
    _which = shutil.which("tesseract")
    if _which:
        pytesseract.pytesseract.tesseract_cmd = _which

_COLUMN_GAP_RX = re.compile(r"[ \t]{2,}")


def columns_to_tabs(text: str) -> str:
    """'101   Butter Chicken   14.50' -> '101\\tButter Chicken\\t14.50'."""
    out: List[str] = []
    for line in (text or "").splitlines():
        out.append(_COLUMN_GAP_RX.sub("\t", line.strip()))
    return "\n".join(out)


def _prepare_page(page: Image.Image) -> Image.Image:
    img = page.convert("L")
    img = ImageOps.autocontrast(img)
    return img.filter(ImageFilter.SHARPEN)


def extract_text_from_pdf(pdf_bytes: bytes, *, poppler_path: Optional[str] = None) -> str:
    """
    OCR every page of a PDF and return tab-delimited text.

    Raises TextExtractionError when the PDF cannot be rasterized or read.
    """
    if not pdf_bytes:
        raise TextExtractionError("No file uploaded")

    try:
        pages = convert_from_bytes(pdf_bytes, dpi=PDF_DPI, poppler_path=poppler_path or POPPLER_PATH)
    except Exception as e:
        log.error("PDF rasterization failed: %s", e)
        raise TextExtractionError(f"PDF Parsing failed: {e}") from e

    buf: List[str] = []
    for n, page in enumerate(pages, start=1):
        try:
            txt = pytesseract.image_to_string(
                _prepare_page(page),
                lang=TESSERACT_LANG,
                config=TESSERACT_CONFIG,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            log.error("Tesseract failed on page %d: %s", n, e)
            raise TextExtractionError(f"PDF Parsing failed on page {n}: {e}") from e
        if txt:
            buf.append(txt)

    log.info("Successfully extracted %d pages from PDF", len(pages))
    return columns_to_tabs("\n".join(buf).strip())

"""PDF text extraction: raw bytes -> per-page text via PyMuPDF."""

import logging
from dataclasses import dataclass
from typing import List

import fitz  # PyMuPDF

from .errors import ExtractionError
from .models import PageText

logger = logging.getLogger(__name__)


@dataclass
class ExtractedText:
    """Per-page text plus the page count of the source PDF."""
    pages: List[PageText]
    total_pages: int


def open_pdf(pdf_bytes: bytes) -> fitz.Document:
    """Open a PDF from memory, mapping parser failures to ExtractionError."""
    if not pdf_bytes:
        raise ExtractionError("PDF byte stream is empty")
    try:
        return fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise ExtractionError(f"Could not parse PDF: {e}") from e


def extract_pages(pdf_bytes: bytes) -> ExtractedText:
    """
    Extract plain text from every page of a PDF.

    Pages without a text layer (e.g. image-only scans) are skipped; the
    page numbers of the remaining pages are preserved.

    Args:
        pdf_bytes: Raw PDF file content

    Returns:
        ExtractedText with pages in page order and the total page count

    Raises:
        ExtractionError: if the PDF cannot be parsed or has no extractable text
    """
    doc = open_pdf(pdf_bytes)

    try:
        pages = []
        for page_num in range(doc.page_count):
            text = doc[page_num].get_text()
            if text.strip():
                pages.append(PageText(page=page_num + 1, text=text))
            else:
                logger.debug(f"Page {page_num + 1}: no text layer")

        total_pages = doc.page_count
    except Exception as e:
        raise ExtractionError(f"Failed to read PDF text: {e}") from e
    finally:
        doc.close()

    if not pages:
        raise ExtractionError("Could not extract any text from the PDF.")

    logger.info(f"Extracted text from {len(pages)} of {total_pages} pages")
    return ExtractedText(pages=pages, total_pages=total_pages)

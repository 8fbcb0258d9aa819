"""
PDF text extraction.

Turns raw PDF bytes into plain text with pypdf. Pages are joined with a
form feed so the chunker can map character offsets back to page numbers.
Treated as an opaque capability by the rest of the pipeline.
"""

import io
import logging

from pypdf import PdfReader

from generation.errors import DocumentUnreadableError
from parsing.schemas import ExtractedText

# pypdf is chatty about malformed xref tables and fonts
logging.getLogger("pypdf").setLevel(logging.ERROR)

log = logging.getLogger(__name__)

PAGE_SEPARATOR = "\f"


def extract_pdf_text(pdf_bytes: bytes) -> ExtractedText:
    """
    Extract plain text from a PDF byte stream.

    Args:
        pdf_bytes: Raw PDF file content

    Returns:
        ExtractedText with pages joined by PAGE_SEPARATOR

    Raises:
        DocumentUnreadableError: If the bytes are not a readable PDF or
            no page yields any text (scanned images, encrypted files)
    """
    if not pdf_bytes:
        raise DocumentUnreadableError("Empty PDF payload")

    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        if reader.is_encrypted:
            # Most "encrypted" course PDFs only carry an owner password
            reader.decrypt("")
        pages = [(page.extract_text() or "") for page in reader.pages]
    except Exception as e:
        raise DocumentUnreadableError(f"PDF extraction failed: {e}") from e

    text = PAGE_SEPARATOR.join(p.strip() for p in pages)
    if not text.replace(PAGE_SEPARATOR, "").strip():
        raise DocumentUnreadableError("Could not read any text from the PDF")

    log.info("Extracted %d chars from %d pages", len(text), len(pages))
    return ExtractedText(text=text, page_count=max(1, len(pages)))

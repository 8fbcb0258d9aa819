"""Tests for PDF text extraction."""

import io

import pytest
from pypdf import PdfWriter

from generation.errors import DocumentUnreadableError
from parsing.pdf_text import extract_pdf_text


def _blank_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=595, height=842)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestExtraction:
    def test_empty_payload(self) -> None:
        with pytest.raises(DocumentUnreadableError):
            extract_pdf_text(b"")

    def test_not_a_pdf(self) -> None:
        with pytest.raises(DocumentUnreadableError):
            extract_pdf_text(b"this is definitely not a PDF file")

    def test_pdf_without_text(self) -> None:
        with pytest.raises(DocumentUnreadableError):
            extract_pdf_text(_blank_pdf(pages=3))

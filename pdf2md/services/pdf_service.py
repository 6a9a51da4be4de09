"""PDF upload helpers."""
from __future__ import annotations

import io

import PyPDF2
from PyPDF2.errors import PdfReadError

from pdf2md.exceptions import InvalidRequest


def is_pdf(filename: str, mimetype: str = "") -> bool:
    return (mimetype or "").lower() == "application/pdf" or (filename or "").lower().endswith(".pdf")


def count_pdf_pages(data: bytes) -> int:
    """Number of pages in an uploaded PDF; unreadable files are a bad request"""
    try:
        reader = PyPDF2.PdfReader(io.BytesIO(data))
        pages = len(reader.pages)
    except (PdfReadError, ValueError) as e:
        raise InvalidRequest(f"Unreadable PDF: {e}") from e
    if pages <= 0:
        raise InvalidRequest("PDF has no pages")
    return pages

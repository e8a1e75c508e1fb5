"""
PDF Extractor - embedded text and page rasterization for PDF buffers.

Responsibilities:
1. Count pages
2. Extract embedded text per page (PyMuPDF first, pdfplumber fallback)
3. Rasterize pages for image OCR (PyMuPDF first, pdf2image fallback)
"""
import io
import logging
from typing import Dict, Optional, Sequence

import fitz  # PyMuPDF
import pdfplumber
from pdf2image import convert_from_bytes

from archivist.core.config import settings
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

# pdfplumber is chatty about malformed scans
logging.getLogger("pdfminer").setLevel(logging.ERROR)


class PDFExtractor:
    """Works on in-memory PDF bytes; nothing touches the disk."""

    def __init__(self, dpi: Optional[int] = None):
        self.dpi = dpi or settings.OCR_DPI

    def get_page_count(self, data: bytes) -> int:
        """
        Quick page count without full extraction.

        Returns:
            Number of pages (0 when the PDF cannot be opened)
        """
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                return doc.page_count
        except Exception as e:
            logger.warning(f"PyMuPDF could not open PDF, trying pdfplumber: {e}")

        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                return len(pdf.pages)
        except Exception as e:
            logger.error(f"Failed to get page count: {e}")
            return 0

    def extract_text(self, data: bytes, pages: Sequence[int]) -> Dict[int, str]:
        """
        Extract embedded text for the selected pages.

        Args:
            data: PDF bytes
            pages: 1-indexed page numbers

        Returns:
            {page_number: text}
        """
        texts: Dict[int, str] = {}

        try:
            # Try PyMuPDF first (faster for text)
            with fitz.open(stream=data, filetype="pdf") as doc:
                for page_number in pages:
                    try:
                        texts[page_number] = (doc[page_number - 1].get_text("text") or "").strip()
                    except Exception as e:
                        logger.warning(f"PyMuPDF failed for page {page_number}: {e}")
                        texts[page_number] = self._pdfplumber_page(data, page_number)
            return texts

        except Exception as e:
            logger.warning(f"PyMuPDF failed, using pdfplumber: {e}")

        for page_number in pages:
            texts[page_number] = self._pdfplumber_page(data, page_number)
        return texts

    @staticmethod
    def _pdfplumber_page(data: bytes, page_number: int) -> str:
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                return (pdf.pages[page_number - 1].extract_text() or "").strip()
        except Exception as e:
            logger.error(f"Text extraction failed for page {page_number}: {e}")
            return ""

    def rasterize_page(self, data: bytes, page_number: int) -> Optional[bytes]:
        """
        Render one page to PNG bytes.

        Returns:
            PNG bytes, or None if neither renderer could handle the page
        """
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                pix = doc[page_number - 1].get_pixmap(dpi=self.dpi)
                return pix.tobytes("png")
        except Exception as e:
            logger.warning(f"PyMuPDF rasterization failed for page {page_number}: {e}")

        try:
            images = convert_from_bytes(data, dpi=self.dpi, first_page=page_number, last_page=page_number)
            if not images:
                return None
            out = io.BytesIO()
            images[0].save(out, format="PNG")
            return out.getvalue()
        except Exception as e:
            logger.error(f"Rasterization failed for page {page_number}: {e}")
            return None

"""
OCR Engine - two-tier text recognition with confidence-based arbitration.

Dispatch:
- PDF: embedded text first; below PDF_TEXT_MIN_CHARS fall through to image OCR of
  each selected page (embedded image by marker scan, or a rasterized page)
- Image: primary cloud OCR; if its confidence is below the accept threshold,
  run the local fallback and keep the better result (ties go to the primary)
- HTML / plain text: visible text, no OCR
- Total failure: empty result with service "none" and an error

Blocking work (Tesseract, PDF parsing, rendering) runs in worker threads so the
job loop stays cooperative.
"""
import asyncio
from collections import Counter
from functools import lru_cache
from typing import List, Optional

from bs4 import BeautifulSoup

from archivist.core.config import settings
from archivist.core.exceptions import OCRError
from archivist.models.extraction import ContentBuffer, OCROptions, OCRResult, OCRService, PageText
from archivist.utils.extractors import ImageExtractor, OCRExtractor, PDFExtractor, VisionClient
from archivist.utils.helper import clamp
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

PDF_TEXT_CONFIDENCE = 0.9
HTML_TEXT_CONFIDENCE = 0.9


def mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class OCREngine:

    def __init__(
            self,
            vision: Optional[VisionClient] = None,
            fallback: Optional[OCRExtractor] = None,
            pdf: Optional[PDFExtractor] = None,
            images: Optional[ImageExtractor] = None,
            accept_confidence: Optional[float] = None
    ):
        self.vision = vision or VisionClient()
        self.fallback = fallback or OCRExtractor()
        self.pdf = pdf or PDFExtractor()
        self.images = images or ImageExtractor()
        self.accept_confidence = accept_confidence or settings.OCR_PRIMARY_ACCEPT_CONFIDENCE

    # ==================== Entry point ====================

    async def ocr(self, buffer: ContentBuffer, options: Optional[OCROptions] = None) -> OCRResult:
        """
        Recognize the text of a content buffer.

        Args:
            buffer: Acquired content
            options: Page selection and language

        Returns:
            OCRResult (never raises; failures come back as an empty result with an error)
        """
        options = options or OCROptions()
        page_estimate = max(1, len(options.pages or []) or self._estimate_pages(buffer, options))
        budget = page_estimate * settings.OCR_BUDGET_PER_PAGE

        try:
            return await asyncio.wait_for(self._dispatch(buffer, options), timeout=budget)
        except asyncio.TimeoutError:
            logger.error(f"❌ OCR budget of {budget:.0f}s exhausted for {buffer.url}")
            return OCRResult.empty(error=f"OCR budget of {budget:.0f}s exhausted")
        except Exception as e:
            logger.error(f"❌ OCR failed for {buffer.url}: {e}", exc_info=True)
            return OCRResult.empty(error=str(e))

    def _estimate_pages(self, buffer: ContentBuffer, options: OCROptions) -> int:
        if not buffer.is_pdf:
            return 1
        if options.start_page or options.end_page:
            start = options.start_page or 1
            end = options.end_page or start
            return max(1, end - start + 1)
        return max(1, self.pdf.get_page_count(buffer.data))

    async def _dispatch(self, buffer: ContentBuffer, options: OCROptions) -> OCRResult:
        if buffer.is_pdf:
            return await self.ocr_pdf(buffer.data, options)
        if buffer.is_image:
            page = await self.ocr_image(buffer.data, options.language, page_number=1)
            return self._combine([page])
        if buffer.is_html or buffer.mime.startswith("text/"):
            return self.document_text(buffer)
        return OCRResult.empty(error=f"Unsupported content type: {buffer.mime}")

    # ==================== PDF ====================

    async def ocr_pdf(self, data: bytes, options: OCROptions) -> OCRResult:
        page_count = await asyncio.to_thread(self.pdf.get_page_count, data)

        if page_count == 0:
            # Unreadable structure: the byte stream may still hold a page image
            found = self.images.scan_for_image(data)
            if found is None:
                return OCRResult.empty(error="PDF could not be opened and holds no embedded image")
            page = await self.ocr_image(self.images.preprocess(found[1]), options.language, page_number=1)
            return self._combine([page])

        selected = options.select_pages(page_count)
        if not selected:
            return OCRResult.empty(error=f"Page selection is outside 1..{page_count}")

        texts = await asyncio.to_thread(self.pdf.extract_text, data, selected)
        total_chars = sum(len(t.strip()) for t in texts.values())
        if total_chars > settings.PDF_TEXT_MIN_CHARS:
            logger.info(f"Using embedded PDF text ({total_chars} chars, {len(selected)} pages)")
            pages = [
                PageText(
                    page_number=p,
                    text=texts.get(p, ""),
                    confidence=PDF_TEXT_CONFIDENCE if texts.get(p, "").strip() else 0.0,
                    service=OCRService.PDF_TEXT,
                    block_confidences=[PDF_TEXT_CONFIDENCE] if texts.get(p, "").strip() else [],
                )
                for p in selected
            ]
            text = "\n\n".join(p.text for p in pages if p.text.strip())
            return OCRResult(
                text=text,
                confidence=PDF_TEXT_CONFIDENCE,
                service=OCRService.PDF_TEXT,
                page_count=len(selected),
                pages=pages,
            )

        logger.info(f"Embedded text too short ({total_chars} chars); running image OCR on {len(selected)} pages")
        pages: List[PageText] = []
        errors: List[str] = []
        for page_number in selected:
            image = await asyncio.to_thread(self._page_image, data, page_number, page_count)
            if image is None:
                errors.append(f"page {page_number}: no image could be isolated")
                pages.append(PageText(page_number=page_number))
                continue
            page = await self.ocr_image(image, options.language, page_number=page_number)
            if not page.text:
                errors.append(f"page {page_number}: no text recognized")
            pages.append(page)

        result = self._combine(pages)
        if errors and result.error is None:
            result.error = "; ".join(errors)
        return result

    def _page_image(self, data: bytes, page_number: int, page_count: int) -> Optional[bytes]:
        """Single-image PDFs use the embedded image at native resolution; others are rendered."""
        image: Optional[bytes] = None
        if page_count <= 1:
            found = self.images.scan_for_image(data)
            image = found[1] if found else None
        if image is None:
            image = self.pdf.rasterize_page(data, page_number)
        if image is None:
            embedded = self.images.extract_embedded(data, page_number)
            image = embedded[0] if embedded else None
        return self.images.preprocess(image) if image is not None else None

    # ==================== Images ====================

    async def ocr_image(self, image: bytes, language: Optional[str] = None, page_number: int = 1) -> PageText:
        """
        Primary service first; fallback when it is unavailable, fails or is not confident enough.
        """
        language = language or settings.OCR_LANGUAGE
        primary: Optional[PageText] = None

        if self.vision.available:
            try:
                text, blocks = await asyncio.wait_for(
                    self.vision.annotate(image, language), timeout=settings.OCR_TIMEOUT
                )
                primary = self._page(page_number, text, blocks, OCRService.VISION)
                if primary.confidence >= self.accept_confidence:
                    return primary
                logger.info(
                    f"Vision confidence {primary.confidence:.2f} below {self.accept_confidence}; trying fallback"
                )
            except (OCRError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ Primary OCR failed on page {page_number}: {e}")

        secondary: Optional[PageText] = None
        try:
            text, blocks = await asyncio.wait_for(
                asyncio.to_thread(self.fallback.recognize_blocks, image, language),
                timeout=settings.OCR_TIMEOUT
            )
            secondary = self._page(page_number, text, [b / 100.0 for b in blocks], OCRService.FALLBACK_OCR)
        except (OCRError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Fallback OCR failed on page {page_number}: {e}")

        return self.choose_best(primary, secondary) or PageText(page_number=page_number)

    @staticmethod
    def choose_best(primary: Optional[PageText], secondary: Optional[PageText]) -> Optional[PageText]:
        """Higher confidence wins; ties go to the primary service."""
        if primary is None:
            return secondary
        if secondary is None:
            return primary
        return primary if primary.confidence >= secondary.confidence else secondary

    @staticmethod
    def _page(page_number: int, text: str, blocks: List[float], service: OCRService) -> PageText:
        blocks = [clamp(b) for b in blocks] if text.strip() else []
        return PageText(
            page_number=page_number,
            text=text,
            confidence=mean(blocks),
            service=service if text.strip() else OCRService.NONE,
            block_confidences=blocks,
        )

    # ==================== Text documents ====================

    @staticmethod
    def document_text(buffer: ContentBuffer) -> OCRResult:
        raw = buffer.data.decode("utf-8", errors="replace")
        if buffer.is_html:
            soup = BeautifulSoup(raw, "html.parser")
            for tag in soup(["script", "style", "noscript", "nav", "header", "footer"]):
                tag.decompose()
            raw = soup.get_text("\n")
        lines = [l.rstrip() for l in raw.splitlines()]
        text = "\n".join(l for l in lines if l.strip())
        return OCRResult(
            text=text,
            confidence=HTML_TEXT_CONFIDENCE if text else 0.0,
            service=OCRService.HTML_TEXT if text else OCRService.NONE,
            page_count=1,
            pages=[PageText(page_number=1, text=text, confidence=HTML_TEXT_CONFIDENCE if text else 0.0,
                            service=OCRService.HTML_TEXT if text else OCRService.NONE)],
            error=None if text else "Document has no visible text",
        )

    # ==================== Aggregation ====================

    @staticmethod
    def _combine(pages: List[PageText]) -> OCRResult:
        """Unweighted mean of block confidences across pages; empty pages contribute nothing."""
        blocks = [b for p in pages for b in p.block_confidences]
        text = "\n\n".join(p.text for p in pages if p.text.strip())
        services = Counter(p.service for p in pages if p.service != OCRService.NONE)
        service: OCRService = services.most_common(1)[0][0] if services else OCRService.NONE

        if not text:
            return OCRResult(page_count=len(pages), pages=pages, error="No text recognized")

        return OCRResult(
            text=text,
            confidence=clamp(mean(blocks)),
            service=service,
            page_count=len(pages),
            pages=pages,
        )


@lru_cache()
def get_ocr_engine() -> OCREngine:
    """Process-wide OCR handle, created once and shared read-only across jobs."""
    return OCREngine()

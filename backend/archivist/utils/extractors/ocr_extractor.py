"""
OCR Extractor - local fallback OCR through Tesseract.

Single responsibility: (image bytes, language) -> (text, confidence 0-100).
"""
import io
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import pytesseract
from PIL import Image

from archivist.core.config import settings
from archivist.core.exceptions import OCRError
from archivist.utils.logger import get_logger

logger = get_logger(__name__)


class OCRExtractor:
    """Extracts text from page images using Tesseract."""

    def __init__(self, lang: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize OCR extractor.

        Args:
            lang: OCR language (default from settings)
            timeout: Per-image timeout in seconds
        """
        self.lang = lang or settings.OCR_LANGUAGE
        self.timeout = timeout or settings.OCR_TIMEOUT
        if settings.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    @property
    def available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
            return True
        except Exception:
            return False

    def recognize_blocks(self, image_bytes: bytes, language: Optional[str] = None) -> Tuple[str, List[float]]:
        """
        Run OCR and report per-block confidence.

        Args:
            image_bytes: Encoded image
            language: Tesseract language code

        Returns:
            (text, block confidences in 0-100)
        """
        lang = language or self.lang
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                ocr_text = pytesseract.image_to_string(image, lang=lang, timeout=self.timeout)
                ocr_data = pytesseract.image_to_data(
                    image,
                    lang=lang,
                    output_type=pytesseract.Output.DICT,
                    timeout=self.timeout
                )
        except Exception as e:
            raise OCRError(f"Tesseract failed: {e}") from e

        blocks: Dict[int, List[float]] = defaultdict(list)
        for block, conf, word in zip(ocr_data.get("block_num", []), ocr_data.get("conf", []),
                                     ocr_data.get("text", [])):
            try:
                value = float(conf)
            except (TypeError, ValueError):
                continue
            if value >= 0 and str(word).strip():
                blocks[int(block)].append(value)

        block_confidences = [sum(v) / len(v) for _, v in sorted(blocks.items()) if v]

        logger.debug(
            f"Tesseract: {len(block_confidences)} blocks, text_length={len(ocr_text.strip())}"
        )
        return ocr_text.strip(), block_confidences

    def recognize(self, image_bytes: bytes, language: Optional[str] = None) -> Tuple[str, float]:
        """(bytes, language) -> (text, confidence 0-100)"""
        text, blocks = self.recognize_blocks(image_bytes, language)
        confidence = sum(blocks) / len(blocks) if blocks else 0.0
        return text, confidence

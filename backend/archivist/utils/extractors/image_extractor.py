"""
Image Extractor - isolates page images inside PDFs and prepares images for OCR.

Responsibilities:
1. Byte-level marker scan for the first embedded JPEG / PNG in a PDF stream
2. Embedded-image extraction through PyMuPDF
3. OCR preprocessing (rescale, grayscale, sharpen)
"""
import io
from typing import List, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from archivist.core.config import settings
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

JPEG_SOI = b"\xff\xd8\xff"
JPEG_EOI = b"\xff\xd9"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_IEND = b"IEND"


class ImageExtractor:
    """Finds and prepares page images."""

    def __init__(self, max_width: Optional[int] = None):
        self.max_width = max_width or settings.OCR_MAX_IMAGE_WIDTH

    # ==================== Marker scan ====================

    @staticmethod
    def scan_for_image(data: bytes) -> Optional[Tuple[str, bytes]]:
        """
        Find the first embedded JPEG or PNG by scanning the raw PDF bytes.

        Returns:
            (mime, image bytes) for whichever image starts first, or None
        """
        candidates = []

        soi = data.find(JPEG_SOI)
        if soi != -1:
            stream_end = data.find(b"endstream", soi)
            limit = stream_end if stream_end != -1 else len(data)
            eoi = data.rfind(JPEG_EOI, soi, limit)
            if eoi == -1:
                eoi = data.find(JPEG_EOI, soi)
            if eoi != -1:
                candidates.append((soi, "image/jpeg", data[soi:eoi + len(JPEG_EOI)]))

        sig = data.find(PNG_SIGNATURE)
        if sig != -1:
            iend = data.find(PNG_IEND, sig)
            if iend != -1:
                # IEND chunk type is followed by its 4-byte CRC
                candidates.append((sig, "image/png", data[sig:iend + len(PNG_IEND) + 4]))

        if not candidates:
            return None

        _, mime, image = min(candidates, key=lambda c: c[0])
        logger.debug(f"Marker scan found {mime} ({len(image)} bytes)")
        return mime, image

    # ==================== PyMuPDF ====================

    @staticmethod
    def extract_embedded(data: bytes, page_number: int) -> List[bytes]:
        """Embedded images of one page (1-indexed), largest first."""
        images = []
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                page = doc[page_number - 1]
                for img in page.get_images(full=True):
                    extracted = doc.extract_image(img[0])
                    if extracted and extracted.get("image"):
                        images.append(extracted["image"])
        except Exception as e:
            logger.warning(f"Failed to extract images from page {page_number}: {e}")
            return []

        return sorted(images, key=len, reverse=True)

    # ==================== Preprocessing ====================

    def preprocess(self, image_bytes: bytes) -> bytes:
        """
        Rescale to at most max_width, grayscale and sharpen.

        Returns:
            PNG bytes ready for OCR (the input unchanged if it cannot be decoded)
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                image = ImageOps.exif_transpose(image)

                if image.width > self.max_width:
                    ratio = self.max_width / float(image.width)
                    image = image.resize(
                        (self.max_width, max(1, int(image.height * ratio))),
                        Image.Resampling.LANCZOS
                    )

                image = image.convert("L")
                image = ImageOps.autocontrast(image)
                image = ImageEnhance.Sharpness(image).enhance(1.5)
                image = image.filter(ImageFilter.SHARPEN)

                out = io.BytesIO()
                image.save(out, format="PNG")
                return out.getvalue()

        except Exception as e:
            logger.warning(f"Image preprocessing failed, using original bytes: {e}")
            return image_bytes

"""
Cloud Vision client - primary OCR service over the images:annotate REST endpoint.
"""
import base64
from typing import List, Optional, Tuple

import httpx

from archivist.core.config import settings
from archivist.core.exceptions import OCRError
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

# Used when the response carries text but no block confidences
DEFAULT_CONFIDENCE = 0.85


class VisionClient:
    """
    DOCUMENT_TEXT_DETECTION requests (better for handwriting than TEXT_DETECTION).

    One instance is created per process and shared read-only across jobs.
    """

    def __init__(
            self,
            api_key: Optional[str] = None,
            endpoint: Optional[str] = None,
            timeout: Optional[float] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_VISION_API_KEY
        self.endpoint = endpoint or settings.GOOGLE_VISION_ENDPOINT
        self.timeout = timeout or settings.OCR_TIMEOUT
        self.transport = transport

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def annotate(self, image_bytes: bytes, language: Optional[str] = None) -> Tuple[str, List[float]]:
        """
        Send one image to the service.

        Args:
            image_bytes: Encoded image
            language: Optional language hint

        Returns:
            (full text, per-block confidences in 0-1)

        Raises:
            OCRError: Service unavailable, HTTP error, timeout or error payload
        """
        if not self.available:
            raise OCRError("Vision API key not configured")

        request = {
            "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
            "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
        }
        if language:
            request["imageContext"] = {"languageHints": [language]}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.endpoint,
                    params={"key": self.api_key},
                    json={"requests": [request]},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise OCRError(f"Vision request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise OCRError(f"Vision request failed: {e}") from e

        results = payload.get("responses") or [{}]
        result = results[0]
        if result.get("error"):
            raise OCRError(f"Vision error: {result['error'].get('message', result['error'])}")

        annotation = result.get("fullTextAnnotation") or {}
        text = annotation.get("text") or ""
        if not text and result.get("textAnnotations"):
            text = result["textAnnotations"][0].get("description", "")

        blocks: List[float] = []
        for page in annotation.get("pages", []):
            for block in page.get("blocks", []):
                if block.get("confidence") is not None:
                    blocks.append(float(block["confidence"]))

        if text.strip() and not blocks:
            blocks = [DEFAULT_CONFIDENCE]

        logger.debug(f"Vision: {len(blocks)} blocks, text_length={len(text)}")
        return text.strip(), blocks

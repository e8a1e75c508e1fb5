"""
Extractors package - Specialized content extractors.

Available extractors:
- PDFExtractor: embedded text and page rasterization
- ImageExtractor: embedded-image isolation and OCR preprocessing
- OCRExtractor: local Tesseract OCR
- VisionClient: primary cloud OCR
"""
from archivist.utils.extractors.image_extractor import ImageExtractor
from archivist.utils.extractors.ocr_extractor import OCRExtractor
from archivist.utils.extractors.pdf_extractor import PDFExtractor
from archivist.utils.extractors.vision_client import VisionClient

__all__ = [
    'PDFExtractor',
    'ImageExtractor',
    'OCRExtractor',
    'VisionClient'
]

import hashlib
import re
from typing import Optional
from urllib.parse import urlparse

from archivist.utils.logger import get_logger

logger = get_logger(__name__)

_WS = re.compile(r"\s+")


def normalize_whitespace(text: Optional[str]) -> str:
    """'  a \t b\n' → 'a b'"""
    return _WS.sub(" ", text or "").strip()


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def row_fingerprint(volume_id: str, page: int, row_index: int, owner: Optional[str], raw_line: str) -> str:
    """
    Stable identity of one emitted row.

    sha256 of 'volume|page|row|owner|normalized raw line'.
    """
    normalized = "|".join([
        str(volume_id),
        str(page),
        str(row_index),
        (owner or "").strip(),
        normalize_whitespace(raw_line),
    ])
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def default_volume_id(source_url: str) -> str:
    """Short stable volume id for sources that carry no archive volume number."""
    return hashlib.sha1(source_url.encode("utf-8")).hexdigest()[:10]


def detect_mime(data: bytes, declared: Optional[str] = None, url: Optional[str] = None) -> str:
    """
    Detect a content type from magic bytes, falling back to the declared
    Content-Type header and then the URL extension.
    """
    head = data[:16]
    if head.startswith(b"%PDF"):
        return "application/pdf"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"II*\x00") or head.startswith(b"MM\x00*"):
        return "image/tiff"
    if head.startswith(b"GIF87a") or head.startswith(b"GIF89a"):
        return "image/gif"
    if head[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"

    sniff = data[:512].lstrip().lower()
    if sniff.startswith(b"<!doctype html") or sniff.startswith(b"<html") or b"<html" in sniff:
        return "text/html"

    if declared:
        base = declared.split(";")[0].strip().lower()
        if base:
            return base

    if url:
        path = urlparse(url).path.lower()
        if path.endswith(".pdf"):
            return "application/pdf"
        if path.endswith((".jpg", ".jpeg")):
            return "image/jpeg"
        if path.endswith(".png"):
            return "image/png"
        if path.endswith((".htm", ".html")):
            return "text/html"
        if path.endswith(".txt"):
            return "text/plain"

    return "application/octet-stream"


def is_pdf_url(url: str) -> bool:
    return urlparse(url).path.lower().endswith(".pdf")


def is_html_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith((".htm", ".html", ".php", ".asp", ".aspx", ".jsp")) or path in ("", "/")

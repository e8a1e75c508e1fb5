"""
Tests for the Fetcher cascade, using httpx.MockTransport in place of the network.
"""
import time

import httpx
import pytest

from archivist.core.config import settings
from archivist.core.exceptions import AcquisitionExhausted
from archivist.models.extraction import AccessMode, ContentBuffer, FetchFailure, FetchMethod, SourceReference
from archivist.services.debug_log import DebugLog
from archivist.services.fetcher import (
    BrowserMimicStrategy, BrowserScreenshotStrategy, DirectHttpStrategy, Fetcher, PdfLinkExtractStrategy,
    RateLimiter
)

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF"
LANDING_PAGE = """<html><body>
<h1>Volume 812</h1>
<a href="/about">About</a>
<a href="/files/vol812-p47.pdf">Download PDF</a>
</body></html>"""


def fetcher_for(handler, strategies=None) -> Fetcher:
    return Fetcher(strategies=strategies, transport=httpx.MockTransport(handler), min_delay=0, max_delay=0)


def is_browser(request: httpx.Request) -> bool:
    return request.headers.get("user-agent") == settings.FETCH_BROWSER_USER_AGENT


# ==================== Cascade ====================

@pytest.mark.asyncio
async def test_browser_mimic_after_direct_403():
    def handler(request):
        if not is_browser(request):
            return httpx.Response(403, text="Forbidden", headers={"content-type": "text/plain"})
        return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})

    debug = DebugLog("job")
    result = await fetcher_for(handler).fetch(
        SourceReference(url="https://archive.example.org/records/vol812/p47"), debug
    )

    assert isinstance(result, ContentBuffer)
    assert result.origin == FetchMethod.BROWSER_MIMIC
    assert result.mime == "application/pdf"

    entries = debug.entries
    assert [e.stage for e in entries] == ["direct_http", "browser_mimic"]
    assert entries[0].message == "Failed: HTTP 403"
    assert entries[0].data["status_code"] == 403
    assert entries[1].message.startswith("Succeeded")


@pytest.mark.asyncio
async def test_first_success_stops_cascade():
    seen = []

    def handler(request):
        seen.append(request.headers.get("user-agent"))
        return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})

    result = await fetcher_for(handler).fetch(SourceReference(url="https://archive.example.org/doc/7"))

    assert result.origin == FetchMethod.DIRECT_HTTP
    assert seen == [settings.FETCH_USER_AGENT]


@pytest.mark.asyncio
async def test_pdf_url_skips_link_and_browser_strategies():
    screenshots = []

    def capture(url, cookies):
        screenshots.append(url)
        return b"\x89PNG\r\n\x1a\n"

    strategies = [DirectHttpStrategy(), BrowserMimicStrategy(), PdfLinkExtractStrategy(),
                  BrowserScreenshotStrategy(capture)]
    fetcher = fetcher_for(lambda request: httpx.Response(404, text="Not found"), strategies)
    debug = DebugLog("job")
    result = await fetcher.fetch(SourceReference(url="https://archive.example.org/vol812.pdf"), debug)

    assert isinstance(result, FetchFailure)
    assert result.attempted_methods == [FetchMethod.DIRECT_HTTP, FetchMethod.BROWSER_MIMIC]
    assert result.errors == {"direct_http": "HTTP 404", "browser_mimic": "HTTP 404"}
    assert screenshots == []
    assert debug.entries[-1].message == "All acquisition methods failed"

    error = AcquisitionExhausted(result)
    assert "direct_http" in str(error)
    assert "pdf_link_extract" not in str(error)


@pytest.mark.asyncio
async def test_pdf_link_extraction_from_landing_page():
    def handler(request):
        if request.url.path.endswith(".pdf"):
            return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})
        return httpx.Response(200, text=LANDING_PAGE, headers={"content-type": "text/html; charset=utf-8"})

    source = SourceReference(url="https://archive.example.org/viewer/vol812", access_mode=AccessMode.PDF_LINK)
    debug = DebugLog("job")
    result = await fetcher_for(handler).fetch(source, debug)

    assert result.origin == FetchMethod.PDF_LINK_EXTRACT
    assert result.url == "https://archive.example.org/files/vol812-p47.pdf"
    assert [e.stage for e in debug.entries] == ["direct_http", "browser_mimic", "pdf_link_extract"]


@pytest.mark.asyncio
async def test_screenshot_is_last_resort(monkeypatch):
    monkeypatch.setattr(settings, "BROWSER_SCREENSHOT_ENABLED", True)

    def capture(url, cookies):
        assert cookies == {"session": "abc"}
        return b"\x89PNG\r\n\x1a\nfake"

    strategies = [DirectHttpStrategy(), BrowserScreenshotStrategy(capture)]
    fetcher = fetcher_for(lambda request: httpx.Response(500, text="boom"), strategies)
    source = SourceReference(url="https://archive.example.org/viewer?id=9", cookies={"session": "abc"})
    result = await fetcher.fetch(source)

    assert result.origin == FetchMethod.BROWSER_SCREENSHOT
    assert result.mime == "image/png"


@pytest.mark.asyncio
async def test_only_supplied_cookies_are_sent():
    sent = []

    def handler(request):
        sent.append(request.headers.get("cookie"))
        return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})

    await fetcher_for(handler).fetch(SourceReference(url="https://archive.example.org/a"))
    await fetcher_for(handler).fetch(SourceReference(url="https://archive.example.org/b", cookies={"sid": "42"}))

    assert sent == [None, "sid=42"]


# ==================== Local files ====================

@pytest.mark.asyncio
async def test_local_file(tmp_path):
    path = tmp_path / "upload.pdf"
    path.write_bytes(PDF_BYTES)

    result = await Fetcher().fetch(SourceReference(url=str(path)))
    assert result.origin == FetchMethod.UPLOADED_FILE
    assert result.mime == "application/pdf"

    result = await Fetcher().fetch(SourceReference(url=path.as_uri()))
    assert result.data == PDF_BYTES


@pytest.mark.asyncio
async def test_missing_local_file(tmp_path):
    result = await Fetcher().fetch(SourceReference(url=str(tmp_path / "nope.pdf")))

    assert isinstance(result, FetchFailure)
    assert result.attempted_methods == [FetchMethod.UPLOADED_FILE]


# ==================== PDF links ====================

@pytest.mark.parametrize("html, expected", [
    ('<a href="docs/p1.pdf">p1</a>', "https://archive.example.org/vol/docs/p1.pdf"),
    ('<a href="/view">x</a><a href="/pdf/812/47">pdf</a>', "https://archive.example.org/pdf/812/47"),
    ('<iframe src="https://cdn.example.org/scan.pdf"></iframe>', "https://cdn.example.org/scan.pdf"),
    ('<embed type="application/pdf" src="/stream?id=4">', "https://archive.example.org/stream?id=4"),
    ('<div data-x=1><link rel="alternate" href="/alt/p47.pdf"></div>', "https://archive.example.org/alt/p47.pdf"),
    ('<p>No document here</p>', None),
])
def test_find_pdf_link(html, expected):
    assert PdfLinkExtractStrategy.find_pdf_link(html, "https://archive.example.org/vol/index.html") == expected


# ==================== Rate limiting ====================

@pytest.mark.asyncio
async def test_rate_limiter_spaces_requests_per_host():
    limiter = RateLimiter(0.05, 0.05)
    await limiter.wait("https://a.example.org/1")

    started = time.monotonic()
    await limiter.wait("https://b.example.org/1")
    assert time.monotonic() - started < 0.04

    await limiter.wait("https://a.example.org/2")
    assert time.monotonic() - started >= 0.03

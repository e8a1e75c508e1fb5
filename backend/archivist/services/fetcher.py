"""
Fetcher - turns a Source Reference into a Content Buffer through a cascade of
acquisition strategies.

Order (first success wins, later strategies are never attempted):
1. direct_http        polite User-Agent, PDF/image accept header
2. browser_mimic      full browser header set, more redirects
3. pdf_link_extract   HTML landing page -> first PDF link -> browser_mimic
4. browser_screenshot headless Chrome, full-page PNG

Every strategy shares one result type, so callers never branch on which method
succeeded. Adding an access mode means inserting one more strategy.
"""
import asyncio
import random
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from selenium import webdriver
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.support.ui import WebDriverWait

from archivist.core.config import settings
from archivist.core.exceptions import FetchAttemptError
from archivist.models.extraction import (
    AccessMode, ContentBuffer, FetchAttempt, FetchFailure, FetchMethod, SourceReference
)
from archivist.services.debug_log import DebugLog
from archivist.utils.helper import detect_mime, is_html_url, is_pdf_url
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

_RAW_PDF_HREF = re.compile(r"""href\s*=\s*["']([^"']+\.pdf(?:\?[^"']*)?)["']""", re.IGNORECASE)


# ==================== Rate Limiter ====================

class RateLimiter:
    """Polite per-host spacing: a jittered delay between consecutive requests to one host."""

    def __init__(self, min_delay: float, max_delay: float):
        self.min_delay = max(0.0, min_delay)
        self.max_delay = max(self.min_delay, max_delay)
        self._next: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def wait(self, url: str) -> None:
        host = urlparse(url).netloc.lower()
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            now = time.monotonic()
            wait_for = self._next.get(host, 0.0) - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next[host] = now + random.uniform(self.min_delay, self.max_delay)


# ==================== Cascade context ====================

class FetchContext:
    """State shared by the strategies of one fetch() call."""

    def __init__(
            self,
            source: SourceReference,
            limiter: RateLimiter,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.source = source
        self.limiter = limiter
        self.transport = transport
        self.saw_html = False
        self.saw_pdf = is_pdf_url(source.url)

    @property
    def pdf_shortcut(self) -> bool:
        """PDF sources are never parsed as HTML or pushed through a browser."""
        return self.saw_pdf

    async def get(
            self,
            url: str,
            headers: Dict[str, str],
            timeout: float,
            max_redirects: int
    ) -> httpx.Response:
        await self.limiter.wait(url)
        async with httpx.AsyncClient(
                headers=headers,
                timeout=timeout,
                follow_redirects=True,
                max_redirects=max_redirects,
                cookies=self.source.cookies or None,
                transport=self.transport,
        ) as client:
            try:
                response = await client.get(url)
            except httpx.TimeoutException as e:
                raise FetchAttemptError(f"Timed out after {timeout:.0f}s") from e
            except httpx.TooManyRedirects as e:
                raise FetchAttemptError(f"Too many redirects (>{max_redirects})") from e
            except httpx.HTTPError as e:
                raise FetchAttemptError(f"{type(e).__name__}: {e}") from e

        declared = response.headers.get("content-type", "")
        if "pdf" in declared.lower():
            self.saw_pdf = True
        if "html" in declared.lower():
            self.saw_html = True

        if response.status_code >= 400:
            raise FetchAttemptError(f"HTTP {response.status_code}", status_code=response.status_code)
        if not response.content:
            raise FetchAttemptError("Empty response body", status_code=response.status_code)
        return response

    def to_buffer(self, response: httpx.Response, origin: FetchMethod) -> ContentBuffer:
        final_url = str(response.url)
        mime = detect_mime(response.content, response.headers.get("content-type"), final_url)
        if mime == "application/pdf":
            self.saw_pdf = True
        if mime == "text/html":
            self.saw_html = True
        return ContentBuffer(data=response.content, mime=mime, origin=origin, url=final_url)

    def check_landing_page(self, buffer: ContentBuffer) -> None:
        """An HTML page is not the document when the archive hides it behind a link or a login."""
        if not buffer.is_html:
            return
        if self.source.access_mode == AccessMode.PDF_LINK:
            raise FetchAttemptError("Got an HTML landing page; the document is behind a PDF link")
        if self.source.access_mode in (AccessMode.AUTH_REQUIRED, AccessMode.PROTECTED):
            raise FetchAttemptError("Got an HTML page from an access-controlled archive")


# ==================== Strategies ====================

class FetchStrategy:
    method: FetchMethod

    def applies(self, ctx: FetchContext) -> bool:
        return True

    async def fetch(self, ctx: FetchContext) -> ContentBuffer:
        raise NotImplementedError


class DirectHttpStrategy(FetchStrategy):
    method = FetchMethod.DIRECT_HTTP

    async def fetch(self, ctx: FetchContext) -> ContentBuffer:
        response = await ctx.get(
            ctx.source.url,
            headers={
                "User-Agent": settings.FETCH_USER_AGENT,
                "Accept": "application/pdf,image/*,*/*;q=0.8",
            },
            timeout=settings.FETCH_DIRECT_TIMEOUT,
            max_redirects=settings.FETCH_DIRECT_MAX_REDIRECTS,
        )
        buffer = ctx.to_buffer(response, self.method)
        ctx.check_landing_page(buffer)
        return buffer


class BrowserMimicStrategy(FetchStrategy):
    method = FetchMethod.BROWSER_MIMIC

    @staticmethod
    def headers(referer: Optional[str] = None) -> Dict[str, str]:
        headers = {"User-Agent": settings.FETCH_BROWSER_USER_AGENT, **BROWSER_HEADERS}
        if referer:
            headers["Referer"] = referer
            headers["Sec-Fetch-Site"] = "same-origin"
        return headers

    async def download(self, ctx: FetchContext, url: str, referer: Optional[str] = None) -> httpx.Response:
        return await ctx.get(
            url,
            headers=self.headers(referer),
            timeout=settings.FETCH_MIMIC_TIMEOUT,
            max_redirects=settings.FETCH_MIMIC_MAX_REDIRECTS,
        )

    async def fetch(self, ctx: FetchContext) -> ContentBuffer:
        response = await self.download(ctx, ctx.source.url)
        buffer = ctx.to_buffer(response, self.method)
        ctx.check_landing_page(buffer)
        return buffer


class PdfLinkExtractStrategy(FetchStrategy):
    method = FetchMethod.PDF_LINK_EXTRACT

    def __init__(self, mimic: Optional[BrowserMimicStrategy] = None):
        self.mimic = mimic or BrowserMimicStrategy()

    def applies(self, ctx: FetchContext) -> bool:
        if ctx.pdf_shortcut:
            return False
        return (
            ctx.source.access_mode == AccessMode.PDF_LINK
            or is_html_url(ctx.source.url)
            or ctx.saw_html
        )

    async def fetch(self, ctx: FetchContext) -> ContentBuffer:
        page = await self.mimic.download(ctx, ctx.source.url)
        base_url = str(page.url)
        pdf_url = self.find_pdf_link(page.text, base_url)
        if not pdf_url:
            raise FetchAttemptError("No PDF link found on the page")

        logger.info(f"Found PDF link: {pdf_url}")
        response = await self.mimic.download(ctx, pdf_url, referer=base_url)
        buffer = ctx.to_buffer(response, self.method)
        if buffer.is_html:
            raise FetchAttemptError(f"PDF link {pdf_url} returned HTML")
        return buffer

    @staticmethod
    def find_pdf_link(html: str, base_url: str) -> Optional[str]:
        """
        First PDF reference on a page, in order of preference:
        anchor ending .pdf, anchor containing /pdf/, embed/iframe/object source,
        then a raw href="*.pdf" match.
        """
        soup = BeautifulSoup(html, "html.parser")

        def path_of(href: str) -> str:
            return unquote(urlparse(href).path).lower()

        anchors = soup.find_all("a", href=True)
        for a in anchors:
            if path_of(a["href"]).endswith(".pdf"):
                return urljoin(base_url, a["href"])
        for a in anchors:
            if "/pdf/" in a["href"].lower():
                return urljoin(base_url, a["href"])

        for tag in soup.find_all(["embed", "iframe", "object"]):
            ref = tag.get("src") or tag.get("data") or ""
            if ref and (path_of(ref).endswith(".pdf") or "/pdf/" in ref.lower()
                        or "pdf" in (tag.get("type") or "").lower()):
                return urljoin(base_url, ref)

        match = _RAW_PDF_HREF.search(html)
        if match:
            return urljoin(base_url, match.group(1))
        return None


def capture_full_page(url: str, cookies: Optional[Dict[str, str]] = None) -> bytes:
    """
    Render a page in headless Chrome and return a full-page PNG.

    Waits for the document to finish loading plus a short settle delay so late
    viewer scripts can paint.
    """
    options = Options()
    options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument(f"--user-agent={settings.FETCH_BROWSER_USER_AGENT}")
    driver = webdriver.Chrome(options=options)
    try:
        driver.set_window_size(settings.BROWSER_WINDOW_WIDTH, settings.BROWSER_WINDOW_HEIGHT)
        driver.set_page_load_timeout(settings.BROWSER_NAVIGATION_TIMEOUT)

        if cookies:
            parsed = urlparse(url)
            driver.get(f"{parsed.scheme}://{parsed.netloc}/")
            for name, value in cookies.items():
                driver.add_cookie({"name": name, "value": value})

        driver.get(url)
        WebDriverWait(driver, settings.BROWSER_NAVIGATION_TIMEOUT).until(
            lambda d: d.execute_script("return document.readyState") == "complete"
        )
        time.sleep(settings.BROWSER_SETTLE_SECONDS)

        height = driver.execute_script(
            "return Math.max(document.body.scrollHeight, document.documentElement.scrollHeight)"
        )
        driver.set_window_size(settings.BROWSER_WINDOW_WIDTH, max(settings.BROWSER_WINDOW_HEIGHT, int(height or 0)))
        return driver.get_screenshot_as_png()
    finally:
        driver.quit()


class BrowserScreenshotStrategy(FetchStrategy):
    method = FetchMethod.BROWSER_SCREENSHOT

    def __init__(self, capture: Optional[Callable[[str, Optional[Dict[str, str]]], bytes]] = None):
        self.capture = capture or capture_full_page

    def applies(self, ctx: FetchContext) -> bool:
        return settings.BROWSER_SCREENSHOT_ENABLED and not ctx.pdf_shortcut

    async def fetch(self, ctx: FetchContext) -> ContentBuffer:
        budget = settings.BROWSER_NAVIGATION_TIMEOUT * 2 + settings.BROWSER_SETTLE_SECONDS
        try:
            png = await asyncio.wait_for(
                asyncio.to_thread(self.capture, ctx.source.url, ctx.source.cookies or None),
                timeout=budget,
            )
        except asyncio.TimeoutError as e:
            raise FetchAttemptError(f"Browser timed out after {budget:.0f}s") from e
        except FetchAttemptError:
            raise
        except Exception as e:
            raise FetchAttemptError(f"Browser capture failed: {e}") from e

        if not png:
            raise FetchAttemptError("Browser returned an empty screenshot")
        return ContentBuffer(data=png, mime="image/png", origin=self.method, url=ctx.source.url)


# ==================== Fetcher ====================

def local_path(url: str) -> Optional[Path]:
    """Path for file:// URLs and plain filesystem paths (uploaded files)."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in ("", None) and url:
        return Path(url)
    return None


class Fetcher:

    def __init__(
            self,
            strategies: Optional[List[FetchStrategy]] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            min_delay: Optional[float] = None,
            max_delay: Optional[float] = None
    ):
        mimic = BrowserMimicStrategy()
        self.strategies = strategies or [
            DirectHttpStrategy(),
            mimic,
            PdfLinkExtractStrategy(mimic),
            BrowserScreenshotStrategy(),
        ]
        self.transport = transport
        self.limiter = RateLimiter(
            settings.FETCH_MIN_DELAY if min_delay is None else min_delay,
            settings.FETCH_MAX_DELAY if max_delay is None else max_delay,
        )

    async def fetch(
            self,
            source: SourceReference,
            debug: Optional[DebugLog] = None
    ) -> Union[ContentBuffer, FetchFailure]:
        """
        Acquire the bytes of a source.

        Args:
            source: URL / stored file plus archive hints
            debug: Job debug log; one entry per attempted method

        Returns:
            ContentBuffer from the first strategy that succeeds, else a FetchFailure
            listing every attempted method and its error
        """
        debug = debug if debug is not None else DebugLog()

        path = local_path(source.url)
        if path is not None:
            return self._read_local(source, path, debug)

        ctx = FetchContext(source, self.limiter, self.transport)
        failure = FetchFailure(source_url=source.url)

        for strategy in self.strategies:
            if not strategy.applies(ctx):
                failure.attempts.append(FetchAttempt(method=strategy.method, skipped=True))
                debug.add("fetch", f"Skipped {strategy.method.value}")
                continue

            started = time.monotonic()
            try:
                buffer = await strategy.fetch(ctx)
            except FetchAttemptError as e:
                elapsed = int((time.monotonic() - started) * 1000)
                failure.attempts.append(FetchAttempt(
                    method=strategy.method, error=str(e), status_code=e.status_code, elapsed_ms=elapsed
                ))
                debug.add(strategy.method.value, f"Failed: {e}", {"status_code": e.status_code, "ms": elapsed})
                logger.warning(f"⚠️ {strategy.method.value} failed for {source.url}: {e}")
                continue

            elapsed = int((time.monotonic() - started) * 1000)
            debug.add(
                strategy.method.value,
                f"Succeeded: {buffer.size} bytes ({buffer.mime})",
                {"url": buffer.url, "ms": elapsed},
            )
            logger.info(f"✅ Fetched {source.url} via {strategy.method.value} ({buffer.size} bytes, {buffer.mime})")
            return buffer

        debug.add(
            "fetch",
            "All acquisition methods failed",
            {"attempts": [a.model_dump(mode="json") for a in failure.attempts]},
        )
        logger.error(f"❌ Acquisition exhausted for {source.url}")
        return failure

    @staticmethod
    def _read_local(source: SourceReference, path: Path, debug: DebugLog) -> Union[ContentBuffer, FetchFailure]:
        method = FetchMethod.UPLOADED_FILE
        try:
            data = path.read_bytes()
        except OSError as e:
            debug.add(method.value, f"Failed: {e}")
            return FetchFailure(source_url=source.url, attempts=[FetchAttempt(method=method, error=str(e))])

        if not data:
            debug.add(method.value, "Failed: empty file")
            return FetchFailure(source_url=source.url, attempts=[FetchAttempt(method=method, error="empty file")])

        buffer = ContentBuffer(data=data, mime=detect_mime(data, url=path.name), origin=method, url=source.url)
        debug.add(method.value, f"Succeeded: {buffer.size} bytes ({buffer.mime})")
        return buffer

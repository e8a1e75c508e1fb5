"""
Shared fixtures for the extraction pipeline tests.

Everything runs against an in-memory SQLite database and fake OCR / fetch
back-ends, so no network, browser or Tesseract is needed.
"""
import os
import tempfile

# Settings are read at import time
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="archivist-tests-"))
os.environ.setdefault("BROWSER_SCREENSHOT_ENABLED", "false")
os.environ.setdefault("FETCH_MIN_DELAY", "0")
os.environ.setdefault("FETCH_MAX_DELAY", "0")
os.environ.setdefault("STORE_RETRY_BACKOFF", "0")

from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from archivist.core.database import create_db_and_tables
from archivist.models.extraction import (
    ContentBuffer, FetchFailure, FetchMethod, OCROptions, OCRResult, OCRService, PageText, SourceReference
)
from archivist.rules import load_rules
from archivist.services.debug_log import DebugLog
from archivist.services.store import ProvenanceStore


# ==================== Sample documents ====================

COMPENSATION_SCHEDULE = """Petition of Mary Ann Barnes, of the County of Washington
no.   Name   Sex   Age   Color   Value   Particular description
1.    Charles Boyd    Male    45.    black    300:–    field hand
2.    Maria Boyd  Female   40.   dark   250:–   wife of Charles
3.   Henry    Male  19.    black     400:–     carpenter
4.    Lucy Ann Boyd   Female    12.   brown   200:–   daughter
5.  Daniel Gray   Male   33.   black   350:–   coachman
6.    Sarah Gray    Female   30.    mulatto    300:–    cook
7.   Peter   Male   8.   brown   150:–   son of Sarah
8.    Harriet Washington   Female   25.   light brown   300:–   seamstress
9.    Clara Washington    "    2.    light brown    100:–    her child
10.   Moses Jackson   Male   60.   black   50:–   infirm
11.   Betsy Lee    Female    17.    dark    275:–    house servant"""

SCHEDULE_HEADERS = ["no.", "Name", "Sex", "Age", "Color", "Value", "Particular description"]

MARSHAM_WILL = (
    "Richard Marsham owned 36 slaves at his death in 1713. "
    "He freed mulatto Robin, Nanny, and Daniel in his will."
)


def schedule_structure() -> dict:
    return {
        "columns": [
            {"position": i + 1, "header_exact": header, "human_provided": True}
            for i, header in enumerate(SCHEDULE_HEADERS)
        ],
        "layout": "table",
    }


# ==================== Fakes ====================

class FakeOCREngine:
    """Returns a fixed text for every buffer and records what it was asked to read."""

    def __init__(self, text: str = "", confidence: float = 0.9, service: OCRService = OCRService.VISION):
        self.text = text
        self.confidence = confidence
        self.service = service
        self.calls: List[ContentBuffer] = []

    async def ocr(self, buffer: ContentBuffer, options: Optional[OCROptions] = None) -> OCRResult:
        self.calls.append(buffer)
        if not self.text.strip():
            return OCRResult.empty(error="No text recognized")
        page = PageText(page_number=1, text=self.text, confidence=self.confidence, service=self.service,
                        block_confidences=[self.confidence])
        return OCRResult(text=self.text, confidence=self.confidence, service=self.service, page_count=1,
                         pages=[page])


class FakeFetcher:
    """Hands back a canned buffer (or failure) without touching the network."""

    def __init__(self, result=None):
        self.result = result
        self.sources: List[SourceReference] = []

    async def fetch(self, source: SourceReference, debug: Optional[DebugLog] = None):
        self.sources.append(source)
        if self.result is None:
            buffer = ContentBuffer(data=b"%PDF-1.4 fake", mime="application/pdf",
                                   origin=FetchMethod.DIRECT_HTTP, url=source.url)
            if debug is not None:
                debug.add(FetchMethod.DIRECT_HTTP.value, f"Succeeded: {buffer.size} bytes ({buffer.mime})")
            return buffer
        if isinstance(self.result, FetchFailure) and debug is not None:
            debug.add("fetch", "All acquisition methods failed")
        return self.result


# ==================== Database ====================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return ProvenanceStore(db, max_retries=2, backoff=0)


@pytest.fixture
def rules():
    return load_rules()


@pytest.fixture
def debug():
    return DebugLog("test-job")

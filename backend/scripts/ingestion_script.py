"""
Batch extraction runner.

Scans DATA_DIR/inbox for PDFs and page images, runs each one through the
extraction pipeline, and moves it to DATA_DIR/processed or DATA_DIR/failed.
With URLs on the command line, extracts those sources instead.

Usage:
    python scripts/ingestion_script.py
    python scripts/ingestion_script.py https://archive.example.org/vol812/p47.pdf
"""
import asyncio
import shutil
import sys
from typing import List

from archivist.core.config import settings
from archivist.core.database import SessionLocal, create_db_and_tables
from archivist.models.extraction import ExtractionRequest, ExtractionStatusResponse, JobStatus
from archivist.services.extraction_service import ExtractionService
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

INBOX_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png", ".tif", ".tiff"}


async def extract_source(service: ExtractionService, source_url: str) -> ExtractionStatusResponse:
    job = service.create_job(ExtractionRequest(source_url=source_url))
    result = await service.run(job.id)
    logger.info(f"{source_url}: {result.status.value} - {result.status_message}")
    return result


async def ingest_inbox() -> None:
    """Extract every supported file in the inbox and archive it by outcome."""
    inbox = settings.DATA_DIR / "inbox"
    processed_dir = settings.DATA_DIR / "processed"
    failed_dir = settings.DATA_DIR / "failed"
    processed_dir.mkdir(parents=True, exist_ok=True)
    failed_dir.mkdir(parents=True, exist_ok=True)

    if not inbox.exists():
        logger.warning(f"📂 Inbox '{inbox}' does not exist. Creating it now...")
        inbox.mkdir(parents=True, exist_ok=True)
        logger.info("Inbox created, but it is empty. Nothing to extract.")
        return

    items = sorted(p for p in inbox.iterdir() if p.is_file())
    if not items:
        logger.info(f"📂 Inbox '{inbox}' is empty. Nothing to extract.")
        return

    db = SessionLocal()
    try:
        service = ExtractionService(db)
        for item in items:
            if item.suffix.lower() not in INBOX_EXTENSIONS:
                logger.warning(f"⚠️ Unsupported item in inbox: {item.name}")
                continue

            logger.info(f"📂 Found item: {item.name}")
            try:
                result = await extract_source(service, str(item.resolve()))
                target_dir = processed_dir if result.status == JobStatus.COMPLETED else failed_dir
            except Exception as e:
                logger.error(f"💥 Failed to extract {item.name}: {e}", exc_info=True)
                target_dir = failed_dir

            shutil.move(str(item), target_dir / item.name)
            logger.info(f"✅ Moved {item.name} to {target_dir}")
    finally:
        db.close()


async def extract_urls(urls: List[str]) -> None:
    db = SessionLocal()
    try:
        service = ExtractionService(db)
        for url in urls:
            await extract_source(service, url)
    finally:
        db.close()


if __name__ == "__main__":
    create_db_and_tables()
    if len(sys.argv) > 1:
        asyncio.run(extract_urls(sys.argv[1:]))
    else:
        asyncio.run(ingest_inbox())

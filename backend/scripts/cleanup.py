"""
Housekeeping for a long-running extraction server.

- Removes uploaded documents and browser screenshots older than --days
- Marks jobs stuck in "processing" for more than --stale-hours as failed
  (a worker that died mid-job never reaches its own failure handler)
- With --reset, drops and recreates every table

Usage:
    python scripts/cleanup.py
    python scripts/cleanup.py --days 7 --stale-hours 2
    python scripts/cleanup.py --reset
"""
import argparse
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from archivist.core.config import settings
from archivist.core.database import ExtractionJob, SessionLocal, reset_database
from archivist.models.extraction import JobStatus
from archivist.services.store import ProvenanceStore
from archivist.utils.logger import get_logger

logger = get_logger(__name__)


def prune_files(directory: Path, older_than_days: float) -> int:
    """Delete regular files older than the cutoff. Returns the number removed."""
    if not directory.exists():
        return 0

    cutoff = time.time() - older_than_days * 86400
    removed = 0
    for path in directory.iterdir():
        if not path.is_file() or path.stat().st_mtime >= cutoff:
            continue
        try:
            path.unlink()
            removed += 1
        except PermissionError:
            logger.warning(f"⚠️ {path.name} is locked; skipping")
    if removed:
        logger.info(f"🧹 Removed {removed} files from {directory}")
    return removed


def fail_stale_jobs(db: Session, older_than_hours: float) -> List[str]:
    """Fail processing jobs whose last update is older than the cutoff. Returns their ids."""
    # SQLite stores server timestamps as naive UTC
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=older_than_hours)
    stmt = select(ExtractionJob.id).where(
        ExtractionJob.status == JobStatus.PROCESSING.value,
        ExtractionJob.updated_at < cutoff,
    )
    stale = list(db.execute(stmt).scalars())

    store = ProvenanceStore(db)
    for job_id in stale:
        store.update_job(
            job_id,
            status=JobStatus.FAILED.value,
            error_message="abandoned",
            status_message=f"No progress for {older_than_hours:g}h; marked failed by cleanup",
            completed_at=datetime.now(timezone.utc),
        )
        logger.warning(f"⚠️ Marked stale extraction {job_id} as failed")
    return stale


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Extraction server housekeeping")
    parser.add_argument("--days", type=float, default=30, help="Age after which uploads are removed")
    parser.add_argument("--stale-hours", type=float, default=6, help="Age after which processing jobs fail")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    args = parser.parse_args(argv)

    if args.reset:
        reset_database()
        return

    prune_files(settings.UPLOAD_DIR, args.days)
    prune_files(settings.SCREENSHOT_DIR, args.days)

    db = SessionLocal()
    try:
        stale = fail_stale_jobs(db, args.stale_hours)
        logger.info(f"✅ Cleanup complete ({len(stale)} stale jobs)")
    finally:
        db.close()


if __name__ == "__main__":
    main()

"""
Provenance Store - the narrow read/write interface the pipeline has to the database.

Operations:
- Insert entity record keyed on (full_name, source_url); on conflict do nothing
- Update entity record by primary key
- Insert row log entry, idempotent on row fingerprint
- Insert/update coverage record keyed on (volume_id, page_number)
- Read back existing slaveholders for a source (owner-candidate fallback)
- Read/write the job row (status, progress, debug log, cancel flag)

Writes are idempotent, so a failed batch is rolled back and replayed as a whole.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from archivist.core.config import settings
from archivist.core.database import CoverageRecord, ExtractionJob, PersonRecord, RowLogEntry, get_db
from archivist.core.exceptions import JobNotFound, StoreWriteError
from archivist.models.extraction import CoverageReport, EntityRecord, PersonType, Relationship
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Outcomes of one (entity, row-log) pair
CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class PendingEmission:
    """One (entity, row-log) pair waiting for the next batch commit."""
    entity: EntityRecord
    fingerprint: str
    volume_id: str
    page_number: int
    row_index: int
    row_raw: str
    owner: Optional[str]
    extracted_name: Optional[str]
    extraction_id: Optional[str] = None


class ProvenanceStore:
    """Service for pipeline persistence over a SQLAlchemy session."""

    def __init__(self, db: Session, max_retries: Optional[int] = None, backoff: Optional[float] = None):
        self.db = db
        self.max_retries = max(1, max_retries or settings.STORE_MAX_RETRIES)
        self.backoff = settings.STORE_RETRY_BACKOFF if backoff is None else backoff

    # ==================== Retry ====================

    def _with_retry(self, description: str, write: Callable[[], T], retry_integrity: bool = False) -> T:
        """
        Run a write and commit it; on a transient failure roll back and replay.

        Raises:
            StoreWriteError: Still failing after max_retries attempts
        """
        retriable = (OperationalError, IntegrityError) if retry_integrity else (OperationalError,)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = write()
                self.db.commit()
                return result
            except retriable as e:
                self.db.rollback()
                last_error = e
                logger.warning(f"⚠️ Store write '{description}' failed (attempt {attempt}/{self.max_retries}): {e}")
                if attempt < self.max_retries and self.backoff:
                    time.sleep(self.backoff * attempt)

        logger.error(f"❌ Store write '{description}' failed after {self.max_retries} attempts")
        raise StoreWriteError(f"{description} failed after {self.max_retries} attempts: {last_error}")

    # ==================== Entity records ====================

    def find_entity(self, full_name: str, source_url: str) -> Optional[PersonRecord]:
        stmt = select(PersonRecord).where(
            PersonRecord.full_name == full_name,
            PersonRecord.source_url == source_url,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def insert_entity(self, record: EntityRecord) -> Optional[PersonRecord]:
        """
        Insert unless (full_name, source_url) already exists.

        Returns:
            The new row, or None when a record with that key was already present
        """
        if self.find_entity(record.full_name, record.source_url) is not None:
            return None

        row = PersonRecord(
            full_name=record.full_name,
            person_type=record.person_type.value,
            source_url=record.source_url,
            source_type=record.source_type.value if record.source_type else None,
            extraction_method=record.extraction_method,
            context_text=record.context_text,
            confidence_score=record.confidence,
            gender=record.gender,
            age=record.age,
            locations=record.locations,
            relationships=record.relationships,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def update_entity(self, entity_id: int, record: EntityRecord) -> None:
        """Re-assert type and context for a name that already exists at this source."""
        row = self.db.get(PersonRecord, entity_id)
        if row is None:
            return
        row.person_type = record.person_type.value
        row.context_text = record.context_text
        row.confidence_score = max(row.confidence_score or 0.0, record.confidence)
        row.gender = row.gender or record.gender
        row.age = row.age or record.age
        self.db.flush()

    # ==================== Row log ====================

    def row_logged(self, fingerprint: str) -> bool:
        stmt = select(RowLogEntry.id).where(RowLogEntry.row_fingerprint == fingerprint)
        return self.db.execute(stmt).first() is not None

    def insert_row_log(self, pending: PendingEmission) -> bool:
        """Returns False when the fingerprint is already logged."""
        if self.row_logged(pending.fingerprint):
            return False
        self.db.add(RowLogEntry(
            row_fingerprint=pending.fingerprint,
            extraction_id=pending.extraction_id,
            volume_id=pending.volume_id,
            page_number=pending.page_number,
            row_index=pending.row_index,
            source_url=pending.entity.source_url,
            row_raw=pending.row_raw,
            owner_assigned=pending.owner,
            extracted_name=pending.extracted_name,
            emitted_full_name=pending.entity.full_name,
        ))
        self.db.flush()
        return True

    def _emit_one(self, pending: PendingEmission) -> str:
        if self.row_logged(pending.fingerprint):
            return SKIPPED

        # Entity before row log: a crash in between leaves a row that the next run re-logs
        outcome = CREATED
        if self.insert_entity(pending.entity) is None:
            existing = self.find_entity(pending.entity.full_name, pending.entity.source_url)
            self.update_entity(existing.id, pending.entity)
            outcome = UPDATED

        self.insert_row_log(pending)
        return outcome

    def emit_batch(self, batch: List[PendingEmission]) -> List[str]:
        """
        Write a batch of (entity, row-log) pairs and commit once.

        Returns:
            One outcome per pair: created, updated or skipped
        """
        if not batch:
            return []
        return self._with_retry(
            f"emit batch of {len(batch)} rows",
            lambda: [self._emit_one(p) for p in batch],
            retry_integrity=True,
        )

    def attach_relationships(self, source_url: str, relationships: List[Relationship]) -> int:
        """Record ownership links on the enslaved person's entity record. Returns links added."""
        if not relationships:
            return 0

        def write() -> int:
            added = 0
            for rel in relationships:
                row = self.find_entity(rel.enslaved, source_url)
                if row is None:
                    continue
                link = {
                    "kind": rel.kind,
                    "slaveholder": rel.slaveholder,
                    "confidence": rel.confidence,
                    "evidence": rel.evidence,
                }
                current = list(row.relationships or [])
                if any(r.get("kind") == rel.kind and r.get("slaveholder") == rel.slaveholder for r in current):
                    continue
                row.relationships = current + [link]
                added += 1
            self.db.flush()
            return added

        return self._with_retry(f"relationships for {source_url}", write)

    def existing_slaveholders(self, source_url: str, exclude_method: Optional[str] = None) -> List[str]:
        """
        Slaveholder names already recorded for this source by other extraction methods.
        """
        stmt = (
            select(PersonRecord.full_name)
            .where(
                PersonRecord.source_url == source_url,
                PersonRecord.person_type == PersonType.SLAVEHOLDER.value,
            )
            .order_by(PersonRecord.confidence_score.desc(), PersonRecord.id)
        )
        if exclude_method:
            stmt = stmt.where(PersonRecord.extraction_method != exclude_method)

        names: List[str] = []
        for name in self.db.execute(stmt).scalars():
            if name not in names:
                names.append(name)
        return names

    def count_entities(self, source_url: Optional[str] = None) -> int:
        stmt = select(PersonRecord.id)
        if source_url:
            stmt = stmt.where(PersonRecord.source_url == source_url)
        return len(self.db.execute(stmt).all())

    # ==================== Coverage ====================

    def upsert_coverage(self, report: CoverageReport, extraction_id: Optional[str] = None) -> None:
        def write() -> None:
            stmt = select(CoverageRecord).where(
                CoverageRecord.volume_id == report.volume_id,
                CoverageRecord.page_number == report.page_number,
            )
            row = self.db.execute(stmt).scalar_one_or_none()
            if row is None:
                row = CoverageRecord(volume_id=report.volume_id, page_number=report.page_number)
                self.db.add(row)

            row.source_url = report.source_url
            row.extraction_id = extraction_id
            row.ocr_service = report.ocr_service.value
            row.ocr_confidence = report.ocr_confidence
            row.ocr_text_length = report.ocr_text_length
            row.detected_rows = report.detected_rows
            row.emitted_persons = report.emitted_persons
            row.named_persons = report.named_persons
            row.placeholder_persons = report.placeholder_persons
            row.owner_candidates = report.owner_candidates
            row.owner_assigned = report.owner_assigned
            row.owner_warning = report.owner_warning
            self.db.flush()

        self._with_retry(f"coverage {report.volume_id} p.{report.page_number}", write, retry_integrity=True)

    def list_coverage(self, source_url: str) -> List[Dict[str, Any]]:
        stmt = (
            select(CoverageRecord)
            .where(CoverageRecord.source_url == source_url)
            .order_by(CoverageRecord.volume_id, CoverageRecord.page_number)
        )
        return [
            {
                "volume_id": c.volume_id,
                "page_number": c.page_number,
                "source_url": c.source_url,
                "extraction_id": c.extraction_id,
                "ocr_service": c.ocr_service,
                "ocr_confidence": c.ocr_confidence,
                "ocr_text_length": c.ocr_text_length,
                "detected_rows": c.detected_rows,
                "emitted_persons": c.emitted_persons,
                "named_persons": c.named_persons,
                "placeholder_persons": c.placeholder_persons,
                "owner_candidates": c.owner_candidates or [],
                "owner_assigned": c.owner_assigned,
                "owner_warning": c.owner_warning,
            }
            for c in self.db.execute(stmt).scalars()
        ]

    # ==================== Jobs ====================

    def create_job(self, content_url: str, **fields: Any) -> ExtractionJob:
        job = ExtractionJob(id=str(uuid.uuid4()), content_url=content_url, **fields)
        self._with_retry("create job", lambda: self.db.add(job))
        self.db.refresh(job)
        logger.info(f"✅ Created extraction job {job.id} for {content_url}")
        return job

    def get_job(self, extraction_id: str) -> ExtractionJob:
        job = self.db.get(ExtractionJob, extraction_id)
        if job is None:
            raise JobNotFound(f"Extraction {extraction_id} not found")
        return job

    def update_job(self, extraction_id: str, **fields: Any) -> ExtractionJob:
        job = self.get_job(extraction_id)

        def write() -> ExtractionJob:
            for key, value in fields.items():
                setattr(job, key, value)
            return job

        return self._with_retry(f"update job {extraction_id}", write)

    def save_debug_log(self, extraction_id: str, entries: List[Dict[str, Any]]) -> bool:
        """Persist the debug log. Failure here is logged and never fails the job."""
        try:
            job = self.get_job(extraction_id)
            job.debug_log = entries
            self.db.commit()
            return True
        except Exception as e:
            self.db.rollback()
            logger.warning(f"⚠️ Could not persist debug log for {extraction_id}: {e}")
            return False

    def is_cancel_requested(self, extraction_id: str) -> bool:
        job = self.get_job(extraction_id)
        self.db.refresh(job, attribute_names=["cancel_requested"])
        return bool(job.cancel_requested)

    def request_cancel(self, extraction_id: str) -> ExtractionJob:
        return self.update_job(extraction_id, cancel_requested=True)


def get_provenance_store(db: Session = Depends(get_db)) -> ProvenanceStore:
    """Dependency injection for FastAPI."""
    return ProvenanceStore(db)

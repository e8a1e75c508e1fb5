"""
Tests for the Provenance Store: idempotent writes, coverage upserts, retry and job rows.
"""
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from archivist.core.database import CoverageRecord, ExtractionJob
from archivist.core.exceptions import JobNotFound, StoreWriteError
from archivist.models.extraction import CoverageReport, EntityRecord, OCRService, PersonType, Relationship
from archivist.services.store import CREATED, SKIPPED, UPDATED, PendingEmission, ProvenanceStore
from archivist.utils.helper import row_fingerprint

SOURCE = "https://archive.example.org/will-of-richard-marsham.pdf"


def pending(name, row_index, raw, owner="Richard Marsham"):
    return PendingEmission(
        entity=EntityRecord(
            full_name=name,
            person_type=PersonType.ENSLAVED,
            source_url=SOURCE,
            extraction_method="document_pipeline_v1",
            confidence=0.7,
        ),
        fingerprint=row_fingerprint("M1", 1, row_index, owner, raw),
        volume_id="M1",
        page_number=1,
        row_index=row_index,
        row_raw=raw,
        owner=owner,
        extracted_name=name,
    )


# ==================== Emission ====================

def test_emit_batch_outcomes(store):
    batch = [pending("Robin", 0, "Robin"), pending("Nanny", 1, "Nanny"), pending("Robin", 2, "Robin again")]

    assert store.emit_batch(batch) == [CREATED, CREATED, UPDATED]
    assert store.emit_batch(batch) == [SKIPPED, SKIPPED, SKIPPED]
    assert store.count_entities(SOURCE) == 2


def test_fingerprint_ignores_whitespace():
    assert row_fingerprint("M1", 1, 0, "Owner", "Robin   12  M") == row_fingerprint("M1", 1, 0, "Owner", "Robin 12 M")
    assert row_fingerprint("M1", 1, 0, "Owner", "Robin") != row_fingerprint("M1", 1, 0, None, "Robin")


def test_update_keeps_highest_confidence(store):
    store.emit_batch([pending("Robin", 0, "Robin")])
    lower = pending("Robin", 1, "Robin again")
    lower.entity = lower.entity.model_copy(update={"confidence": 0.3, "gender": "male"})
    store.emit_batch([lower])

    robin = store.find_entity("Robin", SOURCE)
    assert robin.confidence_score == 0.7
    assert robin.gender == "male"


def test_attach_relationships(store):
    store.emit_batch([pending("Robin", 0, "Robin", owner=None)])
    rel = Relationship(slaveholder="Richard Marsham", enslaved="Robin", evidence="He freed mulatto Robin")

    assert store.attach_relationships(SOURCE, [rel]) == 1
    assert store.attach_relationships(SOURCE, [rel]) == 0
    links = store.find_entity("Robin", SOURCE).relationships
    assert links == [{"kind": "ownership", "slaveholder": "Richard Marsham", "confidence": 0.6,
                      "evidence": "He freed mulatto Robin"}]


def test_existing_slaveholders_excludes_method(store, db):
    for name, method in (("Richard Marsham", "manual_entry"), ("Edward Lloyd", "document_pipeline_v1")):
        store.insert_entity(EntityRecord(full_name=name, person_type=PersonType.SLAVEHOLDER, source_url=SOURCE,
                                         extraction_method=method))
    db.commit()

    assert store.existing_slaveholders(SOURCE) == ["Richard Marsham", "Edward Lloyd"]
    assert store.existing_slaveholders(SOURCE, exclude_method="document_pipeline_v1") == ["Richard Marsham"]


# ==================== Coverage ====================

def test_coverage_is_updated_in_place(store, db):
    report = CoverageReport(source_url=SOURCE, volume_id="M1", page_number=1, ocr_service=OCRService.VISION,
                            detected_rows=3, emitted_persons=3, named_persons=3,
                            owner_candidates=["Richard Marsham"], owner_assigned="Richard Marsham")
    store.upsert_coverage(report, "job-1")
    store.upsert_coverage(report.model_copy(update={"emitted_persons": 0}), "job-2")

    assert db.execute(select(func.count(CoverageRecord.id))).scalar_one() == 1
    [record] = store.list_coverage(SOURCE)
    assert record["emitted_persons"] == 0
    assert record["extraction_id"] == "job-2"
    assert record["ocr_service"] == "vision"
    assert record["owner_candidates"] == ["Richard Marsham"]


# ==================== Retry ====================

def test_transient_failure_is_retried(store):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return "ok"

    assert store._with_retry("flaky write", flaky) == "ok"
    assert len(calls) == 2


def test_persistent_failure_raises(db):
    store = ProvenanceStore(db, max_retries=3, backoff=0)
    calls = []

    def broken():
        calls.append(1)
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    with pytest.raises(StoreWriteError):
        store._with_retry("broken write", broken)
    assert len(calls) == 3


# ==================== Jobs ====================

def test_job_lifecycle(store, db):
    job = store.create_job(SOURCE, status="pending", progress=0)
    store.update_job(job.id, progress=40, status_message="OCR complete")

    assert store.get_job(job.id).progress == 40
    assert store.is_cancel_requested(job.id) is False
    store.request_cancel(job.id)
    assert store.is_cancel_requested(job.id) is True

    assert store.save_debug_log(job.id, [{"stage": "job", "message": "hi"}]) is True
    assert db.get(ExtractionJob, job.id).debug_log == [{"stage": "job", "message": "hi"}]


def test_unknown_job(store):
    with pytest.raises(JobNotFound):
        store.get_job("missing")
    assert store.save_debug_log("missing", []) is False

"""
End-to-end tests for the Job Controller with fake fetch and OCR back-ends.
"""
import threading

import pytest

from archivist.core.exceptions import InvalidJobState, StoreWriteError
from archivist.models.extraction import (
    AccessMode, ContentStructure, ExtractionMethod, ExtractionRequest, ExtractionType, FetchAttempt,
    FetchFailure, FetchMethod, JobStatus, OCRResult, OCRService, PageText, PersonType, Row
)
from archivist.services.extraction_service import (
    CHOICE_NARRATIVE, CHOICE_TABLE, CHOICE_TABLE_SUPPLEMENTED, ExtractionService, arbitrate
)
from archivist.services.store import ProvenanceStore

from conftest import COMPENSATION_SCHEDULE, MARSHAM_WILL, FakeFetcher, FakeOCREngine, schedule_structure

SOURCE = "https://archive.example.org/petitions/barnes.pdf"
PNG = b"\x89PNG\r\n\x1a\nscreenshot"


def schedule_request(**overrides) -> ExtractionRequest:
    fields = dict(
        source_url=SOURCE,
        volume_id="7",
        page_number=12,
        content_structure=ContentStructure(**schedule_structure()),
    )
    fields.update(overrides)
    return ExtractionRequest(**fields)


def make_service(db, rules, text=COMPENSATION_SCHEDULE, fetched=None, confidence=0.9):
    return ExtractionService(db, fetcher=FakeFetcher(fetched), ocr_engine=FakeOCREngine(text, confidence),
                             rules=rules)


async def run_job(service, request):
    job = service.create_job(request)
    return await service.run(job.id)


# ==================== Compensation schedule ====================

@pytest.mark.asyncio
async def test_schedule_extraction(db, rules):
    service = make_service(db, rules)
    status = await run_job(service, schedule_request())

    assert status.status == JobStatus.COMPLETED
    assert status.progress == 100
    assert status.row_count == 11
    assert status.ocr_service == "vision"

    rows = service.get_rows(status.extraction_id)
    assert rows[8]["columns"]["Name"] == "Clara Washington"
    assert rows[8]["columns"]["Sex"] == "Female"
    assert all(r["page_number"] == 12 for r in rows)

    [coverage] = service.list_coverage(SOURCE)
    assert coverage["page_number"] == 12
    assert coverage["volume_id"] == "7"
    assert coverage["detected_rows"] == 11
    assert coverage["named_persons"] == 11
    assert coverage["placeholder_persons"] == 0
    assert coverage["owner_assigned"] == "Mary Ann Barnes"
    assert coverage["owner_warning"] is False

    clara = ProvenanceStore(db).find_entity("Clara Washington", SOURCE)
    assert clara.gender == "Female"
    assert clara.confidence_score == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_progress_never_decreases(db, rules):
    service = make_service(db, rules)
    status = await run_job(service, schedule_request())

    progress = [e["data"]["progress"] for e in service.get_debug_log(status.extraction_id) if e["stage"] == "job"]
    assert progress == sorted(progress)
    for checkpoint in (5, 10, 15, 40, 60, 70, 80, 90, 100):
        assert checkpoint in progress


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db, rules):
    service = make_service(db, rules)
    store = ProvenanceStore(db)

    await run_job(service, schedule_request())
    first_count = store.count_entities(SOURCE)

    status = await run_job(service, schedule_request())

    assert status.status == JobStatus.COMPLETED
    assert store.count_entities(SOURCE) == first_count == 11
    [coverage] = service.list_coverage(SOURCE)
    assert coverage["emitted_persons"] == 0
    assert coverage["detected_rows"] == 11
    assert coverage["extraction_id"] == status.extraction_id


# ==================== Arbitration ====================

def weak_rows(count, rich_every=4):
    rows = []
    for i in range(count):
        columns = {"Name": f"Row{i}"}
        if i % rich_every == 0:
            columns.update({"Age": "30", "Sex": "M"})
        rows.append(Row(row_index=i, columns=columns, confidence=0.4, name_column="Name"))
    return rows


def test_confident_narrative_wins_over_weak_table():
    table = weak_rows(20)
    narrative = [Row(row_index=0, columns={"Enslaved Name": "Robin"}, confidence=0.7,
                     extraction_type=ExtractionType.NARRATIVE, name_column="Enslaved Name")]

    result = arbitrate(table, lambda: (narrative, 0.7))

    assert result.choice == CHOICE_NARRATIVE
    assert result.rows[0].name_token == "Robin"
    # only rich table rows survive alongside the narrative
    assert len(result.rows) == 1 + 5
    assert all(r.filled_count >= 3 for r in result.rows[1:])


def test_strong_table_skips_narrative():
    table = [Row(row_index=i, columns={"Name": "Tom", "Age": "3", "Sex": "M"}, confidence=0.9) for i in range(4)]

    def never():
        raise AssertionError("narrative extractor should not run")

    result = arbitrate(table, never)
    assert result.choice == CHOICE_TABLE
    assert len(result.rows) == 4


def test_weak_narrative_supplements_table():
    table = weak_rows(4, rich_every=1)
    narrative = [Row(row_index=0, columns={"Enslaved Name": "Robin"}, confidence=0.2)]

    result = arbitrate(table, lambda: (narrative, 0.2))

    assert result.choice == CHOICE_TABLE_SUPPLEMENTED
    assert len(result.rows) == 5
    assert result.rows[-1].extraction_type == ExtractionType.NARRATIVE_SUPPLEMENT


# ==================== Narrative documents ====================

@pytest.mark.asyncio
async def test_prose_page_uses_narrative(db, rules):
    service = make_service(db, rules, text=MARSHAM_WILL)
    request = ExtractionRequest(source_url="https://archive.example.org/wills/marsham.pdf", volume_id="M1",
                                content_structure=ContentStructure(layout="prose"))
    status = await run_job(service, request)

    assert status.status == JobStatus.COMPLETED
    assert status.row_count == 3

    store = ProvenanceStore(db)
    assert store.count_entities(request.source_url) == 4
    marsham = store.find_entity("Richard Marsham", request.source_url)
    assert marsham.person_type == PersonType.SLAVEHOLDER.value

    [coverage] = service.list_coverage(request.source_url)
    assert coverage["owner_assigned"] == "Richard Marsham"
    assert coverage["named_persons"] == 3

    stages = [e["message"] for e in service.get_debug_log(status.extraction_id) if e["stage"] == "arbitrate"]
    assert stages[0].startswith(f"Page 1: {CHOICE_NARRATIVE}")


@pytest.mark.asyncio
async def test_narrative_win_on_table_page_keeps_every_ink_line(db, rules):
    text = "\n".join([
        "Richard Marsham owned 36 slaves at his death in 1713.",
        "He freed mulatto Robin, Nanny, and Daniel in his will.",
        "Jenny",
        "Cato",
        "Phillis",
        "xx qq",
        "Pompey",
    ])
    columns = [{"position": i + 1, "header_exact": h, "human_provided": True}
               for i, h in enumerate(["Name", "Sex", "Age", "Owner", "Remarks"])]
    service = make_service(db, rules, text=text)
    request = ExtractionRequest(source_url="https://archive.example.org/wills/marsham-list.pdf", volume_id="M2",
                                page_number=3, content_structure=ContentStructure(columns=columns, layout="table"))

    status = await run_job(service, request)

    assert status.status == JobStatus.COMPLETED
    stages = [e["message"] for e in service.get_debug_log(status.extraction_id) if e["stage"] == "arbitrate"]
    assert stages[0].startswith(f"Page 3: {CHOICE_NARRATIVE}")

    [coverage] = service.list_coverage(request.source_url)
    # 7 ink lines plus the 3 persons named in the will
    assert coverage["detected_rows"] >= 10
    assert coverage["named_persons"] + coverage["placeholder_persons"] == coverage["detected_rows"]
    assert coverage["placeholder_persons"] >= 1

    store = ProvenanceStore(db)
    for name in ("Jenny", "Phillis", "Pompey", "Robin", "Nanny"):
        assert store.find_entity(name, request.source_url) is not None, name


# ==================== Waiting states ====================

@pytest.mark.asyncio
async def test_manual_transcription(db, rules):
    service = make_service(db, rules, text="")
    job = service.create_job(schedule_request(method=ExtractionMethod.MANUAL_TEXT))

    status = await service.run(job.id)
    assert status.status == JobStatus.AWAITING_MANUAL_INPUT
    assert service.ocr.calls == []

    status = await service.process_manual_text(job.id, COMPENSATION_SCHEDULE)
    assert status.status == JobStatus.COMPLETED
    assert status.ocr_service == "manual"
    assert status.row_count == 11
    assert ProvenanceStore(db).find_entity("Charles Boyd", SOURCE).confidence_score == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_manual_text_requires_waiting_job(db, rules):
    service = make_service(db, rules)
    job = service.create_job(schedule_request())

    with pytest.raises(InvalidJobState):
        await service.process_manual_text(job.id, COMPENSATION_SCHEDULE)


@pytest.mark.asyncio
async def test_protected_source_waits_for_screenshots(db, rules):
    failure = FetchFailure(source_url=SOURCE, attempts=[
        FetchAttempt(method=FetchMethod.DIRECT_HTTP, error="HTTP 403", status_code=403),
        FetchAttempt(method=FetchMethod.BROWSER_MIMIC, error="HTTP 403", status_code=403),
    ])
    service = make_service(db, rules, fetched=failure)
    job = service.create_job(schedule_request(access_mode=AccessMode.AUTH_REQUIRED))

    status = await service.run(job.id)
    assert status.status == JobStatus.AWAITING_UPLOAD
    assert status.error_message is None

    status = await service.process_screenshots(job.id, [PNG])
    assert status.status == JobStatus.COMPLETED
    assert status.row_count == 11
    assert service.ocr.calls[0].origin == FetchMethod.UPLOADED_FILE
    assert service.ocr.calls[0].mime == "image/png"


# ==================== Failures ====================

@pytest.mark.asyncio
async def test_exhausted_acquisition_fails_job(db, rules):
    failure = FetchFailure(source_url=SOURCE, attempts=[
        FetchAttempt(method=FetchMethod.DIRECT_HTTP, error="HTTP 404", status_code=404),
    ])
    service = make_service(db, rules, fetched=failure)
    status = await run_job(service, schedule_request())

    assert status.status == JobStatus.FAILED
    assert "AcquisitionExhausted" in status.error_message
    assert "fetch" in status.error_message
    assert service.ocr.calls == []


@pytest.mark.asyncio
async def test_empty_ocr_completes_with_no_rows(db, rules):
    service = make_service(db, rules, text="")
    status = await run_job(service, schedule_request())

    assert status.status == JobStatus.COMPLETED
    assert status.row_count == 0
    assert status.avg_confidence is None

    [coverage] = service.list_coverage(SOURCE)
    assert coverage["detected_rows"] == 0
    assert coverage["owner_warning"] is False


@pytest.mark.asyncio
async def test_cancel_before_fetch(db, rules):
    service = make_service(db, rules)
    job = service.create_job(schedule_request())
    service.request_cancel(job.id)

    status = await service.run(job.id)

    assert status.status == JobStatus.FAILED
    assert status.error_message == "cancelled"
    assert service.fetcher.sources == []


@pytest.mark.asyncio
async def test_cancel_observed_at_next_stage_boundary(db, rules, monkeypatch):
    service = make_service(db, rules)
    job = service.create_job(schedule_request())
    read = service.ocr.ocr

    async def ocr_then_cancel(buffer, options=None):
        result = await read(buffer, options)
        service.request_cancel(job.id)
        return result

    monkeypatch.setattr(service.ocr, "ocr", ocr_then_cancel)
    status = await service.run(job.id)

    assert status.status == JobStatus.FAILED
    assert status.error_message == "cancelled"
    assert "detect" in status.status_message
    assert status.progress == 40
    assert ProvenanceStore(db).count_entities(SOURCE) == 0
    assert service.list_coverage(SOURCE) == []


class TwoPageOCREngine(FakeOCREngine):
    """Splits the compensation schedule over two pages."""

    async def ocr(self, buffer, options=None):
        self.calls.append(buffer)
        lines = COMPENSATION_SCHEDULE.splitlines()
        texts = ["\n".join(lines[:7]), "\n".join(lines[1:2] + lines[7:])]
        pages = [PageText(page_number=n, text=t, confidence=0.9, service=OCRService.VISION, block_confidences=[0.9])
                 for n, t in enumerate(texts, start=1)]
        return OCRResult(text="\n\n".join(texts), confidence=0.9, service=OCRService.VISION, page_count=2,
                         pages=pages)


@pytest.mark.asyncio
async def test_failure_on_later_page_keeps_earlier_pages(db, rules, monkeypatch):
    service = ExtractionService(db, fetcher=FakeFetcher(), ocr_engine=TwoPageOCREngine(), rules=rules)
    emit = service.emitter.emit

    def emit_until_page_two(source_url, page_number, *args, **kwargs):
        if page_number == 2:
            raise StoreWriteError("entity batch failed after 3 attempts: database is locked")
        return emit(source_url, page_number, *args, **kwargs)

    monkeypatch.setattr(service.emitter, "emit", emit_until_page_two)
    status = await run_job(service, schedule_request(page_number=None))

    assert status.status == JobStatus.FAILED
    assert "StoreWriteError" in status.error_message
    assert "emit on page 2" in status.error_message

    store = ProvenanceStore(db)
    assert store.find_entity("Charles Boyd", SOURCE) is not None
    assert store.find_entity("Sarah Gray", SOURCE) is None
    [coverage] = service.list_coverage(SOURCE)
    assert coverage["page_number"] == 1
    assert coverage["detected_rows"] == 5


@pytest.mark.asyncio
async def test_emission_runs_off_the_event_loop(db, rules, monkeypatch):
    service = make_service(db, rules)
    loop_thread = threading.get_ident()
    threads = []
    emit = service.emitter.emit

    def recording_emit(*args, **kwargs):
        threads.append(threading.get_ident())
        return emit(*args, **kwargs)

    monkeypatch.setattr(service.emitter, "emit", recording_emit)
    status = await run_job(service, schedule_request())

    assert status.status == JobStatus.COMPLETED
    assert threads
    assert loop_thread not in threads


@pytest.mark.asyncio
async def test_background_run_opens_its_own_session(db, rules, session_factory):
    opened = []

    def factory():
        session = session_factory()
        opened.append(session)
        return session

    service = ExtractionService(db, fetcher=FakeFetcher(), ocr_engine=FakeOCREngine(COMPENSATION_SCHEDULE),
                                rules=rules, session_factory=factory)
    job = service.create_job(schedule_request())
    # FastAPI closes the request session before background tasks run
    db.close()

    await service.run_in_background(job.id)

    assert len(opened) == 1
    assert opened[0] is not db
    fresh = session_factory()
    try:
        assert ProvenanceStore(fresh).get_job(job.id).status == JobStatus.COMPLETED.value
    finally:
        fresh.close()


@pytest.mark.asyncio
async def test_finished_jobs_cannot_be_cancelled_or_rerun(db, rules):
    service = make_service(db, rules)
    status = await run_job(service, schedule_request())

    with pytest.raises(InvalidJobState):
        service.request_cancel(status.extraction_id)
    with pytest.raises(InvalidJobState):
        await service.run(status.extraction_id)


# ==================== Crawler hand-off ====================

@pytest.mark.asyncio
async def test_ingest_buffer_skips_fetch(db, rules):
    service = make_service(db, rules)
    status = await service.ingest_buffer(SOURCE, b"%PDF-1.4 crawled",
                                         content_structure=ContentStructure(**schedule_structure()))

    assert status.status == JobStatus.COMPLETED
    assert service.fetcher.sources == []
    assert service.ocr.calls[0].origin == FetchMethod.CRAWLER

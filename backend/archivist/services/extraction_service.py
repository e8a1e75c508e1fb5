"""
Extraction Service - the Job Controller.

Runs one extraction end to end:
    fetch -> OCR -> detect -> parse/extract -> arbitrate -> emit -> persist

Persists on the job row:
- progress (5, 10, 15, 40, 60, 70, 80, 90, 100; never decreases)
- status (pending -> processing -> completed | failed | awaiting-manual-input | awaiting-upload)
- a human-readable status message and the append-only debug log
- the OCR text, the parsed rows, row count and mean row confidence

The cancel flag is checked at every stage boundary. Pages are emitted one at a
time, so a failure on page N keeps the rows of pages 1..N-1.
"""
import asyncio
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import Depends
from opentelemetry import trace
from sqlalchemy.orm import Session

from archivist.core.config import settings
from archivist.core.database import ExtractionJob, SessionLocal, get_db
from archivist.core.exceptions import AcquisitionExhausted, InvalidJobState, JobCancelled
from archivist.models.extraction import (
    AccessMode, ConfirmationChannel, ContentBuffer, ContentStructure, CoverageReport, DetectedStructure,
    ExtractionMethod, ExtractionRequest, ExtractionStatusResponse, ExtractionType, FetchFailure,
    FetchMethod, JobStatus, Layout, NarrativeResult, OCROptions, OCRResult, OCRService, PageText, PersonType, Row,
    SourceReference, SourceTier, StructureKind
)
from archivist.rules import HeuristicRules, load_rules
from archivist.services.debug_log import DebugLog
from archivist.services.fetcher import Fetcher
from archivist.services.narrative_extractor import NarrativeExtractor
from archivist.services.ocr_engine import OCREngine, get_ocr_engine
from archivist.services.row_emitter import RowEmitter, align_rows
from archivist.services.store import ProvenanceStore
from archivist.services.structure_detector import StructureDetector
from archivist.services.table_parser import TableParser
from archivist.utils.helper import default_volume_id, detect_mime
from archivist.utils.logger import get_logger
from archivist.utils.text_lines import LineFilter

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

# Arbitration between table and narrative output
TABLE_ACCEPT_CONFIDENCE = 0.5
TABLE_ACCEPT_RICH_SHARE = 0.3
RICH_ROW_MIN_FILLED = 3

CHOICE_TABLE = "table"
CHOICE_NARRATIVE = "narrative"
CHOICE_TABLE_SUPPLEMENTED = "table+narrative-supplement"
CHOICE_EMPTY = "empty"


# ==================== Arbitration ====================

@dataclass
class Arbitration:
    rows: List[Row]
    choice: str
    table_confidence: float = 0.0
    narrative_confidence: Optional[float] = None


def mean_confidence(rows: Sequence[Row]) -> float:
    return sum(r.confidence for r in rows) / len(rows) if rows else 0.0


def arbitrate(
        table_rows: Sequence[Row],
        run_narrative: Callable[[], Tuple[List[Row], float]],
        force_narrative: bool = False
) -> Arbitration:
    """
    Choose between table rows and narrative rows.

    Table rows are accepted outright when their mean confidence is above 0.5
    and at least 30% of them have 3+ filled columns. Otherwise the narrative
    extractor runs: when it is more confident, its rows come first and only the
    rich table rows are kept; else the narrative rows supplement the table.

    Args:
        table_rows: Rows from the Table Parser
        run_narrative: Lazily runs the Narrative Extractor -> (rows, confidence)
        force_narrative: Skip outright table acceptance (prose pages)
    """
    table_confidence = mean_confidence(table_rows)
    rich = [r for r in table_rows if r.filled_count >= RICH_ROW_MIN_FILLED]

    if (
            not force_narrative
            and table_rows
            and table_confidence > TABLE_ACCEPT_CONFIDENCE
            and len(rich) >= TABLE_ACCEPT_RICH_SHARE * len(table_rows)
    ):
        return Arbitration(list(table_rows), CHOICE_TABLE, table_confidence)

    narrative_rows, narrative_confidence = run_narrative()
    if narrative_rows and narrative_confidence > table_confidence:
        return Arbitration(narrative_rows + rich, CHOICE_NARRATIVE, table_confidence, narrative_confidence)

    supplement = [
        r.model_copy(update={"extraction_type": ExtractionType.NARRATIVE_SUPPLEMENT}) for r in narrative_rows
    ]
    return Arbitration(list(table_rows) + supplement, CHOICE_TABLE_SUPPLEMENTED, table_confidence,
                       narrative_confidence)


# ==================== Job state ====================

@dataclass
class JobContext:
    job_id: str
    debug: DebugLog
    progress: int = 0
    failed_at: Optional[str] = None


@dataclass
class PageWork:
    """Everything the pipeline learns about one page."""
    page_number: int
    text: str
    confidence: float
    service: OCRService
    lines: List[str] = field(default_factory=list)
    structure: Optional[DetectedStructure] = None
    forced_narrative: bool = False
    table_rows: List[Row] = field(default_factory=list)
    narrative: Optional[NarrativeResult] = None
    holder_rows: List[Row] = field(default_factory=list)
    arbitration: Optional[Arbitration] = None
    report: Optional[CoverageReport] = None


class ExtractionService:
    """Service running and tracking extraction jobs."""

    def __init__(
            self,
            db: Session,
            fetcher: Optional[Fetcher] = None,
            ocr_engine: Optional[OCREngine] = None,
            rules: Optional[HeuristicRules] = None,
            session_factory: Optional[Callable[[], Session]] = None
    ):
        self.db = db
        self.session_factory = session_factory or SessionLocal
        self.store = ProvenanceStore(db)
        self.fetcher = fetcher or Fetcher()
        self.ocr = ocr_engine or get_ocr_engine()
        self.rules = rules or load_rules()

        self.detector = StructureDetector(self.rules)
        self.parser = TableParser(self.rules)
        self.narrative = NarrativeExtractor(self.rules)
        self.emitter = RowEmitter(self.store, self.rules)

    # ==================== Job management ====================

    def create_job(self, request: ExtractionRequest) -> ExtractionJob:
        return self.store.create_job(
            request.source_url,
            archive_name=request.archive_name,
            source_tier=request.source_tier.value if request.source_tier else None,
            access_mode=request.access_mode.value,
            volume_id=request.volume_id,
            page_number=request.page_number,
            content_structure=request.content_structure.model_dump(mode="json") if request.content_structure else None,
            ocr_config=request.ocr_config.model_dump(mode="json") if request.ocr_config else None,
            method=request.method.value,
            status=JobStatus.PENDING.value,
            progress=0,
            status_message="Queued",
        )

    def get_status(self, extraction_id: str) -> ExtractionStatusResponse:
        job = self.store.get_job(extraction_id)
        return ExtractionStatusResponse(
            extraction_id=job.id,
            content_url=job.content_url,
            status=JobStatus(job.status),
            progress=job.progress or 0,
            status_message=job.status_message,
            error_message=job.error_message,
            ocr_service=job.ocr_service,
            row_count=job.row_count or 0,
            avg_confidence=job.avg_confidence,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    def get_rows(self, extraction_id: str) -> List[Dict[str, Any]]:
        return list(self.store.get_job(extraction_id).parsed_rows or [])

    def get_debug_log(self, extraction_id: str) -> List[Dict[str, Any]]:
        return list(self.store.get_job(extraction_id).debug_log or [])

    def request_cancel(self, extraction_id: str) -> ExtractionStatusResponse:
        job = self.store.get_job(extraction_id)
        if job.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
            raise InvalidJobState(f"Extraction {extraction_id} already finished ({job.status})")
        self.store.request_cancel(extraction_id)
        logger.info(f"Cancel requested for {extraction_id}")
        return self.get_status(extraction_id)

    def list_coverage(self, source_url: str) -> List[Dict[str, Any]]:
        return self.store.list_coverage(source_url)

    # ==================== Entry points ====================

    async def run(self, extraction_id: str, cookies: Optional[Dict[str, str]] = None) -> ExtractionStatusResponse:
        """
        Run a pending extraction job to completion (or failure / a waiting state).

        Args:
            extraction_id: Job id
            cookies: Session cookies from an authenticated collaborator, never stored

        Returns:
            Final job status
        """
        job = self.store.get_job(extraction_id)
        if job.status != JobStatus.PENDING.value:
            raise InvalidJobState(f"Extraction {extraction_id} is {job.status}, expected pending")

        ctx = JobContext(job_id=job.id, debug=DebugLog(job.id))
        await self._execute(ctx, self._run_auto(ctx, job, cookies))
        return self.get_status(extraction_id)

    async def run_in_background(self, extraction_id: str, cookies: Optional[Dict[str, str]] = None) -> None:
        """Background-task entry point; the request's session is closed by the time this runs."""
        db = self.session_factory()
        try:
            worker = ExtractionService(db, fetcher=self.fetcher, ocr_engine=self.ocr, rules=self.rules,
                                       session_factory=self.session_factory)
            await worker.run(extraction_id, cookies)
        finally:
            db.close()

    async def process_manual_text(self, extraction_id: str, text: str) -> ExtractionStatusResponse:
        """Run a human transcription through detect -> parse -> emit."""
        job = self.store.get_job(extraction_id)
        if job.status != JobStatus.AWAITING_MANUAL_INPUT.value:
            raise InvalidJobState(f"Extraction {extraction_id} is {job.status}, not awaiting manual input")

        ctx = self._resume_context(job)

        async def work() -> None:
            self._advance(ctx, ctx.progress, f"Manual transcription received ({len(text)} chars)",
                          status=JobStatus.PROCESSING)
            confidence = ConfirmationChannel.HUMAN_TRANSCRIPTION.floor
            page = PageText(page_number=job.page_number or 1, text=text, confidence=confidence,
                            service=OCRService.MANUAL, block_confidences=[confidence])
            result = OCRResult(text=text, confidence=confidence, service=OCRService.MANUAL,
                               page_count=1, pages=[page])
            await self._process_ocr(ctx, job, result, channel=ConfirmationChannel.HUMAN_TRANSCRIPTION)

        await self._execute(ctx, work())
        return self.get_status(extraction_id)

    async def process_screenshots(self, extraction_id: str, images: Sequence[bytes]) -> ExtractionStatusResponse:
        """OCR uploaded page images (one page each) for a job awaiting upload."""
        job = self.store.get_job(extraction_id)
        if job.status != JobStatus.AWAITING_UPLOAD.value:
            raise InvalidJobState(f"Extraction {extraction_id} is {job.status}, not awaiting upload")
        if not images:
            raise InvalidJobState("No screenshots supplied")

        ctx = self._resume_context(job)

        async def work() -> None:
            self._advance(ctx, ctx.progress, f"Received {len(images)} screenshots", status=JobStatus.PROCESSING)
            options = self._options(job)
            first_page = job.page_number or 1
            pages: List[PageText] = []

            self._checkpoint(ctx, "ocr")
            for i, data in enumerate(images):
                buffer = ContentBuffer(data=data, mime=detect_mime(data), origin=FetchMethod.UPLOADED_FILE,
                                       url=job.content_url)
                with self._stage(ctx, "ocr", first_page + i):
                    result = await self.ocr.ocr(buffer, options)
                blocks = [b for p in result.pages for b in p.block_confidences]
                pages.append(PageText(page_number=first_page + i, text=result.text, confidence=result.confidence,
                                      service=result.service, block_confidences=blocks))
                ctx.debug.add("ocr", f"Screenshot {i + 1}: {len(result.text)} chars "
                                     f"({result.service.value}, {result.confidence:.2f})")

            await self._process_ocr(ctx, job, self._combine_pages(pages))

        await self._execute(ctx, work())
        return self.get_status(extraction_id)

    async def ingest_buffer(
            self,
            url: str,
            data: bytes,
            mime: Optional[str] = None,
            hints: Optional[SourceReference] = None,
            content_structure: Optional[ContentStructure] = None
    ) -> ExtractionStatusResponse:
        """
        Crawler hand-off: run a job over content the crawler already downloaded.

        Args:
            url: Where the crawler found the content
            data: Raw bytes
            mime: Content type reported by the crawler (sniffed when missing)
            hints: Archive hints (volume, page, tier, access mode)
            content_structure: Human-provided column layout
        """
        request = ExtractionRequest(
            source_url=url,
            archive_name=hints.archive_name if hints else None,
            source_tier=hints.source_tier if hints else None,
            access_mode=hints.access_mode if hints else AccessMode.DIRECT,
            volume_id=hints.volume_id if hints else None,
            page_number=hints.page_number if hints else None,
            content_structure=content_structure,
        )
        job = self.create_job(request)
        ctx = JobContext(job_id=job.id, debug=DebugLog(job.id))
        buffer = ContentBuffer(data=data, mime=mime or detect_mime(data, url=url), origin=FetchMethod.CRAWLER,
                               url=url)

        async def work() -> None:
            self._advance(ctx, 5, "Starting extraction of crawler content", status=JobStatus.PROCESSING,
                          started_at=datetime.now(timezone.utc))
            ctx.debug.add(FetchMethod.CRAWLER.value, f"Content supplied by crawler: {buffer.size} bytes ({buffer.mime})")
            self._advance(ctx, 15, f"Received {buffer.size} bytes from crawler")
            await self._process_buffer(ctx, job, buffer)

        await self._execute(ctx, work())
        return self.get_status(job.id)

    # ==================== Pipeline ====================

    async def _run_auto(self, ctx: JobContext, job: ExtractionJob, cookies: Optional[Dict[str, str]]) -> None:
        self._advance(ctx, 5, "Starting extraction", status=JobStatus.PROCESSING,
                      started_at=datetime.now(timezone.utc), error_message=None, completed_at=None)

        method = ExtractionMethod(job.method or ExtractionMethod.AUTO_OCR.value)
        if method == ExtractionMethod.MANUAL_TEXT:
            self._advance(ctx, ctx.progress, "Waiting for a manual transcription",
                          status=JobStatus.AWAITING_MANUAL_INPUT)
            return
        if method == ExtractionMethod.SCREENSHOT_UPLOAD:
            self._advance(ctx, ctx.progress, "Waiting for screenshot uploads", status=JobStatus.AWAITING_UPLOAD)
            return

        source = self._source_of(job, cookies)
        self._checkpoint(ctx, "fetch")
        self._advance(ctx, 10, f"Fetching {source.url}")
        with self._stage(ctx, "fetch"):
            fetched = await self.fetcher.fetch(source, ctx.debug)

        if isinstance(fetched, FetchFailure):
            error = AcquisitionExhausted(fetched)
            if source.access_mode in (AccessMode.AUTH_REQUIRED, AccessMode.PROTECTED):
                ctx.debug.add("fetch", str(error), {"errors": fetched.errors})
                self._advance(ctx, ctx.progress, "Automatic acquisition failed; upload screenshots of the pages",
                              status=JobStatus.AWAITING_UPLOAD)
                return
            ctx.failed_at = "fetch"
            raise error

        self._advance(ctx, 15, f"Fetched {fetched.size} bytes via {fetched.origin.value} ({fetched.mime})")
        await self._process_buffer(ctx, job, fetched)

    async def _process_buffer(self, ctx: JobContext, job: ExtractionJob, buffer: ContentBuffer) -> None:
        options = self._options(job)
        self._checkpoint(ctx, "ocr")
        with self._stage(ctx, "ocr"):
            result = await self.ocr.ocr(buffer, options)
        await self._process_ocr(ctx, job, result)

    async def _process_ocr(
            self,
            ctx: JobContext,
            job: ExtractionJob,
            result: OCRResult,
            channel: Optional[ConfirmationChannel] = None
    ) -> None:
        ctx.debug.add("ocr", f"{result.service.value}: {len(result.text)} chars, confidence {result.confidence:.2f}",
                      {"pages": result.page_count, "error": result.error})
        if result.error:
            logger.warning(f"⚠️ OCR for {ctx.job_id}: {result.error}")
        self._advance(
            ctx, 40,
            f"OCR complete ({result.service.value}, {len(result.text)} chars, confidence {result.confidence:.2f})",
            ocr_service=result.service.value,
            raw_ocr_text=result.text,
        )

        if channel is None and result.confidence >= settings.OCR_PRIMARY_ACCEPT_CONFIDENCE:
            channel = ConfirmationChannel.HIGH_CONFIDENCE_OCR

        options = self._options(job)
        structure = ContentStructure(**job.content_structure) if job.content_structure else ContentStructure()
        pages = self._pages_of(result, job.page_number)
        source_url = job.content_url
        volume_id = job.volume_id or default_volume_id(source_url)
        source_type = SourceTier(job.source_tier) if job.source_tier else None

        # Detect
        self._checkpoint(ctx, "detect")
        for page in pages:
            with self._stage(ctx, "detect", page.page_number):
                self._detect(ctx, page, structure)
        self._advance(ctx, 60, f"Structure detected on {len(pages)} page(s)")

        # Parse
        self._checkpoint(ctx, "parse")
        for page in pages:
            with self._stage(ctx, "parse", page.page_number):
                # Prose pages go to the narrative extractor only
                if page.text.strip() and not page.forced_narrative:
                    page.table_rows = self.parser.parse(page.lines, structure.columns, page.structure, ctx.debug)
        self._advance(ctx, 70, f"Parsed {sum(len(p.table_rows) for p in pages)} table rows")

        # Arbitrate
        self._checkpoint(ctx, "arbitrate")
        for page in pages:
            with self._stage(ctx, "arbitrate", page.page_number):
                page.arbitration = self._arbitrate(ctx, page, options)
        self._advance(ctx, 80, "Arbitrated table and narrative output")

        # Emit
        self._checkpoint(ctx, "emit")
        document_owners = self.emitter.extract_owner_candidates(result.text)
        for page in pages:
            with self._stage(ctx, "emit", page.page_number):
                # Store writes (and their retry back-off) block; keep them off the event loop
                await asyncio.to_thread(self._emit_page, ctx, page, structure, source_url, volume_id, source_type,
                                        channel, document_owners)
        emitted = sum(p.report.emitted_persons for p in pages if p.report)
        detected = sum(p.report.detected_rows for p in pages if p.report)
        self._advance(ctx, 90, f"Emitted {emitted} new persons for {detected} detected rows")

        # Persist
        self._checkpoint(ctx, "persist")
        rows = [(p.page_number, r) for p in pages for r in p.arbitration.rows]
        with self._stage(ctx, "persist"):
            self._advance(
                ctx, 100,
                f"Completed: {len(rows)} rows, {emitted} persons emitted",
                status=JobStatus.COMPLETED,
                parsed_rows=[{"page_number": n, **r.model_dump(mode="json")} for n, r in rows],
                row_count=len(rows),
                avg_confidence=round(mean_confidence([r for _, r in rows]), 4) if rows else None,
                completed_at=datetime.now(timezone.utc),
            )
        logger.info(f"✅ Extraction {ctx.job_id} completed: {len(rows)} rows, {emitted} new persons")

    def _detect(self, ctx: JobContext, page: PageWork, structure: ContentStructure) -> None:
        page.lines = page.text.splitlines()
        page.structure = self.detector.detect(page.lines, structure.columns)
        page.forced_narrative = structure.layout == Layout.PROSE or (
            not structure.has_columns
            and len(page.text) > settings.NARRATIVE_MIN_TEXT_LENGTH
            and page.structure.confidence < settings.NARRATIVE_STRUCTURE_CONFIDENCE
        )
        kind = StructureKind.NARRATIVE if page.forced_narrative else page.structure.kind
        ctx.debug.add("detect", f"Page {page.page_number}: {kind.value} (confidence {page.structure.confidence:.2f})",
                      {"boundaries": page.structure.column_positions, "lines": len(page.lines)})

    def _arbitrate(self, ctx: JobContext, page: PageWork, options: OCROptions) -> Arbitration:
        if not page.text.strip():
            return Arbitration([], CHOICE_EMPTY)

        def run_narrative() -> Tuple[List[Row], float]:
            page.narrative = self.narrative.extract(page.text)
            rows = self.narrative.to_rows(page.narrative, ExtractionType.NARRATIVE,
                                          expand_counts=options.expand_slave_counts)
            page.holder_rows = [r for r in rows if r.person_type == PersonType.SLAVEHOLDER]
            return [r for r in rows if r.person_type != PersonType.SLAVEHOLDER], page.narrative.confidence

        arbitration = arbitrate(page.table_rows, run_narrative, force_narrative=page.forced_narrative)
        ctx.debug.add(
            "arbitrate",
            f"Page {page.page_number}: {arbitration.choice} ({len(arbitration.rows)} rows)",
            {
                "table_rows": len(page.table_rows),
                "table_confidence": round(arbitration.table_confidence, 4),
                "narrative_confidence": arbitration.narrative_confidence,
            },
        )
        return arbitration

    def _emit_page(
            self,
            ctx: JobContext,
            page: PageWork,
            structure: ContentStructure,
            source_url: str,
            volume_id: str,
            source_type: Optional[SourceTier],
            channel: Optional[ConfirmationChannel],
            document_owners: List[str]
    ) -> None:
        arbitration = page.arbitration
        if page.forced_narrative and arbitration.choice == CHOICE_NARRATIVE:
            # Sentences are not ink rows; the narrative persons are the rows
            detected = list(arbitration.rows)
        else:
            coverage = LineFilter(self.rules, structure.columns).coverage_lines(page.lines)
            if arbitration.choice == CHOICE_NARRATIVE:
                # Every ink line still yields a record; narrative persons come on top
                table_ids = {id(r) for r in page.table_rows}
                table = list(page.table_rows)
                extra = [r for r in arbitration.rows if id(r) not in table_ids]
            else:
                table = [r for r in arbitration.rows if r.extraction_type != ExtractionType.NARRATIVE_SUPPLEMENT]
                extra = [r for r in arbitration.rows if r.extraction_type == ExtractionType.NARRATIVE_SUPPLEMENT]
            detected = align_rows(coverage, table) + extra
        detected = [r.model_copy(update={"row_index": i}) for i, r in enumerate(detected)]

        holders = [r.name_token for r in page.holder_rows]
        if page.holder_rows:
            self.emitter.emit_slaveholders(source_url, page.page_number, page.holder_rows, volume_id,
                                           extraction_id=ctx.job_id, source_type=source_type)

        candidates = self.emitter.owner_candidates(page.text, source_url, extra=holders + document_owners)
        page.report = self.emitter.emit(
            source_url,
            page.page_number,
            detected,
            candidates,
            volume_id=volume_id,
            extraction_id=ctx.job_id,
            ocr_service=page.service,
            ocr_confidence=page.confidence,
            ocr_text_length=len(page.text),
            source_type=source_type,
            channel=channel,
            debug=ctx.debug,
        )
        self.store.upsert_coverage(page.report, ctx.job_id)

        if page.narrative is not None and page.narrative.relationships:
            linked = self.store.attach_relationships(source_url, page.narrative.relationships)
            ctx.debug.add("emit", f"Page {page.page_number}: recorded {linked} ownership relationships")

    # ==================== Helpers ====================

    @staticmethod
    def _pages_of(result: OCRResult, page_hint: Optional[int]) -> List[PageWork]:
        pages = list(result.pages)
        if not pages:
            pages = [PageText(page_number=page_hint or 1, text=result.text, confidence=result.confidence,
                              service=result.service)]
        elif len(pages) == 1 and page_hint:
            pages = [pages[0].model_copy(update={"page_number": page_hint})]
        return [
            PageWork(page_number=p.page_number, text=p.text, confidence=p.confidence, service=p.service)
            for p in pages
        ]

    @staticmethod
    def _combine_pages(pages: List[PageText]) -> OCRResult:
        filled = [p for p in pages if p.text.strip()]
        services = Counter(p.service for p in filled)
        return OCRResult(
            text="\n\n".join(p.text for p in filled),
            confidence=sum(p.confidence for p in filled) / len(filled) if filled else 0.0,
            service=services.most_common(1)[0][0] if services else OCRService.NONE,
            page_count=len(pages),
            pages=pages,
            error=None if filled else "No text recognized in screenshots",
        )

    @staticmethod
    def _options(job: ExtractionJob) -> OCROptions:
        return OCROptions(**job.ocr_config) if job.ocr_config else OCROptions()

    @staticmethod
    def _source_of(job: ExtractionJob, cookies: Optional[Dict[str, str]]) -> SourceReference:
        return SourceReference(
            url=job.content_url,
            archive_name=job.archive_name,
            source_tier=SourceTier(job.source_tier) if job.source_tier else None,
            access_mode=AccessMode(job.access_mode or AccessMode.DIRECT.value),
            volume_id=job.volume_id,
            page_number=job.page_number,
            cookies=cookies or {},
        )

    def _resume_context(self, job: ExtractionJob) -> JobContext:
        debug = DebugLog(job.id)
        for entry in job.debug_log or []:
            debug.restore(entry)
        return JobContext(job_id=job.id, debug=debug, progress=job.progress or 0)

    # ==================== State transitions ====================

    def _advance(self, ctx: JobContext, progress: int, message: str, status: Optional[JobStatus] = None,
                 **fields: Any) -> None:
        ctx.progress = max(ctx.progress, progress)
        updates: Dict[str, Any] = {"progress": ctx.progress, "status_message": message, **fields}
        if status is not None:
            updates["status"] = status.value
        ctx.debug.add("job", message, {"progress": ctx.progress, "status": updates.get("status")})
        self.store.update_job(ctx.job_id, **updates)
        self.store.save_debug_log(ctx.job_id, ctx.debug.to_json())
        logger.info(f"[{ctx.job_id}] {ctx.progress}% {message}")

    def _checkpoint(self, ctx: JobContext, stage: str) -> None:
        if self.store.is_cancel_requested(ctx.job_id):
            ctx.debug.add("job", f"Cancel observed before {stage}")
            raise JobCancelled(stage)

    @contextmanager
    def _stage(self, ctx: JobContext, stage: str, page: Optional[int] = None):
        with tracer.start_as_current_span(f"extraction.{stage}") as span:
            span.set_attribute("extraction.id", ctx.job_id)
            if page is not None:
                span.set_attribute("extraction.page", page)
            try:
                yield span
            except JobCancelled:
                raise
            except Exception as e:
                if ctx.failed_at is None:
                    ctx.failed_at = stage if page is None else f"{stage} on page {page}"
                span.record_exception(e)
                raise

    async def _execute(self, ctx: JobContext, work: Awaitable[None]) -> None:
        """Job boundary: every failure ends here and is recorded on the job row."""
        try:
            await work
        except JobCancelled as e:
            logger.warning(f"⚠️ Extraction {ctx.job_id} {e}")
            self._fail(ctx, "cancelled", str(e))
        except Exception as e:
            logger.error(f"❌ Extraction {ctx.job_id} failed: {e}", exc_info=True)
            where = f" during {ctx.failed_at}" if ctx.failed_at else ""
            self._fail(ctx, f"{type(e).__name__}{where}: {e}", f"Failed{where}: {e}")

    def _fail(self, ctx: JobContext, error: str, message: str) -> None:
        ctx.debug.add("job", message, {"error": error, "progress": ctx.progress})
        self.db.rollback()
        try:
            self.store.update_job(
                ctx.job_id,
                status=JobStatus.FAILED.value,
                error_message=error,
                status_message=message,
                completed_at=datetime.now(timezone.utc),
            )
        except Exception as e:
            logger.error(f"❌ Could not record failure of {ctx.job_id}: {e}", exc_info=True)
        self.store.save_debug_log(ctx.job_id, ctx.debug.to_json())


def get_extraction_service(db: Session = Depends(get_db)) -> ExtractionService:
    """Dependency injection for FastAPI."""
    return ExtractionService(db)

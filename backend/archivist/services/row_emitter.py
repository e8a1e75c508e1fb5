"""
Row Emitter - "No Person Left Behind".

Every ink-bearing row of a page becomes exactly one person record:
- a named record when the row's name token looks like a real name
- a placeholder "Unknown Enslaved Person (Vol V p.P row R)" otherwise

Each emitted row carries a fingerprint (volume, page, row, owner, raw line), so
re-running a page never creates a second entity for the same row. The result
of a page is a Coverage Report that the store keeps per (volume, page).
"""
import re
from typing import Dict, Iterable, List, Optional, Sequence

from archivist.core.config import settings
from archivist.models.extraction import (
    ConfirmationChannel, CoverageReport, EntityRecord, ExtractionType, OCRService, PersonType, Row,
    SourceTier
)
from archivist.rules import HeuristicRules, load_rules
from archivist.services.debug_log import DebugLog
from archivist.services.store import CREATED, PendingEmission, ProvenanceStore
from archivist.utils.helper import normalize_whitespace, row_fingerprint
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

LEGIT_NAME = re.compile(r"^[A-Z][a-z]{2,}(\s+[A-Z][a-z]{2,}){0,2}$")
PLACEHOLDER_CONFIDENCE = 0.2
NAMED_MIN_CONFIDENCE = 0.5
MIN_OWNER_LENGTH = 4

_GENDER_COLUMNS = ("sex", "gender")
_AGE_COLUMNS = ("age",)


def placeholder_name(volume_id: str, page_number: int, row_index: int) -> str:
    """Row numbers in placeholder names count from 1."""
    return f"Unknown Enslaved Person (Vol {volume_id} p.{page_number} row {row_index + 1})"


def align_rows(coverage_lines: Sequence[str], parsed_rows: Sequence[Row]) -> List[Row]:
    """
    Detected rows of a page: one per coverage line.

    Parsed rows are matched to lines in order by their raw text; a line the
    parser dropped becomes an empty placeholder row holding only its raw text.
    """
    detected: List[Row] = []
    pointer = 0
    normalized = [normalize_whitespace(r.raw_text) for r in parsed_rows]

    for line in coverage_lines:
        key = normalize_whitespace(line)
        match = None
        for k in range(pointer, len(parsed_rows)):
            if normalized[k] == key:
                match = k
                break

        if match is not None:
            detected.append(parsed_rows[match].model_copy(update={"row_index": len(detected)}))
            pointer = match + 1
        else:
            detected.append(Row(
                row_index=len(detected),
                raw_text=line,
                extraction_type=ExtractionType.PLACEHOLDER,
            ))

    # Rows the parser found outside the coverage list are still people
    matched = {normalize_whitespace(r.raw_text) for r in detected}
    for row, key in zip(parsed_rows, normalized):
        if key not in matched:
            detected.append(row.model_copy(update={"row_index": len(detected)}))
    return detected


class RowEmitter:

    def __init__(
            self,
            store: ProvenanceStore,
            rules: Optional[HeuristicRules] = None,
            batch_size: Optional[int] = None,
            extraction_method: Optional[str] = None
    ):
        self.store = store
        self.rules = rules or load_rules()
        self.batch_size = max(1, batch_size or settings.EMIT_BATCH_SIZE)
        self.extraction_method = extraction_method or settings.EXTRACTION_METHOD

    # ==================== Owner candidates ====================

    def extract_owner_candidates(self, text: str) -> List[str]:
        """Owner names stated on the page ('By whom owned:', 'Owner:', 'Petition of ...')."""
        candidates: List[str] = []
        for pattern in self.rules.owner_label_patterns:
            for match in pattern.finditer(text or ""):
                self._add_candidate(candidates, match.group(1))
        return candidates

    def owner_candidates(self, text: str, source_url: str, extra: Iterable[str] = ()) -> List[str]:
        """
        Candidates from the page text, then names supplied by the caller, then
        slaveholders recorded for this source by other extraction methods.
        """
        candidates = self.extract_owner_candidates(text)
        for name in extra:
            self._add_candidate(candidates, name)
        if not candidates:
            for name in self.store.existing_slaveholders(source_url, exclude_method=self.extraction_method):
                self._add_candidate(candidates, name)
        return candidates

    def _add_candidate(self, candidates: List[str], raw: Optional[str]) -> None:
        name = normalize_whitespace(raw).strip(" ,;:")
        if len(name) < MIN_OWNER_LENGTH:
            return
        if not self.rules.owner_candidate_shape.match(name) or self.rules.owner_candidate_reject.search(name):
            return
        if name.lower() not in (c.lower() for c in candidates):
            candidates.append(name)

    # ==================== Names ====================

    def is_legit_name(self, token: Optional[str]) -> bool:
        token = normalize_whitespace(token)
        if not LEGIT_NAME.match(token):
            return False
        lowered = token.lower()
        if lowered in self.rules.header_tokens:
            return False
        return not any(word in self.rules.header_tokens for word in lowered.split())

    # ==================== Emission ====================

    def emit(
            self,
            source_url: str,
            page_number: int,
            detected_rows: Sequence[Row],
            owner_candidates: Sequence[str],
            volume_id: str,
            extraction_id: Optional[str] = None,
            ocr_service: OCRService = OCRService.NONE,
            ocr_confidence: float = 0.0,
            ocr_text_length: int = 0,
            source_type: Optional[SourceTier] = None,
            channel: Optional[ConfirmationChannel] = None,
            debug: Optional[DebugLog] = None
    ) -> CoverageReport:
        """
        Emit one person record per detected row and report coverage.

        Args:
            source_url: Source the rows were read from
            page_number: Page within the volume
            detected_rows: Rows to cover, one per ink-bearing line
            owner_candidates: Owner names in priority order; the first is assigned
            volume_id: Archive volume identifier
            extraction_id: Job id, recorded in the row log
            ocr_service, ocr_confidence, ocr_text_length: OCR facts for the coverage record
            source_type: Provenance tier of the source
            channel: Confirmatory channel raising named-person confidence
            debug: Job debug log

        Returns:
            CoverageReport with named + placeholder = detected rows and
            emitted_persons = records created by this pass (0 on a rerun)
        """
        owner = owner_candidates[0] if owner_candidates else None
        report = CoverageReport(
            source_url=source_url,
            volume_id=volume_id,
            page_number=page_number,
            ocr_service=ocr_service,
            ocr_confidence=ocr_confidence,
            ocr_text_length=ocr_text_length,
            detected_rows=len(detected_rows),
            owner_candidates=list(owner_candidates),
            owner_assigned=owner,
        )

        if detected_rows and owner is None:
            report.owner_warning = True
            logger.warning(
                f"⚠️ OWNER MISSING: {len(detected_rows)} rows on {volume_id} p.{page_number} "
                f"({source_url}) have no owner candidate"
            )
            if debug is not None:
                debug.add("owner", "No owner candidate found; rows emitted with null owner",
                          {"volume_id": volume_id, "page": page_number, "rows": len(detected_rows)})

        named_confidence = max(NAMED_MIN_CONFIDENCE, ocr_confidence)
        if channel is not None:
            named_confidence = channel.apply(named_confidence)

        batch: List[PendingEmission] = []
        for row in detected_rows:
            token = normalize_whitespace(row.name_token)
            legit = self.is_legit_name(token)
            if legit:
                full_name = token
                confidence = named_confidence
                report.named_persons += 1
            else:
                full_name = placeholder_name(volume_id, page_number, row.row_index)
                confidence = PLACEHOLDER_CONFIDENCE
                report.placeholder_persons += 1

            raw = row.raw_text or " ".join(v for v in row.columns.values() if v)
            entity = EntityRecord(
                full_name=full_name,
                person_type=row.person_type if legit else PersonType.ENSLAVED,
                source_url=source_url,
                extraction_method=self.extraction_method,
                context_text=self._context(volume_id, page_number, raw, owner),
                confidence=confidence,
                source_type=source_type,
                gender=self._column_value(row, _GENDER_COLUMNS),
                age=self._column_value(row, _AGE_COLUMNS),
                relationships=[{"kind": "ownership", "slaveholder": owner}] if owner else None,
            )
            batch.append(PendingEmission(
                entity=entity,
                fingerprint=row_fingerprint(volume_id, page_number, row.row_index, owner, raw),
                volume_id=volume_id,
                page_number=page_number,
                row_index=row.row_index,
                row_raw=raw,
                owner=owner,
                extracted_name=token or None,
                extraction_id=extraction_id,
            ))

            if len(batch) >= self.batch_size:
                report.emitted_persons += self._flush(batch)
                batch = []

        report.emitted_persons += self._flush(batch)

        logger.info(
            f"Emitted {report.emitted_persons} new persons for {volume_id} p.{page_number} "
            f"(named={report.named_persons}, placeholders={report.placeholder_persons}, "
            f"detected={report.detected_rows}, owner={owner or 'UNKNOWN'})"
        )
        if debug is not None:
            debug.add("emit", f"Emitted {report.emitted_persons} new persons of {report.detected_rows} detected rows",
                      report.model_dump(mode="json"))
        return report

    def emit_slaveholders(
            self,
            source_url: str,
            page_number: int,
            rows: Sequence[Row],
            volume_id: str,
            extraction_id: Optional[str] = None,
            source_type: Optional[SourceTier] = None
    ) -> int:
        """Record narrative slaveholders as slaveholder entities. Returns new records."""
        batch: List[PendingEmission] = []
        for i, row in enumerate(rows):
            name = normalize_whitespace(row.name_token)
            if not name:
                continue
            raw = f"slaveholder:{name}"
            batch.append(PendingEmission(
                entity=EntityRecord(
                    full_name=name,
                    person_type=PersonType.SLAVEHOLDER,
                    source_url=source_url,
                    extraction_method=self.extraction_method,
                    context_text=self._context(volume_id, page_number, row.raw_text, None),
                    confidence=row.confidence,
                    source_type=source_type,
                ),
                fingerprint=row_fingerprint(volume_id, page_number, i, None, raw),
                volume_id=volume_id,
                page_number=page_number,
                row_index=i,
                row_raw=raw,
                owner=None,
                extracted_name=name,
                extraction_id=extraction_id,
            ))
        return self._flush(batch)

    def _flush(self, batch: List[PendingEmission]) -> int:
        if not batch:
            return 0
        outcomes = self.store.emit_batch(batch)
        return sum(1 for o in outcomes if o == CREATED)

    @staticmethod
    def _context(volume_id: str, page_number: int, raw: str, owner: Optional[str]) -> str:
        return (
            f"Source: Vol {volume_id} p.{page_number}. "
            f"Row OCR: {normalize_whitespace(raw)[:300]}. "
            f"Owner: {owner or 'UNKNOWN'}"
        )

    @staticmethod
    def _column_value(row: Row, names: Sequence[str]) -> Optional[str]:
        lowered: Dict[str, str] = {k.lower(): v for k, v in row.columns.items()}
        for name in names:
            for key, value in lowered.items():
                if key.startswith(name) and value:
                    return value.strip()
        return None

"""
Pydantic schemas for the extraction pipeline - defines the data that flows between
fetch, OCR, structure detection, parsing, emission and the job row.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ==================== Enums ====================

class SourceTier(str, Enum):
    """Descriptive provenance label. Does not by itself grant confirmation."""
    PRIMARY = "primary"  # government / institutional archive
    SECONDARY = "secondary"  # genealogy database
    TERTIARY = "tertiary"  # reference


class AccessMode(str, Enum):
    DIRECT = "direct"
    PDF_LINK = "pdf-link"
    AUTH_REQUIRED = "auth-required"
    PROTECTED = "protected"


class FetchMethod(str, Enum):
    """Acquisition strategies, in cascade order (plus pre-supplied content)."""
    DIRECT_HTTP = "direct_http"
    BROWSER_MIMIC = "browser_mimic"
    PDF_LINK_EXTRACT = "pdf_link_extract"
    BROWSER_SCREENSHOT = "browser_screenshot"
    UPLOADED_FILE = "uploaded_file"
    CRAWLER = "crawler"


class OCRService(str, Enum):
    PDF_TEXT = "pdf-text"
    VISION = "vision"
    FALLBACK_OCR = "fallback-ocr"
    HTML_TEXT = "html-text"
    MANUAL = "manual"
    NONE = "none"


class DataType(str, Enum):
    OWNER_NAME = "owner-name"
    ENSLAVED_NAME = "enslaved-name"
    DATE = "date"
    AGE = "age"
    GENDER = "gender"
    LOCATION = "location"
    PHYSICAL_CONDITION = "physical-condition"
    TERM_OF_SERVICE = "term-of-service"
    MILITARY = "military"
    COMPENSATION = "compensation"
    WITNESS = "witness"
    REMARKS = "remarks"
    UNKNOWN = "unknown"

    @property
    def is_name(self) -> bool:
        return self in (DataType.OWNER_NAME, DataType.ENSLAVED_NAME, DataType.WITNESS)


class Layout(str, Enum):
    TABLE = "table"
    LIST = "list"
    PROSE = "prose"
    FORM = "form"
    IMAGE_ONLY = "image-only"
    MIXED = "mixed"
    UNKNOWN = "unknown"


class ScanQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"


class Handwriting(str, Enum):
    PRINTED = "printed"
    CURSIVE = "cursive"
    PRINT_HAND = "print-hand"
    MIXED = "mixed"
    UNKNOWN = "unknown"


class StructureKind(str, Enum):
    TAB_DELIMITED = "tab-delimited"
    PIPE_DELIMITED = "pipe-delimited"
    FIXED_WIDTH = "fixed-width"
    WHITESPACE_TABLE = "whitespace-table"
    NARRATIVE = "narrative"


class ExtractionType(str, Enum):
    TABLE = "table"
    FIXED_WIDTH = "fixed-width"
    NARRATIVE = "narrative"
    NARRATIVE_SUPPLEMENT = "narrative-supplement"
    TABLE_COUNT = "table-count"
    PLACEHOLDER = "placeholder"


class PersonType(str, Enum):
    ENSLAVED = "enslaved"
    SLAVEHOLDER = "slaveholder"
    VESSEL = "vessel"
    FINANCIAL_ACTOR = "financial-actor"
    DOCUMENT_REFERENCE = "document-reference"
    OTHER = "other"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_MANUAL_INPUT = "awaiting-manual-input"
    AWAITING_UPLOAD = "awaiting-upload"


class ExtractionMethod(str, Enum):
    """How the caller wants the text acquired."""
    AUTO_OCR = "auto_ocr"
    MANUAL_TEXT = "manual_text"
    SCREENSHOT_UPLOAD = "screenshot_upload"


class ConfirmationChannel(str, Enum):
    """Mechanisms that raise an entity's confidence, with the floor each one grants."""
    HUMAN_TRANSCRIPTION = "human_transcription"
    OCR_HUMAN_REVIEW = "ocr_human_review"
    HIGH_CONFIDENCE_OCR = "high_confidence_ocr"
    CROSS_REFERENCE = "cross_reference"
    PAGE_METADATA = "page_metadata"

    @property
    def floor(self) -> float:
        return CONFIRMATION_FLOORS[self]

    def apply(self, confidence: float) -> float:
        return max(confidence, self.floor)


CONFIRMATION_FLOORS: Dict[ConfirmationChannel, float] = {
    ConfirmationChannel.HUMAN_TRANSCRIPTION: 0.95,
    ConfirmationChannel.OCR_HUMAN_REVIEW: 0.90,
    ConfirmationChannel.HIGH_CONFIDENCE_OCR: 0.75,
    ConfirmationChannel.CROSS_REFERENCE: 0.70,
    ConfirmationChannel.PAGE_METADATA: 0.60,
}


# ==================== Acquisition ====================

class SourceReference(BaseModel):
    """
    An opaque URL (or stored-file path) plus archive hints.
    """
    url: str = Field(..., description="http(s) URL, file:// URL or local path of the source")
    archive_name: Optional[str] = Field(None, description="Archive the source belongs to")
    source_tier: Optional[SourceTier] = Field(None, description="Provenance tier label")
    access_mode: AccessMode = Field(AccessMode.DIRECT, description="How the archive serves content")
    volume_id: Optional[str] = Field(None, description="Archive volume identifier, used for row identity")
    page_number: Optional[int] = Field(None, description="Page within the volume, when a single page")
    cookies: Dict[str, str] = Field(
        default_factory=dict,
        description="Session cookies supplied by a session collaborator; the only cookies ever sent"
    )


class ContentBuffer(BaseModel):
    """Acquired bytes. Immutable once emitted."""
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., repr=False)
    mime: str = Field(..., description="Detected MIME type")
    origin: FetchMethod = Field(..., description="Strategy that produced the bytes")
    url: str = Field(..., description="URL the bytes were finally read from")

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_pdf(self) -> bool:
        return self.mime == "application/pdf"

    @property
    def is_image(self) -> bool:
        return self.mime.startswith("image/")

    @property
    def is_html(self) -> bool:
        return self.mime in ("text/html", "application/xhtml+xml")


class FetchAttempt(BaseModel):
    method: FetchMethod
    error: Optional[str] = None
    status_code: Optional[int] = None
    elapsed_ms: int = 0
    skipped: bool = False


class FetchFailure(BaseModel):
    """Structured record of an exhausted cascade; lists every method attempted and its error."""
    source_url: str
    attempts: List[FetchAttempt] = Field(default_factory=list)

    @property
    def attempted_methods(self) -> List[FetchMethod]:
        return [a.method for a in self.attempts if not a.skipped]

    @property
    def errors(self) -> Dict[str, str]:
        return {a.method.value: a.error or "" for a in self.attempts if not a.skipped}


# ==================== OCR ====================

class OCROptions(BaseModel):
    """Per-job OCR configuration (ocr_config on the request)."""
    pages: Optional[List[int]] = Field(None, description="Explicit 1-based page selection")
    start_page: Optional[int] = Field(None, ge=1)
    end_page: Optional[int] = Field(None, ge=1)
    language: Optional[str] = Field(None, description="OCR language code, e.g. 'eng'")
    expand_slave_counts: bool = Field(False, description="Expand narrative slave counts into table-count rows")

    def select_pages(self, page_count: int) -> List[int]:
        """Resolve the selection to sorted, in-range 1-based page numbers."""
        if self.pages:
            selected = sorted({p for p in self.pages if 1 <= p <= page_count})
        else:
            start = self.start_page or 1
            end = min(self.end_page or page_count, page_count)
            selected = list(range(start, end + 1))
        return selected


class PageText(BaseModel):
    """Per-page OCR annotation."""
    page_number: int
    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    service: OCRService = OCRService.NONE
    block_confidences: List[float] = Field(default_factory=list, repr=False)


class OCRResult(BaseModel):
    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    service: OCRService = OCRService.NONE
    page_count: int = 0
    pages: List[PageText] = Field(default_factory=list)
    error: Optional[str] = None

    @model_validator(mode="after")
    def confidence_zero_iff_empty(self) -> "OCRResult":
        if not self.text.strip():
            self.confidence = 0.0
        elif self.confidence <= 0.0:
            # Non-empty text always carries some confidence
            self.confidence = 0.01
        return self

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "OCRResult":
        return cls(text="", confidence=0.0, service=OCRService.NONE, page_count=0, error=error)


# ==================== Content Structure ====================

class ColumnDefinition(BaseModel):
    position: int = Field(..., ge=1, description="1-based column position")
    header_exact: Optional[str] = Field(None, description="Verbatim human reading of the header")
    header_guess: Optional[str] = Field(None, description="Best guess when the header is unreadable")
    data_type: DataType = DataType.UNKNOWN
    human_provided: bool = False

    @property
    def header(self) -> str:
        return self.header_exact or self.header_guess or f"Column {self.position}"


class ContentStructure(BaseModel):
    """Human-provided structural hint; every field optional."""
    columns: List[ColumnDefinition] = Field(default_factory=list)
    layout: Layout = Layout.UNKNOWN
    scan_quality: ScanQuality = ScanQuality.UNKNOWN
    handwriting: Handwriting = Handwriting.UNKNOWN

    @field_validator("columns")
    @classmethod
    def order_columns(cls, v: List[ColumnDefinition]) -> List[ColumnDefinition]:
        return sorted(v, key=lambda c: c.position)

    @property
    def has_columns(self) -> bool:
        return bool(self.columns)


class DetectedStructure(BaseModel):
    kind: StructureKind
    column_positions: List[int] = Field(default_factory=list, description="Boundaries for fixed-width")
    delimiter: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)


# ==================== Rows ====================

class Row(BaseModel):
    """
    A single extracted row. Table and narrative outputs share this shape so that
    arbitration is a comparison, not a conversion.
    """
    row_index: int = Field(..., ge=0)
    columns: Dict[str, str] = Field(default_factory=dict)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    raw_text: str = ""
    extraction_type: ExtractionType = ExtractionType.TABLE
    person_type: PersonType = PersonType.ENSLAVED
    name_column: Optional[str] = Field(None, description="Column holding the person's name, when known")

    @property
    def filled_count(self) -> int:
        return sum(1 for v in self.columns.values() if v and v.strip())

    @property
    def name_token(self) -> str:
        """Tentative name: the declared name column, else the first cell."""
        if self.name_column and self.name_column in self.columns:
            return (self.columns[self.name_column] or "").strip()
        for value in self.columns.values():
            return (value or "").strip()
        return ""


# ==================== Narrative ====================

class NarrativePerson(BaseModel):
    name: str
    person_type: PersonType
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    contexts: List[str] = Field(default_factory=list)
    slave_count: Optional[int] = None
    gender: Optional[str] = None
    age: Optional[str] = None
    owner: Optional[str] = None


class Transaction(BaseModel):
    kind: str  # sale, manumission, inheritance, compensation
    context: str
    dates: List[str] = Field(default_factory=list)
    amounts: List[str] = Field(default_factory=list)


class Relationship(BaseModel):
    kind: str = "ownership"
    slaveholder: str
    enslaved: str
    confidence: float = 0.6
    evidence: str = ""


class TargetNameHit(BaseModel):
    name: str
    context: str
    role: str  # slaveholder, enslaved, unknown


class NarrativeStatistics(BaseModel):
    total_sentences: int = 0
    relevant_sentences: int = 0
    slaveholders: int = 0
    enslaved_persons: int = 0
    transactions: int = 0
    relationships: int = 0


class NarrativeResult(BaseModel):
    slaveholders: List[NarrativePerson] = Field(default_factory=list)
    enslaved_persons: List[NarrativePerson] = Field(default_factory=list)
    transactions: List[Transaction] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)
    target_hits: List[TargetNameHit] = Field(default_factory=list)
    statistics: NarrativeStatistics = Field(default_factory=NarrativeStatistics)
    confidence: float = Field(0.0, ge=0.0, le=1.0)


# ==================== Emission ====================

class EntityRecord(BaseModel):
    full_name: str
    person_type: PersonType
    source_url: str
    extraction_method: str
    context_text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    source_type: Optional[SourceTier] = None
    gender: Optional[str] = None
    age: Optional[str] = None
    locations: Optional[List[str]] = None
    relationships: Optional[List[Dict[str, Any]]] = None


class CoverageReport(BaseModel):
    """Per-page coverage record returned by the Row Emitter."""
    source_url: str
    volume_id: str
    page_number: int
    ocr_service: OCRService = OCRService.NONE
    ocr_confidence: float = 0.0
    ocr_text_length: int = 0
    detected_rows: int = 0
    emitted_persons: int = 0
    named_persons: int = 0
    placeholder_persons: int = 0
    owner_candidates: List[str] = Field(default_factory=list)
    owner_assigned: Optional[str] = None
    owner_warning: bool = False


class DebugEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stage: str
    message: str
    elapsed_ms: int = 0
    data: Optional[Dict[str, Any]] = None


# ==================== API ====================

class ExtractionRequest(BaseModel):
    source_url: str = Field(..., min_length=1, description="Source URL or content URL")
    archive_name: Optional[str] = None
    source_tier: Optional[SourceTier] = None
    access_mode: AccessMode = AccessMode.DIRECT
    volume_id: Optional[str] = None
    page_number: Optional[int] = Field(None, ge=1)
    content_structure: Optional[ContentStructure] = None
    ocr_config: Optional[OCROptions] = None
    method: ExtractionMethod = ExtractionMethod.AUTO_OCR


class ManualTextRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Human transcription of the document")


class ExtractionStatusResponse(BaseModel):
    extraction_id: str
    content_url: str
    status: JobStatus
    progress: int = 0
    status_message: Optional[str] = None
    error_message: Optional[str] = None
    ocr_service: Optional[str] = None
    row_count: int = 0
    avg_confidence: Optional[float] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

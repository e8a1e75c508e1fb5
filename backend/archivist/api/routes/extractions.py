"""
Extraction Routes.

Creates extraction jobs, reports their progress and output, and accepts the
human inputs a parked job waits for (manual transcription, screenshots).
Jobs run on FastAPI background tasks after the request returns.
"""
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import ValidationError

from archivist.api.deps import read_upload
from archivist.core.config import settings
from archivist.core.exceptions import ArchivistError, InvalidJobState, JobNotFound
from archivist.models.extraction import (
    AccessMode, ContentStructure, ExtractionRequest, ExtractionStatusResponse, ManualTextRequest, OCROptions,
    SourceTier
)
from archivist.models.schema import ApiResponse
from archivist.services.extraction_service import ExtractionService, get_extraction_service
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _http_error(e: ArchivistError) -> HTTPException:
    if isinstance(e, JobNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidJobState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _parse_json_field(model, raw: Optional[str], field_name: str):
    if not raw:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name}: {e.errors()[0].get('msg', 'malformed JSON')}"
        )


# ==================== Create ====================

@router.post("", response_model=ApiResponse[ExtractionStatusResponse], status_code=status.HTTP_202_ACCEPTED)
async def create_extraction(
        request: ExtractionRequest,
        background_tasks: BackgroundTasks,
        service: ExtractionService = Depends(get_extraction_service)
):
    """
    Queue an extraction for a source URL.

    Returns:
        The pending job; poll GET /extractions/{id} for progress
    """
    logger.info(f"Received extraction request for {request.source_url} ({request.method.value})")
    job = service.create_job(request)
    background_tasks.add_task(service.run_in_background, job.id)

    return ApiResponse(
        status="success",
        message="Extraction queued",
        data=service.get_status(job.id),
    )


@router.post("/upload", response_model=ApiResponse[ExtractionStatusResponse], status_code=status.HTTP_202_ACCEPTED)
async def upload_extraction(
        background_tasks: BackgroundTasks,
        file: UploadFile = File(..., description="PDF or page image"),
        content_structure: Optional[str] = Form(None, description="ContentStructure as JSON"),
        ocr_config: Optional[str] = Form(None, description="OCROptions as JSON"),
        archive_name: Optional[str] = Form(None),
        source_tier: Optional[SourceTier] = Form(None),
        volume_id: Optional[str] = Form(None),
        page_number: Optional[int] = Form(None),
        service: ExtractionService = Depends(get_extraction_service)
):
    """
    Upload a document and extract it.

    Raises:
        400: Invalid file type or malformed JSON fields
        413: File too large
    """
    logger.info(f"Received upload: {file.filename}")
    data = await read_upload(file)
    structure = _parse_json_field(ContentStructure, content_structure, "content_structure")
    options = _parse_json_field(OCROptions, ocr_config, "ocr_config")

    suffix = Path(file.filename or "").suffix.lower() or ".bin"
    stored = settings.UPLOAD_DIR / f"{uuid.uuid4().hex}{suffix}"
    stored.parent.mkdir(parents=True, exist_ok=True)
    stored.write_bytes(data)
    logger.info(f"File saved to {stored} ({len(data)} bytes)")

    request = ExtractionRequest(
        source_url=str(stored.resolve()),
        archive_name=archive_name,
        source_tier=source_tier,
        access_mode=AccessMode.DIRECT,
        volume_id=volume_id,
        page_number=page_number,
        content_structure=structure,
        ocr_config=options,
    )
    job = service.create_job(request)
    background_tasks.add_task(service.run_in_background, job.id)

    return ApiResponse(
        status="success",
        message=f"{file.filename} uploaded; extraction queued",
        data=service.get_status(job.id),
    )


# ==================== Status & output ====================

@router.get("/{extraction_id}", response_model=ApiResponse[ExtractionStatusResponse])
async def get_extraction(extraction_id: str, service: ExtractionService = Depends(get_extraction_service)):
    try:
        return ApiResponse(status="success", data=service.get_status(extraction_id))
    except ArchivistError as e:
        raise _http_error(e)


@router.get("/{extraction_id}/rows", response_model=ApiResponse[List[Dict[str, Any]]])
async def get_extraction_rows(extraction_id: str, service: ExtractionService = Depends(get_extraction_service)):
    try:
        rows = service.get_rows(extraction_id)
    except ArchivistError as e:
        raise _http_error(e)
    return ApiResponse(status="success", message=f"{len(rows)} rows", data=rows)


@router.get("/{extraction_id}/debug-log", response_model=ApiResponse[List[Dict[str, Any]]])
async def get_extraction_debug_log(extraction_id: str, service: ExtractionService = Depends(get_extraction_service)):
    try:
        entries = service.get_debug_log(extraction_id)
    except ArchivistError as e:
        raise _http_error(e)
    return ApiResponse(status="success", message=f"{len(entries)} entries", data=entries)


@router.post("/{extraction_id}/cancel", response_model=ApiResponse[ExtractionStatusResponse])
async def cancel_extraction(extraction_id: str, service: ExtractionService = Depends(get_extraction_service)):
    try:
        data = service.request_cancel(extraction_id)
    except ArchivistError as e:
        raise _http_error(e)
    return ApiResponse(status="success", message="Cancel requested", data=data)


# ==================== Human input ====================

@router.post("/{extraction_id}/manual-text", response_model=ApiResponse[ExtractionStatusResponse])
async def submit_manual_text(
        extraction_id: str,
        body: ManualTextRequest,
        service: ExtractionService = Depends(get_extraction_service)
):
    """Process a human transcription for a job awaiting manual input."""
    try:
        data = await service.process_manual_text(extraction_id, body.text)
    except ArchivistError as e:
        raise _http_error(e)
    return ApiResponse(status="success", message=data.status_message, data=data)


@router.post("/{extraction_id}/screenshots", response_model=ApiResponse[ExtractionStatusResponse])
async def upload_screenshots(
        extraction_id: str,
        files: List[UploadFile] = File(..., description="One image per page, in page order"),
        service: ExtractionService = Depends(get_extraction_service)
):
    """OCR uploaded page screenshots for a job awaiting upload."""
    images = [await read_upload(f, images_only=True) for f in files]
    try:
        data = await service.process_screenshots(extraction_id, images)
    except ArchivistError as e:
        raise _http_error(e)
    return ApiResponse(status="success", message=data.status_message, data=data)

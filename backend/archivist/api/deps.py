"""
API Dependencies - Shared dependencies for FastAPI routes.

Common uses:
- Database sessions
- Service instances
- Upload validation
"""
from pathlib import Path
from typing import Optional

from fastapi import HTTPException, UploadFile, status

from archivist.core.config import settings

IMAGE_TYPES = {"image/png", "image/jpeg", "image/tiff", "image/gif", "image/webp"}
DOCUMENT_TYPES = {"application/pdf"} | IMAGE_TYPES


def validate_file_upload(
        content_type: Optional[str],
        content_length: int,
        filename: Optional[str] = None,
        images_only: bool = False
) -> None:
    """
    Validate an uploaded file.

    Args:
        content_type: MIME type of file
        content_length: Size in bytes
        filename: Original filename, used when the client sends a generic type
        images_only: Reject PDFs (screenshot uploads)

    Raises:
        HTTPException: 400 for an unsupported type, 413 when too large
    """
    allowed = IMAGE_TYPES if images_only else DOCUMENT_TYPES
    extension = Path(filename or "").suffix.lower()
    extension_ok = extension in settings.ALLOWED_EXTENSIONS and not (images_only and extension == ".pdf")

    if content_type not in allowed and not extension_ok:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File type not supported. Allowed: {', '.join(sorted(allowed))}"
        )

    if content_length > settings.MAX_UPLOAD_SIZE:
        max_mb = settings.MAX_UPLOAD_SIZE / 1024 / 1024
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size: {max_mb:.0f}MB"
        )


async def read_upload(file: UploadFile, images_only: bool = False) -> bytes:
    """Read an upload into memory after validating type and size."""
    data = await file.read()
    validate_file_upload(file.content_type, len(data), file.filename, images_only=images_only)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{file.filename} is empty")
    return data

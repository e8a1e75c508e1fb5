from fastapi import APIRouter
from fastapi.responses import JSONResponse

from archivist.utils.logger import get_logger
from archivist.validation.validators import service_report

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.info("Checking system health...")

    services = service_report()
    health_status = {
        "status": "healthy",
        "services": services,
    }

    if services["database"] != "healthy":
        logger.error("Database connection failed")
        health_status["status"] = "unhealthy"
    elif services["vision_ocr"] != "configured" and services["fallback_ocr"] != "healthy":
        logger.warning("No OCR back-end available")
        health_status["status"] = "degraded"

    status_code = 200 if health_status["status"] == "healthy" else 503
    logger.info(f"Health check: {health_status['status']} ({status_code})")
    return JSONResponse(content=health_status, status_code=status_code)

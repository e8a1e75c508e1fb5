"""
Main FastAPI Application.

This is the entry point for the extraction server.
It configures and runs the complete API.
"""
from contextlib import asynccontextmanager

import dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from archivist.api.middleware.error_handler import ErrorMiddleware
from archivist.api.routes import api_router, health
from archivist.core.config import settings
from archivist.core.database import create_db_and_tables
from archivist.utils.logger import get_logger

dotenv.load_dotenv()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {'Development' if settings.DEBUG else 'Production'}")

    # Initialize database
    create_db_and_tables()

    if settings.OTEL_ENABLED:
        from archivist.telemetry.setup import setup_telemetry
        setup_telemetry(settings.OTEL_SERVICE_NAME)
        logger.info("✅ OpenTelemetry export enabled")

    # Validate services
    logger.info("Validating services...")
    for problem in settings.validate_required_settings():
        logger.warning(f"⚠️  {problem}")

    if settings.vision_enabled:
        logger.info("✅ Vision OCR configured")
    else:
        logger.warning("⚠️  GOOGLE_VISION_API_KEY not set - Tesseract only")

    logger.info(f"🚀 Server ready at http://{settings.HOST}:{settings.PORT}")

    yield  # Server runs here

    # Shutdown
    logger.info("Shutting down gracefully...")


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Extraction pipeline for historical slavery records",
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
)

# Error middleware
app.add_middleware(ErrorMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
api_router.include_router(health.router, tags=["health"], prefix="")
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
        "openapi": "/openapi.json"
    }


if __name__ == "__main__":
    import uvicorn
    try:
        uvicorn.run(
            "archivist.main:app",
            host=settings.HOST,
            port=settings.PORT,
            reload=settings.DEBUG,  # Auto-reload in dev mode
            log_level=settings.LOG_LEVEL.lower()
        )
    except KeyboardInterrupt:
        logger.warning("Shutdown requested")
        logger.info("Goodbye")

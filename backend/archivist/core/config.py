"""
Core configuration for the Archivist extraction pipeline.

This module centralizes all application settings using Pydantic for type safety
and validation. Settings are loaded from environment variables (or a local .env).
"""
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # ==================== Pydantic Settings ====================
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Default the database next to the data directory unless given explicitly
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"sqlite:///{self.DATA_DIR / 'archivist.db'}"
        self._create_directories()

    APP_NAME: str = "Archivist Extraction Pipeline"
    APP_VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"

    # ==================== Development Defaults ====================
    DEBUG: bool = True
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]

    # ==================== Database Configuration ====================
    # Empty means "SQLite file under DATA_DIR"
    DATABASE_URL: str = ""

    # ==================== File Storage ====================
    DATA_DIR: Path = Path("data")

    @property
    def UPLOAD_DIR(self) -> Path:
        return self.DATA_DIR / "uploads"

    @property
    def SCREENSHOT_DIR(self) -> Path:
        return self.DATA_DIR / "screenshots"

    MAX_UPLOAD_SIZE: int = 52428800  # 50MB in bytes
    ALLOWED_EXTENSIONS: set[str] = {".pdf", ".jpg", ".jpeg", ".png", ".tif", ".tiff"}

    # ==================== Fetcher ====================
    FETCH_USER_AGENT: str = "Reparations Research Bot (Historical Genealogy Research)"
    FETCH_BROWSER_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )
    FETCH_DIRECT_TIMEOUT: float = 60.0
    FETCH_MIMIC_TIMEOUT: float = 45.0
    FETCH_DIRECT_MAX_REDIRECTS: int = 5
    FETCH_MIMIC_MAX_REDIRECTS: int = 10

    # Polite spacing between requests to the same host (seconds)
    FETCH_MIN_DELAY: float = 0.5
    FETCH_MAX_DELAY: float = 3.0

    BROWSER_SCREENSHOT_ENABLED: bool = True
    BROWSER_NAVIGATION_TIMEOUT: int = 60
    BROWSER_SETTLE_SECONDS: float = 2.0
    BROWSER_WINDOW_WIDTH: int = 1920
    BROWSER_WINDOW_HEIGHT: int = 1080

    # ==================== OCR ====================
    # Primary service is unavailable when no key is configured
    GOOGLE_VISION_API_KEY: Optional[str] = None
    GOOGLE_VISION_ENDPOINT: str = "https://vision.googleapis.com/v1/images:annotate"
    TESSERACT_CMD: Optional[str] = None

    OCR_TIMEOUT: float = 120.0
    OCR_BUDGET_PER_PAGE: float = 150.0
    OCR_PRIMARY_ACCEPT_CONFIDENCE: float = 0.8
    OCR_LANGUAGE: str = "eng"
    OCR_DPI: int = 300
    OCR_MAX_IMAGE_WIDTH: int = 2400
    PDF_TEXT_MIN_CHARS: int = 100

    # ==================== Pipeline ====================
    EXTRACTION_METHOD: str = "document_pipeline_v1"
    RULES_VERSION: str = "v1"
    NARRATIVE_MIN_TEXT_LENGTH: int = 200
    NARRATIVE_STRUCTURE_CONFIDENCE: float = 0.7
    EMIT_BATCH_SIZE: int = 10

    STORE_MAX_RETRIES: int = 3
    STORE_RETRY_BACKOFF: float = 0.5

    # ==================== Telemetry ====================
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "archivist-extraction"

    # ==================== Logging ====================
    LOG_FORMAT: str = "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"

    def _create_directories(self) -> None:
        """Create necessary directories on initialization."""
        directories = [
            self.DATA_DIR,
            self.UPLOAD_DIR,
            self.SCREENSHOT_DIR,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def vision_enabled(self) -> bool:
        return bool(self.GOOGLE_VISION_API_KEY)

    def validate_required_settings(self) -> list[str]:
        """
        Validate that the external OCR dependencies are usable.

        Returns:
            List of validation errors (empty if all valid)
        """
        errors = []

        tesseract_available = bool(self.TESSERACT_CMD) or shutil.which("tesseract") is not None
        if not self.vision_enabled and not tesseract_available:
            errors.append(
                "No OCR back-end available: set GOOGLE_VISION_API_KEY or install tesseract"
            )

        if self.FETCH_MIN_DELAY > self.FETCH_MAX_DELAY:
            errors.append("FETCH_MIN_DELAY must not exceed FETCH_MAX_DELAY")

        if not 0 < self.OCR_PRIMARY_ACCEPT_CONFIDENCE <= 1:
            errors.append("OCR_PRIMARY_ACCEPT_CONFIDENCE must be within (0, 1]")

        return errors


# ==================== Global Settings Instance ====================
settings = Settings()


# ==================== Helper Functions ====================
@lru_cache()
def get_settings() -> Settings:
    """
    Dependency function for FastAPI routes.

    Usage:
        @router.get("/config")
        def get_config(settings: Settings = Depends(get_settings)):
            return {"ocr": settings.vision_enabled}
    """
    return settings

import shutil
from typing import Dict

import pytesseract
from sqlalchemy import text

from archivist.core.config import settings
from archivist.core.database import engine

CHROME_BINARIES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")


def validate_tesseract() -> bool:
    """
    Check that the local fallback OCR binary can be run.

    Returns:
        bool: True if Tesseract answers a version query
    """
    if settings.TESSERACT_CMD:
        pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD
    try:
        pytesseract.get_tesseract_version()
        return True
    except Exception:
        return False


def validate_browser() -> bool:
    """
    Check that a Chrome/Chromium binary is installed for the screenshot fallback.

    Returns:
        bool: True if a browser binary is on PATH
    """
    return any(shutil.which(name) for name in CHROME_BINARIES)


def validate_database() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def service_report() -> Dict[str, str]:
    """Availability of every external back-end, as shown by /health."""
    return {
        "database": "healthy" if validate_database() else "unhealthy",
        "vision_ocr": "configured" if settings.vision_enabled else "not-configured",
        "fallback_ocr": "healthy" if validate_tesseract() else "unavailable",
        "browser": (
            "disabled" if not settings.BROWSER_SCREENSHOT_ENABLED
            else "healthy" if validate_browser() else "unavailable"
        ),
    }


if __name__ == "__main__":
    """Test configuration loading."""
    print("=" * 60)
    print("ARCHIVIST EXTRACTION - Configuration Test")
    print("=" * 60)

    errors = settings.validate_required_settings()
    if errors:
        print("\n❌ Configuration Errors:")
        for error in errors:
            print(f"   - {error}")
        print("\n💡 Please check your .env file")
        exit(1)

    print(f"\n📱 Application:")
    print(f"   Name: {settings.APP_NAME}")
    print(f"   Version: {settings.APP_VERSION}")
    print(f"   Debug: {settings.DEBUG}")

    print(f"\n🌐 Fetcher:")
    print(f"   User-Agent: {settings.FETCH_USER_AGENT}")
    print(f"   Delay: {settings.FETCH_MIN_DELAY}-{settings.FETCH_MAX_DELAY}s per host")
    print(f"   Screenshots: {'enabled' if settings.BROWSER_SCREENSHOT_ENABLED else 'disabled'}")

    print(f"\n🔤 OCR:")
    print(f"   Vision API: {'configured' if settings.vision_enabled else 'not configured'}")
    print(f"   Accept confidence: {settings.OCR_PRIMARY_ACCEPT_CONFIDENCE}")
    print(f"   Language: {settings.OCR_LANGUAGE}")

    print(f"\n📁 Storage Paths:")
    print(f"   Database: {settings.DATABASE_URL}")
    print(f"   Upload Dir: {settings.UPLOAD_DIR}")

    print(f"\n🔌 Validating back-ends...")
    for name, state in service_report().items():
        mark = "✅" if state in ("healthy", "configured") else "⚠️ "
        print(f"   {mark} {name}: {state}")

    print("\n" + "=" * 60)

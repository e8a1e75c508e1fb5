"""
Relational store for the extraction pipeline.

Tables:
- extraction_jobs: one row per extraction request (status, progress, debug log, output)
- unconfirmed_persons: emitted entity records, unique per (full_name, source_url)
- extraction_row_log: one row per emitted row fingerprint
- extraction_coverage: per-page coverage record, unique per (volume_id, page_number)
"""
import logging
from sqlalchemy import (
    create_engine, Column, String, DateTime, Text, Integer, Float, Boolean, JSON,
    UniqueConstraint
)
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.sql import func
from archivist.core.config import settings

logger = logging.getLogger(__name__)

# ==================== SQLAlchemy Setup ====================
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# ==================== Database Models ====================

class ExtractionJob(Base):
    """
    One extraction request and everything the Job Controller persists about it.
    """
    __tablename__ = "extraction_jobs"

    id = Column(String, primary_key=True, index=True)  # UUID

    # Input
    content_url = Column(String, nullable=False)
    archive_name = Column(String, nullable=True)
    source_tier = Column(String, nullable=True)
    access_mode = Column(String, default="direct")
    volume_id = Column(String, nullable=True)
    page_number = Column(Integer, nullable=True)
    content_structure = Column(JSON, nullable=True)
    ocr_config = Column(JSON, nullable=True)
    method = Column(String, default="auto_ocr")

    # Progress
    status = Column(String, default="pending", index=True)
    progress = Column(Integer, default=0)
    status_message = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, default=False)

    # Output
    ocr_service = Column(String, nullable=True)
    raw_ocr_text = Column(Text, nullable=True)
    parsed_rows = Column(JSON, nullable=True)
    row_count = Column(Integer, default=0)
    avg_confidence = Column(Float, nullable=True)
    debug_log = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class PersonRecord(Base):
    """
    An emitted entity record (person, vessel, ...) awaiting confirmation downstream.
    """
    __tablename__ = "unconfirmed_persons"
    __table_args__ = (
        UniqueConstraint("full_name", "source_url", name="uq_person_name_source"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String, nullable=False, index=True)
    person_type = Column(String, nullable=False, default="enslaved")
    source_url = Column(String, nullable=False, index=True)
    source_type = Column(String, nullable=True)  # primary / secondary / tertiary
    extraction_method = Column(String, nullable=False)
    context_text = Column(Text, nullable=True)
    confidence_score = Column(Float, default=0.0)
    gender = Column(String, nullable=True)
    age = Column(String, nullable=True)
    locations = Column(JSON, nullable=True)
    relationships = Column(JSON, nullable=True)
    status = Column(String, default="pending")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RowLogEntry(Base):
    """Document-level row log; the fingerprint makes emission at-most-once per row."""
    __tablename__ = "extraction_row_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    row_fingerprint = Column(String(64), unique=True, nullable=False, index=True)
    extraction_id = Column(String, nullable=True, index=True)
    volume_id = Column(String, nullable=False)
    page_number = Column(Integer, nullable=False)
    row_index = Column(Integer, nullable=False)
    source_url = Column(String, nullable=False, index=True)
    row_raw = Column(Text, nullable=True)
    owner_assigned = Column(String, nullable=True)
    extracted_name = Column(String, nullable=True)
    emitted_full_name = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CoverageRecord(Base):
    """Per-page coverage record, updated in place on re-runs."""
    __tablename__ = "extraction_coverage"
    __table_args__ = (
        UniqueConstraint("volume_id", "page_number", name="uq_coverage_volume_page"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    volume_id = Column(String, nullable=False)
    page_number = Column(Integer, nullable=False)
    source_url = Column(String, nullable=False, index=True)
    extraction_id = Column(String, nullable=True)

    ocr_service = Column(String, nullable=True)
    ocr_confidence = Column(Float, default=0.0)
    ocr_text_length = Column(Integer, default=0)

    detected_rows = Column(Integer, default=0)
    emitted_persons = Column(Integer, default=0)
    named_persons = Column(Integer, default=0)
    placeholder_persons = Column(Integer, default=0)
    owner_candidates = Column(JSON, nullable=True)
    owner_assigned = Column(String, nullable=True)
    owner_warning = Column(Boolean, default=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ==================== Database Initialization ====================

def create_db_and_tables(bind=None):
    """Create all database tables."""
    try:
        logger.info("Initializing database and creating tables...")
        Base.metadata.create_all(bind=bind or engine)
        logger.info(
            "✅ Database tables created: extraction_jobs, unconfirmed_persons, "
            "extraction_row_log, extraction_coverage"
        )
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}", exc_info=True)
        raise


def reset_database(bind=None):
    """
    Drop every pipeline table and recreate it empty (operator cleanup --reset).
    """
    target = bind or engine
    try:
        Base.metadata.drop_all(bind=target)
        logger.warning(f"Dropped tables: {', '.join(Base.metadata.tables)}")
        Base.metadata.create_all(bind=target)
        logger.info("✅ Database tables recreated")
    except Exception as e:
        logger.error(f"❌ Failed to reset database: {e}", exc_info=True)
        raise


# ==================== FastAPI Dependency ====================

def get_db():
    """FastAPI dependency to get a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

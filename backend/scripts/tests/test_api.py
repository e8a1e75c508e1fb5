"""
API tests.

Runs the FastAPI app in-process with the extraction service wired to the test
database and fake fetch / OCR back-ends.
"""
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from archivist.core.database import get_db
from archivist.main import app
from archivist.services.extraction_service import ExtractionService, get_extraction_service
from archivist.services.store import ProvenanceStore, get_provenance_store

from conftest import COMPENSATION_SCHEDULE, FakeFetcher, FakeOCREngine, schedule_structure

API_V1 = "/api/v1"
SOURCE = "https://archive.example.org/petitions/barnes.pdf"


@pytest.fixture
def client(session_factory, rules):
    ocr = FakeOCREngine(COMPENSATION_SCHEDULE)

    # One session per request, as get_db does
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_service(db=Depends(get_db)):
        return ExtractionService(db, fetcher=FakeFetcher(), ocr_engine=ocr, rules=rules,
                                 session_factory=session_factory)

    def override_store(db=Depends(get_db)):
        return ProvenanceStore(db)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_extraction_service] = override_service
    app.dependency_overrides[get_provenance_store] = override_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def create(client, **fields):
    body = {"source_url": SOURCE, "volume_id": "7", "page_number": 12, "content_structure": schedule_structure()}
    body.update(fields)
    return client.post(f"{API_V1}/extractions", json=body)


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health(client):
    response = client.get(f"{API_V1}/health")
    data = response.json()

    assert response.status_code in (200, 503)
    assert data["status"] in ("healthy", "degraded", "unhealthy")
    assert set(data["services"]) == {"database", "vision_ocr", "fallback_ocr", "browser"}


# ==================== Extractions ====================

def test_create_runs_in_background(client):
    response = create(client)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "success"
    assert body["data"]["status"] == "pending"

    # TestClient runs background tasks before returning
    extraction_id = body["data"]["extraction_id"]
    status = client.get(f"{API_V1}/extractions/{extraction_id}").json()["data"]
    assert status["status"] == "completed"
    assert status["row_count"] == 11

    rows = client.get(f"{API_V1}/extractions/{extraction_id}/rows").json()
    assert rows["message"] == "11 rows"
    assert rows["data"][0]["columns"]["Name"] == "Charles Boyd"

    log = client.get(f"{API_V1}/extractions/{extraction_id}/debug-log").json()["data"]
    assert log[-1]["stage"] == "job"


def test_invalid_request(client):
    response = client.post(f"{API_V1}/extractions", json={"source_url": ""})
    assert response.status_code == 422


def test_unknown_extraction(client):
    assert client.get(f"{API_V1}/extractions/missing").status_code == 404
    assert client.post(f"{API_V1}/extractions/missing/cancel").status_code == 404


def test_cancel_finished_job_conflicts(client):
    extraction_id = create(client).json()["data"]["extraction_id"]

    response = client.post(f"{API_V1}/extractions/{extraction_id}/cancel")
    assert response.status_code == 409


def test_manual_text_flow(client):
    extraction_id = create(client, method="manual_text").json()["data"]["extraction_id"]
    status = client.get(f"{API_V1}/extractions/{extraction_id}").json()["data"]
    assert status["status"] == "awaiting-manual-input"

    response = client.post(f"{API_V1}/extractions/{extraction_id}/manual-text", json={"text": COMPENSATION_SCHEDULE})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "completed"


def test_upload_rejects_unsupported_type(client):
    files = {"file": ("notes.txt", b"hello", "text/plain")}
    response = client.post(f"{API_V1}/extractions/upload", files=files)

    assert response.status_code == 400


def test_screenshots_rejected_when_not_waiting(client):
    extraction_id = create(client).json()["data"]["extraction_id"]
    files = [("files", ("p1.png", b"\x89PNG\r\n\x1a\n", "image/png"))]
    response = client.post(f"{API_V1}/extractions/{extraction_id}/screenshots", files=files)

    assert response.status_code == 409


# ==================== Coverage ====================

def test_coverage(client):
    create(client)
    response = client.get(f"{API_V1}/coverage", params={"source_url": SOURCE})

    assert response.status_code == 200
    [record] = response.json()["data"]
    assert record["detected_rows"] == 11
    assert record["owner_assigned"] == "Mary Ann Barnes"


def test_coverage_requires_source(client):
    assert client.get(f"{API_V1}/coverage").status_code == 422

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from archivist.models.schema import ApiResponse
from archivist.services.store import ProvenanceStore, get_provenance_store
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=ApiResponse[List[Dict[str, Any]]])
async def list_coverage(
        source_url: str = Query(..., min_length=1, description="Source the pages were extracted from"),
        store: ProvenanceStore = Depends(get_provenance_store)
):
    """Per-page coverage records (detected rows, named vs placeholder persons, owner) for a source."""
    records = store.list_coverage(source_url)
    warnings = sum(1 for r in records if r["owner_warning"])
    logger.info(f"Coverage for {source_url}: {len(records)} pages, {warnings} owner warnings")
    return ApiResponse(status="success", message=f"{len(records)} pages", data=records)

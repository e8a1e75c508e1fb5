from fastapi import APIRouter
from archivist.api.routes import coverage, extractions, health

api_router = APIRouter()
api_router.include_router(extractions.router, prefix="/extractions", tags=["extractions"])
api_router.include_router(coverage.router, prefix="/coverage", tags=["coverage"])


__all__ = ["api_router", "health"]

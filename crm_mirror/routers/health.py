"""Liveness and readiness checks for the mirror service."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..deps import get_reporter
from ..sync.progress import ProgressReporter

SERVICE_NAME = "crm_mirror"

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check(reporter: ProgressReporter = Depends(get_reporter)):
    """Ready once the mirror store answers; includes the current sync status."""
    progress = await reporter.report()
    if progress.status == "error":
        return JSONResponse(
            {"status": "unavailable", "service": SERVICE_NAME, "error": progress.error},
            status_code=503,
        )
    return {
        "status": "ready",
        "service": SERVICE_NAME,
        "sync_status": progress.status,
        "contacts": progress.count,
    }

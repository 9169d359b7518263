"""Sync routes - trigger, poll, and reset the CRM mirror sync."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..config import settings
from ..deps import get_orchestrator, get_reporter
from ..hubspot.client import HubSpotAuthError
from ..schemas.sync import SyncStartResponse
from ..sync.progress import ProgressReporter
from ..sync.sync_engine import SyncOrchestrator

router = APIRouter(tags=["sync"])

_PLACEHOLDER_TOKENS = {"", "undefined", "null"}


def resolve_token(authorization: str, body: dict | None) -> str:
    """Bearer header first, then the JSON body, then the configured private-app token."""
    header_token = authorization.strip()
    if header_token.lower().startswith("bearer "):
        header_token = header_token[7:].strip()
    if header_token not in _PLACEHOLDER_TOKENS:
        return header_token

    body = body or {}
    body_token = body.get("hubspotToken") or body.get("token") or ""
    if isinstance(body_token, str) and body_token.strip():
        return body_token.strip()
    return settings.hubspot_access_token


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@router.post("/api/sync", response_model=SyncStartResponse)
@router.post("/api/sync/start", response_model=SyncStartResponse)
async def start_sync(
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    token = resolve_token(request.headers.get("authorization", ""), await _json_body(request))
    try:
        return await orchestrator.start(token)
    except HubSpotAuthError:
        raise HTTPException(
            status_code=401,
            detail="Missing HubSpot token. Provide an Authorization header or set MIRROR_HUBSPOT_ACCESS_TOKEN.",
        )


@router.get("/api/sync")
@router.get("/api/sync/status")
async def sync_status(reporter: ProgressReporter = Depends(get_reporter)):
    progress = await reporter.report()
    status_code = 503 if progress.status == "error" else 200
    return JSONResponse(progress.model_dump(), status_code=status_code)


@router.post("/api/sync/reset")
async def reset_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    await orchestrator.reset_status()
    return {"status": "idle"}

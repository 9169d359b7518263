"""Sync request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel


class SyncStartResponse(BaseModel):
    message: str
    started: bool = False


class SyncProgress(BaseModel):
    count: int = 0
    status: str = "idle"
    error: str = ""
    last_sync_time: str | None = None


class SyncRunResult(BaseModel):
    status: str = "syncing"
    mode: str = "full"
    contacts: int = 0
    deals: int = 0
    fell_back_to_full: bool = False
    error: str = ""

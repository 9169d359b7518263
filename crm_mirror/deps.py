"""FastAPI dependencies for the process-wide sync components."""

from __future__ import annotations

from .database import async_session_factory
from .sync.progress import ProgressReporter
from .sync.store import MirrorStore
from .sync.sync_engine import SyncOrchestrator

# One orchestrator per process: its guard is what keeps runs exclusive.
_store = MirrorStore(async_session_factory)
_orchestrator = SyncOrchestrator(_store)
_reporter = ProgressReporter(_store)


def get_store() -> MirrorStore:
    return _store


def get_orchestrator() -> SyncOrchestrator:
    return _orchestrator


def get_reporter() -> ProgressReporter:
    return _reporter

"""Read-only sync progress for UI polling."""

from __future__ import annotations

import logging

from ..schemas.sync import SyncProgress
from .store import MirrorStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class ProgressReporter:
    def __init__(self, store: MirrorStore):
        self.store = store

    async def report(self) -> SyncProgress:
        """Current contact count and status; an unreachable store yields ``status="error"``."""
        try:
            status = await self.store.get_status()
        except StoreUnavailableError as e:
            logger.warning("Sync progress unavailable: %s", e)
            return SyncProgress(count=0, status="error", error=str(e))

        return SyncProgress(
            count=status.count,
            status=status.status,
            error=status.error,
            last_sync_time=status.last_sync_time,
        )

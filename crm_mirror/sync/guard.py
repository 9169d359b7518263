"""Single-slot in-process lock guarding the sync pipeline."""

from __future__ import annotations


class SyncGuard:
    """At most one holder at a time within this process.

    Not shared across processes or replicas: two service instances each get
    their own guard and may run pipelines against the same mirror.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        """Take the slot if free. Never blocks."""
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False

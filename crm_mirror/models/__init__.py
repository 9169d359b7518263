"""Mirror models - re-exports all models and Base.metadata."""

from .base import Base, CreatedAtMixin
from .sync_state import SyncState
from .contact import MirrorContact
from .deal import MirrorDeal
from .sync_log import SyncLog

__all__ = [
    "Base",
    "CreatedAtMixin",
    "SyncState",
    "MirrorContact",
    "MirrorDeal",
    "SyncLog",
]

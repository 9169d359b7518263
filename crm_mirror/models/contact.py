"""Mirrored HubSpot contact."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, CreatedAtMixin


class MirrorContact(CreatedAtMixin, Base):
    __tablename__ = "contacts"

    # Remote object id, never generated locally.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    firstname: Mapped[str | None] = mapped_column(String(255), default=None)
    lastname: Mapped[str | None] = mapped_column(String(255), default=None)
    lifecyclestage: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    hubspot_owner_id: Mapped[str | None] = mapped_column(String(64), default=None)
    health_score: Mapped[float | None] = mapped_column(Numeric(5, 2), default=None)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    raw_data: Mapped[dict | None] = mapped_column(JSON, default=None)

    def __repr__(self) -> str:
        return f"<MirrorContact {self.id} {self.email!r}>"

"""Mirrored HubSpot deal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, CreatedAtMixin


class MirrorDeal(CreatedAtMixin, Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dealname: Mapped[str | None] = mapped_column(String(255), default=None)
    amount: Mapped[float | None] = mapped_column(Numeric, default=None)
    dealstage: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    pipeline: Mapped[str | None] = mapped_column(String(100), default=None)
    closedate: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    # Associated contact by value; no foreign key since deals may sync before their contact.
    contact_id: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    raw_data: Mapped[dict | None] = mapped_column(JSON, default=None)

    def __repr__(self) -> str:
        return f"<MirrorDeal {self.id} {self.dealname!r}>"

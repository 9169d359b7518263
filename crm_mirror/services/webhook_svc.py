"""HubSpot webhook side-channel updates to the mirror.

Webhooks only touch the columns they carry; the next sync pass replaces the
whole row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.contact import MirrorContact

logger = logging.getLogger(__name__)

CREATION_EVENTS = {"contact.creation", "object.creation"}
PLACEHOLDER_LIFECYCLE_STAGE = "subscriber"


def normalize_events(payload: Any) -> list[dict[str, Any]]:
    """HubSpot posts a list of events; accept a single object too."""
    items = payload if isinstance(payload, list) else [payload]
    return [item for item in items if isinstance(item, dict)]


async def apply_contact_events(db: AsyncSession, events: list[dict[str, Any]]) -> int:
    """Apply lifecycle changes and seed newly created contacts. Returns events applied."""
    applied = 0
    now = datetime.now(timezone.utc)

    for event in events:
        subscription = event.get("subscriptionType")
        object_id = event.get("objectId")
        if object_id is None:
            continue
        contact_id = str(object_id)

        if subscription == "contact.propertyChange" and event.get("propertyName") == "lifecyclestage":
            logger.info("Lifecycle stage for contact %s -> %s", contact_id, event.get("propertyValue"))
            await db.execute(
                update(MirrorContact)
                .where(MirrorContact.id == contact_id)
                .values(lifecyclestage=event.get("propertyValue"), last_modified=now)
            )
            applied += 1
        elif subscription in CREATION_EVENTS:
            # Placeholder until the next sync fetches the full record.
            if await db.get(MirrorContact, contact_id) is None:
                logger.info("New contact %s seeded from webhook", contact_id)
                db.add(
                    MirrorContact(
                        id=contact_id,
                        lifecyclestage=PLACEHOLDER_LIFECYCLE_STAGE,
                        last_modified=now,
                    )
                )
            applied += 1

    await db.commit()
    return applied

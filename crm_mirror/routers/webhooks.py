"""HubSpot webhook receiver."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..services.webhook_svc import apply_contact_events, normalize_events

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/hubspot")
async def hubspot_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    # HubSpot retries anything but a 2xx, so failures are reported in the body.
    try:
        events = normalize_events(await request.json())
        processed = await apply_contact_events(db, events)
    except Exception as e:
        logger.exception("HubSpot webhook processing failed")
        return {"error": str(e)}
    return {"success": True, "processed": processed}

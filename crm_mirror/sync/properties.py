"""Contact property discovery.

HubSpot portals drift: properties get archived or renamed, and asking the
list endpoint for a property that no longer exists is a hard 400 that would
abort the whole sync. The mirror therefore requests the intersection of a
fixed allow-list with whatever the portal currently defines.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from ..hubspot.client import HubSpotClient, request_with_retry

logger = logging.getLogger(__name__)

CORE_CONTACT_PROPERTIES: tuple[str, ...] = (
    # Identity
    "email",
    "firstname",
    "lastname",
    "company",
    "jobtitle",
    "phone",
    "hubspot_owner_id",
    # Lifecycle
    "lifecyclestage",
    "hs_lead_status",
    "membership_type",
    "membership_status",
    # Analytics / attribution
    "hs_analytics_source",
    "hs_analytics_source_data_1",
    "hs_analytics_source_data_2",
    "hs_analytics_first_url",
    "hs_analytics_last_visit_timestamp",
    "first_conversion_event_name",
    "recent_conversion_event_name",
    # Engagement counters
    "hs_analytics_num_page_views",
    "hs_analytics_num_visits",
    "num_conversion_events",
    "num_associated_deals",
    "hs_email_bounce",
    "hs_email_last_open_date",
    "notes_last_updated",
    # Timestamps
    "createdate",
    "lastmodifieddate",
)

DEAL_PROPERTIES: tuple[str, ...] = (
    "dealname",
    "amount",
    "dealstage",
    "pipeline",
    "closedate",
    "createdate",
    "hs_lastmodifieddate",
    "hubspot_owner_id",
)


def intersect_properties(core: Iterable[str], available: Iterable[str]) -> list[str]:
    """Keep the allow-list entries the portal still defines, in allow-list order."""
    defined = set(available)
    return [name for name in core if name in defined]


async def discover_contact_properties(
    client: HubSpotClient,
    core: Iterable[str] = CORE_CONTACT_PROPERTIES,
    max_retries: int = 3,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """Return the comma-joined contact properties to request.

    Falls back to the whole allow-list when the metadata endpoint cannot be
    read.
    """
    core = list(core)
    try:
        definitions = await request_with_retry(
            lambda: client.list_properties("contacts"),
            "contact property metadata",
            max_retries=max_retries,
            sleep=sleep,
        )
    except Exception as e:
        logger.warning("Property discovery failed (%s); requesting full allow-list", e)
        return ",".join(core)

    available = [d.get("name") for d in definitions if isinstance(d.get("name"), str)]
    selected = intersect_properties(core, available)
    dropped = len(core) - len(selected)
    if dropped:
        logger.info("Property discovery dropped %d allow-listed properties not defined remotely", dropped)
    return ",".join(selected)

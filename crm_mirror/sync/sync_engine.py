"""Sync orchestrator - keeps the local contacts/deals mirror in step with HubSpot.

A run is started with ``SyncOrchestrator.start`` and executes as a background
task; its outcome is observable only through the persisted sync status.

Run shape:
1. Contacts: delta search on ``lastmodifieddate`` when a previous run left a
   usable ``last_sync_time``, otherwise (or when the delta search fails) a
   full crawl of the contacts list.
2. Deals: always a full crawl, after contacts finish.
3. ``completed`` and a fresh ``last_sync_time``, or ``failed`` with a
   diagnostic message.

Every page is upserted as soon as it arrives, so a failed run keeps the
progress it made.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable

import httpx

from ..config import MirrorSettings, settings
from ..hubspot.client import (
    HubSpotAuthError,
    HubSpotClient,
    HubSpotError,
    Page,
    failure_code,
    is_retriable,
    request_with_retry,
)
from ..schemas.sync import SyncRunResult, SyncStartResponse
from .errors import describe_error
from .guard import SyncGuard
from .properties import DEAL_PROPERTIES, discover_contact_properties
from .store import MirrorStore, SyncStatus, parse_timestamp

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], HubSpotClient]


class PageLimitExceeded(Exception):
    """A crawl hit `sync_max_pages` before the remote ran out of pages."""

    pass


def default_client_factory(token: str) -> HubSpotClient:
    return HubSpotClient(
        token,
        base_url=settings.hubspot_base_url,
        timeout=settings.hubspot_timeout_seconds,
    )


def delta_can_fall_back(exc: BaseException) -> bool:
    """Delta failures that warrant a full crawl instead of aborting the run.

    Includes 400, which the search endpoint returns for filters it rejects.
    """
    if is_retriable(exc):
        return True
    if isinstance(exc, HubSpotError):
        return exc.status_code == 400
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 400
    return False


def delta_filter_groups(since: datetime) -> list[dict[str, Any]]:
    since_ms = int(since.timestamp() * 1000)
    return [
        {
            "filters": [
                {
                    "propertyName": "lastmodifieddate",
                    "operator": "GREATER_THAN",
                    "value": str(since_ms),
                }
            ]
        }
    ]


class SyncOrchestrator:
    """Owns the sync guard and drives contact and deal pagination."""

    def __init__(
        self,
        store: MirrorStore,
        client_factory: ClientFactory | None = None,
        config: MirrorSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.guard = SyncGuard()
        self.task: asyncio.Task | None = None
        self._client_factory = client_factory or default_client_factory
        self._settings = config or settings
        self._sleep = sleep

    @property
    def is_syncing(self) -> bool:
        return self.guard.locked

    async def start(self, token: str | None) -> SyncStartResponse:
        """Trigger a background run and return without waiting for it.

        Calling this while a run is active is a no-op. A missing token raises
        HubSpotAuthError to the caller.
        """
        if not token:
            raise HubSpotAuthError("Missing HubSpot token", 401)

        if not self.guard.try_acquire():
            return SyncStartResponse(message="Sync already in progress", started=False)

        try:
            await self.store.set_status(SyncStatus.SYNCING)
        except Exception:
            self.guard.release()
            raise

        self.task = asyncio.create_task(self.run(token), name="crm-mirror-sync")
        return SyncStartResponse(message="Deep sync initiated in background", started=True)

    async def reset_status(self) -> None:
        """Force the status back to idle, for recovering a run stuck in ``syncing``."""
        if self.guard.locked:
            logger.warning("Resetting sync status while a run is still active in this process")
        await self.store.set_status(SyncStatus.IDLE)

    async def run(self, token: str) -> SyncRunResult:
        """Pipeline body. Never raises; the outcome is persisted as sync status."""
        result = SyncRunResult()
        try:
            async with self._client_factory(token) as client:
                await self._sync_contacts(client, result)
                await self._sync_deals(client, result)
            await self.store.set_status(SyncStatus.COMPLETED)
            result.status = SyncStatus.COMPLETED.value
            logger.info(
                "CRM mirror sync completed (%s): %d contacts, %d deals",
                result.mode,
                result.contacts,
                result.deals,
            )
        except Exception as e:
            message = describe_error(e)
            result.status = SyncStatus.FAILED.value
            result.error = message
            logger.exception("CRM mirror sync failed: %s", message)
            try:
                await self.store.set_status(SyncStatus.FAILED, message)
            except Exception:
                logger.exception("Could not persist failed sync status")
        finally:
            self.guard.release()

        await self._record(result)
        return result

    async def _record(self, result: SyncRunResult) -> None:
        try:
            await self.store.record_run(
                result.status,
                mode=result.mode,
                records_synced=result.contacts + result.deals,
                message=result.error,
            )
        except Exception as e:
            logger.warning("Could not write sync log: %s", e)

    async def _paginate(
        self,
        fetch: Callable[[str | None], Awaitable[Page]],
        label: str,
        upsert: Callable[[list[dict[str, Any]]], Awaitable[int]],
        delay_for: Callable[[Page], float],
    ) -> int:
        """Fetch pages until an empty page or a missing cursor, upserting each one.

        Raises PageLimitExceeded when ``sync_max_pages`` runs out while a cursor
        is still pending.
        """
        total = 0
        after: str | None = None
        for _ in range(self._settings.sync_max_pages):
            page = await request_with_retry(
                partial(fetch, after),
                label,
                max_retries=self._settings.sync_max_retries,
                sleep=self._sleep,
            )
            if not page.results:
                break

            total += await upsert(page.results)
            logger.info("Synced %d %s...", total, label)

            if not page.next_after:
                break
            after = page.next_after
            await self._sleep(delay_for(page))
        else:
            raise PageLimitExceeded(
                f"Page cap reached: stopped {label} after {self._settings.sync_max_pages} pages "
                "with a cursor still pending"
            )
        return total

    async def _sync_contacts(self, client: HubSpotClient, result: SyncRunResult) -> None:
        properties = await discover_contact_properties(
            client,
            max_retries=self._settings.sync_max_retries,
            sleep=self._sleep,
        )

        since = parse_timestamp(await self.store.get_last_sync_time())
        needs_full_sync = since is None

        if since is not None:
            result.mode = "delta"
            logger.info("Starting delta contact sync since %s", since.isoformat())
            try:
                result.contacts += await self._delta_contacts(client, since, properties)
            except Exception as e:
                if not delta_can_fall_back(e):
                    raise
                logger.warning("Delta sync failed (%s); falling back to full sync", failure_code(e))
                needs_full_sync = True
                result.fell_back_to_full = True

        if needs_full_sync:
            result.mode = "full"
            logger.info("Starting full contact sync")
            result.contacts += await self._full_contacts(client, properties)

    async def _delta_contacts(self, client: HubSpotClient, since: datetime, properties: str) -> int:
        filter_groups = delta_filter_groups(since)
        property_list = [p for p in properties.split(",") if p]

        async def fetch(after: str | None) -> Page:
            return await client.search_objects(
                "contacts",
                filter_groups=filter_groups,
                properties=property_list,
                limit=self._settings.sync_page_size,
                after=after,
            )

        return await self._paginate(
            fetch,
            "contacts (delta)",
            self.store.upsert_contacts,
            lambda page: self._settings.sync_delta_page_delay,
        )

    def _full_page_delay(self, page: Page) -> float:
        remaining = page.rate_limit_remaining
        if remaining is not None and remaining > self._settings.sync_rate_limit_threshold:
            return self._settings.sync_fast_page_delay
        return self._settings.sync_slow_page_delay

    async def _full_contacts(self, client: HubSpotClient, properties: str) -> int:
        async def fetch(after: str | None) -> Page:
            return await client.list_objects(
                "contacts",
                limit=self._settings.sync_page_size,
                after=after,
                properties=properties,
            )

        return await self._paginate(fetch, "contacts", self.store.upsert_contacts, self._full_page_delay)

    async def _sync_deals(self, client: HubSpotClient, result: SyncRunResult) -> None:
        async def fetch(after: str | None) -> Page:
            return await client.list_objects(
                "deals",
                limit=self._settings.sync_page_size,
                after=after,
                properties=list(DEAL_PROPERTIES),
                associations="contacts",
            )

        result.deals += await self._paginate(
            fetch,
            "deals",
            self.store.upsert_deals,
            lambda page: self._settings.sync_deal_page_delay,
        )

"""Tests for the sync orchestrator: strategy selection, pagination, guard, and status."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import func, select

from crm_mirror.hubspot.client import HubSpotAuthError, HubSpotError
from crm_mirror.models import MirrorContact, MirrorDeal, SyncLog
from crm_mirror.sync.store import SyncStatus, parse_timestamp
from crm_mirror.sync.sync_engine import delta_can_fall_back, delta_filter_groups
from crm_mirror.tests.hubspot_fakes import (
    TEST_TOKEN,
    error_response,
    make_contact,
    make_deal,
    page_response,
)

CONTACTS = "/crm/v3/objects/contacts"
SEARCH = "/crm/v3/objects/contacts/search"
DEALS = "/crm/v3/objects/deals"


def _contacts(start: int, n: int) -> list[dict]:
    return [make_contact(i) for i in range(start, start + n)]


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _start_and_wait(orchestrator, token: str = TEST_TOKEN):
    response = await orchestrator.start(token)
    assert response.started is True
    return await orchestrator.task


@pytest.mark.asyncio
async def test_end_to_end_full_sync(orchestrator, hubspot, store, db):
    run_started = datetime.now(timezone.utc)
    hubspot.contact_pages = [
        page_response(_contacts(0, 100), after="100", remaining=90),
        page_response(_contacts(100, 100), after="200", remaining=90),
        page_response(_contacts(200, 37)),
    ]
    hubspot.deal_pages = [page_response([make_deal(i, contact_id=str(i)) for i in range(10)])]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert result.mode == "full"
    assert result.contacts == 237
    assert result.deals == 10
    assert await _count(db, MirrorContact) == 237
    assert await _count(db, MirrorDeal) == 10

    status = await store.get_status()
    assert status.status == "completed"
    assert status.count == 237
    assert parse_timestamp(status.last_sync_time) >= run_started

    assert len(hubspot.requests_to(CONTACTS)) == 3
    assert len(hubspot.requests_to(DEALS)) == 1
    assert hubspot.requests_to(SEARCH) == []
    assert not orchestrator.is_syncing


@pytest.mark.asyncio
async def test_full_sync_requests_discovered_properties(orchestrator, hubspot):
    hubspot.properties = ["email", "lastmodifieddate", "not_in_allow_list"]
    hubspot.contact_pages = [page_response(_contacts(0, 2))]

    await _start_and_wait(orchestrator)

    request = hubspot.requests_to(CONTACTS)[0]
    assert request.url.params["properties"] == "email,lastmodifieddate"
    assert request.url.params["limit"] == "100"
    assert "after" not in request.url.params


@pytest.mark.asyncio
async def test_pagination_follows_cursor_and_stops_on_empty_page(orchestrator, hubspot, store, monkeypatch):
    upserts: list[int] = []
    original = store.upsert_contacts

    async def spy(batch):
        upserts.append(len(batch))
        return await original(batch)

    monkeypatch.setattr(store, "upsert_contacts", spy)
    hubspot.contact_pages = [
        page_response(_contacts(0, 5), after="a"),
        page_response(_contacts(5, 5), after="b"),
        page_response(_contacts(10, 5), after="c"),
        page_response([], after="d"),
    ]

    await _start_and_wait(orchestrator)

    assert upserts == [5, 5, 5]
    contact_requests = hubspot.requests_to(CONTACTS)
    assert len(contact_requests) == 4
    assert [r.url.params.get("after") for r in contact_requests] == [None, "a", "b", "c"]


@pytest.mark.asyncio
async def test_full_sync_delay_adapts_to_rate_limit(orchestrator, hubspot, sleeper):
    hubspot.contact_pages = [
        page_response(_contacts(0, 3), after="p2", remaining=120),
        page_response(_contacts(3, 3), after="p3", remaining=12),
        page_response(_contacts(6, 3), after="p4"),
        page_response(_contacts(9, 3)),
    ]
    hubspot.deal_pages = [
        page_response([make_deal(1)], after="d2"),
        page_response([make_deal(2)]),
    ]

    await _start_and_wait(orchestrator)

    assert sleeper.calls == pytest.approx([0.05, 0.25, 0.25, 0.1])


@pytest.mark.asyncio
async def test_deals_store_first_associated_contact(orchestrator, hubspot, db):
    hubspot.deal_pages = [page_response([make_deal(1, contact_id="42"), make_deal(2)])]

    await _start_and_wait(orchestrator)

    deals = {d.id: d for d in (await db.execute(select(MirrorDeal))).scalars().all()}
    assert deals["1"].contact_id == "42"
    assert deals["2"].contact_id is None
    request = hubspot.requests_to(DEALS)[0]
    assert request.url.params["associations"] == "contacts"
    assert "dealname" in request.url.params["properties"].split(",")


@pytest.mark.asyncio
async def test_delta_sync_uses_last_sync_time(orchestrator, hubspot, store):
    await store.set_status(SyncStatus.COMPLETED)
    last_sync = parse_timestamp(await store.get_last_sync_time())
    hubspot.search_pages = [
        page_response(_contacts(0, 2), after="s2"),
        page_response(_contacts(2, 1)),
    ]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert result.mode == "delta"
    assert result.contacts == 3
    assert hubspot.requests_to(CONTACTS) == []

    searches = hubspot.requests_to(SEARCH)
    assert len(searches) == 2
    first, second = (json.loads(r.content) for r in searches)
    flt = first["filterGroups"][0]["filters"][0]
    assert flt["propertyName"] == "lastmodifieddate"
    assert flt["operator"] == "GREATER_THAN"
    assert int(flt["value"]) == int(last_sync.timestamp() * 1000)
    assert "after" not in first
    assert second["after"] == "s2"
    # Deals always follow contacts.
    assert len(hubspot.requests_to(DEALS)) == 1


@pytest.mark.asyncio
async def test_delta_400_falls_back_to_full_sync(orchestrator, hubspot, store, db):
    await store.set_status(SyncStatus.COMPLETED)
    hubspot.search_pages = [error_response(400, message="Invalid filter")]
    hubspot.contact_pages = [page_response(_contacts(0, 4))]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert result.fell_back_to_full is True
    assert result.mode == "full"
    assert await _count(db, MirrorContact) == 4
    assert (await store.get_status()).status == "completed"


@pytest.mark.asyncio
async def test_delta_exhausted_retries_fall_back_to_full_sync(orchestrator, hubspot, sleeper):
    await orchestrator.store.set_status(SyncStatus.COMPLETED)
    hubspot.search_pages = [error_response(503) for _ in range(4)]
    hubspot.contact_pages = [page_response(_contacts(0, 1))]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert result.fell_back_to_full is True
    assert len(hubspot.requests_to(SEARCH)) == 4
    assert sleeper.calls[:3] == pytest.approx([0.5, 1.0, 2.0])


@pytest.mark.asyncio
async def test_delta_auth_failure_aborts_run(orchestrator, hubspot, store):
    await store.set_status(SyncStatus.COMPLETED)
    hubspot.search_pages = [error_response(403, message="Missing scopes")]

    result = await _start_and_wait(orchestrator)

    assert result.status == "failed"
    assert hubspot.requests_to(CONTACTS) == []
    assert hubspot.requests_to(DEALS) == []
    status = await store.get_status()
    assert status.status == "failed"
    assert "HTTP 403" in status.error
    assert "Missing scopes" in status.error


@pytest.mark.asyncio
async def test_unparseable_last_sync_time_runs_full_sync(orchestrator, hubspot, store, session_factory):
    from crm_mirror.models import SyncState

    async with session_factory() as session, session.begin():
        session.add(SyncState(key="last_sync_time", value="not-a-date"))
    hubspot.contact_pages = [page_response(_contacts(0, 1))]

    result = await _start_and_wait(orchestrator)

    assert result.mode == "full"
    assert hubspot.requests_to(SEARCH) == []


@pytest.mark.asyncio
async def test_second_start_is_rejected_while_running(orchestrator, hubspot, db):
    hubspot.contact_pages = [page_response(_contacts(0, 3))]

    first, second = await asyncio.gather(orchestrator.start(TEST_TOKEN), orchestrator.start(TEST_TOKEN))
    await orchestrator.task

    assert first.started is True
    assert second.started is False
    assert second.message == "Sync already in progress"
    assert len(hubspot.requests_to(CONTACTS)) == 1
    assert len(hubspot.requests_to(DEALS)) == 1
    assert await _count(db, MirrorContact) == 3


@pytest.mark.asyncio
async def test_start_returns_before_pipeline_finishes(orchestrator, hubspot):
    hubspot.contact_pages = [page_response(_contacts(0, 1))]

    response = await orchestrator.start(TEST_TOKEN)

    assert response.started is True
    assert orchestrator.is_syncing
    assert not orchestrator.task.done()
    await orchestrator.task
    assert not orchestrator.is_syncing


@pytest.mark.asyncio
async def test_failure_releases_guard_and_allows_new_run(orchestrator, hubspot, store):
    hubspot.contact_pages = [page_response(_contacts(0, 2))]
    hubspot.deal_pages = [error_response(401, message="Authentication credentials not found")]

    result = await _start_and_wait(orchestrator)

    assert result.status == "failed"
    assert not orchestrator.is_syncing
    status = await store.get_status()
    assert status.status == "failed"
    assert "HTTP 401" in status.error
    # Contacts written before the failure stay in the mirror.
    assert status.count == 2
    assert status.last_sync_time is None

    hubspot.contact_pages = [page_response(_contacts(0, 2))]
    retry = await _start_and_wait(orchestrator)
    assert retry.status == "completed"
    assert (await store.get_status()).status == "completed"


@pytest.mark.asyncio
async def test_store_failure_mid_run_marks_failed(orchestrator, hubspot, store, monkeypatch):
    async def broken(batch):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "upsert_contacts", broken)
    hubspot.contact_pages = [page_response(_contacts(0, 2))]

    result = await _start_and_wait(orchestrator)

    assert result.status == "failed"
    assert "disk full" in result.error
    assert not orchestrator.is_syncing
    assert (await store.get_status()).status == "failed"


@pytest.mark.asyncio
async def test_start_without_token_raises_and_leaves_status(orchestrator, store):
    with pytest.raises(HubSpotAuthError):
        await orchestrator.start("")

    assert not orchestrator.is_syncing
    assert orchestrator.task is None
    assert (await store.get_status()).status == "idle"


@pytest.mark.asyncio
async def test_reset_recovers_stuck_run(orchestrator, hubspot, store):
    # A crashed process leaves "syncing" behind with no live guard.
    await store.set_status(SyncStatus.SYNCING)
    assert not orchestrator.is_syncing

    await orchestrator.reset_status()
    assert (await store.get_status()).status == "idle"

    hubspot.contact_pages = [page_response(_contacts(0, 1))]
    result = await _start_and_wait(orchestrator)
    assert result.status == "completed"


@pytest.mark.asyncio
async def test_each_run_is_logged(orchestrator, hubspot, db):
    hubspot.contact_pages = [page_response(_contacts(0, 3))]
    hubspot.deal_pages = [page_response([make_deal(1)])]

    await _start_and_wait(orchestrator)

    logs = (await db.execute(select(SyncLog))).scalars().all()
    assert [(log.status, log.mode, log.records_synced) for log in logs] == [("completed", "full", 4)]


@pytest.mark.asyncio
async def test_transient_page_failure_is_retried_without_duplicates(orchestrator, hubspot, sleeper, db):
    hubspot.contact_pages = [
        page_response(_contacts(0, 2), after="p2"),
        error_response(502),
        page_response(_contacts(0, 2)),
    ]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert await _count(db, MirrorContact) == 2
    assert 0.5 in sleeper.calls


def test_delta_fallback_classification():
    assert delta_can_fall_back(HubSpotError("bad filter", 400))
    assert delta_can_fall_back(HubSpotError("busy", 503))
    assert delta_can_fall_back(httpx.ConnectError("dns"))
    assert not delta_can_fall_back(HubSpotError("forbidden", 403))
    assert not delta_can_fall_back(RuntimeError("bug"))


def test_delta_filter_uses_epoch_millis():
    since = datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
    flt = delta_filter_groups(since)[0]["filters"][0]
    assert flt == {"propertyName": "lastmodifieddate", "operator": "GREATER_THAN", "value": "1705312800000"}


def test_guard_is_single_slot():
    from crm_mirror.sync.guard import SyncGuard

    guard = SyncGuard()
    assert guard.try_acquire()
    assert not guard.try_acquire()
    assert guard.locked
    guard.release()
    assert not guard.locked
    assert guard.try_acquire()


@pytest.mark.asyncio
async def test_page_cap_fails_run_instead_of_truncating(orchestrator, hubspot, store, mirror_settings, db):
    mirror_settings.sync_max_pages = 2
    hubspot.contact_pages = [
        page_response(_contacts(0, 1), after="a"),
        page_response(_contacts(1, 1), after="b"),
        page_response(_contacts(2, 1)),
    ]

    result = await _start_and_wait(orchestrator)

    assert result.status == "failed"
    assert "Page cap reached" in result.error
    assert len(hubspot.requests_to(CONTACTS)) == 2
    assert hubspot.requests_to(DEALS) == []
    assert await _count(db, MirrorContact) == 2

    status = await store.get_status()
    assert status.status == "failed"
    assert "Page cap reached" in status.error
    assert status.last_sync_time is None
    assert not orchestrator.is_syncing


@pytest.mark.asyncio
async def test_page_cap_not_hit_when_last_page_ends_crawl(orchestrator, hubspot, mirror_settings):
    mirror_settings.sync_max_pages = 2
    hubspot.contact_pages = [
        page_response(_contacts(0, 1), after="a"),
        page_response(_contacts(1, 1)),
    ]

    result = await _start_and_wait(orchestrator)

    assert result.status == "completed"
    assert result.contacts == 2

"""Mirror store: idempotent persistence of HubSpot records and sync state.

Each upsert batch is one transaction. A row that fails to write rolls the
whole batch back and the error propagates; callers treat that as fatal for
the run rather than retrying the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.contact import MirrorContact
from ..models.deal import MirrorDeal
from ..models.sync_log import SyncLog
from ..models.sync_state import SyncState

logger = logging.getLogger(__name__)

STATUS_KEY = "sync_status"
LAST_SYNC_KEY = "last_sync_time"
ERROR_KEY = "sync_error"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class StoreUnavailableError(Exception):
    """The mirror database could not be reached."""

    pass


@dataclass
class StoreStatus:
    count: int = 0
    status: str = SyncStatus.IDLE.value
    error: str = ""
    last_sync_time: str | None = None
    updated_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch-milliseconds value; None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def first_associated_contact_id(deal: dict[str, Any]) -> str | None:
    """Return the id of the first contact associated with a deal, if any."""
    associations = deal.get("associations") or {}
    contacts = associations.get("contacts") if isinstance(associations, dict) else None
    results = (contacts or {}).get("results") or []
    for item in results:
        if isinstance(item, dict) and item.get("id") is not None:
            return str(item["id"])
    return None


def _require_id(obj: dict[str, Any]) -> str:
    object_id = obj.get("id")
    if object_id is None or object_id == "":
        raise ValueError(f"Remote object without id: {obj!r:.200}")
    return str(object_id)


def contact_row(contact: dict[str, Any], ingested_at: datetime | None = None) -> dict[str, Any]:
    """Project a remote contact onto mirror columns."""
    props = contact.get("properties") or {}
    last_modified = (
        parse_timestamp(contact.get("updatedAt"))
        or parse_timestamp(props.get("lastmodifieddate"))
        or ingested_at
        or _utcnow()
    )
    return {
        "id": _require_id(contact),
        "email": props.get("email") or None,
        "firstname": props.get("firstname") or None,
        "lastname": props.get("lastname") or None,
        "lifecyclestage": props.get("lifecyclestage") or None,
        "hubspot_owner_id": props.get("hubspot_owner_id") or None,
        "last_modified": last_modified,
        "raw_data": contact,
    }


def deal_row(deal: dict[str, Any], ingested_at: datetime | None = None) -> dict[str, Any]:
    """Project a remote deal onto mirror columns."""
    props = deal.get("properties") or {}
    last_modified = (
        parse_timestamp(deal.get("updatedAt"))
        or parse_timestamp(props.get("hs_lastmodifieddate"))
        or ingested_at
        or _utcnow()
    )
    return {
        "id": _require_id(deal),
        "dealname": props.get("dealname") or None,
        "amount": _parse_number(props.get("amount")),
        "dealstage": props.get("dealstage") or None,
        "pipeline": props.get("pipeline") or None,
        "closedate": parse_timestamp(props.get("closedate")),
        "last_modified": last_modified,
        "contact_id": first_associated_contact_id(deal),
        "raw_data": deal,
    }


def _dedupe_by_id(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    # A single ON CONFLICT statement cannot touch the same key twice.
    by_id: dict[str, dict[str, Any]] = {}
    for row in rows:
        by_id[row["id"]] = row
    return list(by_id.values())


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")


class MirrorStore:
    """Adapter over the mirror tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _upsert(self, model, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        rows = _dedupe_by_id(rows)
        replace = [c.name for c in model.__table__.columns if c.name not in ("id", "created_at", "health_score")]

        async with self._session_factory() as session, session.begin():
            insert = _insert_for(session)
            stmt = insert(model).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[model.__table__.c.id],
                set_={name: stmt.excluded[name] for name in replace},
            )
            await session.execute(stmt)
        return len(rows)

    async def upsert_contacts(self, batch: list[dict[str, Any]]) -> int:
        """Insert or fully replace contacts keyed by remote id."""
        now = _utcnow()
        return await self._upsert(MirrorContact, [contact_row(c, now) for c in batch])

    async def upsert_deals(self, batch: list[dict[str, Any]]) -> int:
        """Insert or fully replace deals keyed by remote id."""
        now = _utcnow()
        return await self._upsert(MirrorDeal, [deal_row(d, now) for d in batch])

    async def _write_state(self, session: AsyncSession, values: dict[str, str]) -> None:
        now = _utcnow()
        insert = _insert_for(session)
        stmt = insert(SyncState).values(
            [{"key": key, "value": value, "updated_at": now} for key, value in values.items()]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncState.__table__.c.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        await session.execute(stmt)

    async def set_status(self, status: SyncStatus | str, message: str = "") -> None:
        """Persist the sync status; ``completed`` also stamps the last sync time."""
        status = SyncStatus(status)
        values = {
            STATUS_KEY: status.value,
            ERROR_KEY: message if status is SyncStatus.FAILED else "",
        }
        if status is SyncStatus.COMPLETED:
            values[LAST_SYNC_KEY] = _utcnow().isoformat()

        async with self._session_factory() as session, session.begin():
            await self._write_state(session, values)

    async def get_last_sync_time(self) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(SyncState, LAST_SYNC_KEY)
            return row.value if row and row.value else None

    async def get_status(self) -> StoreStatus:
        """Return the contact count and current status.

        Raises StoreUnavailableError when the database cannot be queried, so
        "never synced" and "cannot tell" stay distinguishable.
        """
        try:
            async with self._session_factory() as session:
                count = (
                    await session.execute(select(func.count()).select_from(MirrorContact))
                ).scalar_one()
                rows = (
                    await session.execute(
                        select(SyncState).where(SyncState.key.in_((STATUS_KEY, LAST_SYNC_KEY, ERROR_KEY)))
                    )
                ).scalars().all()
        except (DBAPIError, OSError) as e:
            raise StoreUnavailableError(f"Mirror store unavailable: {e}") from e

        state = {row.key: row for row in rows}
        status_row = state.get(STATUS_KEY)
        last_sync_row = state.get(LAST_SYNC_KEY)
        error_row = state.get(ERROR_KEY)
        return StoreStatus(
            count=int(count or 0),
            status=(status_row.value if status_row and status_row.value else SyncStatus.IDLE.value),
            error=(error_row.value or "") if error_row else "",
            last_sync_time=last_sync_row.value if last_sync_row else None,
            updated_at=status_row.updated_at if status_row else None,
        )

    async def set_health_score(self, contact_id: str, score: float) -> bool:
        """Persist an externally computed health score. Returns False if the contact is unknown."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(MirrorContact)
                .where(MirrorContact.id == contact_id)
                .values(health_score=score)
            )
        return bool(result.rowcount)

    async def record_run(
        self,
        status: SyncStatus | str,
        *,
        mode: str | None = None,
        records_synced: int = 0,
        message: str = "",
    ) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                SyncLog(
                    status=SyncStatus(status).value,
                    mode=mode,
                    records_synced=records_synced,
                    message=message or None,
                )
            )

"""
Remote API clients used by the sync engine to replay queued operations.

Two clients satisfy ``SyncApiClient``:

* ``HttpApiClient`` talks to the calendar server's web API over httpx,
  sending form-encoded bodies exactly like the browser does.
* ``TransportApiClient`` adapts any host-supplied ``Transport`` (for example
  a desktop IPC bridge) that already speaks ``CreateEntryPayload``.
"""

import logging
from typing import Protocol

import httpx

from calendsync_offline.models import DEFAULT_BASE_URL
from calendsync_offline.models import FULL_SYNC_BUFFER_DAYS
from calendsync_offline.models import ApiError
from calendsync_offline.models import CreateEntryPayload
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import EntryType
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import derive_entry_type_from_flags

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"


def build_create_payload(payload: EntryPayload, calendar_id: str) -> CreateEntryPayload:
    """Turn a partial entry into the request body every transport sends.

    Defaults: a missing title is sent as "", the date is ``start_date`` (or ""),
    the entry type is derived from the is_* flags, and ``all_day`` follows
    ``is_all_day`` when it was given, otherwise the derived type.
    """
    entry_type = derive_entry_type_from_flags(payload)
    all_day = payload.is_all_day if payload.is_all_day is not None else (
        entry_type is EntryType.ALL_DAY
    )
    end_date = payload.end_date if entry_type is EntryType.MULTI_DAY else None
    return CreateEntryPayload(
        calendar_id=calendar_id,
        title=payload.title or "",
        date=payload.start_date or "",
        entry_type=entry_type,
        all_day=all_day,
        start_time=payload.start_time,
        end_time=payload.end_time,
        end_date=end_date,
        description=payload.description,
        location=payload.location,
        color=payload.color,
        completed=payload.completed if entry_type is EntryType.TASK else None,
    )


def payload_to_form_data(payload: EntryPayload, calendar_id: str) -> dict[str, str]:
    """Form fields for the web API (application/x-www-form-urlencoded)."""
    body = build_create_payload(payload, calendar_id)
    form = {
        "calendar_id": body.calendar_id,
        "title": body.title,
        "start_date": body.date,
        "entry_type": body.entry_type.value,
    }
    if body.entry_type is EntryType.TIMED:
        if body.start_time:
            form["start_time"] = body.start_time
        if body.end_time:
            form["end_time"] = body.end_time
    if body.end_date:
        form["end_date"] = body.end_date
    if body.description:
        form["description"] = body.description
    if body.location:
        form["location"] = body.location
    if body.color:
        form["color"] = body.color
    if body.completed is not None:
        form["completed"] = "true" if body.completed else "false"
    return form


def flatten_server_days(days: list[dict]) -> list[ServerEntry]:
    """Entries of a day-grouped listing, once each, in first-seen order.

    A multi-day entry is listed under every day it covers.
    """
    seen = set()
    entries = []
    for day in days:
        for data in day.get("entries") or []:
            entry = ServerEntry.from_dict(data)
            if entry.id in seen:
                continue
            seen.add(entry.id)
            entries.append(entry)
    return entries


class SyncApiClient(Protocol):
    """What the sync engine needs from the server."""

    async def create_entry(self, calendar_id: str, payload: EntryPayload) -> ServerEntry: ...

    async def update_entry(self, entry_id: str, payload: EntryPayload) -> ServerEntry: ...

    async def delete_entry(self, entry_id: str) -> None: ...

    async def fetch_entries(
        self,
        calendar_id: str,
        highlighted_day: str,
        before: int = FULL_SYNC_BUFFER_DAYS,
        after: int = FULL_SYNC_BUFFER_DAYS,
    ) -> list[ServerEntry]: ...


class Transport(Protocol):
    """Request executor supplied by the host application."""

    async def create_entry(self, payload: CreateEntryPayload) -> ServerEntry: ...

    async def update_entry(self, entry_id: str, payload: CreateEntryPayload) -> ServerEntry: ...

    async def delete_entry(self, entry_id: str) -> None: ...

    async def fetch_entries(
        self, calendar_id: str, highlighted_day: str, before: int, after: int
    ) -> list[dict]: ...


class HttpApiClient:
    """Web API client backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        session_cookie: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session_cookie = session_cookie
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            cookies = {SESSION_COOKIE_NAME: self.session_cookie} if self.session_cookie else None
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                cookies=cookies,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    @staticmethod
    def _check(response: httpx.Response, action: str):
        if not response.is_success:
            raise ApiError(
                response.status_code,
                f"Failed to {action}: {response.status_code} {response.text}".rstrip(),
            )

    async def create_entry(self, calendar_id: str, payload: EntryPayload) -> ServerEntry:
        response = await self._get_client().post(
            "/api/entries", data=payload_to_form_data(payload, calendar_id)
        )
        self._check(response, "create entry")
        return ServerEntry.from_dict(response.json())

    async def update_entry(self, entry_id: str, payload: EntryPayload) -> ServerEntry:
        response = await self._get_client().put(
            f"/api/entries/{entry_id}",
            data=payload_to_form_data(payload, payload.calendar_id or ""),
        )
        self._check(response, "update entry")
        return ServerEntry.from_dict(response.json())

    async def delete_entry(self, entry_id: str) -> None:
        response = await self._get_client().delete(f"/api/entries/{entry_id}")
        self._check(response, "delete entry")
        logger.debug("Deleted remote entry %s", entry_id)

    async def fetch_entries(
        self,
        calendar_id: str,
        highlighted_day: str,
        before: int = FULL_SYNC_BUFFER_DAYS,
        after: int = FULL_SYNC_BUFFER_DAYS,
    ) -> list[ServerEntry]:
        params = {
            "calendar_id": calendar_id,
            "highlighted_day": highlighted_day,
            "before": before,
            "after": after,
        }
        response = await self._get_client().get("/api/entries", params=params)
        self._check(response, "fetch entries")
        entries = flatten_server_days(response.json())
        logger.debug("Fetched %d remote entries for %s", len(entries), calendar_id)
        return entries


class TransportApiClient:
    """Adapt a ``Transport`` to the ``SyncApiClient`` contract."""

    def __init__(self, transport: Transport):
        self.transport = transport

    async def create_entry(self, calendar_id: str, payload: EntryPayload) -> ServerEntry:
        return await self.transport.create_entry(build_create_payload(payload, calendar_id))

    async def update_entry(self, entry_id: str, payload: EntryPayload) -> ServerEntry:
        body = build_create_payload(payload, payload.calendar_id or "")
        return await self.transport.update_entry(entry_id, body)

    async def delete_entry(self, entry_id: str) -> None:
        await self.transport.delete_entry(entry_id)

    async def fetch_entries(
        self,
        calendar_id: str,
        highlighted_day: str,
        before: int = FULL_SYNC_BUFFER_DAYS,
        after: int = FULL_SYNC_BUFFER_DAYS,
    ) -> list[ServerEntry]:
        days = await self.transport.fetch_entries(calendar_id, highlighted_day, before, after)
        return flatten_server_days(days)

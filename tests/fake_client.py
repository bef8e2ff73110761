"""
In-memory fake API client and host transport for testing.

Duck-type-compatible stand-ins for HttpApiClient and a host Transport.  No
server or network connection is required: entries are kept in a plain dict
keyed by id and every call is recorded in order.
"""

import asyncio
from dataclasses import replace

from calendsync_offline.models import ApiError
from calendsync_offline.models import CreateEntryPayload
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import ServerEntry


class FakeApiClient:
    """In-memory stub that satisfies the SyncApiClient contract."""

    def __init__(self, initial_entries: dict[str, ServerEntry] | None = None):
        self._entries: dict[str, ServerEntry] = dict(initial_entries or {})
        # (kind, entry_id) in call order
        self.calls: list[tuple[str, str]] = []
        self.creates: list[str] = []
        self.updates: list[str] = []
        self.deletes: list[str] = []
        self.fetches: list[tuple[str, str, int, int]] = []
        # entry_id or (kind, entry_id) -> exception raised on every matching call
        self.failures: dict = {}
        self.fail_all: Exception | None = None
        # server-assigned ids for creates, keyed by the local id
        self.assign_ids: dict[str, str] = {}
        # when set, every call waits for it before answering
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    # ------------------------------------------------------------------ #
    # Internal helpers                                                      #
    # ------------------------------------------------------------------ #

    async def _enter(self, kind: str, entry_id: str):
        self.calls.append((kind, entry_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            error = (
                self.fail_all
                or self.failures.get((kind, entry_id))
                or self.failures.get(entry_id)
            )
            if error is not None:
                raise error
        finally:
            self.in_flight -= 1

    @staticmethod
    def _to_entry(entry_id: str, payload: EntryPayload) -> ServerEntry:
        values = payload.to_dict()
        values["id"] = entry_id
        values.setdefault("calendar_id", "")
        values.setdefault("title", "")
        values.setdefault("start_date", "")
        return ServerEntry.from_dict(values)

    # ------------------------------------------------------------------ #
    # SyncApiClient interface                                               #
    # ------------------------------------------------------------------ #

    async def create_entry(self, calendar_id: str, payload: EntryPayload) -> ServerEntry:
        local_id = payload.id or ""
        await self._enter("create", local_id)
        server_id = self.assign_ids.get(local_id, local_id)
        entry = replace(self._to_entry(server_id, payload), calendar_id=calendar_id)
        self._entries[server_id] = entry
        self.creates.append(local_id)
        return entry

    async def update_entry(self, entry_id: str, payload: EntryPayload) -> ServerEntry:
        await self._enter("update", entry_id)
        entry = self._to_entry(entry_id, payload)
        self._entries[entry_id] = entry
        self.updates.append(entry_id)
        return entry

    async def delete_entry(self, entry_id: str) -> None:
        await self._enter("delete", entry_id)
        self._entries.pop(entry_id, None)
        self.deletes.append(entry_id)

    async def fetch_entries(
        self, calendar_id: str, highlighted_day: str, before: int = 7, after: int = 7
    ) -> list[ServerEntry]:
        await self._enter("fetch", calendar_id)
        self.fetches.append((calendar_id, highlighted_day, before, after))
        return [e for e in self._entries.values() if e.calendar_id == calendar_id]

    async def aclose(self):
        pass

    # ------------------------------------------------------------------ #
    # Test helpers                                                          #
    # ------------------------------------------------------------------ #

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def seed(self, *entries: ServerEntry):
        for entry in entries:
            self._entries[entry.id] = entry

    def has_id(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def get(self, entry_id: str) -> ServerEntry | None:
        return self._entries.get(entry_id)

    def fail(self, entry_id: str, status_code: int = 503, message: str = "Service unavailable"):
        self.failures[entry_id] = ApiError(status_code, message)

    def reset_counters(self):
        """Clear the call logs between flush passes."""
        self.calls.clear()
        self.creates.clear()
        self.updates.clear()
        self.deletes.clear()


class FakeTransport:
    """Host transport that records the CreateEntryPayload bodies it receives."""

    def __init__(self):
        self.created: list[CreateEntryPayload] = []
        self.updated: list[tuple[str, CreateEntryPayload]] = []
        self.deleted: list[str] = []
        # day-grouped listing returned by fetch_entries
        self.days: list[dict] = []

    async def create_entry(self, payload: CreateEntryPayload) -> ServerEntry:
        self.created.append(payload)
        return ServerEntry(
            id=f"srv-{len(self.created)}",
            calendar_id=payload.calendar_id,
            title=payload.title,
            start_date=payload.date,
        )

    async def update_entry(self, entry_id: str, payload: CreateEntryPayload) -> ServerEntry:
        self.updated.append((entry_id, payload))
        return ServerEntry(
            id=entry_id,
            calendar_id=payload.calendar_id,
            title=payload.title,
            start_date=payload.date,
        )

    async def delete_entry(self, entry_id: str) -> None:
        self.deleted.append(entry_id)

    async def fetch_entries(
        self, calendar_id: str, highlighted_day: str, before: int, after: int
    ) -> list[dict]:
        self.fetched = (calendar_id, highlighted_day, before, after)
        return self.days


class FakeConnectivity:
    """Connectivity source driven by the test."""

    def __init__(self, online: bool = True):
        self.online = online
        self.subscribers: list = []

    def is_online(self) -> bool:
        return self.online

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe():
            self.subscribers.remove(callback)

        return unsubscribe

    def set(self, online: bool):
        self.online = online
        for callback in list(self.subscribers):
            callback(online)

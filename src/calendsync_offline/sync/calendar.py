"""
OfflineCalendar: the mutation surface used by the UI.

Every mutation is applied to the local store first (optimistic write) and
then queued through the engine, so it survives restarts while offline.
"""

import logging
import uuid
from dataclasses import replace
from datetime import date

from calendsync_offline.models import FULL_SYNC_BUFFER_DAYS
from calendsync_offline.models import EntryForm
from calendsync_offline.models import EntryNotFoundError
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import LocalEntry
from calendsync_offline.models import NotATaskError
from calendsync_offline.models import OfflineSyncError
from calendsync_offline.models import OperationKind
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import SyncStatus
from calendsync_offline.models import SyncStrategy
from calendsync_offline.models import utc_now_iso
from calendsync_offline.sync.engine import SyncEngine
from calendsync_offline.sync.operations import decide_sync_strategy
from calendsync_offline.sync.operations import form_to_local_entry
from calendsync_offline.sync.operations import mark_as_synced
from calendsync_offline.sync.operations import mark_entry_as_pending
from calendsync_offline.sync.operations import server_to_local_entry

logger = logging.getLogger(__name__)


class OfflineCalendar:
    """Offline-first editing of one calendar."""

    def __init__(self, engine: SyncEngine, calendar_id: str):
        self.engine = engine
        self.db = engine.db
        self.calendar_id = calendar_id

    @property
    def is_online(self) -> bool:
        return self.engine.get_is_online()

    @property
    def is_syncing(self) -> bool:
        return self.engine.get_is_syncing()

    @property
    def pending_count(self) -> int:
        return self.engine.get_pending_count()

    def _require(self, entry_id: str) -> LocalEntry:
        entry = self.db.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Entry not found: {entry_id}")
        return entry

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def entries(self) -> list[LocalEntry]:
        return self.db.entries_for_calendar(self.calendar_id)

    def entries_by_date(self) -> dict[str, list[LocalEntry]]:
        """Entries grouped on their start date, dates ascending."""
        grouped: dict[str, list[LocalEntry]] = {}
        for entry in self.entries():
            grouped.setdefault(entry.start_date, []).append(entry)
        return grouped

    # ------------------------------------------------------------------ #
    # Loading                                                              #
    # ------------------------------------------------------------------ #

    async def initialize(self, snapshot: list[ServerEntry] | None = None) -> SyncStrategy:
        """Load the calendar the cheapest way the local state allows.

        ``snapshot`` is a listing the host already holds (for example one
        embedded in a server-rendered page).
        """
        strategy = decide_sync_strategy(
            has_local_data=self.db.count_entries(self.calendar_id) > 0,
            has_sync_state=self.db.get_sync_state(self.calendar_id) is not None,
            has_snapshot=bool(snapshot),
        )
        logger.info("Opening calendar %s: %s", self.calendar_id, strategy.value)
        if strategy is SyncStrategy.HYDRATE:
            self.hydrate(snapshot)
        elif strategy is SyncStrategy.FULL_SYNC:
            await self.full_sync()
        return strategy

    def hydrate(self, snapshot: list[ServerEntry]) -> int:
        """Store snapshot entries that are not known locally yet; return how many."""
        added = self.db.insert_missing_entries([server_to_local_entry(e) for e in snapshot])
        self.db.init_sync_state(self.calendar_id)
        logger.debug("Hydrated %d of %d snapshot entries", added, len(snapshot))
        return added

    async def full_sync(
        self,
        highlighted_day: str | None = None,
        buffer_days: int = FULL_SYNC_BUFFER_DAYS,
    ) -> int:
        """Download the calendar around highlighted_day and replace the synced rows.

        Local edits that are still pending or in conflict are kept.  Raises
        ApiError when the listing cannot be fetched; the store is untouched
        then.
        """
        day = highlighted_day or date.today().isoformat()
        remote = await self.engine.api.fetch_entries(
            self.calendar_id, day, before=buffer_days, after=buffer_days
        )
        written = self.db.replace_synced_entries(
            self.calendar_id, [server_to_local_entry(e) for e in remote], utc_now_iso()
        )
        logger.info(
            "Full sync of %s: %d remote entries, %d stored", self.calendar_id, len(remote), written
        )
        return written

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    async def create_entry(self, data: EntryForm) -> LocalEntry:
        """Insert a new entry under a temporary id and queue its create."""
        temp_id = uuid.uuid4().hex
        entry = mark_entry_as_pending(
            form_to_local_entry(data, temp_id, self.calendar_id), OperationKind.CREATE
        )
        self.db.put_entry(entry)
        await self.engine.queue_operation(
            temp_id, OperationKind.CREATE, EntryPayload.from_entry(entry)
        )
        return entry

    async def update_entry(self, entry_id: str, data: EntryForm) -> LocalEntry:
        existing = self._require(entry_id)
        edited = form_to_local_entry(data, entry_id, existing.calendar_id, existing)
        updated = mark_entry_as_pending(edited, OperationKind.UPDATE)
        self.db.put_entry(updated)
        await self.engine.queue_operation(
            entry_id, OperationKind.UPDATE, EntryPayload.from_entry(updated)
        )
        return updated

    async def delete_entry(self, entry_id: str):
        """Delete locally and queue a remote delete; unknown ids are ignored."""
        existing = self.db.get_entry(entry_id)
        if existing is None:
            return

        # Queued creates/updates for this entry must not replay after the delete.
        dropped = self.db.operations_for_entry(entry_id)
        self.db.delete_operations_for_entry(entry_id)

        # A create already on the wire may still land; its delete must follow it.
        in_flight = self.engine.get_in_flight()
        create_in_flight = (
            in_flight is not None
            and in_flight.entry_id == entry_id
            and in_flight.operation is OperationKind.CREATE
        )
        never_synced = not create_in_flight and (
            existing.pending_operation is OperationKind.CREATE
            or existing.conflict_operation is OperationKind.CREATE
            or any(op.operation is OperationKind.CREATE for op in dropped)
        )
        if never_synced:
            self.db.delete_entry(entry_id)
            logger.debug("Dropped unsynced entry %s", entry_id)
            return

        self.db.put_entry(mark_entry_as_pending(existing, OperationKind.DELETE))
        await self.engine.queue_operation(entry_id, OperationKind.DELETE, None)

    async def toggle_entry(self, entry_id: str) -> LocalEntry:
        """Flip the completed flag of a task."""
        existing = self._require(entry_id)
        if not existing.is_task:
            raise NotATaskError(f"Entry is not a task: {entry_id}")
        updated = mark_entry_as_pending(
            replace(existing, completed=not existing.completed), OperationKind.UPDATE
        )
        self.db.put_entry(updated)
        await self.engine.queue_operation(
            entry_id, OperationKind.UPDATE, EntryPayload.from_entry(updated)
        )
        return updated

    # ------------------------------------------------------------------ #
    # Conflict resolution                                                  #
    # ------------------------------------------------------------------ #

    def _require_conflict(self, entry_id: str) -> LocalEntry:
        entry = self._require(entry_id)
        if entry.sync_status is not SyncStatus.CONFLICT:
            raise OfflineSyncError(f"Entry is not in conflict: {entry_id}")
        return entry

    async def retry_conflict(self, entry_id: str) -> LocalEntry:
        """Queue the failed intent again with its retry count reset."""
        entry = self._require_conflict(entry_id)
        operation = entry.conflict_operation or OperationKind.UPDATE
        pending = mark_entry_as_pending(entry, operation)
        self.db.put_entry(pending)
        payload = None if operation is OperationKind.DELETE else EntryPayload.from_entry(pending)
        await self.engine.queue_operation(entry_id, operation, payload)
        logger.info("Re-queued %s for %s", operation.value, entry_id)
        return pending

    async def discard_conflict(self, entry_id: str) -> LocalEntry | None:
        """Give up on the local change.

        A create the server never accepted is removed; any other entry keeps
        its current values and is marked synced until the next remote event
        overwrites it.
        """
        entry = self._require_conflict(entry_id)
        self.db.delete_operations_for_entry(entry_id)
        if entry.conflict_operation is OperationKind.CREATE:
            self.db.delete_entry(entry_id)
            logger.info("Discarded unsynced entry %s", entry_id)
            return None
        synced = mark_as_synced(entry)
        self.db.put_entry(synced)
        logger.info("Discarded local change to %s", entry_id)
        return synced

"""
Apply live-update notifications to the local store exactly once.

The decision is keyed only on whether this client has an outstanding intent
for the entry: an echo of our own create/update confirms it, anything else is
a remote change and is upserted.
"""

import logging
from collections.abc import Callable

from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import PushEvent
from calendsync_offline.models import PushEventType
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import SyncAction
from calendsync_offline.models import UpdateSyncAction
from calendsync_offline.sync.operations import apply_server_fields
from calendsync_offline.sync.operations import determine_sync_action
from calendsync_offline.sync.operations import determine_update_sync_action
from calendsync_offline.sync.operations import mark_as_synced
from calendsync_offline.sync.operations import server_to_local_entry

logger = logging.getLogger(__name__)

ReconcileListener = Callable[[PushEventType, str, str | None], None]


class EntryDateIndex:
    """Date-bucketed entry ids; each id lives under exactly one date key."""

    def __init__(self):
        self._buckets: dict[str, set[str]] = {}
        self._dates: dict[str, str] = {}

    def place(self, entry_id: str, date: str):
        self.remove(entry_id)
        self._buckets.setdefault(date, set()).add(entry_id)
        self._dates[entry_id] = date

    def remove(self, entry_id: str):
        # Scan every bucket so a stale placement can never survive a move.
        for date in list(self._buckets):
            bucket = self._buckets[date]
            bucket.discard(entry_id)
            if not bucket:
                del self._buckets[date]
        self._dates.pop(entry_id, None)

    def ids_for(self, date: str) -> set[str]:
        return set(self._buckets.get(date, ()))

    def date_of(self, entry_id: str) -> str | None:
        return self._dates.get(entry_id)

    def dates(self) -> list[str]:
        return sorted(self._buckets)

    def __len__(self):
        return len(self._dates)


class LiveUpdateReconciler:
    """Turns entry_added/entry_updated/entry_deleted events into store writes."""

    def __init__(self, db: EntryDatabase, index: EntryDateIndex | None = None):
        self.db = db
        self.index = index
        self._listeners: list[ReconcileListener] = []

    def add_listener(self, callback: ReconcileListener) -> Callable[[], None]:
        """Call ``callback(kind, entry_id, date)`` after each applied event."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, kind: PushEventType, entry_id: str, date: str | None):
        for listener in list(self._listeners):
            try:
                listener(kind, entry_id, date)
            except Exception:
                logger.exception("Reconcile listener %r failed", listener)

    def _index_entry(self, entry: ServerEntry, date: str | None):
        if self.index is not None:
            self.index.place(entry.id, date or entry.start_date)

    async def handle_entry_added(self, entry: ServerEntry, date: str | None = None) -> SyncAction:
        existing = self.db.get_entry(entry.id)
        action = determine_sync_action(existing)
        if action is SyncAction.CONFIRM_CREATE:
            self.db.put_entry(mark_as_synced(apply_server_fields(existing, entry)))
            logger.debug("Confirmed create of %s", entry.id)
        else:
            # Upsert: a redelivered event must overwrite, never duplicate.
            self.db.put_entry(server_to_local_entry(entry))
            logger.debug("Added remote entry %s", entry.id)
        self._index_entry(entry, date)
        self._notify(PushEventType.ENTRY_ADDED, entry.id, date)
        return action

    async def handle_entry_updated(
        self, entry: ServerEntry, date: str | None = None
    ) -> UpdateSyncAction:
        existing = self.db.get_entry(entry.id)
        action = determine_update_sync_action(existing)
        if action is UpdateSyncAction.CONFIRM_UPDATE:
            self.db.put_entry(mark_as_synced(apply_server_fields(existing, entry)))
            logger.debug("Confirmed update of %s", entry.id)
        else:
            self.db.put_entry(server_to_local_entry(entry))
            logger.debug("Applied remote update to %s", entry.id)
        self._index_entry(entry, date)
        self._notify(PushEventType.ENTRY_UPDATED, entry.id, date)
        return action

    async def handle_entry_deleted(self, entry_id: str, date: str | None = None):
        """Remove the entry whatever its pending state; absent ids are a no-op."""
        self.db.delete_entry(entry_id)
        if self.index is not None:
            self.index.remove(entry_id)
        logger.debug("Removed entry %s", entry_id)
        self._notify(PushEventType.ENTRY_DELETED, entry_id, date)

    async def handle_event(self, event: PushEvent):
        match event.type:
            case PushEventType.ENTRY_ADDED:
                await self.handle_entry_added(event.entry, event.date)
            case PushEventType.ENTRY_UPDATED:
                await self.handle_entry_updated(event.entry, event.date)
            case PushEventType.ENTRY_DELETED:
                await self.handle_entry_deleted(event.entry_id, event.date)

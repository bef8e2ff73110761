"""
Tests for LiveUpdateReconciler and EntryDateIndex.
"""

from dataclasses import replace

import pytest

from calendsync_offline.models import OperationKind
from calendsync_offline.models import PushEvent
from calendsync_offline.models import PushEventType
from calendsync_offline.models import SyncAction
from calendsync_offline.models import SyncStatus
from calendsync_offline.models import UpdateSyncAction
from calendsync_offline.sync.reconciler import EntryDateIndex
from calendsync_offline.sync.reconciler import LiveUpdateReconciler
from tests.conftest import CALENDAR_ID
from tests.conftest import make_local_entry
from tests.conftest import make_server_entry


@pytest.fixture
def index():
    return EntryDateIndex()


@pytest.fixture
def reconciler(entry_db, index):
    return LiveUpdateReconciler(entry_db, index)


def _stored(db, entry_id):
    """Stored row with the local write timestamp blanked out."""
    entry = db.get_entry(entry_id)
    return replace(entry, local_updated_at="") if entry else None


class TestEntryAdded:
    @pytest.mark.asyncio
    async def test_echo_of_own_create_confirms(self, reconciler, entry_db):
        entry_db.put_entry(make_local_entry("e1", "Local title", pending=OperationKind.CREATE))

        action = await reconciler.handle_entry_added(make_server_entry("e1", "Server title"))

        assert action is SyncAction.CONFIRM_CREATE
        entry = entry_db.get_entry("e1")
        assert entry.sync_status is SyncStatus.SYNCED
        assert entry.pending_operation is None
        assert entry.title == "Server title"

    @pytest.mark.asyncio
    async def test_unknown_entry_is_added(self, reconciler, entry_db):
        action = await reconciler.handle_entry_added(make_server_entry("remote", "Lunch"))

        assert action is SyncAction.ADD_NEW
        assert entry_db.get_entry("remote").title == "Lunch"
        assert entry_db.get_entry("remote").sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate(self, reconciler, entry_db, index):
        server = make_server_entry("remote", "Lunch", color="#123456")

        await reconciler.handle_entry_added(server)
        first = _stored(entry_db, "remote")
        await reconciler.handle_entry_added(server)

        assert _stored(entry_db, "remote") == first
        assert first.title == "Lunch"
        assert first.color == "#123456"
        assert first.sync_status is SyncStatus.SYNCED
        assert [e.id for e in entry_db.entries_for_calendar(CALENDAR_ID)] == ["remote"]
        assert index.ids_for("2026-03-01") == {"remote"}
        assert len(index) == 1

    @pytest.mark.asyncio
    async def test_redelivered_confirmation_keeps_entry_synced(self, reconciler, entry_db):
        entry_db.put_entry(make_local_entry("e1", "Local", pending=OperationKind.CREATE))
        server = make_server_entry("e1", "Server")

        assert await reconciler.handle_entry_added(server) is SyncAction.CONFIRM_CREATE
        first = _stored(entry_db, "e1")
        assert await reconciler.handle_entry_added(server) is SyncAction.ADD_NEW

        assert _stored(entry_db, "e1") == first
        assert first.sync_status is SyncStatus.SYNCED
        assert first.pending_operation is None


class TestEntryUpdated:
    @pytest.mark.asyncio
    async def test_echo_of_own_update_confirms(self, reconciler, entry_db):
        entry_db.put_entry(make_local_entry("e1", "Edited", pending=OperationKind.UPDATE))

        action = await reconciler.handle_entry_updated(make_server_entry("e1", "Edited"))

        assert action is UpdateSyncAction.CONFIRM_UPDATE
        assert entry_db.get_entry("e1").sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_remote_edit_overwrites_local_copy(self, reconciler, entry_db):
        entry_db.put_entry(make_local_entry("e1", "Standup"))

        action = await reconciler.handle_entry_updated(
            make_server_entry("e1", "Standup", location="Room 4")
        )

        assert action is UpdateSyncAction.APPLY_REMOTE
        assert entry_db.get_entry("e1").location == "Room 4"

    @pytest.mark.asyncio
    async def test_update_for_unknown_entry_inserts_it(self, reconciler, entry_db):
        await reconciler.handle_entry_updated(make_server_entry("new", "Retro"))

        assert entry_db.get_entry("new").title == "Retro"

    @pytest.mark.asyncio
    async def test_redelivered_move_is_applied_once(self, reconciler, entry_db, index):
        await reconciler.handle_entry_added(make_server_entry("e1", "Standup"))
        moved = make_server_entry(
            "e1", "Standup", start_date="2026-03-05", end_date="2026-03-05", location="Room 4"
        )

        await reconciler.handle_entry_updated(moved)
        first = _stored(entry_db, "e1")
        await reconciler.handle_entry_updated(moved)

        assert _stored(entry_db, "e1") == first
        assert first.start_date == "2026-03-05"
        assert first.location == "Room 4"
        assert first.sync_status is SyncStatus.SYNCED
        assert [e.id for e in entry_db.entries_for_calendar(CALENDAR_ID)] == ["e1"]
        assert index.ids_for("2026-03-01") == set()
        assert index.ids_for("2026-03-05") == {"e1"}
        assert index.dates() == ["2026-03-05"]
        assert len(index) == 1


class TestEntryDeleted:
    @pytest.mark.asyncio
    async def test_removes_even_pending_entry(self, reconciler, entry_db, index):
        entry_db.put_entry(make_local_entry("e1", pending=OperationKind.UPDATE))
        index.place("e1", "2026-03-01")

        await reconciler.handle_entry_deleted("e1", "2026-03-01")

        assert entry_db.get_entry("e1") is None
        assert index.date_of("e1") is None

    @pytest.mark.asyncio
    async def test_absent_entry_is_noop(self, reconciler, entry_db):
        await reconciler.handle_entry_deleted("ghost")
        await reconciler.handle_entry_deleted("ghost")

        assert entry_db.get_entry("ghost") is None


class TestIndexing:
    @pytest.mark.asyncio
    async def test_move_leaves_one_placement(self, reconciler, index):
        await reconciler.handle_entry_added(make_server_entry("e1"))
        await reconciler.handle_entry_updated(
            make_server_entry("e1", start_date="2026-03-04", end_date="2026-03-04")
        )

        assert index.ids_for("2026-03-01") == set()
        assert index.ids_for("2026-03-04") == {"e1"}
        assert index.dates() == ["2026-03-04"]
        assert len(index) == 1

    @pytest.mark.asyncio
    async def test_event_date_overrides_start_date(self, reconciler, index):
        await reconciler.handle_entry_added(make_server_entry("e1"), date="2026-03-02")

        assert index.date_of("e1") == "2026-03-02"

    def test_remove_clears_stale_buckets(self, index):
        index.place("e1", "2026-03-01")
        index.place("e2", "2026-03-01")
        index.place("e1", "2026-03-03")

        assert index.ids_for("2026-03-01") == {"e2"}
        index.remove("e1")
        assert index.dates() == ["2026-03-01"]

    @pytest.mark.asyncio
    async def test_works_without_index(self, entry_db):
        reconciler = LiveUpdateReconciler(entry_db)

        await reconciler.handle_entry_added(make_server_entry("e1"))
        await reconciler.handle_entry_deleted("e1")

        assert entry_db.get_entry("e1") is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_handle_event_routes_by_type(self, reconciler, entry_db):
        await reconciler.handle_event(
            PushEvent(PushEventType.ENTRY_ADDED, "e1", entry=make_server_entry("e1", "Standup"))
        )
        await reconciler.handle_event(
            PushEvent(PushEventType.ENTRY_UPDATED, "e1", entry=make_server_entry("e1", "Retro"))
        )
        assert entry_db.get_entry("e1").title == "Retro"

        await reconciler.handle_event(PushEvent(PushEventType.ENTRY_DELETED, "e1"))
        assert entry_db.get_entry("e1") is None

    @pytest.mark.asyncio
    async def test_listeners_see_applied_events(self, reconciler):
        seen = []
        unsubscribe = reconciler.add_listener(lambda *args: seen.append(args))

        await reconciler.handle_entry_added(make_server_entry("e1"), date="2026-03-01")
        await reconciler.handle_entry_deleted("e1")
        unsubscribe()
        await reconciler.handle_entry_deleted("e1")

        assert seen == [
            (PushEventType.ENTRY_ADDED, "e1", "2026-03-01"),
            (PushEventType.ENTRY_DELETED, "e1", None),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_write(self, reconciler, entry_db):
        def broken(*args):
            raise RuntimeError("listener bug")

        reconciler.add_listener(broken)

        await reconciler.handle_entry_added(make_server_entry("e1"))

        assert entry_db.get_entry("e1") is not None

"""
Shared pytest fixtures and entry helpers.
"""

import pytest
import pytest_asyncio

from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import LocalEntry
from calendsync_offline.models import OperationKind
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import SyncConfig
from calendsync_offline.models import SyncStatus
from calendsync_offline.sync.engine import SyncEngine
from calendsync_offline.sync.operations import create_pending_operation
from tests.fake_client import FakeApiClient
from tests.fake_client import FakeConnectivity

CALENDAR_ID = "calendar-test"


def make_server_entry(entry_id: str, title: str = "Test Entry", **overrides) -> ServerEntry:
    """Return a minimal all-day server entry on 2026-03-01."""
    values = dict(
        id=entry_id,
        calendar_id=CALENDAR_ID,
        title=title,
        start_date="2026-03-01",
        end_date="2026-03-01",
    )
    values.update(overrides)
    return ServerEntry(**values)


def make_local_entry(
    entry_id: str,
    title: str = "Test Entry",
    pending: OperationKind | None = None,
    **overrides,
) -> LocalEntry:
    """Return a local entry; ``pending`` marks it as awaiting that operation."""
    values = dict(
        id=entry_id,
        calendar_id=CALENDAR_ID,
        title=title,
        start_date="2026-03-01",
        end_date="2026-03-01",
        sync_status=SyncStatus.PENDING if pending else SyncStatus.SYNCED,
        pending_operation=pending,
    )
    values.update(overrides)
    return LocalEntry(**values)


def queue_raw(db: EntryDatabase, entry: LocalEntry, operation: OperationKind, created_at=None):
    """Insert a queue row directly, bypassing the engine's flush trigger."""
    payload = None if operation is OperationKind.DELETE else EntryPayload.from_entry(entry)
    op = create_pending_operation(entry.id, operation, payload)
    if created_at is not None:
        op.created_at = created_at
    db.add_operation(op)
    return op


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_entries.db"


@pytest.fixture
def entry_db(db_path):
    with EntryDatabase(db_path) as db:
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(base_url="http://calendar.test", db_path=db_path)


@pytest.fixture
def fake_api():
    return FakeApiClient()


@pytest.fixture
def connectivity():
    return FakeConnectivity(online=True)


@pytest_asyncio.fixture
async def engine(entry_db, fake_api, sync_config, connectivity):
    eng = SyncEngine(entry_db, api=fake_api, config=sync_config, connectivity=connectivity)
    yield eng
    await eng.close()

"""
Pure queue, retry and reconciliation helpers. No I/O.
"""

import uuid
from dataclasses import fields
from dataclasses import replace
from datetime import datetime
from datetime import timezone

from calendsync_offline.models import EntryForm
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import LocalEntry
from calendsync_offline.models import OperationKind
from calendsync_offline.models import PendingOperation
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import SyncAction
from calendsync_offline.models import SyncStatus
from calendsync_offline.models import SyncStrategy
from calendsync_offline.models import UpdateSyncAction
from calendsync_offline.models import entry_kind
from calendsync_offline.models import entry_type_flags
from calendsync_offline.models import utc_now_iso

# --------------------------------------------------------------------------- #
# Pending operations                                                            #
# --------------------------------------------------------------------------- #


def create_pending_operation(
    entry_id: str,
    operation: OperationKind,
    payload: EntryPayload | None,
) -> PendingOperation:
    """New operation with a fresh id, retry_count 0 and the current timestamp."""
    return PendingOperation(
        id=uuid.uuid4().hex,
        entry_id=entry_id,
        operation=operation,
        payload=payload,
        created_at=utc_now_iso(),
        retry_count=0,
        last_error=None,
    )


def should_retry(op: PendingOperation, max_retries: int) -> bool:
    return op.retry_count < max_retries


def increment_retry(op: PendingOperation) -> PendingOperation:
    return replace(op, retry_count=op.retry_count + 1)


def set_operation_error(op: PendingOperation, error: str) -> PendingOperation:
    return replace(op, last_error=error)


def _created_at_key(op: PendingOperation) -> datetime:
    parsed = datetime.fromisoformat(op.created_at)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_by_created_at(ops: list[PendingOperation]) -> list[PendingOperation]:
    """Oldest first. sorted() is stable, so equal timestamps keep storage order."""
    return sorted(ops, key=_created_at_key)


def backoff_delay(attempts: int, base_delay: float, max_exponent: int = 4) -> float:
    """Exponential backoff: base_delay * 2**attempts, capped at 2**max_exponent."""
    return base_delay * 2 ** min(attempts, max_exponent)


# --------------------------------------------------------------------------- #
# Entry state transitions                                                       #
# --------------------------------------------------------------------------- #


def mark_as_synced(entry: LocalEntry) -> LocalEntry:
    return replace(
        entry,
        sync_status=SyncStatus.SYNCED,
        pending_operation=None,
        last_sync_error=None,
        conflict_operation=None,
    )


def mark_as_conflict(entry: LocalEntry, error: str, operation: OperationKind) -> LocalEntry:
    """Terminal failure: the entry keeps its local values and records why."""
    return replace(
        entry,
        sync_status=SyncStatus.CONFLICT,
        pending_operation=None,
        last_sync_error=error,
        conflict_operation=operation,
    )


def mark_entry_as_pending(entry: LocalEntry, operation: OperationKind) -> LocalEntry:
    return replace(
        entry,
        sync_status=SyncStatus.PENDING,
        local_updated_at=utc_now_iso(),
        pending_operation=operation,
        last_sync_error=None,
        conflict_operation=None,
    )


def _server_values(entry: ServerEntry) -> dict:
    return {f.name: getattr(entry, f.name) for f in fields(ServerEntry)}


def server_to_local_entry(entry: ServerEntry) -> LocalEntry:
    """Materialize a server entry as a synced local entry."""
    return LocalEntry(**_server_values(entry), sync_status=SyncStatus.SYNCED)


def apply_server_fields(entry: LocalEntry, server: ServerEntry) -> LocalEntry:
    """Overwrite the domain fields of entry with the server-canonical values."""
    return replace(entry, **_server_values(server))


def form_to_local_entry(
    form: EntryForm,
    entry_id: str,
    calendar_id: str,
    existing: LocalEntry | None = None,
) -> LocalEntry:
    """Build the optimistic local entry for a create or edit.

    The color is carried over from ``existing`` because the form does not edit it.
    """
    return LocalEntry(
        id=entry_id,
        calendar_id=calendar_id,
        kind=entry_kind(form.entry_type),
        completed=form.completed,
        title=form.title,
        description=form.description,
        location=form.location,
        color=existing.color if existing else None,
        start_date=form.start_date,
        end_date=form.end_date or form.start_date,
        start_time=form.start_time,
        end_time=form.end_time,
        **entry_type_flags(form.entry_type),
    )


# --------------------------------------------------------------------------- #
# Reconciliation decisions                                                      #
# --------------------------------------------------------------------------- #


def determine_sync_action(existing: LocalEntry | None) -> SyncAction:
    """An entry_added event confirms our own create iff one is pending."""
    if existing is not None and existing.pending_operation == OperationKind.CREATE:
        return SyncAction.CONFIRM_CREATE
    return SyncAction.ADD_NEW


def determine_update_sync_action(existing: LocalEntry | None) -> UpdateSyncAction:
    """An entry_updated event confirms our own update iff one is pending."""
    if existing is not None and existing.pending_operation == OperationKind.UPDATE:
        return UpdateSyncAction.CONFIRM_UPDATE
    return UpdateSyncAction.APPLY_REMOTE


def decide_sync_strategy(
    has_local_data: bool, has_sync_state: bool, has_snapshot: bool = False
) -> SyncStrategy:
    """
    Pick how to load a calendar on open.

    Local rows plus a recorded sync_state mean the store is usable as is.
    Otherwise a snapshot handed over by the caller is merged in, and only
    when there is none is the whole calendar downloaded.
    """
    if has_local_data and has_sync_state:
        return SyncStrategy.USE_LOCAL
    if has_snapshot:
        return SyncStrategy.HYDRATE
    return SyncStrategy.FULL_SYNC

"""
SyncEngine: queues local mutations and replays them against the server.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol
from typing import assert_never

from calendsync_offline.api_client import HttpApiClient
from calendsync_offline.api_client import SyncApiClient
from calendsync_offline.api_client import Transport
from calendsync_offline.api_client import TransportApiClient
from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import EntryPayload
from calendsync_offline.models import OperationKind
from calendsync_offline.models import OperationResult
from calendsync_offline.models import PendingOperation
from calendsync_offline.models import SyncConfig
from calendsync_offline.models import SyncStats
from calendsync_offline.models import SyncStatus
from calendsync_offline.sync.operations import apply_server_fields
from calendsync_offline.sync.operations import backoff_delay
from calendsync_offline.sync.operations import create_pending_operation
from calendsync_offline.sync.operations import increment_retry
from calendsync_offline.sync.operations import mark_as_conflict
from calendsync_offline.sync.operations import mark_as_synced
from calendsync_offline.sync.operations import set_operation_error
from calendsync_offline.sync.operations import should_retry
from calendsync_offline.sync.operations import sort_by_created_at


class Connectivity(Protocol):
    """Source of online/offline transitions supplied by the host."""

    def is_online(self) -> bool: ...

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]: ...


class SyncEngine:
    """Single authority for the pending queue and online/offline handling.

    Flush passes are serialized with the ``is_syncing`` flag: asking for a
    flush while one is running only records ``pending_while_syncing`` and the
    running pass loops once more when it finishes.  SQLite access is
    synchronous, so the API calls are the only points where another task can
    interleave with a pass.
    """

    def __init__(
        self,
        db: EntryDatabase,
        api: SyncApiClient | None = None,
        config: SyncConfig | None = None,
        connectivity: Connectivity | None = None,
    ):
        self.db = db
        self.config = config or SyncConfig()
        self.logger = logging.getLogger(__name__)

        self._owns_api = api is None
        self._default_api: SyncApiClient = api or HttpApiClient(
            self.config.base_url,
            timeout=self.config.request_timeout,
            session_cookie=self.config.session_cookie,
        )
        self.api: SyncApiClient = self._default_api
        self._transport: Transport | None = None

        self._is_online = connectivity.is_online() if connectivity else True
        self._is_syncing = False
        self._pending_while_syncing = False
        self._in_flight: PendingOperation | None = None
        self._listeners: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()
        self._retry_handle: asyncio.TimerHandle | None = None
        self._closed = False
        self._unsubscribe = connectivity.subscribe(self.set_online) if connectivity else None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------ #
    # Accessors & listeners                                                #
    # ------------------------------------------------------------------ #

    def get_is_online(self) -> bool:
        return self._is_online

    def get_is_syncing(self) -> bool:
        return self._is_syncing

    def get_pending_count(self) -> int:
        return self.db.count_operations()

    def get_in_flight(self) -> PendingOperation | None:
        """The operation whose API call is awaiting an answer, if any."""
        return self._in_flight

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback for online/syncing flips; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify_listeners(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                self.logger.exception("State listener %r failed", listener)

    def _set_syncing(self, value: bool):
        self._is_syncing = value
        self._notify_listeners()

    # ------------------------------------------------------------------ #
    # Transport binding                                                    #
    # ------------------------------------------------------------------ #

    def init_transport(self, transport: Transport):
        """Bind a host transport. Only the first bind takes effect until reset."""
        if self._transport is not None:
            if transport is not self._transport:
                self.logger.debug("Transport already bound; ignoring rebind")
            return
        self._transport = transport
        self.api = TransportApiClient(transport)
        self.logger.debug("Bound transport %s", type(transport).__name__)

    def reset_transport(self):
        self._transport = None
        self.api = self._default_api

    def has_transport(self) -> bool:
        return self._transport is not None

    # ------------------------------------------------------------------ #
    # Connectivity                                                         #
    # ------------------------------------------------------------------ #

    def set_online(self, online: bool):
        """Handle a connectivity transition."""
        if online == self._is_online:
            return
        self._is_online = online
        self.logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._notify_listeners()
        if online:
            self._spawn_flush()
        else:
            self._cancel_retry()

    # ------------------------------------------------------------------ #
    # Queue                                                                #
    # ------------------------------------------------------------------ #

    async def queue_operation(
        self,
        entry_id: str,
        operation: OperationKind,
        payload: EntryPayload | None = None,
    ) -> PendingOperation:
        """Durably enqueue a mutation and kick off a background flush when online.

        Raises StoreError if the local write fails; nothing is queued then.
        """
        op = create_pending_operation(entry_id, operation, payload)
        self.db.add_operation(op)
        self.logger.debug("Queued %s for %s (%s)", operation.value, entry_id, op.id)
        if self._is_online:
            self._spawn_flush()
        return op

    def _spawn_flush(self):
        if self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop; flush deferred to next trigger")
            return
        task = loop.create_task(self.sync_pending())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Background flush failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------ #
    # Flush                                                                #
    # ------------------------------------------------------------------ #

    async def sync_pending(self) -> SyncStats:
        """Replay the queue oldest-first.

        Returns empty stats when another pass is already running; that pass
        will run again before it releases ``is_syncing``.
        """
        if self._is_syncing:
            self._pending_while_syncing = True
            return SyncStats()

        stats = SyncStats()
        while True:
            self._set_syncing(True)
            try:
                stats.merge(await self._flush_pass())
            finally:
                self._set_syncing(False)
            if not self._pending_while_syncing:
                break
            self._pending_while_syncing = False

        self._schedule_retry()
        return stats

    async def _flush_pass(self) -> SyncStats:
        stats = SyncStats()
        ops = sort_by_created_at(self.db.all_operations())
        if ops:
            self.logger.info("Flushing %d pending operation(s)", len(ops))

        for index, op in enumerate(ops):
            if not self._is_online:
                stats.skipped_offline = len(ops) - index
                self.logger.info("Offline; %d operation(s) left queued", stats.skipped_offline)
                break

            # The entry may have been discarded while an earlier call was in flight.
            current = self.db.get_operation(op.id)
            if current is None:
                continue

            self._in_flight = current
            try:
                result = await self.execute_operation(current)
            finally:
                self._in_flight = None

            if result.success:
                self._settle_success(current, result, stats)
            elif self.db.get_operation(current.id) is None:
                self._settle_abandoned(current, result.error)
            elif should_retry(current, self.config.max_retries) and not self._fails_fast(result):
                updated = increment_retry(set_operation_error(current, result.error or "Unknown error"))
                self.db.put_operation(updated)
                stats.retried += 1
                self.logger.warning(
                    "%s of %s failed (attempt %d/%d): %s",
                    current.operation.value,
                    current.entry_id,
                    updated.retry_count,
                    self.config.max_retries,
                    result.error,
                )
            else:
                self._settle_conflict(current, result.error or "Max retries exceeded")
                stats.conflicts += 1

        if ops:
            self.logger.info(
                "Flush finished: %d synced, %d deleted, %d retried, %d conflicts",
                stats.synced,
                stats.deleted,
                stats.retried,
                stats.conflicts,
            )
        return stats

    def _fails_fast(self, result: OperationResult) -> bool:
        return self.config.fail_fast_client_errors and not result.retryable

    def _settle_success(self, op: PendingOperation, result: OperationResult, stats: SyncStats):
        self.db.delete_operation(op.id)

        if op.operation is OperationKind.DELETE:
            self.db.delete_entry(op.entry_id)
            stats.deleted += 1
            return

        stats.synced += 1
        entry = self.db.get_entry(op.entry_id)
        if entry is None:
            self.logger.debug("Entry %s vanished before its %s settled", op.entry_id, op.operation.value)
            return

        entry_id = op.entry_id
        if op.operation is OperationKind.CREATE and result.entry and result.entry.id != entry_id:
            self.logger.debug("Server assigned id %s to %s", result.entry.id, entry_id)
            self.db.rename_entry(entry_id, result.entry.id)
            entry_id = result.entry.id
            entry = replace(entry, id=entry_id)

        if entry.sync_status is SyncStatus.CONFLICT:
            return

        remaining = self.db.operations_for_entry(entry_id)
        if remaining:
            # A later edit is still queued; keep its optimistic values.
            latest = sort_by_created_at(remaining)[-1]
            self.db.put_entry(
                replace(entry, sync_status=SyncStatus.PENDING, pending_operation=latest.operation)
            )
            return

        if result.entry is not None:
            entry = apply_server_fields(entry, result.entry)
        self.db.put_entry(mark_as_synced(entry))

    def _settle_abandoned(self, op: PendingOperation, error: str | None):
        """A call failed after its operation was dropped from the queue.

        Nothing is put back.  When the dropped operation was the create of an
        entry that has since been deleted, the server never stored it, so the
        queued delete and the local row go as well.
        """
        self.logger.info(
            "%s of %s failed after it was dropped from the queue: %s",
            op.operation.value,
            op.entry_id,
            error,
        )
        if op.operation is not OperationKind.CREATE:
            return
        entry = self.db.get_entry(op.entry_id)
        if entry is not None and entry.pending_operation is OperationKind.DELETE:
            self.db.delete_operations_for_entry(op.entry_id)
            self.db.delete_entry(op.entry_id)

    def _settle_conflict(self, op: PendingOperation, error: str):
        self.db.delete_operation(op.id)
        entry = self.db.get_entry(op.entry_id)
        if entry is not None:
            self.db.put_entry(mark_as_conflict(entry, error, op.operation))
        self.logger.error(
            "%s of %s gave up after %d attempt(s): %s",
            op.operation.value,
            op.entry_id,
            op.retry_count + 1,
            error,
        )

    async def execute_operation(self, op: PendingOperation) -> OperationResult:
        """Replay one operation; every failure comes back as an OperationResult."""
        try:
            match op.operation:
                case OperationKind.CREATE:
                    if op.payload is None:
                        return OperationResult(
                            success=False, error="Create operation requires payload", retryable=False
                        )
                    entry = await self.api.create_entry(op.payload.calendar_id or "", op.payload)
                    return OperationResult(success=True, entry=entry)
                case OperationKind.UPDATE:
                    if op.payload is None:
                        return OperationResult(
                            success=False, error="Update operation requires payload", retryable=False
                        )
                    entry = await self.api.update_entry(op.entry_id, op.payload)
                    return OperationResult(success=True, entry=entry)
                case OperationKind.DELETE:
                    await self.api.delete_entry(op.entry_id)
                    return OperationResult(success=True)
                case _:
                    assert_never(op.operation)
        except Exception as e:
            return OperationResult(
                success=False,
                error=str(e) or type(e).__name__,
                retryable=getattr(e, "retryable", True),
            )

    # ------------------------------------------------------------------ #
    # Scheduled retry                                                      #
    # ------------------------------------------------------------------ #

    def _schedule_retry(self):
        base = self.config.retry_base_delay
        if base is None or self._closed or not self._is_online:
            return
        attempts = [op.retry_count for op in self.db.all_operations() if op.retry_count > 0]
        if not attempts:
            return
        self._cancel_retry()
        delay = backoff_delay(max(attempts), base)
        self.logger.debug("Retrying failed operations in %.1fs", delay)
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._on_retry_timer)

    def _on_retry_timer(self):
        self._retry_handle = None
        self._spawn_flush()

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def drain(self):
        """Wait until no background flush task is running."""
        while pending := [t for t in self._tasks if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def close(self):
        """Release connectivity subscription, timers, background tasks and the owned client."""
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_retry()
        await self.drain()
        self._listeners.clear()
        if self._owns_api:
            await self._default_api.aclose()

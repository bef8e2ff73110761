"""
Pure data models. No sqlite or network imports.
"""

from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from datetime import datetime
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path.home() / ".local/share/calendsync-offline.db"
DEFAULT_CONFIG = Path.home() / ".config/calendsync-offline.conf"
DEFAULT_BASE_URL = "http://localhost:3000"

MAX_RETRIES = 3

# Days fetched either side of the highlighted day by a full sync
FULL_SYNC_BUFFER_DAYS = 7


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# --------------------------------------------------------------------------- #
# Exceptions                                                                    #
# --------------------------------------------------------------------------- #


class OfflineSyncError(Exception):
    """Base exception for offline sync errors."""

    pass


class StoreError(OfflineSyncError):
    """The local database could not be read or written."""

    pass


class EntryNotFoundError(OfflineSyncError):
    """No local entry exists with the requested id."""

    pass


class NotATaskError(OfflineSyncError):
    """A task-only operation was requested on a non-task entry."""

    pass


class PushChannelError(OfflineSyncError):
    """The live-update stream could not be (re)established."""

    pass


class ApiError(OfflineSyncError):
    """The server answered a request with a non-success status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # 4xx means the request itself was rejected; only timeouts and
        # rate limiting are worth sending again.
        if 400 <= self.status_code < 500:
            return self.status_code in (408, 429)
        return True


# --------------------------------------------------------------------------- #
# Enumerations                                                                  #
# --------------------------------------------------------------------------- #


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntryType(str, Enum):
    ALL_DAY = "all_day"
    TIMED = "timed"
    TASK = "task"
    MULTI_DAY = "multi_day"


class SyncAction(str, Enum):
    """What an entry_added event means for the local store."""

    CONFIRM_CREATE = "confirm_create"
    ADD_NEW = "add_new"


class UpdateSyncAction(str, Enum):
    """What an entry_updated event means for the local store."""

    CONFIRM_UPDATE = "confirm_update"
    APPLY_REMOTE = "apply_remote"


class SyncStrategy(str, Enum):
    """How a calendar is loaded when it is opened."""

    USE_LOCAL = "use_local"
    HYDRATE = "hydrate"
    FULL_SYNC = "full_sync"


def derive_entry_type_from_flags(flags: Any) -> EntryType:
    """Pick the entry type from the is_* flags of an entry or payload.

    Precedence is timed, task, multi-day; an object with none of the flags
    set is an all-day entry.
    """
    if getattr(flags, "is_timed", None):
        return EntryType.TIMED
    if getattr(flags, "is_task", None):
        return EntryType.TASK
    if getattr(flags, "is_multi_day", None):
        return EntryType.MULTI_DAY
    return EntryType.ALL_DAY


def entry_kind(entry_type: EntryType) -> str:
    """The server spells kinds with hyphens (all-day, multi-day)."""
    return entry_type.value.replace("_", "-")


def entry_type_flags(entry_type: EntryType) -> dict[str, bool]:
    """Return the four mutually exclusive kind flags for entry_type."""
    return {
        "is_all_day": entry_type is EntryType.ALL_DAY,
        "is_timed": entry_type is EntryType.TIMED,
        "is_task": entry_type is EntryType.TASK,
        "is_multi_day": entry_type is EntryType.MULTI_DAY,
    }


# --------------------------------------------------------------------------- #
# Entries                                                                       #
# --------------------------------------------------------------------------- #

# snake_case attribute -> camelCase wire name
_WIRE_NAMES = {
    "id": "id",
    "calendar_id": "calendarId",
    "kind": "kind",
    "completed": "completed",
    "is_multi_day": "isMultiDay",
    "is_all_day": "isAllDay",
    "is_timed": "isTimed",
    "is_task": "isTask",
    "title": "title",
    "description": "description",
    "location": "location",
    "color": "color",
    "start_date": "startDate",
    "end_date": "endDate",
    "start_time": "startTime",
    "end_time": "endTime",
}


@dataclass
class ServerEntry:
    """Canonical calendar entry as returned by the server."""

    id: str
    calendar_id: str
    title: str
    start_date: str
    end_date: str = ""
    kind: str = "all-day"
    completed: bool = False
    is_all_day: bool = True
    is_timed: bool = False
    is_task: bool = False
    is_multi_day: bool = False
    description: str | None = None
    location: str | None = None
    color: str | None = None
    start_time: str | None = None
    end_time: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerEntry":
        """Build from a camelCase JSON object (snake_case keys are accepted too)."""
        values = {}
        for attr, wire in _WIRE_NAMES.items():
            if wire in data:
                values[attr] = data[wire]
            elif attr in data:
                values[attr] = data[attr]
        values.setdefault("end_date", values.get("start_date", ""))
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {_WIRE_NAMES[k]: v for k, v in asdict(self).items()}


@dataclass
class LocalEntry(ServerEntry):
    """The client's materialized view of an entry, with sync tracking."""

    sync_status: SyncStatus = SyncStatus.SYNCED
    local_updated_at: str = field(default_factory=utc_now_iso)
    pending_operation: OperationKind | None = None
    last_sync_error: str | None = None
    # Kind of the operation that exhausted its retries (conflict only).
    conflict_operation: OperationKind | None = None


@dataclass
class EntryPayload:
    """Partial entry used to replay a create or update.

    Every field is optional; unset fields are left out of ``to_dict()`` so the
    payload only carries what the mutation actually needs.
    """

    id: str | None = None
    calendar_id: str | None = None
    kind: str | None = None
    completed: bool | None = None
    is_multi_day: bool | None = None
    is_all_day: bool | None = None
    is_timed: bool | None = None
    is_task: bool | None = None
    title: str | None = None
    description: str | None = None
    location: str | None = None
    color: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    start_time: str | None = None
    end_time: str | None = None

    @classmethod
    def from_entry(cls, entry: ServerEntry) -> "EntryPayload":
        return cls(**{f.name: getattr(entry, f.name) for f in fields(ServerEntry)})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntryPayload":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class EntryForm:
    """User input for creating or editing an entry."""

    title: str
    start_date: str
    entry_type: EntryType = EntryType.ALL_DAY
    end_date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    description: str | None = None
    location: str | None = None
    completed: bool = False


# --------------------------------------------------------------------------- #
# Queue                                                                         #
# --------------------------------------------------------------------------- #


@dataclass
class PendingOperation:
    """A queued mutation awaiting confirmation by the server."""

    id: str
    entry_id: str
    operation: OperationKind
    payload: EntryPayload | None
    created_at: str
    retry_count: int = 0
    last_error: str | None = None


@dataclass
class CreateEntryPayload:
    """Request body shape shared by every transport."""

    calendar_id: str
    title: str
    date: str
    entry_type: EntryType
    all_day: bool
    start_time: str | None = None
    end_time: str | None = None
    end_date: str | None = None
    description: str | None = None
    location: str | None = None
    color: str | None = None
    completed: bool | None = None


@dataclass
class OperationResult:
    """Uniform outcome of replaying one operation against the API."""

    success: bool
    error: str | None = None
    entry: ServerEntry | None = None
    retryable: bool = True


@dataclass
class SyncState:
    """Per-calendar push channel position and time of the last full download."""

    calendar_id: str
    last_event_id: str | None = None
    last_full_sync: str | None = None


@dataclass
class SyncConfig:
    """Configuration for the sync engine and its HTTP client."""

    base_url: str = DEFAULT_BASE_URL
    db_path: Path = DEFAULT_DB_PATH
    max_retries: int = MAX_RETRIES
    request_timeout: float = 10.0
    retry_base_delay: float | None = None  # seconds; None disables timed retries
    fail_fast_client_errors: bool = False
    session_cookie: str | None = None
    verbose: bool = False


@dataclass
class SyncStats:
    """Statistics for one or more flush passes."""

    synced: int = 0
    deleted: int = 0
    retried: int = 0
    conflicts: int = 0
    skipped_offline: int = 0

    def merge(self, other: "SyncStats") -> None:
        self.synced += other.synced
        self.deleted += other.deleted
        self.retried += other.retried
        self.conflicts += other.conflicts
        self.skipped_offline += other.skipped_offline


# --------------------------------------------------------------------------- #
# Push channel                                                                  #
# --------------------------------------------------------------------------- #


class PushEventType(str, Enum):
    ENTRY_ADDED = "entry_added"
    ENTRY_UPDATED = "entry_updated"
    ENTRY_DELETED = "entry_deleted"


@dataclass
class PushEvent:
    """One decoded live-update notification.

    ``entry`` is set for added/updated events, ``entry_id`` for every kind.
    """

    type: PushEventType
    entry_id: str
    date: str | None = None
    entry: ServerEntry | None = None
    event_id: str | None = None

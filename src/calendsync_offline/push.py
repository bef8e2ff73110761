"""
Live-update push channel: Server-Sent Events parsing and the listener loop.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import PushChannelError
from calendsync_offline.models import PushEvent
from calendsync_offline.models import PushEventType
from calendsync_offline.models import ServerEntry
from calendsync_offline.models import StoreError
from calendsync_offline.sync.reconciler import LiveUpdateReconciler

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 3.0  # seconds
MAX_RECONNECT_ATTEMPTS = 5


# --------------------------------------------------------------------------- #
# Pure helpers                                                                  #
# --------------------------------------------------------------------------- #


def calculate_reconnect_delay(
    attempts: int, base_delay: float = RECONNECT_DELAY, max_exponent: int = 4
) -> float:
    """Exponential backoff capped at 16x the base delay by default."""
    return base_delay * 2 ** min(attempts, max_exponent)


def should_reconnect(attempts: int, max_attempts: int = MAX_RECONNECT_ATTEMPTS) -> bool:
    return attempts < max_attempts


def parse_event_data(data: str) -> Any | None:
    """Decode the JSON body of an event; malformed data yields None."""
    try:
        return json.loads(data)
    except ValueError:
        return None


def build_sse_url(base_url: str, calendar_id: str, last_event_id: str | None = None) -> str:
    params = {"calendar_id": calendar_id}
    if last_event_id:
        params["last_event_id"] = last_event_id
    return f"{base_url.rstrip('/')}/api/events?{urlencode(params)}"


def parse_push_event(
    event_type: str | None, payload: Any, event_id: str | None = None
) -> PushEvent | None:
    """Build a PushEvent from a decoded message body.

    The SSE ``event:`` name wins over the body's ``type`` field. Unknown
    kinds and bodies missing the entry (or entry id) are rejected with None.
    """
    if not isinstance(payload, dict):
        return None
    try:
        kind = PushEventType(event_type or payload.get("type"))
    except ValueError:
        return None

    date = payload.get("date")
    if kind is PushEventType.ENTRY_DELETED:
        entry_id = payload.get("entry_id") or payload.get("entryId")
        if not entry_id:
            return None
        return PushEvent(type=kind, entry_id=entry_id, date=date, event_id=event_id)

    raw = payload.get("entry")
    if not isinstance(raw, dict) or "id" not in raw:
        return None
    try:
        entry = ServerEntry.from_dict(raw)
    except TypeError:
        return None
    return PushEvent(type=kind, entry_id=entry.id, date=date, entry=entry, event_id=event_id)


@dataclass
class SseMessage:
    event: str
    data: str
    id: str | None = None


async def iter_sse_messages(lines: AsyncIterator[str]) -> AsyncIterator[SseMessage]:
    """Frame a stream of text lines into SSE messages.

    A blank line dispatches the buffered message; lines starting with ``:``
    are comments. The last seen ``id`` carries over to later messages, as
    in the EventSource model.
    """
    event = ""
    data: list[str] = []
    last_id: str | None = None
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield SseMessage(event=event or "message", data="\n".join(data), id=last_id)
            event = ""
            data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        elif name == "id" and "\0" not in value:
            last_id = value or None
    if data:
        yield SseMessage(event=event or "message", data="\n".join(data), id=last_id)


# --------------------------------------------------------------------------- #
# Listener                                                                      #
# --------------------------------------------------------------------------- #


class PushListener:
    """Stream one calendar's live updates into the reconciler.

    Resumes from the ``last_event_id`` stored in the database and persists
    the id of every message it applies.
    """

    def __init__(
        self,
        base_url: str,
        calendar_id: str,
        reconciler: LiveUpdateReconciler,
        db: EntryDatabase,
        session_cookie: str | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.calendar_id = calendar_id
        self.reconciler = reconciler
        self.db = db
        self.session_cookie = session_cookie
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self._transport = transport
        self._stopped = False
        self._task: asyncio.Task | None = None
        self.events_applied = 0

        state = db.get_sync_state(calendar_id)
        self.last_event_id = state.last_event_id if state else None

    def stop(self):
        self._stopped = True
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def run(self):
        """Listen until stop() is called.

        Raises PushChannelError once ``max_attempts`` consecutive reconnects
        have failed.
        """
        self._stopped = False
        self._task = asyncio.current_task()
        attempts = 0
        cookies = {"session": self.session_cookie} if self.session_cookie else None
        timeout = httpx.Timeout(10.0, read=None)
        try:
            async with httpx.AsyncClient(
                timeout=timeout, cookies=cookies, transport=self._transport
            ) as client:
                while not self._stopped:
                    try:
                        if await self._stream(client):
                            attempts = 0
                    except httpx.HTTPError as e:
                        logger.warning("Push channel error: %s", e)
                    if self._stopped:
                        break
                    if not should_reconnect(attempts, self.max_attempts):
                        raise PushChannelError(
                            f"Gave up on push channel after {attempts} reconnect attempts"
                        )
                    delay = calculate_reconnect_delay(attempts, self.reconnect_delay)
                    attempts += 1
                    logger.info("Reconnecting in %.1fs (attempt %d)", delay, attempts)
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            if not self._stopped:
                raise
            logger.info("Push listener stopped")
        finally:
            self._task = None

    async def _stream(self, client: httpx.AsyncClient) -> bool:
        """Consume one connection. Returns True if it was established."""
        url = build_sse_url(self.base_url, self.calendar_id, self.last_event_id)
        logger.debug("Opening %s", url)
        async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
            response.raise_for_status()
            logger.info("Listening for updates to calendar %s", self.calendar_id)
            async for message in iter_sse_messages(response.aiter_lines()):
                await self._apply(message)
                if self._stopped:
                    break
        return True

    async def _apply(self, message: SseMessage):
        event_type = message.event if message.event != "message" else None
        event = parse_push_event(event_type, parse_event_data(message.data), message.id)
        if event is None:
            logger.warning("Ignoring unrecognised push message: %.200s", message.data)
        else:
            try:
                await self.reconciler.handle_event(event)
            except StoreError as e:
                logger.warning("Could not store %s for %s: %s", event.type.value, event.entry_id, e)
            else:
                self.events_applied += 1
        if message.id and message.id != self.last_event_id:
            self.db.set_last_event_id(self.calendar_id, message.id)
            self.last_event_id = message.id

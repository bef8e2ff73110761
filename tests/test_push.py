"""
Tests for the push channel: SSE framing, event parsing and the listener loop.
"""

import json

import httpx
import pytest

from calendsync_offline.models import PushChannelError
from calendsync_offline.models import PushEventType
from calendsync_offline.push import PushListener
from calendsync_offline.push import build_sse_url
from calendsync_offline.push import calculate_reconnect_delay
from calendsync_offline.push import iter_sse_messages
from calendsync_offline.push import parse_event_data
from calendsync_offline.push import parse_push_event
from calendsync_offline.push import should_reconnect
from calendsync_offline.sync.reconciler import LiveUpdateReconciler
from tests.conftest import CALENDAR_ID


async def _lines(*lines):
    for line in lines:
        yield line


async def _collect(lines):
    return [message async for message in iter_sse_messages(_lines(*lines))]


def _entry(entry_id: str, title: str = "Standup") -> dict:
    return {
        "id": entry_id,
        "calendarId": CALENDAR_ID,
        "title": title,
        "startDate": "2026-03-01",
    }


def _sse(*messages: tuple[str, str, dict]) -> str:
    chunks = []
    for event_id, event, body in messages:
        chunks.append(f"id: {event_id}\nevent: {event}\ndata: {json.dumps(body)}\n\n")
    return "".join(chunks)


class TestHelpers:
    def test_reconnect_delay_backs_off_and_caps(self):
        assert [calculate_reconnect_delay(n) for n in range(6)] == [3, 6, 12, 24, 48, 48]

    def test_should_reconnect(self):
        assert should_reconnect(4)
        assert not should_reconnect(5)
        assert not should_reconnect(1, max_attempts=1)

    def test_parse_event_data(self):
        assert parse_event_data('{"a": 1}') == {"a": 1}
        assert parse_event_data("not json") is None

    def test_build_sse_url(self):
        assert build_sse_url("http://calendar.test/", "cal 1") == (
            "http://calendar.test/api/events?calendar_id=cal+1"
        )
        assert build_sse_url("http://calendar.test", "c", "42").endswith(
            "calendar_id=c&last_event_id=42"
        )


class TestSseFraming:
    @pytest.mark.asyncio
    async def test_blank_line_dispatches(self):
        messages = await _collect(["event: entry_added", "data: {}", "", "data: x", ""])

        assert [(m.event, m.data) for m in messages] == [("entry_added", "{}"), ("message", "x")]

    @pytest.mark.asyncio
    async def test_multiline_data_and_comments(self):
        messages = await _collect([": keep-alive", "data: a", "data: b", ""])

        assert messages[0].data == "a\nb"

    @pytest.mark.asyncio
    async def test_id_carries_over(self):
        messages = await _collect(["id: 7", "data: a", "", "data: b", ""])

        assert [m.id for m in messages] == ["7", "7"]

    @pytest.mark.asyncio
    async def test_trailing_message_without_blank_line(self):
        messages = await _collect(["data: tail"])

        assert [m.data for m in messages] == ["tail"]

    @pytest.mark.asyncio
    async def test_comment_only_stream_yields_nothing(self):
        assert await _collect([": ping", "", ": ping", ""]) == []


class TestParsePushEvent:
    def test_added(self):
        event = parse_push_event("entry_added", {"entry": _entry("e1"), "date": "2026-03-01"}, "9")

        assert event.type is PushEventType.ENTRY_ADDED
        assert event.entry_id == "e1"
        assert event.entry.title == "Standup"
        assert event.date == "2026-03-01"
        assert event.event_id == "9"

    def test_type_from_body(self):
        event = parse_push_event(None, {"type": "entry_updated", "entry": _entry("e1")})
        assert event.type is PushEventType.ENTRY_UPDATED

    def test_deleted_accepts_either_id_key(self):
        assert parse_push_event("entry_deleted", {"entry_id": "e1"}).entry_id == "e1"
        assert parse_push_event("entry_deleted", {"entryId": "e2"}).entry_id == "e2"
        assert parse_push_event("entry_deleted", {}) is None

    @pytest.mark.parametrize(
        "event_type, payload",
        [
            ("entry_added", None),
            ("entry_added", ["not", "a", "dict"]),
            ("calendar_renamed", {"entry": {"id": "e1"}}),
            ("entry_added", {"entry": {"title": "no id"}}),
            ("entry_added", {"entry": {"id": "e1"}}),
        ],
    )
    def test_rejects_malformed(self, event_type, payload):
        assert parse_push_event(event_type, payload) is None


class TestPushListener:
    @pytest.mark.asyncio
    async def test_applies_events_and_persists_position(self, entry_db):
        body = _sse(
            ("1", "entry_added", {"entry": _entry("e1")}),
            ("2", "entry_updated", {"entry": _entry("e1", "Retro")}),
            ("3", "entry_deleted", {"entry_id": "gone"}),
        )
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        reconciler = LiveUpdateReconciler(entry_db)
        listener = PushListener(
            "http://calendar.test",
            CALENDAR_ID,
            reconciler,
            entry_db,
            session_cookie="abc",
            transport=httpx.MockTransport(handler),
        )
        reconciler.add_listener(
            lambda kind, *_: listener.stop() if kind is PushEventType.ENTRY_DELETED else None
        )

        await listener.run()

        assert listener.events_applied == 3
        assert entry_db.get_entry("e1").title == "Retro"
        assert entry_db.get_sync_state(CALENDAR_ID).last_event_id == "3"
        assert requests[0].url.params["calendar_id"] == CALENDAR_ID
        assert requests[0].headers["accept"] == "text/event-stream"
        assert "session=abc" in requests[0].headers["cookie"]

    @pytest.mark.asyncio
    async def test_resumes_from_stored_event_id(self, entry_db):
        entry_db.set_last_event_id(CALENDAR_ID, "41")
        requests = []
        listener = None

        def handler(request):
            requests.append(request)
            listener.stop()
            return httpx.Response(200, text="")

        listener = PushListener(
            "http://calendar.test",
            CALENDAR_ID,
            LiveUpdateReconciler(entry_db),
            entry_db,
            transport=httpx.MockTransport(handler),
        )

        await listener.run()

        assert listener.last_event_id == "41"
        assert requests[0].url.params["last_event_id"] == "41"

    @pytest.mark.asyncio
    async def test_malformed_message_is_skipped(self, entry_db):
        body = "id: 5\nevent: entry_added\ndata: {broken\n\n" + _sse(
            ("6", "entry_deleted", {"entry_id": "x"})
        )

        def handler(request):
            return httpx.Response(200, text=body)

        reconciler = LiveUpdateReconciler(entry_db)
        listener = PushListener(
            "http://calendar.test",
            CALENDAR_ID,
            reconciler,
            entry_db,
            transport=httpx.MockTransport(handler),
        )
        reconciler.add_listener(lambda *_: listener.stop())

        await listener.run()

        assert listener.events_applied == 1
        assert listener.last_event_id == "6"

    @pytest.mark.asyncio
    async def test_unstorable_event_is_skipped(self, entry_db):
        untitled = dict(_entry("e1"), title=None)
        body = _sse(
            ("1", "entry_added", {"entry": untitled}),
            ("2", "entry_added", {"entry": _entry("e2")}),
        )

        def handler(request):
            return httpx.Response(200, text=body)

        reconciler = LiveUpdateReconciler(entry_db)
        listener = PushListener(
            "http://calendar.test",
            CALENDAR_ID,
            reconciler,
            entry_db,
            transport=httpx.MockTransport(handler),
        )
        reconciler.add_listener(lambda *_: listener.stop())

        await listener.run()

        assert listener.events_applied == 1
        assert entry_db.get_entry("e1") is None
        assert entry_db.get_entry("e2").title == "Standup"
        assert entry_db.get_sync_state(CALENDAR_ID).last_event_id == "2"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, entry_db):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(503)

        listener = PushListener(
            "http://calendar.test",
            CALENDAR_ID,
            LiveUpdateReconciler(entry_db),
            entry_db,
            reconnect_delay=0,
            max_attempts=2,
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(PushChannelError):
            await listener.run()

        assert len(requests) == 3

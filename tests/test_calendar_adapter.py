import unittest
from datetime import datetime, timezone
from unittest import mock

from caldav.lib import error as caldav_error

from osis_sync.calendar_adapter import (
    CalendarAdapter,
    compose_description,
    describes_status,
    event_from_payload,
    event_to_payload,
    ical_to_payload,
    payload_to_ical,
    split_description,
    translate_error,
)
from osis_sync.errors import AuthExpired, NotFound, RateLimited, Rejected, TransientNetwork
from osis_sync.models import CalendarConfig, EventStatus, SyncCursor, Source, WorkProgramEvent, payload_hash

START = datetime(2026, 5, 4, 6, 30, tzinfo=timezone.utc)
END = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


def _payload(description: str = "[done] Bring the banner") -> dict:
    return {
        "uid": "evt-1",
        "summary": "Flag ceremony",
        "description": description,
        "dtstart": START.isoformat(),
        "dtend": END.isoformat(),
    }


class _Collection(list):
    def __init__(self, items, sync_token: str) -> None:
        super().__init__(items)
        self.sync_token = sync_token


def _resource(url: str, data) -> mock.Mock:
    resource = mock.Mock()
    resource.url = url
    resource.data = data
    return resource


class TranslationTests(unittest.TestCase):
    def test_status_prefix(self) -> None:
        self.assertEqual(compose_description(EventStatus.DONE, "notes"), "[done] notes")
        self.assertEqual(compose_description(EventStatus.IN_PROGRESS, ""), "[in-progress]")
        self.assertEqual(compose_description(EventStatus.PLANNED, "notes"), "notes")
        self.assertEqual(split_description("[in-progress] half way"), (EventStatus.IN_PROGRESS, "half way"))
        self.assertEqual(split_description("[urgent] not a status"), (EventStatus.PLANNED, "[urgent] not a status"))
        self.assertEqual(split_description(""), (EventStatus.PLANNED, ""))

    def test_external_payload_round_trips_through_domain_form(self) -> None:
        for description in ("[done] Bring the banner", "Plain description", "[in-progress]", ""):
            payload = _payload(description)
            self.assertEqual(event_to_payload(event_from_payload(payload)), payload)

    def test_ical_round_trip(self) -> None:
        payload = _payload("[done] line one\nline two, with comma")
        self.assertEqual(ical_to_payload(payload_to_ical(payload)), payload)

    def test_planned_marker_stays_in_the_notes(self) -> None:
        self.assertEqual(split_description("[planned] bring agenda"), (EventStatus.PLANNED, "[planned] bring agenda"))
        self.assertEqual(split_description("[done] "), (EventStatus.PLANNED, "[done] "))
        for description in ("[planned] bring agenda", "[planned]", "[done] "):
            with self.subTest(description=description):
                payload = _payload(description)
                self.assertEqual(event_to_payload(event_from_payload(payload)), payload)
        self.assertTrue(describes_status("[done] hidden status"))
        self.assertFalse(describes_status("[planned] bring agenda"))

    def test_sub_second_times_survive_an_ical_round_trip(self) -> None:
        event = WorkProgramEvent(
            local_id="evt-2",
            title="Class meeting",
            start=START.replace(microsecond=123456),
            end=END.replace(microsecond=654321),
        )
        pushed = event_to_payload(event)
        self.assertEqual(pushed["dtstart"], START.isoformat())
        readback = ical_to_payload(payload_to_ical(pushed))
        self.assertEqual(payload_hash(readback), payload_hash(pushed))

    def test_all_day_event_spans_the_day(self) -> None:
        raw = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\nBEGIN:VEVENT\r\n"
            "UID:evt-9\r\nDTSTAMP:20260501T000000Z\r\nSUMMARY:Holiday\r\n"
            "DTSTART;VALUE=DATE:20260505\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        payload = ical_to_payload(raw)
        self.assertEqual(payload["uid"], "evt-9")
        self.assertEqual(payload["dtstart"], "2026-05-05T00:00:00+00:00")
        self.assertEqual(payload["description"], "")

    def test_translate_error(self) -> None:
        self.assertIsInstance(translate_error(caldav_error.AuthorizationError("u")), AuthExpired)
        self.assertIsInstance(translate_error(caldav_error.NotFoundError("u")), NotFound)
        self.assertIsInstance(translate_error(caldav_error.PutError("u", "429 Too Many Requests")), RateLimited)
        self.assertIsInstance(translate_error(caldav_error.PutError("u", "bad data")), Rejected)
        self.assertIsInstance(translate_error(ConnectionResetError("reset")), TransientNetwork)


class CalendarAdapterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.credentials = mock.Mock()
        self.credentials.token = mock.AsyncMock(return_value="token-1")
        self.calendar = mock.Mock()
        self.adapter = CalendarAdapter(
            CalendarConfig(calendar_url="https://dav.example.com/cal/osis/"),
            self.credentials,
            clock=lambda: START,
        )
        patcher = mock.patch.object(CalendarAdapter, "_connect", return_value=self.calendar)
        self.connect = patcher.start()
        self.addCleanup(patcher.stop)

    async def test_repeated_push_updates_the_same_event(self) -> None:
        stored = _resource("https://dav.example.com/cal/osis/evt-1.ics", None)
        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError("missing")
        self.calendar.save_event.return_value = stored
        self.calendar.event_by_url.return_value = stored

        event = WorkProgramEvent(
            local_id="evt-1", title="Flag ceremony", start=START, end=END, status=EventStatus.DONE
        )
        first = await self.adapter.push(event)
        second = await self.adapter.push(event.with_updates(external_ref=first.external_ref))

        self.assertEqual(first.external_ref, second.external_ref)
        self.assertEqual(first.token, second.token)
        self.calendar.save_event.assert_called_once()
        stored.save.assert_called_once()
        self.assertIn("UID:evt-1", stored.data)

    async def test_retried_push_without_reference_finds_event_by_uid(self) -> None:
        existing = _resource("https://dav.example.com/cal/osis/evt-1.ics", None)
        self.calendar.event_by_uid.return_value = existing
        event = WorkProgramEvent(local_id="evt-1", title="Flag ceremony", start=START, end=END)
        result = await self.adapter.push(event)
        self.assertEqual(result.external_ref, existing.url)
        self.calendar.save_event.assert_not_called()
        self.calendar.event_by_uid.assert_called_once_with("evt-1")

    async def test_incremental_pull_reports_changes_and_deletions(self) -> None:
        changed = _resource("https://dav.example.com/cal/osis/evt-1.ics", payload_to_ical(_payload()))
        removed = _resource("https://dav.example.com/cal/osis/evt-2.ics", None)
        self.calendar.objects_by_sync_token.return_value = _Collection([changed, removed], "token-2")

        result = await self.adapter.pull(SyncCursor(source=Source.CALENDAR, token="token-1"))

        self.assertEqual(result.token, "token-2")
        self.assertFalse(result.complete)
        self.assertEqual(result.changes[0].local_id, "evt-1")
        self.assertEqual(result.changes[0].payload["description"], "[done] Bring the banner")
        self.assertTrue(result.changes[1].deleted)
        self.assertEqual(result.changes[1].external_ref, removed.url)

    async def test_expired_sync_token_falls_back_to_window_read(self) -> None:
        def objects_by_sync_token(sync_token=None, load_objects=False):
            if sync_token:
                raise caldav_error.ReportError("https://dav.example.com/cal/osis/", "valid-sync-token")
            return _Collection([], "token-fresh")

        self.calendar.objects_by_sync_token.side_effect = objects_by_sync_token
        self.calendar.search.return_value = [
            _resource("https://dav.example.com/cal/osis/evt-1.ics", payload_to_ical(_payload()))
        ]

        with self.assertLogs("osis_sync.calendar_adapter", level="INFO"):
            result = await self.adapter.pull(SyncCursor(source=Source.CALENDAR, token="stale"))

        self.assertTrue(result.complete)
        self.assertEqual(result.token, "token-fresh")
        self.assertEqual([change.local_id for change in result.changes], ["evt-1"])
        window_start, window_end = result.window
        self.assertLess(window_start, START)
        self.assertGreater(window_end, START)
        search_kwargs = self.calendar.search.call_args.kwargs
        self.assertTrue(search_kwargs["event"])

    async def test_unreadable_resource_makes_window_incomplete(self) -> None:
        self.calendar.objects_by_sync_token.return_value = _Collection([], "token-fresh")
        self.calendar.search.return_value = [_resource("https://dav.example.com/cal/osis/bad.ics", "not ical")]
        result = await self.adapter.pull(SyncCursor(source=Source.CALENDAR))
        self.assertFalse(result.complete)
        self.assertEqual(result.changes, [])

    async def test_delete_of_missing_event_is_success(self) -> None:
        self.calendar.event_by_url.side_effect = caldav_error.NotFoundError("missing")
        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError("missing")
        await self.adapter.delete("https://dav.example.com/cal/osis/evt-1.ics", "evt-1")

    async def test_auth_failure_is_translated(self) -> None:
        self.calendar.event_by_url.side_effect = caldav_error.AuthorizationError("denied")
        with self.assertRaises(AuthExpired):
            await self.adapter.delete("https://dav.example.com/cal/osis/evt-1.ics", "evt-1")


if __name__ == "__main__":
    unittest.main()

import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from osis_sync.errors import EntityNotFound, StaleWrite
from osis_sync.models import (
    EntityKind,
    EventStatus,
    FinancialTransaction,
    Role,
    Source,
    SyncCursor,
    WorkProgramEvent,
)
from osis_sync.state_store import StateStore


def _transaction(local_id: str = "trx-1", amount: int = -50000) -> FinancialTransaction:
    return FinancialTransaction(
        local_id=local_id,
        amount=amount,
        category="supplies",
        timestamp=datetime(2026, 3, 1, 9, tzinfo=timezone.utc),
    )


def _event(local_id: str = "evt-1", title: str = "Class meeting") -> WorkProgramEvent:
    return WorkProgramEvent(
        local_id=local_id,
        title=title,
        start=datetime(2026, 3, 2, 8, tzinfo=timezone.utc),
        end=datetime(2026, 3, 2, 10, tzinfo=timezone.utc),
    )


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.temp_dir.name) / "state.db")
        self.store = StateStore(self.db_path)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_put_increments_version_and_reads_back(self) -> None:
        first = self.store.put(_transaction())
        self.assertEqual(first.version, 1)
        self.assertTrue(first.is_pending)
        second = self.store.put(_transaction(amount=-40000), expected_version=1)
        self.assertEqual(second.version, 2)
        loaded = self.store.get(EntityKind.TRANSACTION, "trx-1")
        self.assertEqual(loaded.amount, -40000)
        self.assertEqual(loaded.version, 2)

    def test_put_with_stale_expected_version_fails(self) -> None:
        self.store.put(_transaction())
        self.store.put(_transaction(amount=1), expected_version=1)
        with self.assertRaises(StaleWrite) as ctx:
            self.store.put(_transaction(amount=2), expected_version=1)
        self.assertEqual(ctx.exception.current, 2)
        self.assertEqual(self.store.get(EntityKind.TRANSACTION, "trx-1").amount, 1)

    def test_delete_unpushed_entity_purges(self) -> None:
        self.store.put(_event())
        self.assertIsNone(self.store.delete(EntityKind.EVENT, "evt-1"))
        self.assertIsNone(self.store.get(EntityKind.EVENT, "evt-1"))
        with self.assertRaises(EntityNotFound):
            self.store.delete(EntityKind.EVENT, "evt-1")

    def test_delete_pushed_entity_tombstones(self) -> None:
        saved = self.store.put(_event())
        self.store.confirm_push(
            EntityKind.EVENT, "evt-1", version=saved.version, external_ref="/cal/evt-1.ics", external_token="t1"
        )
        self.assertEqual(self.store.list_pending(Source.CALENDAR), [])
        tombstone = self.store.delete(EntityKind.EVENT, "evt-1")
        self.assertTrue(tombstone.tombstoned)
        self.assertEqual(tombstone.version, 2)
        self.assertEqual([item.local_id for item in self.store.list_pending(Source.CALENDAR)], ["evt-1"])
        with self.assertRaises(StaleWrite):
            self.store.put(_event(title="after delete"))

    def test_confirm_push_never_moves_pushed_version_backwards(self) -> None:
        self.store.put(_event())
        self.store.put(_event(title="v2"), expected_version=1)
        self.store.confirm_push(EntityKind.EVENT, "evt-1", version=2, external_ref="r", external_token="t2")
        self.store.confirm_push(EntityKind.EVENT, "evt-1", version=1, external_ref="r", external_token="t1")
        self.assertEqual(self.store.get(EntityKind.EVENT, "evt-1").pushed_version, 2)

    def test_in_flight_marker_is_exclusive_and_cleared_by_cycle(self) -> None:
        self.store.put(_event())
        self.assertTrue(self.store.mark_in_flight(EntityKind.EVENT, "evt-1", "cycle-a"))
        self.assertFalse(self.store.mark_in_flight(EntityKind.EVENT, "evt-1", "cycle-b"))
        self.assertEqual(self.store.list_pending(Source.CALENDAR), [])
        self.assertEqual(self.store.clear_cycle("cycle-a"), 1)
        self.assertEqual(len(self.store.list_pending(Source.CALENDAR)), 1)

    def test_in_flight_markers_are_released_on_restart(self) -> None:
        self.store.put(_event())
        self.store.mark_in_flight(EntityKind.EVENT, "evt-1", "cycle-a")
        reopened = StateStore(self.db_path)
        self.assertEqual(len(reopened.list_pending(Source.CALENDAR)), 1)

    def test_external_insert_is_version_zero_and_not_pending(self) -> None:
        saved = self.store.insert_external(_transaction(), external_ref="'Ledger'!A2:E2", external_token="h1")
        self.assertEqual(saved.version, 0)
        self.assertFalse(saved.is_pending)
        self.assertEqual(
            self.store.find_by_external_ref(EntityKind.TRANSACTION, "'Ledger'!A2:E2").local_id, "trx-1"
        )

    def test_write_reconciled_confirmed_and_unconfirmed(self) -> None:
        self.store.insert_external(_event(), external_ref="/cal/evt-1.ics", external_token="h1")
        confirmed = self.store.write_reconciled(
            _event(title="Renamed"),
            expected_version=0,
            external_ref="/cal/evt-1.ics",
            external_token="h2",
            confirmed=True,
        )
        self.assertEqual(confirmed.version, 1)
        self.assertFalse(confirmed.is_pending)
        queued = self.store.write_reconciled(
            _event(title="Merged").with_updates(status=EventStatus.DONE),
            expected_version=1,
            external_ref="/cal/evt-1.ics",
            external_token="h3",
            confirmed=False,
        )
        self.assertEqual(queued.version, 2)
        self.assertTrue(queued.is_pending)
        self.assertEqual(queued.status, EventStatus.DONE)

    def test_review_parking_excludes_from_pending(self) -> None:
        self.store.put(_event())
        self.store.park_for_review(
            EntityKind.EVENT,
            "evt-1",
            reason="merge failed",
            local_snapshot={"title": "local"},
            external_snapshot={"payload": {"summary": "remote"}},
        )
        self.assertTrue(self.store.get(EntityKind.EVENT, "evt-1").needs_review)
        self.assertEqual(self.store.list_pending(Source.CALENDAR), [])
        self.assertEqual(self.store.list_review()[0]["reason"], "merge failed")

        item = self.store.clear_review(EntityKind.EVENT, "evt-1")
        self.assertEqual(item["external"]["payload"]["summary"], "remote")
        self.assertFalse(self.store.get(EntityKind.EVENT, "evt-1").needs_review)
        self.assertIsNone(self.store.clear_review(EntityKind.EVENT, "evt-1"))

    def test_degraded_entity_waits_for_next_local_put(self) -> None:
        self.store.put(_event())
        self.store.mark_degraded(EntityKind.EVENT, "evt-1", "REJECTED: bad payload")
        self.assertEqual(self.store.list_pending(Source.CALENDAR), [])
        self.store.put(_event(title="fixed"), expected_version=1)
        self.assertEqual(len(self.store.list_pending(Source.CALENDAR)), 1)

    def test_cursor_round_trip(self) -> None:
        self.assertIsNone(self.store.get_cursor(Source.LEDGER).token)
        cursor = SyncCursor(
            source=Source.LEDGER,
            token="snap-1",
            last_cycle_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            backoff_failures=2,
            degraded=True,
        )
        self.store.save_cursor(cursor)
        loaded = self.store.get_cursor(Source.LEDGER)
        self.assertEqual(loaded.token, "snap-1")
        self.assertEqual(loaded.backoff_failures, 2)
        self.assertTrue(loaded.degraded)
        self.assertEqual(loaded.last_cycle_at, cursor.last_cycle_at)

    def test_users_runs_and_audit(self) -> None:
        self.store.upsert_user("alice", Role.TREASURER)
        self.store.upsert_user("alice", Role.CHAIR)
        self.assertEqual(self.store.get_user("alice").role, Role.CHAIR)
        self.assertIsNone(self.store.get_user("bob"))

        run_id = self.store.record_sync_run(
            source="ledger",
            trigger="manual",
            status="success",
            message="ok",
            duration_ms=5,
            pulled=1,
            pushed=0,
            conflicts=0,
            parked=0,
        )
        self.assertEqual(self.store.recent_sync_runs()[0]["id"], run_id)

        self.store.record_audit_event(kind="transaction", local_id="trx-1", action="pushed", details={"version": 1})
        event = self.store.recent_audit_events()[0]
        self.assertEqual(event["details"], {"version": 1})
        self.assertEqual(event["origin"], "system")


if __name__ == "__main__":
    unittest.main()

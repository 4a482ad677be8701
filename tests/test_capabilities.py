import unittest
from datetime import datetime, timezone

from osis_sync.capabilities import (
    ENTITY_LOCKED,
    INSUFFICIENT_ROLE,
    ROLE_CAPABILITIES,
    SYSTEM_ORIGIN,
    authorize,
)
from osis_sync.errors import AuthorizationDenied
from osis_sync.models import FinancialTransaction, MutationKind, Role, WorkProgramEvent


def _event(**kwargs) -> WorkProgramEvent:
    start = datetime(2026, 3, 1, 8, tzinfo=timezone.utc)
    return WorkProgramEvent(local_id="evt-1", title="Class meeting", start=start, end=start, **kwargs)


def _transaction(**kwargs) -> FinancialTransaction:
    return FinancialTransaction(
        local_id="trx-1",
        amount=-50000,
        category="supplies",
        timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc),
        **kwargs,
    )


class CapabilityGateTests(unittest.TestCase):
    def test_every_missing_capability_is_insufficient_role(self) -> None:
        for role in Role:
            for mutation in MutationKind:
                if mutation in ROLE_CAPABILITIES[role]:
                    continue
                decision = authorize(role, mutation)
                self.assertFalse(decision.allowed, f"{role} should not {mutation}")
                self.assertEqual(decision.reason, INSUFFICIENT_ROLE)

    def test_role_scopes(self) -> None:
        self.assertTrue(authorize(Role.TREASURER, MutationKind.UPDATE_TRANSACTION, _transaction()).allowed)
        self.assertFalse(authorize(Role.TREASURER, MutationKind.UPDATE_EVENT, _event()).allowed)
        self.assertTrue(authorize(Role.SECRETARY, MutationKind.CREATE_EVENT).allowed)
        self.assertFalse(authorize(Role.SECRETARY, MutationKind.CREATE_TRANSACTION).allowed)
        self.assertTrue(authorize(Role.CHAIR, MutationKind.DELETE_EVENT, _event()).allowed)
        self.assertTrue(authorize(Role.CHAIR, MutationKind.REASSIGN_ROLE).allowed)
        self.assertEqual(ROLE_CAPABILITIES[Role.MEMBER], frozenset())

    def test_unknown_role_is_denied(self) -> None:
        decision = authorize(None, MutationKind.CREATE_EVENT)
        self.assertEqual(decision.reason, INSUFFICIENT_ROLE)

    def test_parked_or_tombstoned_entity_is_locked(self) -> None:
        decision = authorize(Role.SECRETARY, MutationKind.UPDATE_EVENT, _event(needs_review=True))
        self.assertEqual(decision.reason, ENTITY_LOCKED)
        decision = authorize(Role.TREASURER, MutationKind.DELETE_TRANSACTION, _transaction(tombstoned=True))
        self.assertEqual(decision.reason, ENTITY_LOCKED)

    def test_system_origin_bypasses_role_check(self) -> None:
        with self.assertLogs("osis_sync.capabilities", level="DEBUG") as captured:
            decision = authorize(None, MutationKind.UPDATE_TRANSACTION, _transaction(), origin=SYSTEM_ORIGIN)
        self.assertTrue(decision.allowed)
        self.assertIn("system-origin", captured.output[0])

    def test_mutation_kind_must_match_target(self) -> None:
        with self.assertRaises(ValueError):
            authorize(Role.CHAIR, MutationKind.UPDATE_EVENT, _transaction())

    def test_raise_for_denial_carries_reason(self) -> None:
        with self.assertRaises(AuthorizationDenied) as ctx:
            authorize(Role.MEMBER, MutationKind.CREATE_EVENT).raise_for_denial()
        self.assertEqual(ctx.exception.reason, INSUFFICIENT_ROLE)


if __name__ == "__main__":
    unittest.main()

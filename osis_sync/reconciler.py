from __future__ import annotations

from dataclasses import dataclass

from osis_sync.errors import ConflictUnresolved
from osis_sync.models import Entity, FinancialTransaction, WorkProgramEvent

EXTERNAL_WINS = "external_wins"
FIELD_MERGE = "field_merge"

# Event fields owned by the calendar when both sides changed. Status stays local.
CALENDAR_OWNED_FIELDS = ("title", "start", "end", "notes")


@dataclass
class Resolution:
    entity: Entity
    strategy: str
    push_required: bool
    won_locally: list[str]
    won_externally: list[str]


def _changed_fields(local: Entity, external: Entity) -> list[str]:
    local_payload = local.payload()
    external_payload = external.payload()
    return sorted(key for key in local_payload if local_payload[key] != external_payload.get(key))


def resolve_conflict(local: Entity, external: Entity) -> Resolution:
    """Pick the winning state for an entity edited on both sides.

    Transactions: the ledger wins outright and any local push is dropped.
    Events: status from the local side, everything else from the calendar;
    the result is pushed back when the calendar lacks the local status.
    The outcome depends only on the two inputs.
    """
    if local.kind != external.kind or local.local_id != external.local_id:
        raise ConflictUnresolved(
            f"cannot resolve {local.kind.value}:{local.local_id} against "
            f"{external.kind.value}:{external.local_id}"
        )
    differing = _changed_fields(local, external)

    if isinstance(local, FinancialTransaction):
        merged = local.with_updates(
            amount=external.amount,
            category=external.category,
            timestamp=external.timestamp,
            note=external.note,
        )
        return Resolution(
            entity=merged,
            strategy=EXTERNAL_WINS,
            push_required=False,
            won_locally=[],
            won_externally=differing,
        )

    if not isinstance(local, WorkProgramEvent) or not isinstance(external, WorkProgramEvent):
        raise ConflictUnresolved(f"unsupported entity type {type(local).__name__}")
    merged = local.with_updates(**{name: getattr(external, name) for name in CALENDAR_OWNED_FIELDS})
    if merged.start is not None and merged.end is not None and merged.end < merged.start:
        raise ConflictUnresolved(f"event:{local.local_id} merged window ends before it starts")
    won_locally = [name for name in differing if name == "status"]
    return Resolution(
        entity=merged,
        strategy=FIELD_MERGE,
        push_required=merged.status != external.status,
        won_locally=won_locally,
        won_externally=[name for name in differing if name != "status"],
    )

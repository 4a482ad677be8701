from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from osis_sync.errors import AuthorizationDenied
from osis_sync.models import EntityKind, MutationKind, Role

logger = logging.getLogger(__name__)

INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
ENTITY_LOCKED = "ENTITY_LOCKED"

SYSTEM_ORIGIN = "system"
USER_ORIGIN = "user"

EVENT_MUTATIONS = frozenset(
    {MutationKind.CREATE_EVENT, MutationKind.UPDATE_EVENT, MutationKind.DELETE_EVENT}
)
TRANSACTION_MUTATIONS = frozenset(
    {
        MutationKind.CREATE_TRANSACTION,
        MutationKind.UPDATE_TRANSACTION,
        MutationKind.DELETE_TRANSACTION,
    }
)

ROLE_CAPABILITIES: dict[Role, frozenset[MutationKind]] = {
    Role.CHAIR: EVENT_MUTATIONS | TRANSACTION_MUTATIONS | {MutationKind.REASSIGN_ROLE},
    Role.TREASURER: TRANSACTION_MUTATIONS,
    Role.SECRETARY: EVENT_MUTATIONS,
    Role.MEMBER: frozenset(),
}

MUTATION_TARGET_KIND = {
    **{kind: EntityKind.EVENT for kind in EVENT_MUTATIONS},
    **{kind: EntityKind.TRANSACTION for kind in TRANSACTION_MUTATIONS},
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise AuthorizationDenied(self.reason)


ALLOW = Decision(allowed=True)


def authorize(
    role: Role | None,
    mutation_kind: MutationKind,
    target_entity: Any = None,
    *,
    origin: str = USER_ORIGIN,
) -> Decision:
    """Decide whether ``role`` may perform ``mutation_kind`` on ``target_entity``.

    Reconciliation writes pass ``origin="system"``; they skip the role check
    but still go through this gate so every mutation path is logged here.
    """
    target_kind = MUTATION_TARGET_KIND.get(mutation_kind)
    if target_entity is not None and target_kind is not None:
        entity_kind = getattr(target_entity, "kind", None)
        if entity_kind is not None and entity_kind != target_kind:
            raise ValueError(f"{mutation_kind.value} cannot target a {entity_kind.value}")

    if origin == SYSTEM_ORIGIN:
        logger.debug(
            "system-origin mutation %s on %s",
            mutation_kind.value,
            getattr(target_entity, "local_id", "-"),
        )
        return ALLOW

    if role is None or mutation_kind not in ROLE_CAPABILITIES.get(role, frozenset()):
        return Decision(allowed=False, reason=INSUFFICIENT_ROLE)

    if target_entity is not None and mutation_kind not in {
        MutationKind.CREATE_EVENT,
        MutationKind.CREATE_TRANSACTION,
    }:
        if getattr(target_entity, "tombstoned", False) or getattr(target_entity, "needs_review", False):
            return Decision(allowed=False, reason=ENTITY_LOCKED)

    return ALLOW

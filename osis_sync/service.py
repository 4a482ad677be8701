from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from osis_sync.calendar_adapter import describes_status
from osis_sync.capabilities import USER_ORIGIN, authorize
from osis_sync.errors import EntityNotFound, UnknownUser
from osis_sync.models import (
    ENTITY_TYPES,
    KIND_SOURCE,
    Entity,
    EntityKind,
    EventStatus,
    MutationKind,
    Role,
    User,
    WorkProgramEvent,
)
from osis_sync.notifications import ChangeBus
from osis_sync.state_store import StateStore
from osis_sync.sync_engine import entity_from_external

logger = logging.getLogger(__name__)

ENTITY_FIELDS = {
    EntityKind.EVENT: ("title", "start", "end", "status", "notes"),
    EntityKind.TRANSACTION: ("amount", "category", "timestamp", "note"),
}

_MUTATIONS = {
    EntityKind.EVENT: (MutationKind.CREATE_EVENT, MutationKind.UPDATE_EVENT, MutationKind.DELETE_EVENT),
    EntityKind.TRANSACTION: (
        MutationKind.CREATE_TRANSACTION,
        MutationKind.UPDATE_TRANSACTION,
        MutationKind.DELETE_TRANSACTION,
    ),
}

KEEP_LOCAL = "local"
KEEP_EXTERNAL = "external"


def _validate(entity: Entity) -> None:
    if isinstance(entity, WorkProgramEvent):
        if not entity.title.strip():
            raise ValueError("title must not be empty")
        if entity.start is None or entity.end is None:
            raise ValueError("start and end are required")
        if entity.end < entity.start:
            raise ValueError("end must not be earlier than start")
        if entity.status == EventStatus.PLANNED and describes_status(entity.notes):
            raise ValueError("notes of a planned event must not start with a status marker such as [done]")
        return
    if not entity.category.strip():
        raise ValueError("category must not be empty")
    if entity.timestamp is None:
        raise ValueError("timestamp is required")


class MutationService:
    """User-initiated mutations: gate, write locally, then queue outward propagation."""

    def __init__(self, store: StateStore, notifier: ChangeBus, scheduler: Any = None) -> None:
        self.store = store
        self.notifier = notifier
        self.scheduler = scheduler

    def seed_users(self, users: dict[str, str]) -> int:
        created = 0
        for user_id, role in users.items():
            if self.store.get_user(user_id) is None:
                self.store.upsert_user(user_id, Role(role))
                created += 1
        if created:
            logger.info("seeded %d users from configuration", created)
        return created

    def actor(self, user_id: Optional[str]) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise UnknownUser(f"unknown user {user_id!r}")
        return user

    def _after_write(self, actor: User, entity: Entity, action: str, **details: Any) -> None:
        self.store.record_audit_event(
            kind=entity.kind.value,
            local_id=entity.local_id,
            action=action,
            details={"actor": actor.user_id, **details},
            origin=USER_ORIGIN,
        )
        self.notifier.publish(action, kind=entity.kind.value, local_id=entity.local_id, actor=actor.user_id)
        if self.scheduler is not None:
            self.scheduler.notify_local_change(KIND_SOURCE[entity.kind])

    def _require(self, kind: EntityKind, local_id: str) -> Entity:
        entity = self.store.get(kind, local_id)
        if entity is None:
            raise EntityNotFound(f"{kind.value}:{local_id}")
        return entity

    # ------------------------------------------------------------ entities

    def create(self, actor_id: Optional[str], kind: EntityKind, fields: dict[str, Any]) -> Entity:
        actor = self.actor(actor_id)
        authorize(actor.role, _MUTATIONS[kind][0]).raise_for_denial()
        payload = {name: fields[name] for name in ENTITY_FIELDS[kind] if fields.get(name) is not None}
        entity = ENTITY_TYPES[kind].from_payload(uuid.uuid4().hex, payload)
        _validate(entity)
        saved = self.store.put(entity, expected_version=0)
        self._after_write(actor, saved, "created", version=saved.version)
        return saved

    def update(
        self,
        actor_id: Optional[str],
        kind: EntityKind,
        local_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Entity:
        actor = self.actor(actor_id)
        current = self._require(kind, local_id)
        authorize(actor.role, _MUTATIONS[kind][1], current).raise_for_denial()
        changes = {name: fields[name] for name in ENTITY_FIELDS[kind] if fields.get(name) is not None}
        payload = {**current.payload(), **changes}
        entity = ENTITY_TYPES[kind].from_payload(local_id, payload)
        _validate(entity)
        saved = self.store.put(
            entity,
            expected_version=current.version if expected_version is None else expected_version,
        )
        self._after_write(actor, saved, "updated", version=saved.version, fields=sorted(changes))
        return saved

    def delete(
        self,
        actor_id: Optional[str],
        kind: EntityKind,
        local_id: str,
        expected_version: Optional[int] = None,
    ) -> Optional[Entity]:
        actor = self.actor(actor_id)
        current = self._require(kind, local_id)
        if current.tombstoned and current.degraded_reason:
            # Deleting again re-arms a delete the external side refused.
            authorize(actor.role, _MUTATIONS[kind][2]).raise_for_denial()
            rearmed = self.store.clear_degraded(kind, local_id)
            self._after_write(actor, rearmed, "delete_retried", reason=current.degraded_reason)
            return rearmed
        authorize(actor.role, _MUTATIONS[kind][2], current).raise_for_denial()
        result = self.store.delete(
            kind,
            local_id,
            expected_version=current.version if expected_version is None else expected_version,
        )
        self._after_write(actor, current, "deleted", purged=result is None)
        return result

    # ------------------------------------------------------------ administration

    def reassign_role(self, actor_id: Optional[str], user_id: str, role: Role) -> User:
        actor = self.actor(actor_id)
        authorize(actor.role, MutationKind.REASSIGN_ROLE).raise_for_denial()
        previous = self.store.get_user(user_id)
        user = self.store.upsert_user(user_id, role)
        self.store.record_audit_event(
            kind="user",
            local_id=user_id,
            action="role_reassigned",
            details={
                "actor": actor.user_id,
                "from": previous.role.value if previous else None,
                "to": role.value,
            },
            origin=USER_ORIGIN,
        )
        self.notifier.publish("role_reassigned", user_id=user_id, role=role.value, actor=actor.user_id)
        return user

    def clear_review(
        self,
        actor_id: Optional[str],
        kind: EntityKind,
        local_id: str,
        keep: str = KEEP_LOCAL,
    ) -> Entity:
        """Release a parked entity, keeping either the local or the external state."""
        if keep not in {KEEP_LOCAL, KEEP_EXTERNAL}:
            raise ValueError("keep must be 'local' or 'external'")
        actor = self.actor(actor_id)
        # Parked entities are locked, so only the capability itself is checked.
        authorize(actor.role, _MUTATIONS[kind][1]).raise_for_denial()
        current = self._require(kind, local_id)
        item = self.store.clear_review(kind, local_id)
        if item is None:
            raise EntityNotFound(f"no review item for {kind.value}:{local_id}")

        external = item.get("external") or {}
        if keep == KEEP_EXTERNAL and external.get("payload"):
            incoming = entity_from_external(kind, external["payload"]).with_updates(local_id=local_id)
            saved = self.store.write_reconciled(
                incoming,
                expected_version=current.version,
                external_ref=external.get("external_ref") or current.external_ref,
                external_token=external.get("token") or "",
                confirmed=True,
            )
        else:
            # A fresh version stamp queues the local state for the next push.
            saved = self.store.put(current, expected_version=current.version)
        self._after_write(actor, saved, "review_cleared", keep=keep, reason=item.get("reason"))
        return saved

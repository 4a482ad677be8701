from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol

from osis_sync.calendar_adapter import event_from_payload
from osis_sync.capabilities import SYSTEM_ORIGIN, authorize
from osis_sync.credentials import CredentialProvider
from osis_sync.errors import (
    AuthExpired,
    ConflictUnresolved,
    NotFound,
    Rejected,
    StaleWrite,
)
from osis_sync.ledger_adapter import transaction_from_payload
from osis_sync.models import (
    SOURCE_KIND,
    Entity,
    EntityKind,
    ExternalChange,
    MutationKind,
    PullResult,
    PushResult,
    Source,
    SyncConfig,
    SyncCursor,
    SyncResult,
    SyncState,
    utc_now,
)
from osis_sync.notifications import ChangeBus
from osis_sync.reconciler import resolve_conflict
from osis_sync.state_store import StateStore

logger = logging.getLogger(__name__)

_UPDATE_KIND = {EntityKind.EVENT: MutationKind.UPDATE_EVENT, EntityKind.TRANSACTION: MutationKind.UPDATE_TRANSACTION}
_CREATE_KIND = {EntityKind.EVENT: MutationKind.CREATE_EVENT, EntityKind.TRANSACTION: MutationKind.CREATE_TRANSACTION}
_DELETE_KIND = {EntityKind.EVENT: MutationKind.DELETE_EVENT, EntityKind.TRANSACTION: MutationKind.DELETE_TRANSACTION}


class SourceAdapter(Protocol):
    async def push(self, entity: Any) -> PushResult: ...

    async def pull(self, cursor: SyncCursor) -> PullResult: ...

    async def delete(self, external_ref: str, key: str = "") -> None: ...


def entity_from_external(kind: EntityKind, payload: dict[str, Any], **meta: Any) -> Entity:
    if kind == EntityKind.EVENT:
        return event_from_payload(payload, **meta)
    return transaction_from_payload(payload, **meta)


def _in_window(entity: Entity, window: tuple[datetime, datetime] | None) -> bool:
    if window is None:
        return True
    start = getattr(entity, "start", None)
    end = getattr(entity, "end", None) or start
    if start is None:
        return False
    return start <= window[1] and end >= window[0]


@dataclass
class SyncContext:
    """Everything the orchestrator touches, handed over explicitly."""

    store: StateStore
    adapters: dict[Source, SourceAdapter]
    credentials: CredentialProvider
    config: SyncConfig
    notifier: ChangeBus = field(default_factory=ChangeBus)


@dataclass
class _CycleStats:
    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    parked: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
        if outcome == "conflict":
            self.conflicts += 1
        elif outcome == "parked":
            self.parked += 1


class SyncOrchestrator:
    """Drives Pulling -> Reconciling -> Pushing cycles for each external source.

    One cycle per source runs at a time; the two sources are independent.
    Any failure sends the source to Backoff, and a source that keeps failing
    past ``backoff_max_attempts`` raises a degraded-sync alert instead of
    retrying on the backoff schedule.
    """

    def __init__(
        self,
        context: SyncContext,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.context = context
        self.store = context.store
        self.notifier = context.notifier
        self.states: dict[Source, SyncState] = {source: SyncState.IDLE for source in context.adapters}
        self.transitions: dict[Source, deque[SyncState]] = {
            source: deque(maxlen=100) for source in context.adapters
        }
        self._locks: dict[Source, asyncio.Lock] = {source: asyncio.Lock() for source in context.adapters}
        self._rng = rng or random.Random()
        self._clock = clock

    def _enter(self, source: Source, state: SyncState) -> None:
        self.states[source] = state
        self.transitions[source].append(state)
        logger.debug("%s -> %s", source.value, state.value)

    def backoff_delay(self, failures: int) -> float:
        config = self.context.config
        base = config.backoff_base_seconds * (2 ** max(0, failures - 1))
        capped = min(config.backoff_cap_seconds, base)
        jitter = self._rng.uniform(-config.jitter_ratio, config.jitter_ratio)
        return max(0.0, min(config.backoff_cap_seconds, capped * (1 + jitter)))

    async def run_cycle(self, source: Source, trigger: str = "scheduled") -> SyncResult:
        async with self._locks[source]:
            return await self._run_cycle(source, trigger)

    async def _run_cycle(self, source: Source, trigger: str) -> SyncResult:
        adapter = self.context.adapters[source]
        started = time.monotonic()
        cycle_id = uuid.uuid4().hex
        stats = _CycleStats()
        try:
            cursor = self.store.get_cursor(source)
            self._enter(source, SyncState.PULLING)
            pulled = await self._with_auth_retry(source, adapter.pull, cursor)
            stats.pulled = len(pulled.changes)

            self._enter(source, SyncState.RECONCILING)
            self._reconcile(source, pulled, stats)
            # The whole batch is durable now, so the cursor may move past it.
            cursor.token = pulled.token
            cursor.last_cycle_at = self._clock()
            self.store.save_cursor(cursor)

            self._enter(source, SyncState.PUSHING)
            await self._push_pending(source, cycle_id, stats)
        except asyncio.CancelledError:
            released = self.store.clear_cycle(cycle_id)
            self._enter(source, SyncState.IDLE)
            logger.info("%s cycle cancelled, released %d in-flight markers", source.value, released)
            raise
        except Exception as exc:
            self.store.clear_cycle(cycle_id)
            return self._enter_backoff(source, trigger, exc, stats, started)

        cursor = self.store.get_cursor(source)
        recovered = cursor.degraded or cursor.backoff_failures > 0
        cursor.backoff_failures = 0
        cursor.backoff_until = None
        cursor.degraded = False
        self.store.save_cursor(cursor)
        if recovered:
            logger.info("%s sync recovered", source.value)
        self._enter(source, SyncState.IDLE)

        duration_ms = int((time.monotonic() - started) * 1000)
        message = (
            f"Pulled {stats.pulled} changes, pushed {stats.pushed}, "
            f"{stats.conflicts} conflicts, {stats.parked} parked."
        )
        self.store.record_sync_run(
            source=source.value,
            trigger=trigger,
            status="success",
            message=message,
            duration_ms=duration_ms,
            pulled=stats.pulled,
            pushed=stats.pushed,
            conflicts=stats.conflicts,
            parked=stats.parked,
        )
        self.notifier.publish("sync_completed", source=source.value, trigger=trigger, outcomes=stats.outcomes)
        return SyncResult(
            source=source.value,
            status="success",
            message=message,
            duration_ms=duration_ms,
            pulled=stats.pulled,
            pushed=stats.pushed,
            conflicts=stats.conflicts,
            parked=stats.parked,
            trigger=trigger,
        )

    async def _with_auth_retry(self, source: Source, call: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await call(*args)
        except AuthExpired:
            logger.info("%s credentials expired, refreshing once", source.value)
            await self.context.credentials.refresh(source)
            return await call(*args)

    def _enter_backoff(
        self,
        source: Source,
        trigger: str,
        exc: Exception,
        stats: _CycleStats,
        started: float,
    ) -> SyncResult:
        self._enter(source, SyncState.BACKOFF)
        error_message = f"{type(exc).__name__}: {exc}"
        cursor = self.store.get_cursor(source)
        cursor.backoff_failures += 1
        if cursor.backoff_failures > self.context.config.backoff_max_attempts:
            status = "degraded"
            cursor.backoff_until = None
            if not cursor.degraded:
                cursor.degraded = True
                logger.error(
                    "%s sync degraded after %d consecutive failures: %s",
                    source.value,
                    cursor.backoff_failures,
                    error_message,
                )
                self.store.record_audit_event(
                    kind=source.value,
                    local_id="sync",
                    action="degraded_sync_alert",
                    details={"failures": cursor.backoff_failures, "error": error_message},
                )
                self.notifier.publish(
                    "degraded_sync",
                    source=source.value,
                    failures=cursor.backoff_failures,
                    error=error_message,
                )
        else:
            status = "backoff"
            delay = self.backoff_delay(cursor.backoff_failures)
            cursor.backoff_until = self._clock() + timedelta(seconds=delay)
            logger.warning(
                "%s cycle failed (%s), attempt %d, retrying in %.1fs",
                source.value,
                error_message,
                cursor.backoff_failures,
                delay,
            )
        self.store.save_cursor(cursor)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.store.record_sync_run(
            source=source.value,
            trigger=trigger,
            status=status,
            message=error_message,
            duration_ms=duration_ms,
            pulled=stats.pulled,
            pushed=stats.pushed,
            conflicts=stats.conflicts,
            parked=stats.parked,
        )
        return SyncResult(
            source=source.value,
            status=status,
            message=error_message,
            duration_ms=duration_ms,
            pulled=stats.pulled,
            pushed=stats.pushed,
            conflicts=stats.conflicts,
            parked=stats.parked,
            trigger=trigger,
        )

    # ------------------------------------------------------------ reconciling

    def _reconcile(self, source: Source, pulled: PullResult, stats: _CycleStats) -> None:
        kind = SOURCE_KIND[source]
        seen_ids: set[str] = set()
        for change in pulled.changes:
            if change.local_id:
                seen_ids.add(change.local_id)
            stats.count(self._reconcile_change(kind, change))

        if not pulled.complete:
            return
        for entity in self.store.list_entities(kind):
            if entity.external_ref is None or entity.local_id in seen_ids:
                continue
            if not _in_window(entity, pulled.window):
                continue
            stats.count(self._reconcile_deletion(kind, entity))

    def _audit(self, entity: Entity, action: str, **details: Any) -> None:
        self.store.record_audit_event(
            kind=entity.kind.value,
            local_id=entity.local_id,
            action=action,
            details=details,
            origin=SYSTEM_ORIGIN,
        )
        self.notifier.publish(action, kind=entity.kind.value, local_id=entity.local_id, **details)

    def _reconcile_change(self, kind: EntityKind, change: ExternalChange) -> str:
        local = self.store.get(kind, change.local_id) if change.local_id else None
        if local is None and change.external_ref:
            local = self.store.find_by_external_ref(kind, change.external_ref)
        if change.deleted:
            if local is None:
                return "unchanged"
            return self._reconcile_deletion(kind, local)

        try:
            external = entity_from_external(kind, change.payload)
        except (KeyError, TypeError, ValueError) as exc:
            # One unreadable record must not hold back the rest of the batch.
            logger.warning(
                "skipping unreadable %s change %s: %s", kind.value, change.local_id or change.external_ref, exc
            )
            return "unreadable"
        if local is None:
            authorize(None, _CREATE_KIND[kind], external, origin=SYSTEM_ORIGIN).raise_for_denial()
            saved = self.store.insert_external(
                external, external_ref=change.external_ref, external_token=change.token
            )
            self._audit(saved, "external_created", external_ref=change.external_ref)
            return "created"

        if local.needs_review:
            self._park(kind, local, change, "external changed again while awaiting review")
            return "review_refreshed"
        if local.tombstoned:
            return "skipped"
        if local.external_token == change.token:
            if local.external_ref != change.external_ref:
                self.store.relink_external(kind, local.local_id, change.external_ref)
            return "unchanged"

        external = external.with_updates(local_id=local.local_id)
        if local.is_pending:
            return self._resolve(kind, local, external, change)

        authorize(None, _UPDATE_KIND[kind], local, origin=SYSTEM_ORIGIN).raise_for_denial()
        try:
            saved = self.store.write_reconciled(
                external,
                expected_version=local.version,
                external_ref=change.external_ref,
                external_token=change.token,
                confirmed=True,
            )
        except StaleWrite:
            # A local mutation landed in between: both sides changed now.
            fresh = self.store.get(kind, local.local_id)
            if fresh is None or fresh.tombstoned or fresh.needs_review:
                return "skipped"
            return self._resolve(kind, fresh, external, change)
        self._audit(saved, "external_applied", version=saved.version)
        return "updated"

    def _resolve(self, kind: EntityKind, local: Entity, external: Entity, change: ExternalChange) -> str:
        try:
            resolution = resolve_conflict(local, external)
            authorize(None, _UPDATE_KIND[kind], local, origin=SYSTEM_ORIGIN).raise_for_denial()
            saved = self.store.write_reconciled(
                resolution.entity,
                expected_version=local.version,
                external_ref=change.external_ref,
                external_token=change.token,
                confirmed=not resolution.push_required,
            )
        except (ConflictUnresolved, StaleWrite) as exc:
            self._park(kind, local, change, f"{type(exc).__name__}: {exc}")
            return "parked"
        self._audit(
            saved,
            "conflict_resolved",
            strategy=resolution.strategy,
            won_locally=resolution.won_locally,
            won_externally=resolution.won_externally,
            push_required=resolution.push_required,
        )
        return "conflict"

    def _park(self, kind: EntityKind, local: Entity, change: ExternalChange, reason: str) -> None:
        self.store.park_for_review(
            kind,
            local.local_id,
            reason=reason,
            local_snapshot=local.to_dict(),
            external_snapshot={
                "external_ref": change.external_ref,
                "token": change.token,
                "payload": change.payload,
            },
        )
        logger.warning("%s:%s parked for manual review: %s", kind.value, local.local_id, reason)
        self._audit(local, "conflict_parked", reason=reason)

    def _reconcile_deletion(self, kind: EntityKind, local: Entity) -> str:
        if local.needs_review:
            return "skipped"
        # Money follows the ledger; an unpushed local event edit is kept and recreated.
        if local.tombstoned or not local.is_pending or kind == EntityKind.TRANSACTION:
            authorize(None, _DELETE_KIND[kind], local, origin=SYSTEM_ORIGIN).raise_for_denial()
            self.store.purge(kind, local.local_id)
            details: dict[str, Any] = {}
            if local.is_pending and not local.tombstoned:
                details = {"discarded_version": local.version, "discarded_payload": local.payload()}
            self._audit(local, "external_deleted", **details)
            return "deleted"
        try:
            saved = self.store.detach_external(kind, local.local_id, expected_version=local.version)
        except StaleWrite:
            return "skipped"
        self._audit(saved, "external_detached")
        return "detached"

    # ------------------------------------------------------------ pushing

    async def _push_pending(self, source: Source, cycle_id: str, stats: _CycleStats) -> None:
        kind = SOURCE_KIND[source]
        for candidate in self.store.list_pending(source):
            if not self.store.mark_in_flight(kind, candidate.local_id, cycle_id):
                continue
            try:
                # Re-read under the marker so the newest version is the one sent.
                entity = self.store.get(kind, candidate.local_id)
                if entity is None or not entity.is_pending:
                    continue
                await self._propagate(source, entity)
                stats.pushed += 1
            except (Rejected, NotFound) as exc:
                reason = f"{exc.code}: {exc}"
                self.store.mark_degraded(kind, candidate.local_id, reason)
                logger.warning("%s:%s rejected by %s: %s", kind.value, candidate.local_id, source.value, exc)
                self._audit(candidate, "entity_degraded", reason=reason)
            finally:
                self.store.clear_in_flight(kind, candidate.local_id, cycle_id)

    async def _propagate(self, source: Source, entity: Entity) -> None:
        adapter = self.context.adapters[source]
        if entity.tombstoned:
            if entity.external_ref:
                await self._with_auth_retry(source, adapter.delete, entity.external_ref, entity.local_id)
            self.store.purge(entity.kind, entity.local_id)
            self._audit(entity, "deleted_externally_and_purged")
            return
        result = await self._with_auth_retry(source, adapter.push, entity)
        self.store.confirm_push(
            entity.kind,
            entity.local_id,
            version=entity.version,
            external_ref=result.external_ref,
            external_token=result.token,
        )
        self.store.record_audit_event(
            kind=entity.kind.value,
            local_id=entity.local_id,
            action="pushed",
            details={"version": entity.version, "external_ref": result.external_ref},
            origin=SYSTEM_ORIGIN,
        )

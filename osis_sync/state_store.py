from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from osis_sync.errors import EntityNotFound, StaleWrite, StoreError
from osis_sync.models import (
    ENTITY_TYPES,
    SOURCE_KIND,
    Entity,
    EntityKind,
    Role,
    Source,
    SyncCursor,
    User,
    parse_iso_datetime,
    serialize_datetime,
)

logger = logging.getLogger(__name__)

_ENTITY_COLUMNS = (
    "kind, local_id, payload_json, version, pushed_version, external_ref, external_token, "
    "tombstoned, needs_review, degraded_reason, inflight_cycle, origin, updated_at"
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_entity(row: sqlite3.Row) -> Entity:
    kind = EntityKind(row["kind"])
    entity_type = ENTITY_TYPES[kind]
    return entity_type.from_payload(
        row["local_id"],
        json.loads(row["payload_json"] or "{}"),
        external_ref=row["external_ref"],
        external_token=row["external_token"],
        version=int(row["version"]),
        pushed_version=int(row["pushed_version"]),
        tombstoned=bool(row["tombstoned"]),
        needs_review=bool(row["needs_review"]),
        degraded_reason=row["degraded_reason"],
    )


class StateStore:
    """Durable local store of domain entities, sync cursors and the review list.

    Every public method runs in a single sqlite transaction. Writes to an
    entity are guarded by its version stamp: callers pass the version they
    read and the write fails with ``StaleWrite`` if it moved underneath them.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()
        released = self.reset_in_flight()
        if released:
            logger.info("released %d in-flight markers left by a previous process", released)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise StoreError(f"{type(exc).__name__}: {exc}") from exc
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS entities (
            kind TEXT NOT NULL,
            local_id TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            version INTEGER NOT NULL,
            pushed_version INTEGER NOT NULL DEFAULT 0,
            external_ref TEXT,
            external_token TEXT,
            tombstoned INTEGER NOT NULL DEFAULT 0,
            needs_review INTEGER NOT NULL DEFAULT 0,
            degraded_reason TEXT,
            inflight_cycle TEXT,
            origin TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (kind, local_id)
        );

        CREATE INDEX IF NOT EXISTS idx_entities_external_ref ON entities(kind, external_ref);

        CREATE TABLE IF NOT EXISTS sync_cursors (
            source TEXT PRIMARY KEY,
            token TEXT,
            last_cycle_at TEXT,
            backoff_failures INTEGER NOT NULL DEFAULT 0,
            backoff_until TEXT,
            degraded INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS review_queue (
            kind TEXT NOT NULL,
            local_id TEXT NOT NULL,
            reason TEXT NOT NULL,
            local_json TEXT NOT NULL,
            external_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (kind, local_id)
        );

        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY,
            role TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            source TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            pulled INTEGER NOT NULL,
            pushed INTEGER NOT NULL,
            conflicts INTEGER NOT NULL,
            parked INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            kind TEXT NOT NULL,
            local_id TEXT NOT NULL,
            action TEXT NOT NULL,
            origin TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._transaction() as conn:
            conn.executescript(schema_sql)

    @staticmethod
    def _fetch(conn: sqlite3.Connection, kind: EntityKind, local_id: str) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE kind = ? AND local_id = ?",
            (kind.value, local_id),
        ).fetchone()

    @staticmethod
    def _check_version(
        row: sqlite3.Row | None, kind: EntityKind, local_id: str, expected_version: int | None
    ) -> None:
        current = int(row["version"]) if row is not None else None
        if expected_version is not None and expected_version != (current or 0):
            raise StaleWrite(kind.value, local_id, expected_version, current)

    # ------------------------------------------------------------ entities

    def get(self, kind: EntityKind, local_id: str) -> Entity | None:
        with self._transaction() as conn:
            row = self._fetch(conn, kind, local_id)
        return _row_to_entity(row) if row else None

    def put(self, entity: Entity, expected_version: int | None = None, *, origin: str = "user") -> Entity:
        """Write the domain fields of ``entity`` and bump its version stamp."""
        kind = entity.kind
        payload_json = json.dumps(entity.payload(), ensure_ascii=False, sort_keys=True)
        with self._transaction() as conn:
            row = self._fetch(conn, kind, entity.local_id)
            self._check_version(row, kind, entity.local_id, expected_version)
            if row is None:
                conn.execute(
                    """
                    INSERT INTO entities(kind, local_id, payload_json, version, pushed_version, origin, updated_at)
                    VALUES (?, ?, ?, 1, 0, ?, ?)
                    """,
                    (kind.value, entity.local_id, payload_json, origin, _utc_now()),
                )
            else:
                if row["tombstoned"]:
                    raise StaleWrite(kind.value, entity.local_id, expected_version, int(row["version"]))
                cursor = conn.execute(
                    """
                    UPDATE entities
                    SET payload_json = ?, version = version + 1, degraded_reason = NULL, updated_at = ?
                    WHERE kind = ? AND local_id = ? AND version = ?
                    """,
                    (payload_json, _utc_now(), kind.value, entity.local_id, int(row["version"])),
                )
                if cursor.rowcount != 1:
                    raise StaleWrite(kind.value, entity.local_id, expected_version, int(row["version"]))
            saved = self._fetch(conn, kind, entity.local_id)
        return _row_to_entity(saved)

    def delete(self, kind: EntityKind, local_id: str, expected_version: int | None = None) -> Entity | None:
        """Tombstone an entity; purge it at once if it never reached the external side.

        Returns the tombstoned entity, or ``None`` when it was purged.
        """
        with self._transaction() as conn:
            row = self._fetch(conn, kind, local_id)
            if row is None:
                raise EntityNotFound(f"{kind.value}:{local_id}")
            self._check_version(row, kind, local_id, expected_version)
            if row["external_ref"] is None and row["inflight_cycle"] is None:
                conn.execute("DELETE FROM entities WHERE kind = ? AND local_id = ?", (kind.value, local_id))
                conn.execute("DELETE FROM review_queue WHERE kind = ? AND local_id = ?", (kind.value, local_id))
                return None
            conn.execute(
                """
                UPDATE entities
                SET tombstoned = 1, version = version + 1, degraded_reason = NULL, updated_at = ?
                WHERE kind = ? AND local_id = ?
                """,
                (_utc_now(), kind.value, local_id),
            )
            saved = self._fetch(conn, kind, local_id)
        return _row_to_entity(saved)

    def purge(self, kind: EntityKind, local_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM entities WHERE kind = ? AND local_id = ?", (kind.value, local_id))
            conn.execute("DELETE FROM review_queue WHERE kind = ? AND local_id = ?", (kind.value, local_id))

    def list_entities(self, kind: EntityKind, include_tombstoned: bool = True) -> list[Entity]:
        query = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE kind = ?"
        if not include_tombstoned:
            query += " AND tombstoned = 0"
        query += " ORDER BY local_id"
        with self._transaction() as conn:
            rows = conn.execute(query, (kind.value,)).fetchall()
        return [_row_to_entity(row) for row in rows]

    def list_pending(self, source: Source) -> list[Entity]:
        """Entities of ``source``'s kind whose version is ahead of the last confirmed push."""
        kind = SOURCE_KIND[source]
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ENTITY_COLUMNS}
                FROM entities
                WHERE kind = ?
                  AND version > pushed_version
                  AND needs_review = 0
                  AND degraded_reason IS NULL
                  AND inflight_cycle IS NULL
                ORDER BY updated_at, local_id
                """,
                (kind.value,),
            ).fetchall()
        return [_row_to_entity(row) for row in rows]

    def find_by_external_ref(self, kind: EntityKind, external_ref: str) -> Entity | None:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE kind = ? AND external_ref = ?",
                (kind.value, external_ref),
            ).fetchone()
        return _row_to_entity(row) if row else None

    # ------------------------------------------------------------ propagation bookkeeping

    def mark_in_flight(self, kind: EntityKind, local_id: str, cycle_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE entities SET inflight_cycle = ?
                WHERE kind = ? AND local_id = ? AND inflight_cycle IS NULL
                """,
                (cycle_id, kind.value, local_id),
            )
            return cursor.rowcount == 1

    def clear_in_flight(self, kind: EntityKind, local_id: str, cycle_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE entities SET inflight_cycle = NULL
                WHERE kind = ? AND local_id = ? AND inflight_cycle = ?
                """,
                (kind.value, local_id, cycle_id),
            )

    def clear_cycle(self, cycle_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE entities SET inflight_cycle = NULL WHERE inflight_cycle = ?", (cycle_id,)
            )
            return cursor.rowcount

    def reset_in_flight(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("UPDATE entities SET inflight_cycle = NULL WHERE inflight_cycle IS NOT NULL")
            return cursor.rowcount

    def confirm_push(
        self,
        kind: EntityKind,
        local_id: str,
        *,
        version: int,
        external_ref: str,
        external_token: str,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE entities
                SET pushed_version = MAX(pushed_version, ?), external_ref = ?, external_token = ?, updated_at = ?
                WHERE kind = ? AND local_id = ?
                """,
                (int(version), external_ref, external_token, _utc_now(), kind.value, local_id),
            )

    def relink_external(self, kind: EntityKind, local_id: str, external_ref: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE entities SET external_ref = ? WHERE kind = ? AND local_id = ?",
                (external_ref, kind.value, local_id),
            )

    def mark_degraded(self, kind: EntityKind, local_id: str, reason: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE entities SET degraded_reason = ?, updated_at = ? WHERE kind = ? AND local_id = ?",
                (reason, _utc_now(), kind.value, local_id),
            )

    def clear_degraded(self, kind: EntityKind, local_id: str) -> Entity:
        with self._transaction() as conn:
            row = self._fetch(conn, kind, local_id)
            if row is None:
                raise EntityNotFound(f"{kind.value}:{local_id}")
            conn.execute(
                "UPDATE entities SET degraded_reason = NULL, updated_at = ? WHERE kind = ? AND local_id = ?",
                (_utc_now(), kind.value, local_id),
            )
            saved = self._fetch(conn, kind, local_id)
        return _row_to_entity(saved)

    # ------------------------------------------------------------ inward writes

    def insert_external(self, entity: Entity, *, external_ref: str, external_token: str) -> Entity:
        """Persist an external-origin entity at the synthesized version stamp 0."""
        payload_json = json.dumps(entity.payload(), ensure_ascii=False, sort_keys=True)
        with self._transaction() as conn:
            row = self._fetch(conn, entity.kind, entity.local_id)
            if row is not None:
                raise StaleWrite(entity.kind.value, entity.local_id, None, int(row["version"]))
            conn.execute(
                """
                INSERT INTO entities(kind, local_id, payload_json, version, pushed_version,
                                     external_ref, external_token, origin, updated_at)
                VALUES (?, ?, ?, 0, 0, ?, ?, 'external', ?)
                """,
                (entity.kind.value, entity.local_id, payload_json, external_ref, external_token, _utc_now()),
            )
            saved = self._fetch(conn, entity.kind, entity.local_id)
        return _row_to_entity(saved)

    def write_reconciled(
        self,
        entity: Entity,
        *,
        expected_version: int,
        external_ref: str,
        external_token: str,
        confirmed: bool,
    ) -> Entity:
        """Write a reconciled state at a new version stamp.

        ``confirmed`` means the external side already holds this state, so the
        entity is not left pending; otherwise it is queued for an outward push.
        """
        payload_json = json.dumps(entity.payload(), ensure_ascii=False, sort_keys=True)
        with self._transaction() as conn:
            row = self._fetch(conn, entity.kind, entity.local_id)
            if row is None:
                raise EntityNotFound(f"{entity.kind.value}:{entity.local_id}")
            self._check_version(row, entity.kind, entity.local_id, expected_version)
            new_version = int(row["version"]) + 1
            pushed_version = new_version if confirmed else int(row["pushed_version"])
            cursor = conn.execute(
                """
                UPDATE entities
                SET payload_json = ?, version = ?, pushed_version = ?, external_ref = ?,
                    external_token = ?, degraded_reason = NULL, updated_at = ?
                WHERE kind = ? AND local_id = ? AND version = ?
                """,
                (
                    payload_json,
                    new_version,
                    pushed_version,
                    external_ref,
                    external_token,
                    _utc_now(),
                    entity.kind.value,
                    entity.local_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                raise StaleWrite(entity.kind.value, entity.local_id, expected_version, int(row["version"]))
            saved = self._fetch(conn, entity.kind, entity.local_id)
        return _row_to_entity(saved)

    def detach_external(self, kind: EntityKind, local_id: str, expected_version: int) -> Entity:
        with self._transaction() as conn:
            row = self._fetch(conn, kind, local_id)
            if row is None:
                raise EntityNotFound(f"{kind.value}:{local_id}")
            self._check_version(row, kind, local_id, expected_version)
            conn.execute(
                """
                UPDATE entities
                SET external_ref = NULL, external_token = NULL, updated_at = ?
                WHERE kind = ? AND local_id = ?
                """,
                (_utc_now(), kind.value, local_id),
            )
            saved = self._fetch(conn, kind, local_id)
        return _row_to_entity(saved)

    # ------------------------------------------------------------ manual review

    def park_for_review(
        self,
        kind: EntityKind,
        local_id: str,
        *,
        reason: str,
        local_snapshot: dict[str, Any],
        external_snapshot: dict[str, Any],
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO review_queue(kind, local_id, reason, local_json, external_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(kind, local_id) DO UPDATE SET
                    reason = excluded.reason,
                    local_json = excluded.local_json,
                    external_json = excluded.external_json,
                    created_at = excluded.created_at
                """,
                (
                    kind.value,
                    local_id,
                    reason,
                    json.dumps(local_snapshot, ensure_ascii=False),
                    json.dumps(external_snapshot, ensure_ascii=False),
                    _utc_now(),
                ),
            )
            conn.execute(
                "UPDATE entities SET needs_review = 1, updated_at = ? WHERE kind = ? AND local_id = ?",
                (_utc_now(), kind.value, local_id),
            )

    @staticmethod
    def _review_item(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "kind": row["kind"],
            "local_id": row["local_id"],
            "reason": row["reason"],
            "local": json.loads(row["local_json"] or "{}"),
            "external": json.loads(row["external_json"] or "{}"),
            "created_at": row["created_at"],
        }

    def list_review(self) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT kind, local_id, reason, local_json, external_json, created_at
                FROM review_queue
                ORDER BY created_at, kind, local_id
                """
            ).fetchall()
        return [self._review_item(row) for row in rows]

    def clear_review(self, kind: EntityKind, local_id: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT kind, local_id, reason, local_json, external_json, created_at
                FROM review_queue
                WHERE kind = ? AND local_id = ?
                """,
                (kind.value, local_id),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM review_queue WHERE kind = ? AND local_id = ?", (kind.value, local_id))
            conn.execute(
                "UPDATE entities SET needs_review = 0, updated_at = ? WHERE kind = ? AND local_id = ?",
                (_utc_now(), kind.value, local_id),
            )
        return self._review_item(row)

    # ------------------------------------------------------------ cursors

    def get_cursor(self, source: Source) -> SyncCursor:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT source, token, last_cycle_at, backoff_failures, backoff_until, degraded
                FROM sync_cursors
                WHERE source = ?
                """,
                (source.value,),
            ).fetchone()
        if row is None:
            return SyncCursor(source=source)
        return SyncCursor(
            source=source,
            token=row["token"],
            last_cycle_at=parse_iso_datetime(row["last_cycle_at"]),
            backoff_failures=int(row["backoff_failures"]),
            backoff_until=parse_iso_datetime(row["backoff_until"]),
            degraded=bool(row["degraded"]),
        )

    def save_cursor(self, cursor: SyncCursor) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors(source, token, last_cycle_at, backoff_failures, backoff_until, degraded, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source) DO UPDATE SET
                    token = excluded.token,
                    last_cycle_at = excluded.last_cycle_at,
                    backoff_failures = excluded.backoff_failures,
                    backoff_until = excluded.backoff_until,
                    degraded = excluded.degraded,
                    updated_at = excluded.updated_at
                """,
                (
                    cursor.source.value,
                    cursor.token,
                    serialize_datetime(cursor.last_cycle_at),
                    int(cursor.backoff_failures),
                    serialize_datetime(cursor.backoff_until),
                    int(cursor.degraded),
                    _utc_now(),
                ),
            )

    # ------------------------------------------------------------ users

    def upsert_user(self, user_id: str, role: Role) -> User:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, role, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    role = excluded.role,
                    updated_at = excluded.updated_at
                """,
                (user_id, role.value, _utc_now()),
            )
        return User(user_id=user_id, role=role)

    def get_user(self, user_id: str) -> User | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT user_id, role FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return User(user_id=row["user_id"], role=Role(row["role"]))

    # ------------------------------------------------------------ runs and audit

    def record_sync_run(
        self,
        *,
        source: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        pulled: int,
        pushed: int,
        conflicts: int,
        parked: int,
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, source, trigger, status, message, duration_ms, pulled, pushed, conflicts, parked)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (_utc_now(), source, trigger, status, message, duration_ms, pulled, pushed, conflicts, parked),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, source, trigger, status, message, duration_ms, pulled, pushed, conflicts, parked
                FROM sync_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        kind: str,
        local_id: str,
        action: str,
        details: dict[str, Any],
        origin: str = "system",
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_events(created_at, kind, local_id, action, origin, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (_utc_now(), kind, local_id, action, origin, json.dumps(details, ensure_ascii=False, default=str)),
            )

    def recent_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, created_at, kind, local_id, action, origin, details_json
                FROM audit_events
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

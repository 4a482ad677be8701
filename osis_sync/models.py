from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def payload_hash(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()  # nosec B324


class Role(str, Enum):
    CHAIR = "chair"
    TREASURER = "treasurer"
    SECRETARY = "secretary"
    MEMBER = "member"


class MutationKind(str, Enum):
    CREATE_EVENT = "create_event"
    UPDATE_EVENT = "update_event"
    DELETE_EVENT = "delete_event"
    CREATE_TRANSACTION = "create_transaction"
    UPDATE_TRANSACTION = "update_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    REASSIGN_ROLE = "reassign_role"


class EntityKind(str, Enum):
    EVENT = "event"
    TRANSACTION = "transaction"


class Source(str, Enum):
    CALENDAR = "calendar"
    LEDGER = "ledger"


SOURCE_KIND = {Source.CALENDAR: EntityKind.EVENT, Source.LEDGER: EntityKind.TRANSACTION}
KIND_SOURCE = {kind: source for source, kind in SOURCE_KIND.items()}


class EventStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class SyncState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    PUSHING = "pushing"
    BACKOFF = "backoff"


# ---------------------------------------------------------------- config


@dataclass
class CalendarConfig:
    calendar_url: str = ""
    window_days_past: int = 30
    window_days_future: int = 180
    quota_per_minute: int = 60
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            calendar_url=str(data.get("calendar_url", "")).strip(),
            window_days_past=max(0, int(data.get("window_days_past", 30))),
            window_days_future=max(1, int(data.get("window_days_future", 180))),
            quota_per_minute=max(1, int(data.get("quota_per_minute", 60))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class LedgerConfig:
    api_base_url: str = "https://sheets.googleapis.com/"
    spreadsheet_id: str = ""
    sheet_name: str = "Ledger"
    sheet_id: int = 0
    batch_rows: int = 500
    quota_per_100s: int = 100
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LedgerConfig":
        data = data or {}
        return cls(
            api_base_url=(str(data.get("api_base_url", "")).strip().rstrip("/") or "https://sheets.googleapis.com")
            + "/",
            spreadsheet_id=str(data.get("spreadsheet_id", "")).strip(),
            sheet_name=str(data.get("sheet_name", "Ledger")).strip() or "Ledger",
            sheet_id=int(data.get("sheet_id", 0) or 0),
            batch_rows=max(1, int(data.get("batch_rows", 500))),
            quota_per_100s=max(1, int(data.get("quota_per_100s", 100))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class ServiceCredentials:
    access_token: str = ""
    refresh_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    token_uri: str = "https://oauth2.googleapis.com/token"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServiceCredentials":
        data = data or {}
        return cls(
            access_token=str(data.get("access_token", "")).strip(),
            refresh_token=str(data.get("refresh_token", "")).strip(),
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            token_uri=str(data.get("token_uri", "https://oauth2.googleapis.com/token")).strip()
            or "https://oauth2.googleapis.com/token",
        )


@dataclass
class CredentialsConfig:
    calendar: ServiceCredentials = field(default_factory=ServiceCredentials)
    ledger: ServiceCredentials = field(default_factory=ServiceCredentials)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CredentialsConfig":
        data = data or {}
        return cls(
            calendar=ServiceCredentials.from_dict(data.get("calendar")),
            ledger=ServiceCredentials.from_dict(data.get("ledger")),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    debounce_seconds: float = 2.0
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 300.0
    backoff_max_attempts: int = 3
    jitter_ratio: float = 0.2

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 2.0))),
            backoff_base_seconds=max(0.0, float(data.get("backoff_base_seconds", 2.0))),
            backoff_cap_seconds=max(0.0, float(data.get("backoff_cap_seconds", 300.0))),
            backoff_max_attempts=max(1, int(data.get("backoff_max_attempts", 3))),
            jitter_ratio=min(1.0, max(0.0, float(data.get("jitter_ratio", 0.2)))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


def _normalize_users(data: Any) -> dict[str, str]:
    if not isinstance(data, dict):
        return {}
    valid = {role.value for role in Role}
    users: dict[str, str] = {}
    for user_id, role in data.items():
        key = str(user_id).strip()
        value = str(role or "").strip().lower()
        if key and value in valid:
            users[key] = value
    return users


@dataclass
class AppConfig:
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    # user_id -> role, seeded into the store when the user is not known yet.
    users: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            ledger=LedgerConfig.from_dict(data.get("ledger")),
            credentials=CredentialsConfig.from_dict(data.get("credentials")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
            users=_normalize_users(data.get("users")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# ---------------------------------------------------------------- domain


@dataclass
class User:
    user_id: str
    role: Role

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role.value}


@dataclass
class WorkProgramEvent:
    kind: ClassVar[EntityKind] = EntityKind.EVENT

    local_id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    status: EventStatus = EventStatus.PLANNED
    notes: str = ""
    external_ref: str | None = None
    external_token: str | None = None
    version: int = 0
    pushed_version: int = 0
    tombstoned: bool = False
    needs_review: bool = False
    degraded_reason: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "status": self.status.value,
            "notes": self.notes,
        }

    @classmethod
    def from_payload(cls, local_id: str, payload: dict[str, Any], **meta: Any) -> "WorkProgramEvent":
        return cls(
            local_id=local_id,
            title=str(payload.get("title", "")),
            start=parse_iso_datetime(payload.get("start")),
            end=parse_iso_datetime(payload.get("end")),
            status=EventStatus(payload.get("status") or EventStatus.PLANNED.value),
            notes=str(payload.get("notes", "") or ""),
            **meta,
        )

    @property
    def is_pending(self) -> bool:
        return self.version > self.pushed_version

    def with_updates(self, **kwargs: Any) -> "WorkProgramEvent":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload()
        payload.update(
            {
                "kind": self.kind.value,
                "local_id": self.local_id,
                "external_ref": self.external_ref,
                "version": self.version,
                "pushed_version": self.pushed_version,
                "pending": self.is_pending,
                "tombstoned": self.tombstoned,
                "needs_review": self.needs_review,
                "degraded_reason": self.degraded_reason,
            }
        )
        return payload


@dataclass
class FinancialTransaction:
    kind: ClassVar[EntityKind] = EntityKind.TRANSACTION

    local_id: str
    amount: int = 0
    category: str = ""
    timestamp: datetime | None = None
    note: str = ""
    external_ref: str | None = None
    external_token: str | None = None
    version: int = 0
    pushed_version: int = 0
    tombstoned: bool = False
    needs_review: bool = False
    degraded_reason: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "amount": int(self.amount),
            "category": self.category,
            "timestamp": serialize_datetime(self.timestamp),
            "note": self.note,
        }

    @classmethod
    def from_payload(cls, local_id: str, payload: dict[str, Any], **meta: Any) -> "FinancialTransaction":
        return cls(
            local_id=local_id,
            amount=int(payload.get("amount", 0) or 0),
            category=str(payload.get("category", "")),
            timestamp=parse_iso_datetime(payload.get("timestamp")),
            note=str(payload.get("note", "") or ""),
            **meta,
        )

    @property
    def is_pending(self) -> bool:
        return self.version > self.pushed_version

    def with_updates(self, **kwargs: Any) -> "FinancialTransaction":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload()
        payload.update(
            {
                "kind": self.kind.value,
                "local_id": self.local_id,
                "external_ref": self.external_ref,
                "version": self.version,
                "pushed_version": self.pushed_version,
                "pending": self.is_pending,
                "tombstoned": self.tombstoned,
                "needs_review": self.needs_review,
                "degraded_reason": self.degraded_reason,
            }
        )
        return payload


Entity = WorkProgramEvent | FinancialTransaction

ENTITY_TYPES: dict[EntityKind, type] = {
    EntityKind.EVENT: WorkProgramEvent,
    EntityKind.TRANSACTION: FinancialTransaction,
}


# ---------------------------------------------------------------- sync bookkeeping


@dataclass
class SyncCursor:
    source: Source
    token: str | None = None
    last_cycle_at: datetime | None = None
    backoff_failures: int = 0
    backoff_until: datetime | None = None
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "token": self.token,
            "last_cycle_at": serialize_datetime(self.last_cycle_at),
            "backoff_failures": self.backoff_failures,
            "backoff_until": serialize_datetime(self.backoff_until),
            "degraded": self.degraded,
        }


@dataclass
class ExternalChange:
    local_id: str
    external_ref: str
    token: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


@dataclass
class PullResult:
    changes: list[ExternalChange]
    token: str | None
    # Complete listings allow deletions to be inferred from absence.
    complete: bool = False
    window: tuple[datetime, datetime] | None = None


@dataclass
class PushResult:
    external_ref: str
    token: str


@dataclass
class SyncResult:
    source: str
    status: str
    message: str
    duration_ms: int
    pulled: int
    pushed: int
    conflicts: int
    parked: int
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "conflicts": self.conflicts,
            "parked": self.parked,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def sync_window(now: datetime, days_past: int, days_future: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return now_utc - timedelta(days=max(0, days_past)), now_utc + timedelta(days=max(1, days_future))

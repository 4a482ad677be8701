from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from osis_sync.credentials import CredentialProvider
from osis_sync.errors import (
    AdapterError,
    AuthExpired,
    NotFound,
    RateLimited,
    Rejected,
    TransientNetwork,
)
from osis_sync.models import (
    CalendarConfig,
    EventStatus,
    ExternalChange,
    PullResult,
    PushResult,
    Source,
    SyncCursor,
    WorkProgramEvent,
    parse_iso_datetime,
    payload_hash,
    serialize_datetime,
    sync_window,
    utc_now,
)
from osis_sync.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

PRODID = "-//OSIS Manager//Work Program Sync//EN"

# The calendar has no status field: non-planned statuses ride in front of the
# description as "[done] notes". Planned events carry no prefix, so any other
# description, "[planned] ..." included, is planned and kept verbatim as notes.
STATUS_PREFIX_PATTERN = re.compile(r"\A\[(in-progress|done)\](?: (.+))?\Z", re.DOTALL)


class SyncTokenExpired(Exception):
    pass


# ---------------------------------------------------------------- translation


def compose_description(status: EventStatus, notes: str) -> str:
    if status == EventStatus.PLANNED:
        return notes
    if not notes:
        return f"[{status.value}]"
    return f"[{status.value}] {notes}"


def split_description(description: str) -> tuple[EventStatus, str]:
    match = STATUS_PREFIX_PATTERN.match(description or "")
    if not match:
        return EventStatus.PLANNED, description or ""
    return EventStatus(match.group(1)), match.group(2) or ""


def describes_status(notes: str) -> bool:
    """True when planned notes would read back as a status prefix."""
    return STATUS_PREFIX_PATTERN.match(notes or "") is not None


def _whole_seconds(value: datetime | None) -> str | None:
    # DTSTART/DTEND carry no sub-second part.
    return serialize_datetime(value.replace(microsecond=0) if value is not None else None)


def event_to_payload(event: WorkProgramEvent) -> dict[str, Any]:
    return {
        "uid": event.local_id,
        "summary": event.title,
        "description": compose_description(event.status, event.notes),
        "dtstart": _whole_seconds(event.start),
        "dtend": _whole_seconds(event.end),
    }


def event_from_payload(payload: dict[str, Any], **meta: Any) -> WorkProgramEvent:
    status, notes = split_description(str(payload.get("description", "") or ""))
    return WorkProgramEvent(
        local_id=str(payload.get("uid", "")),
        title=str(payload.get("summary", "") or ""),
        start=parse_iso_datetime(payload.get("dtstart")),
        end=parse_iso_datetime(payload.get("dtend")),
        status=status,
        notes=notes,
        **meta,
    )


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        if is_end:
            return datetime.combine(value, time.max, tzinfo=timezone.utc)
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def ical_to_payload(raw_data: Any) -> dict[str, Any] | None:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    end = _coerce_datetime(dtend_raw, is_end=True)
    if start and end is None:
        end = start + timedelta(hours=1)
    return {
        "uid": str(vevent.get("UID", "")).strip(),
        "summary": str(vevent.get("SUMMARY", "")),
        "description": str(vevent.get("DESCRIPTION", "")),
        "dtstart": _whole_seconds(start),
        "dtend": _whole_seconds(end),
    }


def payload_to_ical(payload: dict[str, Any]) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", payload["uid"])
    vevent.add("DTSTAMP", utc_now())
    vevent.add("SUMMARY", payload.get("summary") or "")
    vevent.add("DESCRIPTION", payload.get("description") or "")
    start = parse_iso_datetime(payload.get("dtstart"))
    end = parse_iso_datetime(payload.get("dtend"))
    if start is not None:
        vevent.add("DTSTART", start)
    if end is not None:
        vevent.add("DTEND", end)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def _change_from_resource(resource: Any) -> ExternalChange | None:
    href = str(getattr(resource, "url", "") or "")
    raw_data = getattr(resource, "data", None)
    if raw_data is None:
        return ExternalChange(local_id="", external_ref=href, deleted=True)
    try:
        payload = ical_to_payload(raw_data)
    except ValueError as exc:
        logger.warning("skipping unreadable calendar resource %s: %s", href, exc)
        return None
    if payload is None or not payload["uid"]:
        return None
    return ExternalChange(
        local_id=payload["uid"],
        external_ref=href,
        token=payload_hash(payload),
        payload=payload,
    )


def translate_error(exc: Exception) -> AdapterError:
    if isinstance(exc, AdapterError):
        return exc
    text = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, caldav_error.AuthorizationError):
        return AuthExpired(text)
    if isinstance(exc, caldav_error.NotFoundError):
        return NotFound(text)
    if "429" in text or "Too Many Requests" in text:
        return RateLimited(text)
    if isinstance(exc, (caldav_error.PutError, ValueError)):
        return Rejected(text)
    if isinstance(exc, (caldav_error.DAVError, OSError)):
        return TransientNetwork(text)
    return Rejected(text)


# ---------------------------------------------------------------- adapter


class CalendarAdapter:
    source = Source.CALENDAR

    def __init__(
        self,
        config: CalendarConfig,
        credentials: CredentialProvider,
        limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.limiter = limiter or RateLimiter(config.quota_per_minute, 60)
        self._clock = clock
        self._calendar_obj: Any = None
        self._client_token = ""

    def _connect(self, token: str) -> Any:
        if not self.config.calendar_url:
            raise Rejected("calendar.calendar_url is not configured")
        client = caldav.DAVClient(
            url=self.config.calendar_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.config.timeout_seconds,
        )
        return client.calendar(url=self.config.calendar_url)

    async def _calendar(self) -> Any:
        token = await self.credentials.token(self.source)
        if self._calendar_obj is None or token != self._client_token:
            self._calendar_obj = self._connect(token)
            self._client_token = token
        return self._calendar_obj

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        await self.limiter.acquire()
        try:
            return await asyncio.to_thread(func, *args)
        except SyncTokenExpired:
            raise
        except Exception as exc:
            raise translate_error(exc) from exc

    # ------------------------------------------------------------ push

    async def push(self, event: WorkProgramEvent) -> PushResult:
        payload = event_to_payload(event)
        calendar = await self._calendar()
        href = await self._call(self._push_sync, calendar, payload, event.external_ref)
        return PushResult(external_ref=href, token=payload_hash(payload))

    def _push_sync(self, calendar: Any, payload: dict[str, Any], href: str | None) -> str:
        raw_ical = payload_to_ical(payload)
        resource = None
        if href:
            resource = self._load_by_url(calendar, href)
        if resource is None:
            # UID is the local identifier, so a retried push finds its earlier copy.
            resource = self._load_by_uid(calendar, payload["uid"])
        if resource is None:
            resource = calendar.save_event(raw_ical)
        else:
            resource.data = raw_ical
            resource.save()
        return str(resource.url)

    @staticmethod
    def _load_by_url(calendar: Any, href: str) -> Any:
        try:
            return calendar.event_by_url(href)
        except caldav_error.NotFoundError:
            return None

    @staticmethod
    def _load_by_uid(calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            return calendar.event_by_uid(uid)
        except caldav_error.NotFoundError:
            return None

    # ------------------------------------------------------------ pull

    async def pull(self, cursor: SyncCursor) -> PullResult:
        calendar = await self._calendar()
        if cursor.token:
            try:
                return await self._call(self._pull_incremental, calendar, cursor.token)
            except SyncTokenExpired:
                logger.info("calendar sync token rejected, re-reading the full window")
        fresh_token = await self._call(self._fresh_token, calendar)
        return await self._call(self._pull_window, calendar, fresh_token)

    def _pull_incremental(self, calendar: Any, token: str) -> PullResult:
        try:
            collection = calendar.objects_by_sync_token(sync_token=token, load_objects=True)
        except caldav_error.ReportError as exc:
            raise SyncTokenExpired(str(exc)) from exc
        changes = [change for change in map(_change_from_resource, collection) if change is not None]
        return PullResult(changes=changes, token=str(collection.sync_token), complete=False)

    def _fresh_token(self, calendar: Any) -> str | None:
        try:
            collection = calendar.objects_by_sync_token(load_objects=False)
        except caldav_error.ReportError:
            logger.warning("calendar server does not issue sync tokens; every cycle reads the full window")
            return None
        return str(collection.sync_token)

    def _pull_window(self, calendar: Any, token: str | None) -> PullResult:
        window_start, window_end = sync_window(
            self._clock(), self.config.window_days_past, self.config.window_days_future
        )
        resources = calendar.search(start=window_start, end=window_end, event=True, expand=False)
        changes: list[ExternalChange] = []
        complete = True
        for resource in resources:
            change = _change_from_resource(resource)
            if change is None:
                # A resource without a readable UID could be any local event.
                complete = False
            elif not change.deleted:
                changes.append(change)
        return PullResult(changes=changes, token=token, complete=complete, window=(window_start, window_end))

    # ------------------------------------------------------------ delete

    async def delete(self, external_ref: str, key: str = "") -> None:
        calendar = await self._calendar()
        await self._call(self._delete_sync, calendar, external_ref, key)

    def _delete_sync(self, calendar: Any, href: str, uid: str) -> None:
        resource = self._load_by_url(calendar, href) if href else None
        if resource is None:
            resource = self._load_by_uid(calendar, uid)
        if resource is None:
            logger.info("calendar event %s already absent", href or uid)
            return
        try:
            resource.delete()
        except caldav_error.NotFoundError:
            logger.info("calendar event %s vanished during delete", href or uid)

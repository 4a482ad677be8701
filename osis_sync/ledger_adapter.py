from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

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
    ExternalChange,
    FinancialTransaction,
    LedgerConfig,
    PullResult,
    PushResult,
    Source,
    SyncCursor,
    parse_iso_datetime,
    payload_hash,
    serialize_datetime,
)
from osis_sync.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

# Row 1 is the header; data starts on row 2.
LEDGER_COLUMNS = ("id", "timestamp", "category", "amount", "note")
LAST_COLUMN = "E"
FIRST_DATA_ROW = 2

ROW_REF_PATTERN = re.compile(r"![A-Z]+(\d+)(?::[A-Z]+\d+)?$")


# ---------------------------------------------------------------- translation


def _parse_amount(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"amount must be whole minor units, got {value}")
        return int(value)
    text = str(value).strip()
    if not re.fullmatch(r"-?\d+", text):
        raise ValueError(f"amount must be whole minor units, got {text!r}")
    return int(text)


def _parse_timestamp(value: Any) -> str:
    # Sheets hands back typed dates as serial numbers; only ISO-8601 text is accepted.
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"timestamp must be ISO-8601 text, got {value!r}")
    try:
        parsed = parse_iso_datetime(value)
    except ValueError as exc:
        raise ValueError(f"timestamp must be ISO-8601 text, got {value!r}") from exc
    return serialize_datetime(parsed) or ""


def row_to_payload(values: list[Any]) -> dict[str, Any]:
    """Read one sheet row into its canonical payload, raising ValueError on unusable cells."""
    padded = list(values) + [""] * (len(LEDGER_COLUMNS) - len(values))
    return {
        "id": str(padded[0]).strip(),
        "timestamp": _parse_timestamp(padded[1]),
        "category": str(padded[2]),
        "amount": _parse_amount(padded[3]),
        "note": str(padded[4]),
    }


def payload_to_row(payload: dict[str, Any]) -> list[Any]:
    return [payload["id"], payload["timestamp"], payload["category"], int(payload["amount"]), payload["note"]]


def transaction_to_payload(transaction: FinancialTransaction) -> dict[str, Any]:
    return {
        "id": transaction.local_id,
        "timestamp": serialize_datetime(transaction.timestamp) or "",
        "category": transaction.category,
        "amount": int(transaction.amount),
        "note": transaction.note,
    }


def transaction_from_payload(payload: dict[str, Any], **meta: Any) -> FinancialTransaction:
    return FinancialTransaction(
        local_id=payload["id"],
        amount=int(payload["amount"]),
        category=payload["category"],
        timestamp=parse_iso_datetime(payload["timestamp"]),
        note=payload["note"],
        **meta,
    )


def http_status(exc: HttpError) -> int | None:
    response = getattr(exc, "resp", None)
    return int(response.status) if response and getattr(response, "status", None) else None


def adapter_error(exc: HttpError) -> AdapterError:
    status = http_status(exc) or 0
    content = exc.content.decode("utf-8", errors="replace") if isinstance(exc.content, bytes) else str(exc.content)
    detail = f"HTTP {status}: {content[:300]}"
    marker = content.upper()
    if status == 401:
        return AuthExpired(detail)
    if status == 429 or (status == 403 and ("RATE_LIMIT_EXCEEDED" in marker or "RATELIMITEXCEEDED" in marker)):
        return RateLimited(detail)
    if status in {404, 410}:
        return NotFound(detail)
    if status >= 500:
        return TransientNetwork(detail)
    return Rejected(detail)


# ---------------------------------------------------------------- adapter


class LedgerAdapter:
    source = Source.LEDGER

    def __init__(
        self,
        config: LedgerConfig,
        credentials: CredentialProvider,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.limiter = limiter or RateLimiter(config.quota_per_100s, 100)
        self._service: Any = None
        self._service_token = ""

    def _range(self, first_row: int, last_row: int, last_column: str = LAST_COLUMN) -> str:
        return f"'{self.config.sheet_name}'!A{first_row}:{last_column}{last_row}"

    def row_ref(self, row_number: int) -> str:
        return self._range(row_number, row_number)

    @staticmethod
    def row_from_ref(external_ref: str | None) -> int | None:
        match = ROW_REF_PATTERN.search(external_ref or "")
        return int(match.group(1)) if match else None

    def _build_service(self, token: str) -> Any:
        # The provider owns refresh; a bare token surfaces expiry as AuthExpired.
        http = AuthorizedHttp(Credentials(token=token), http=httplib2.Http(timeout=self.config.timeout_seconds))
        return build(
            "sheets",
            "v4",
            http=http,
            cache_discovery=False,
            client_options={"api_endpoint": self.config.api_base_url},
        )

    def _service_for(self, token: str) -> Any:
        if self._service is None or token != self._service_token:
            self._service = self._build_service(token)
            self._service_token = token
        return self._service

    @staticmethod
    def _execute_sync(request: Any) -> dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as exc:
            raise adapter_error(exc) from exc
        except RefreshError as exc:
            raise AuthExpired(f"access token rejected: {exc}") from exc
        except (httplib2.HttpLib2Error, TransportError, OSError) as exc:
            raise TransientNetwork(f"{type(exc).__name__}: {exc}") from exc

    async def _execute(self, make_request: Callable[[Any], Any]) -> dict[str, Any]:
        if not self.config.spreadsheet_id:
            raise Rejected("ledger.spreadsheet_id is not configured")
        token = await self.credentials.token(self.source)
        spreadsheets = self._service_for(token).spreadsheets()
        await self.limiter.acquire()
        return await asyncio.to_thread(self._execute_sync, make_request(spreadsheets))

    async def _read_range(self, a1_range: str) -> list[list[Any]]:
        payload = await self._execute(
            lambda sheets: sheets.values().get(
                spreadsheetId=self.config.spreadsheet_id,
                range=a1_range,
                valueRenderOption="UNFORMATTED_VALUE",
                majorDimension="ROWS",
            )
        )
        return payload.get("values", [])

    async def _read_rows(self, last_column: str = LAST_COLUMN) -> list[tuple[int, list[Any]]]:
        """Read every data row in chunks of ``batch_rows``, the per-call row limit."""
        rows: list[tuple[int, list[Any]]] = []
        first_row = FIRST_DATA_ROW
        batch = self.config.batch_rows
        while True:
            values = await self._read_range(self._range(first_row, first_row + batch - 1, last_column))
            for offset, row in enumerate(values):
                rows.append((first_row + offset, row))
            if len(values) < batch:
                return rows
            first_row += batch

    async def _locate(self, key: str, external_ref: str | None) -> int | None:
        row_number = self.row_from_ref(external_ref)
        if row_number is not None:
            values = await self._read_range(self._range(row_number, row_number, "A"))
            if values and values[0] and str(values[0][0]).strip() == key:
                return row_number
        for candidate, row in await self._read_rows(last_column="A"):
            if row and str(row[0]).strip() == key:
                return candidate
        return None

    # ------------------------------------------------------------ push

    async def push(self, transaction: FinancialTransaction) -> PushResult:
        payload = transaction_to_payload(transaction)
        body = {"values": [payload_to_row(payload)]}
        # The id column is the idempotency key: a retried push updates its earlier row.
        row_number = await self._locate(transaction.local_id, transaction.external_ref)
        if row_number is None:
            response = await self._execute(
                lambda sheets: sheets.values().append(
                    spreadsheetId=self.config.spreadsheet_id,
                    range=self._range(FIRST_DATA_ROW, FIRST_DATA_ROW),
                    valueInputOption="RAW",
                    insertDataOption="INSERT_ROWS",
                    body=body,
                )
            )
            updated_range = str(response.get("updates", {}).get("updatedRange", ""))
            row_number = self.row_from_ref(updated_range)
            if row_number is None:
                raise TransientNetwork(f"append returned no usable range: {updated_range!r}")
        else:
            target = self.row_ref(row_number)
            await self._execute(
                lambda sheets: sheets.values().update(
                    spreadsheetId=self.config.spreadsheet_id,
                    range=target,
                    valueInputOption="RAW",
                    body=body,
                )
            )
        return PushResult(external_ref=self.row_ref(row_number), token=payload_hash(payload))

    # ------------------------------------------------------------ pull

    async def pull(self, cursor: SyncCursor) -> PullResult:
        rows = await self._read_rows()
        snapshot = payload_hash({"rows": [row for _, row in rows]})
        if cursor.token == snapshot:
            return PullResult(changes=[], token=snapshot, complete=False)

        changes: list[ExternalChange] = []
        complete = True
        for row_number, values in rows:
            if not values or not str(values[0]).strip():
                continue
            try:
                payload = row_to_payload(values)
            except (TypeError, ValueError) as exc:
                # An unreadable row hides its id, so absence can no longer imply deletion.
                complete = False
                logger.warning("skipping ledger row %d: %s", row_number, exc)
                continue
            changes.append(
                ExternalChange(
                    local_id=payload["id"],
                    external_ref=self.row_ref(row_number),
                    token=payload_hash(payload),
                    payload=payload,
                )
            )
        return PullResult(changes=changes, token=snapshot, complete=complete)

    # ------------------------------------------------------------ delete

    async def delete(self, external_ref: str, key: str = "") -> None:
        row_number = await self._locate(key, external_ref) if key else self.row_from_ref(external_ref)
        if row_number is None:
            logger.info("ledger row for %s already absent", key or external_ref)
            return
        body = {
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": self.config.sheet_id,
                            "dimension": "ROWS",
                            "startIndex": row_number - 1,
                            "endIndex": row_number,
                        }
                    }
                }
            ]
        }
        try:
            await self._execute(
                lambda sheets: sheets.batchUpdate(spreadsheetId=self.config.spreadsheet_id, body=body)
            )
        except NotFound:
            logger.info("ledger row %d vanished during delete", row_number)

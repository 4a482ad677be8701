from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class AuthorizationDenied(SyncError):
    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or reason)


class UnknownUser(SyncError):
    pass


class StaleWrite(SyncError):
    def __init__(self, kind: str, local_id: str, expected: int | None, current: int | None) -> None:
        self.kind = kind
        self.local_id = local_id
        self.expected = expected
        self.current = current
        super().__init__(f"STALE_WRITE {kind}:{local_id} expected={expected} current={current}")


class StoreError(SyncError):
    pass


class EntityNotFound(SyncError):
    pass


class ConflictUnresolved(SyncError):
    pass


class AdapterError(SyncError):
    code = "ADAPTER_ERROR"
    retryable = False


class RateLimited(AdapterError):
    code = "RATE_LIMITED"
    retryable = True


class AuthExpired(AdapterError):
    code = "AUTH_EXPIRED"
    retryable = True


class TransientNetwork(AdapterError):
    code = "TRANSIENT_NETWORK"
    retryable = True


class Rejected(AdapterError):
    code = "REJECTED"


class NotFound(AdapterError):
    code = "NOT_FOUND"

from __future__ import annotations

import asyncio
import logging

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from osis_sync.errors import AuthExpired, TransientNetwork
from osis_sync.models import CredentialsConfig, ServiceCredentials, Source

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Hands out short-lived access tokens; refreshing them is someone else's job."""

    async def token(self, source: Source) -> str:
        raise NotImplementedError

    async def refresh(self, source: Source) -> str:
        raise NotImplementedError


class OAuthCredentialProvider(CredentialProvider):
    """Refresh-token grant through google-auth user credentials.

    Access tokens live in memory only; the refresh material stays in the
    configuration owned by the operator.
    """

    def __init__(self, config: CredentialsConfig, timeout_seconds: int = 30) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._tokens: dict[Source, str] = {}
        self._lock = asyncio.Lock()
        self._session = requests.Session()

    def _service(self, source: Source) -> ServiceCredentials:
        return self.config.calendar if source == Source.CALENDAR else self.config.ledger

    async def token(self, source: Source) -> str:
        cached = self._tokens.get(source)
        if cached:
            return cached
        initial = self._service(source).access_token
        if initial:
            self._tokens[source] = initial
            return initial
        return await self.refresh(source)

    async def refresh(self, source: Source) -> str:
        async with self._lock:
            service = self._service(source)
            if not service.refresh_token or not service.client_id:
                raise AuthExpired(f"{source.value}: no refresh credentials configured")
            token = await asyncio.to_thread(self._refresh_sync, service)
            self._tokens[source] = token
            logger.info("refreshed access token for %s", source.value)
            return token

    def _refresh_sync(self, service: ServiceCredentials) -> str:
        credentials = Credentials(
            token=None,
            refresh_token=service.refresh_token,
            token_uri=service.token_uri,
            client_id=service.client_id,
            client_secret=service.client_secret,
        )
        try:
            credentials.refresh(Request(session=self._session))
        except TransportError as exc:
            raise TransientNetwork(f"token refresh failed: {exc}") from exc
        except RefreshError as exc:
            # google-auth flags server-side failures (5xx, timeouts) as retryable.
            if getattr(exc, "retryable", False):
                raise TransientNetwork(f"token refresh failed: {exc}") from exc
            raise AuthExpired(f"token refresh rejected: {exc}") from exc
        token = str(credentials.token or "").strip()
        if not token:
            raise AuthExpired("token endpoint returned no access_token")
        return token

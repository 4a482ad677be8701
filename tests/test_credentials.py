import unittest
from unittest import mock

from google.auth.exceptions import RefreshError, TransportError

from osis_sync.credentials import OAuthCredentialProvider
from osis_sync.errors import AuthExpired, TransientNetwork
from osis_sync.models import CredentialsConfig, Source


def _refreshing(token: str = "", error: Exception | None = None):
    def refresh(self, request) -> None:
        if error is not None:
            raise error
        self.token = token

    return refresh


class OAuthCredentialProviderTests(unittest.IsolatedAsyncioTestCase):
    def _provider(self, **ledger) -> OAuthCredentialProvider:
        return OAuthCredentialProvider(CredentialsConfig.from_dict({"ledger": ledger}))

    async def test_configured_access_token_is_used_first(self) -> None:
        provider = self._provider(access_token="a-1")
        with mock.patch("osis_sync.credentials.Credentials.refresh") as refresh:
            self.assertEqual(await provider.token(Source.LEDGER), "a-1")
        refresh.assert_not_called()

    async def test_refresh_grant_replaces_cached_token(self) -> None:
        provider = self._provider(access_token="a-1", refresh_token="r-1", client_id="c-1", client_secret="s-1")
        with mock.patch("osis_sync.credentials.Credentials.refresh", autospec=True, side_effect=_refreshing("a-2")) as refresh:
            self.assertEqual(await provider.refresh(Source.LEDGER), "a-2")
        self.assertEqual(await provider.token(Source.LEDGER), "a-2")
        credentials = refresh.call_args.args[0]
        self.assertEqual(credentials.refresh_token, "r-1")
        self.assertEqual(credentials.client_id, "c-1")
        self.assertEqual(credentials.token_uri, "https://oauth2.googleapis.com/token")

    async def test_missing_refresh_material_is_auth_expired(self) -> None:
        with self.assertRaises(AuthExpired):
            await self._provider().token(Source.LEDGER)

    async def test_refresh_failures_are_classified(self) -> None:
        provider = self._provider(refresh_token="r-1", client_id="c-1")
        cases = [
            (RefreshError("invalid_grant"), AuthExpired),
            (TransportError("connection reset"), TransientNetwork),
            (_retryable_refresh_error(), TransientNetwork),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                with mock.patch(
                    "osis_sync.credentials.Credentials.refresh", autospec=True, side_effect=_refreshing(error=error)
                ):
                    with self.assertRaises(expected):
                        await provider.refresh(Source.LEDGER)

    async def test_empty_token_response_is_auth_expired(self) -> None:
        provider = self._provider(refresh_token="r-1", client_id="c-1")
        with mock.patch("osis_sync.credentials.Credentials.refresh", autospec=True, side_effect=_refreshing("")):
            with self.assertRaises(AuthExpired):
                await provider.refresh(Source.LEDGER)


def _retryable_refresh_error() -> RefreshError:
    return RefreshError("server unavailable", retryable=True)


if __name__ == "__main__":
    unittest.main()

"""
Unit tests for encrypted token storage and OAuth refresh.
"""

from urllib.parse import parse_qs

import httpx
import pytest

from mailsync.core.credentials import (
    TOKEN_URLS,
    CredentialVault,
    CredentialVaultError,
    StoredTokenCredentials,
)
from mailsync.providers.base import AuthenticationError, ProviderType


@pytest.fixture(scope="module")
def vault():
    return CredentialVault("test-master-key", "test-salt")


class TokenEndpoint:
    """Mock OAuth token endpoint."""

    def __init__(self, status: int = 200, body=None):
        self.status = status
        self.body = body if body is not None else {"access_token": "fresh-token", "expires_in": 3600}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    def form(self, index: int = -1):
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


@pytest.fixture
def endpoint():
    return TokenEndpoint()


@pytest.fixture
def credentials(store, vault, endpoint, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return StoredTokenCredentials(
        store,
        vault,
        {
            ProviderType.GMAIL: ("google-client", "google-secret"),
            ProviderType.OUTLOOK: ("ms-client", "ms-secret"),
        },
        http_client=client,
        clock=clock,
    )


class TestCredentialVault:
    """Test token payload encryption."""

    def test_round_trip(self, vault):
        encrypted = vault.encrypt({"access_token": "abc"})
        assert "abc" not in encrypted
        assert vault.decrypt(encrypted) == {"access_token": "abc"}

    def test_wrong_key(self, vault):
        encrypted = vault.encrypt({"access_token": "abc"})
        other = CredentialVault("another-key", "test-salt")
        with pytest.raises(CredentialVaultError):
            other.decrypt(encrypted)

    def test_master_key_required(self):
        with pytest.raises(CredentialVaultError):
            CredentialVault("", "salt")


class TestStoredTokenCredentials:
    """Test token lookup, expiry and refresh."""

    @pytest.mark.asyncio
    async def test_tokens_encrypted_at_rest(self, credentials, store):
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1", "refresh-1", expires_in=3600)
        doc = await store.collection("oauth_tokens").get("acct")
        assert doc["provider"] == "gmail"
        assert "access-1" not in doc["tokens"]

    @pytest.mark.asyncio
    async def test_valid_token_returned(self, credentials, endpoint):
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1", "refresh-1", expires_in=3600)
        assert await credentials.get_valid_access_token("acct") == "access-1"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_token_without_expiry_never_refreshed(self, credentials, endpoint, clock):
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1", "refresh-1")
        clock.advance(days=30)
        assert await credentials.get_valid_access_token("acct") == "access-1"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_refresh_inside_expiry_buffer(self, credentials, endpoint, clock):
        """Tokens within five minutes of expiry are refreshed before use."""
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1", "refresh-1", expires_in=3600)
        clock.advance(minutes=56)

        assert await credentials.get_valid_access_token("acct") == "fresh-token"
        assert str(endpoint.requests[0].url) == TOKEN_URLS[ProviderType.GMAIL]
        form = endpoint.form()
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["client_id"] == "google-client"

        # The refresh token is kept when the endpoint does not rotate it
        endpoint.body = {"access_token": "fresh-token-2"}
        assert await credentials.refresh("acct") == "fresh-token-2"
        assert endpoint.form()["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_outlook_uses_its_endpoint(self, credentials, endpoint):
        await credentials.store_tokens("acct", ProviderType.OUTLOOK, "access-1", "refresh-1")
        await credentials.refresh("acct")
        assert str(endpoint.requests[0].url) == TOKEN_URLS[ProviderType.OUTLOOK]
        assert endpoint.form()["client_id"] == "ms-client"

    @pytest.mark.asyncio
    async def test_rejected_grant(self, credentials, endpoint):
        endpoint.status = 400
        endpoint.body = {"error": "invalid_grant", "error_description": "Token has been revoked"}
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1", "refresh-1")

        with pytest.raises(AuthenticationError) as exc_info:
            await credentials.refresh("acct")
        assert "revoked" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, credentials):
        await credentials.store_tokens("acct", ProviderType.GMAIL, "access-1")
        with pytest.raises(AuthenticationError):
            await credentials.refresh("acct")

    @pytest.mark.asyncio
    async def test_unknown_account(self, credentials):
        with pytest.raises(AuthenticationError):
            await credentials.get_valid_access_token("nobody")

"""
OAuth Token Storage and Refresh

Access and refresh tokens are stored per account, encrypted at rest with
Fernet using a key derived from CREDENTIAL_VAULT_KEY. Expired access
tokens are refreshed against the provider's token endpoint.
"""

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mailsync.core.database import DocumentStore
from mailsync.providers.base import AuthenticationError, CredentialProvider, ProviderType

logger = logging.getLogger(__name__)

OAUTH_TOKENS_COLLECTION = "oauth_tokens"
EXPIRY_BUFFER = timedelta(minutes=5)

TOKEN_URLS = {
    ProviderType.GMAIL: "https://oauth2.googleapis.com/token",
    ProviderType.OUTLOOK: "https://login.microsoftonline.com/common/oauth2/v2.0/token",
}


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class CredentialVault:
    """
    Symmetric encryption for token payloads.

    Usage:
        vault = CredentialVault(master_key, salt)
        encrypted = vault.encrypt({"access_token": "..."})
        tokens = vault.decrypt(encrypted)
    """

    def __init__(self, master_key: str, salt: str):
        if not master_key:
            raise CredentialVaultError("A master key is required to encrypt credentials")
        self._cipher = Fernet(self._derive_key(master_key, salt.encode()))

    @staticmethod
    def _derive_key(password: str, salt: bytes) -> bytes:
        """Derive a Fernet-compatible key from a password."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, data: dict[str, Any]) -> str:
        return self._cipher.encrypt(json.dumps(data).encode()).decode()

    def decrypt(self, encrypted_data: str) -> dict[str, Any]:
        try:
            return json.loads(self._cipher.decrypt(encrypted_data.encode()).decode())
        except InvalidToken as e:
            raise CredentialVaultError("Failed to decrypt credentials: invalid key or corrupted data") from e


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredTokenCredentials(CredentialProvider):
    """
    CredentialProvider over encrypted token documents.

    Args:
        store: Document store holding the token collection
        vault: Encryption for the token payloads
        client_credentials: OAuth client id/secret per provider
        http_client: Optional shared client for token requests
    """

    def __init__(
        self,
        store: DocumentStore,
        vault: CredentialVault,
        client_credentials: dict[ProviderType, tuple[str, str]],
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = _utcnow,
        collection_name: str = OAUTH_TOKENS_COLLECTION,
    ):
        self._collection = store.collection(collection_name)
        self._vault = vault
        self._client_credentials = client_credentials
        self._http_client = http_client
        self._clock = clock

    async def store_tokens(
        self,
        account_id: str,
        provider: ProviderType,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[float] = None,
    ):
        """Save tokens obtained from an OAuth authorization."""
        expires_at = self._clock() + timedelta(seconds=expires_in) if expires_in else None
        payload = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
        await self._collection.upsert({
            "id": account_id,
            "provider": provider.value,
            "tokens": self._vault.encrypt(payload),
            "updated_at": self._clock(),
        })

    async def _load(self, account_id: str) -> tuple[ProviderType, dict[str, Any]]:
        doc = await self._collection.get(account_id)
        if doc is None:
            raise AuthenticationError(f"No OAuth tokens stored for account {account_id}", account_id)
        return ProviderType(doc["provider"]), self._vault.decrypt(doc["tokens"])

    def _is_expired(self, tokens: dict[str, Any]) -> bool:
        expires_at = tokens.get("expires_at")
        if not expires_at:
            return False
        return self._clock() >= datetime.fromisoformat(expires_at) - EXPIRY_BUFFER

    async def get_valid_access_token(self, account_id: str) -> str:
        _, tokens = await self._load(account_id)
        if self._is_expired(tokens):
            logger.info(f"Access token for {account_id} expired, refreshing")
            return await self.refresh(account_id)
        return tokens["access_token"]

    async def refresh(self, account_id: str) -> str:
        """
        Exchange the refresh token for a new access token.

        Raises:
            AuthenticationError: If there is no refresh token or the grant is rejected
        """
        provider, tokens = await self._load(account_id)
        refresh_token = tokens.get("refresh_token")
        if not refresh_token:
            raise AuthenticationError("No refresh token available", account_id)

        client_id, client_secret = self._client_credentials.get(provider, ("", ""))
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        client = self._http_client or httpx.AsyncClient()
        try:
            response = await client.post(
                TOKEN_URLS[provider],
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token refresh request failed: {e}", account_id) from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if response.status_code != 200:
            error_data = {}
            if response.headers.get("content-type", "").startswith("application/json"):
                error_data = response.json()
            raise AuthenticationError(
                error_data.get("error_description") or error_data.get("error") or "Token refresh failed",
                account_id,
            )

        body = response.json()
        await self.store_tokens(
            account_id,
            provider,
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token", refresh_token),
            expires_in=body.get("expires_in"),
        )
        logger.info(f"Refreshed access token for {account_id}")
        return body["access_token"]

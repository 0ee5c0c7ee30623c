"""
Direct Outlook/Microsoft 365 Synchronization

Outlook sync using the Microsoft Graph API.

Features:
- $filter listing within a lookback window, 50 messages per page
- Listing returns full payloads, so no per-message fetch is needed
- Delta query incremental sync (cursor = @odata.deltaLink)
- Delta entries carry ids only; changed messages are re-fetched
- 410 Gone on a delta request means the delta link expired
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from mailsync.providers.base import (
    CredentialProvider,
    CursorExpiredError,
    DeltaPage,
    MessagePage,
    MessageRef,
    ProviderAdapter,
    ProviderHTTPError,
    ProviderType,
)
from mailsync.providers.email.base import BaseEmailSync, EmailRecord, EmailSyncConfig
from mailsync.providers.registry import register_provider
from mailsync.services.rate_limiter import RateLimiter, create_outlook_rate_limiter

logger = logging.getLogger(__name__)


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

MESSAGE_FIELDS = (
    "id,conversationId,receivedDateTime,lastModifiedDateTime,subject,bodyPreview,"
    "isRead,isDraft,importance,flag,from,toRecipients,ccRecipients,bccRecipients,"
    "body,hasAttachments,parentFolderId,categories"
)

# Graph error codes meaning the delta state must be rebuilt
RESYNC_ERROR_CODES = {"syncStateNotFound", "SyncStateNotFound", "resyncRequired", "SyncStateInvalid"}


def _parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class OutlookAdapter(ProviderAdapter):
    """
    Microsoft Graph access for one account.

    Page tokens and cursors are the absolute @odata.nextLink and
    @odata.deltaLink URLs returned by Graph.
    """

    provider_type = ProviderType.OUTLOOK

    def __init__(
        self,
        account_id: str,
        credentials: CredentialProvider,
        page_size: int = 50,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
    ):
        super().__init__(account_id, credentials)
        self.page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._folder_names: Optional[Dict[str, str]] = None

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def _get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        delta: bool = False,
    ) -> Dict[str, Any]:
        token = await self.credentials.get_valid_access_token(self.account_id)
        response = await self._client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )

        if response.status_code >= 400:
            error_code = ""
            try:
                error_code = response.json().get("error", {}).get("code", "")
            except ValueError:
                pass
            if delta and (response.status_code == 410 or error_code in RESYNC_ERROR_CODES):
                raise CursorExpiredError(
                    f"Outlook delta link expired ({response.status_code} {error_code})".strip(),
                    self.account_id,
                )
            raise ProviderHTTPError(
                f"Graph API error {response.status_code} {error_code}".strip(),
                status_code=response.status_code,
                headers=response.headers,
                account_id=self.account_id,
            )

        return response.json()

    async def load_folder_names(self) -> Dict[str, str]:
        """Map folder ids to display names; cached for the adapter's lifetime."""
        if self._folder_names is not None:
            return self._folder_names

        names: Dict[str, str] = {}
        url: Optional[str] = f"{GRAPH_BASE_URL}/me/mailFolders"
        try:
            while url:
                data = await self._get(url)
                for folder in data.get("value", []):
                    names[folder.get("id", "")] = folder.get("displayName", "")
                url = data.get("@odata.nextLink")
        except (ProviderHTTPError, httpx.HTTPError) as e:
            logger.warning(f"Failed to load Outlook folder names for {self.account_id}: {e}")

        self._folder_names = names
        return names

    async def list_page(self, page_token: Optional[str], since: datetime) -> MessagePage:
        await self.load_folder_names()

        if page_token:
            data = await self._get(page_token)
        else:
            since_iso = since.strftime("%Y-%m-%dT%H:%M:%SZ")
            data = await self._get(
                f"{GRAPH_BASE_URL}/me/messages",
                params={
                    "$filter": f"receivedDateTime ge {since_iso}",
                    "$top": str(self.page_size),
                    "$select": MESSAGE_FIELDS,
                    "$count": "true",
                },
            )

        refs = [MessageRef(id=m["id"], raw=m) for m in data.get("value", []) if "id" in m]
        return MessagePage(
            refs=refs,
            next_page_token=data.get("@odata.nextLink"),
            result_size_estimate=data.get("@odata.count"),
        )

    async def fetch_item(self, message_id: str) -> Dict[str, Any]:
        await self.load_folder_names()
        return await self._get(
            f"{GRAPH_BASE_URL}/me/messages/{message_id}",
            params={"$select": MESSAGE_FIELDS},
        )

    async def get_current_cursor(self) -> Optional[str]:
        """Delta link for the mailbox's current position, skipping existing messages."""
        url: Optional[str] = f"{GRAPH_BASE_URL}/me/messages/delta"
        params: Optional[Dict[str, Any]] = {"$select": "id", "$deltatoken": "latest"}
        while url:
            data = await self._get(url, params=params, delta=True)
            params = None
            if data.get("@odata.deltaLink"):
                return data["@odata.deltaLink"]
            url = data.get("@odata.nextLink")
        return None

    async def fetch_delta(self, cursor: str, page_token: Optional[str] = None) -> DeltaPage:
        """
        Read one page of changes from a delta link.

        Raises:
            CursorExpiredError: If Graph no longer accepts the delta link
        """
        await self.load_folder_names()
        data = await self._get(page_token or cursor, delta=True)

        updated: List[MessageRef] = []
        removed: List[str] = []
        for msg in data.get("value", []):
            msg_id = msg.get("id")
            if not msg_id:
                continue
            if "@removed" in msg:
                removed.append(msg_id)
            else:
                updated.append(MessageRef(id=msg_id))

        return DeltaPage(
            # Graph does not distinguish created from changed; the store tells new from known
            updated=updated,
            removed=removed,
            next_page_token=data.get("@odata.nextLink"),
            cursor=data.get("@odata.deltaLink"),
        )

    def normalize(self, raw: Dict[str, Any]) -> EmailRecord:
        """Parse Microsoft Graph message format."""
        msg_id = raw.get("id", "")

        # Parse from
        from_data = (raw.get("from") or {}).get("emailAddress", {})

        # Get body
        body_data = raw.get("body") or {}
        body_content = body_data.get("content", "")
        if body_data.get("contentType", "text").lower() == "html":
            body_html = body_content
            body_text = raw.get("bodyPreview", "")
        else:
            body_html = ""
            body_text = body_content or raw.get("bodyPreview", "")

        parent_id = raw.get("parentFolderId", "")
        folder = (self._folder_names or {}).get(parent_id) or parent_id

        return EmailRecord(
            id=self.namespaced_id(msg_id),
            account_id=self.account_id,
            provider=self.provider_type.value,
            native_id=msg_id,
            thread_id=raw.get("conversationId"),
            subject=raw.get("subject") or "",
            from_address=from_data.get("address", ""),
            from_name=from_data.get("name", ""),
            to_addresses=_recipients(raw.get("toRecipients")),
            cc_addresses=_recipients(raw.get("ccRecipients")),
            bcc_addresses=_recipients(raw.get("bccRecipients")),
            body_html=body_html,
            body_text=body_text,
            snippet=(raw.get("bodyPreview") or "")[:200],
            timestamp=_parse_graph_datetime(raw.get("receivedDateTime")),
            server_updated_at=_parse_graph_datetime(raw.get("lastModifiedDateTime")),
            folder=folder.lower(),
            labels=list(raw.get("categories") or []),
            read=bool(raw.get("isRead", False)),
            starred=(raw.get("flag") or {}).get("flagStatus") == "flagged",
            importance=raw.get("importance") or "normal",
            is_draft=bool(raw.get("isDraft", False)),
        )


def _recipients(items: Optional[List[Dict[str, Any]]]) -> List[str]:
    return [
        r.get("emailAddress", {}).get("address", "")
        for r in items or []
        if r.get("emailAddress", {}).get("address")
    ]


@register_provider(ProviderType.OUTLOOK)
class DirectOutlookSync(BaseEmailSync):
    """
    Outlook sync engine.

    Cursor semantics: the Graph @odata.deltaLink URL.
    """

    provider_type = ProviderType.OUTLOOK

    def default_config(self) -> EmailSyncConfig:
        return EmailSyncConfig(page_size=50, list_cost=1, fetch_cost=1)

    def create_rate_limiter(self) -> RateLimiter:
        return create_outlook_rate_limiter()

    def build_adapter(self, account_id: str) -> OutlookAdapter:
        return OutlookAdapter(account_id, self.context.credentials, page_size=self.config.page_size)

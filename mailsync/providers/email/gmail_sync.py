"""
Direct Gmail Synchronization

Gmail sync using the Gmail API.

Features:
- Query-based listing within a lookback window, 500 ids per page
- Per-message fetch in full format
- History-based incremental sync (cursor = historyId)
- 404 on history.list means the history id expired
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr
from typing import Any, Callable, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

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
from mailsync.providers.email.base import (
    BaseEmailSync,
    EmailAttachment,
    EmailRecord,
    EmailSyncConfig,
)
from mailsync.providers.registry import register_provider
from mailsync.services.rate_limiter import RateLimiter, create_gmail_rate_limiter

logger = logging.getLogger(__name__)

GMAIL_LIST_COST = 1
GMAIL_FETCH_COST = 5
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


def build_gmail_service(access_token: str):
    """Gmail API client authorized with a bare access token."""
    credentials = Credentials(token=access_token)
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


class GmailAdapter(ProviderAdapter):
    """
    Gmail API access for one account.

    The client library is synchronous, so requests run in a worker thread.
    """

    provider_type = ProviderType.GMAIL

    def __init__(
        self,
        account_id: str,
        credentials: CredentialProvider,
        page_size: int = 500,
        service_factory: Callable[[str], Any] = build_gmail_service,
    ):
        super().__init__(account_id, credentials)
        self.page_size = page_size
        self._service_factory = service_factory
        self._service = None
        self._service_token: Optional[str] = None

    async def _get_service(self):
        token = await self.credentials.get_valid_access_token(self.account_id)
        if self._service is None or token != self._service_token:
            self._service = self._service_factory(token)
            self._service_token = token
        return self._service

    async def _execute(self, request) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise ProviderHTTPError(
                f"Gmail API error: {e}",
                status_code=int(e.resp.status),
                headers=dict(e.resp),
                account_id=self.account_id,
            ) from e

    async def list_page(self, page_token: Optional[str], since: datetime) -> MessagePage:
        service = await self._get_service()
        query_params = {
            "userId": "me",
            "q": f"after:{int(since.timestamp())}",
            "maxResults": self.page_size,
        }
        if page_token:
            query_params["pageToken"] = page_token

        result = await self._execute(service.users().messages().list(**query_params))
        refs = [MessageRef(id=m["id"]) for m in result.get("messages", [])]
        logger.debug(f"Gmail listed {len(refs)} messages for {self.account_id}")
        return MessagePage(
            refs=refs,
            next_page_token=result.get("nextPageToken"),
            result_size_estimate=result.get("resultSizeEstimate"),
        )

    async def fetch_item(self, message_id: str) -> Dict[str, Any]:
        service = await self._get_service()
        return await self._execute(
            service.users().messages().get(userId="me", id=message_id, format="full")
        )

    async def get_current_cursor(self) -> Optional[str]:
        service = await self._get_service()
        profile = await self._execute(service.users().getProfile(userId="me"))
        history_id = profile.get("historyId")
        return str(history_id) if history_id else None

    async def fetch_delta(self, cursor: str, page_token: Optional[str] = None) -> DeltaPage:
        """
        Read one page of mailbox history since `cursor`.

        Raises:
            CursorExpiredError: If Gmail no longer has history for the id
        """
        service = await self._get_service()
        params = {
            "userId": "me",
            "startHistoryId": cursor,
            "historyTypes": HISTORY_TYPES,
        }
        if page_token:
            params["pageToken"] = page_token

        try:
            result = await self._execute(service.users().history().list(**params))
        except ProviderHTTPError as e:
            if e.status_code == 404:
                raise CursorExpiredError(
                    f"Gmail history id {cursor} expired", self.account_id
                ) from e
            raise

        added: List[str] = []
        updated: List[str] = []
        removed: List[str] = []

        for record in result.get("history", []):
            for item in record.get("messagesAdded", []):
                _append_unique(added, item.get("message", {}).get("id"))
            for key in ("labelsAdded", "labelsRemoved"):
                for item in record.get(key, []):
                    _append_unique(updated, item.get("message", {}).get("id"))
            for item in record.get("messagesDeleted", []):
                _append_unique(removed, item.get("message", {}).get("id"))

        # A message deleted later in the same history page is only removed
        added = [m for m in added if m not in removed]
        updated = [m for m in updated if m not in removed and m not in added]

        next_page_token = result.get("nextPageToken")
        history_id = result.get("historyId")
        return DeltaPage(
            added=[MessageRef(id=m) for m in added],
            updated=[MessageRef(id=m) for m in updated],
            removed=removed,
            next_page_token=next_page_token,
            cursor=str(history_id) if history_id and not next_page_token else None,
        )

    def normalize(self, raw: Dict[str, Any]) -> EmailRecord:
        """Parse Gmail API message format."""
        msg_id = raw.get("id", "")
        labels = raw.get("labelIds", [])

        # Parse headers
        headers = {}
        payload = raw.get("payload", {})
        for header in payload.get("headers", []):
            headers[header.get("name", "").lower()] = header.get("value", "")

        from_name, from_addr = parseaddr(headers.get("from", ""))

        # Parse date
        timestamp = None
        internal_date = raw.get("internalDate")
        if internal_date:
            timestamp = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)

        body_text, body_html = self._extract_gmail_body(payload)

        if "INBOX" in labels:
            folder = "INBOX"
        else:
            folder = labels[0] if labels else ""

        return EmailRecord(
            id=self.namespaced_id(msg_id),
            account_id=self.account_id,
            provider=self.provider_type.value,
            native_id=msg_id,
            thread_id=raw.get("threadId"),
            subject=headers.get("subject", ""),
            from_address=from_addr,
            from_name=from_name,
            to_addresses=_addresses(headers.get("to", "")),
            cc_addresses=_addresses(headers.get("cc", "")),
            bcc_addresses=_addresses(headers.get("bcc", "")),
            body_html=body_html,
            body_text=body_text,
            snippet=raw.get("snippet", body_text[:200]),
            timestamp=timestamp,
            folder=folder,
            labels=list(labels),
            read="UNREAD" not in labels,
            starred="STARRED" in labels,
            importance="high" if "IMPORTANT" in labels else "normal",
            attachments=self._extract_gmail_attachments(payload, msg_id),
            cursor_hint=str(raw["historyId"]) if raw.get("historyId") else None,
        )

    def _extract_gmail_body(self, payload: Dict[str, Any]) -> tuple[str, str]:
        """Extract (plain, html) bodies from a Gmail payload."""
        body_plain = ""
        body_html = ""

        mime_type = payload.get("mimeType", "")

        # Simple message
        if payload.get("body", {}).get("data"):
            text = _decode_base64(payload["body"]["data"])
            if mime_type == "text/html":
                body_html = text
            else:
                body_plain = text
            return body_plain, body_html

        # Multipart message
        for part in payload.get("parts", []):
            part_mime = part.get("mimeType", "")
            data = part.get("body", {}).get("data")

            if part_mime == "text/plain" and not body_plain and data:
                body_plain = _decode_base64(data)
            elif part_mime == "text/html" and not body_html and data:
                body_html = _decode_base64(data)
            elif part_mime.startswith("multipart/"):
                nested_plain, nested_html = self._extract_gmail_body(part)
                body_plain = body_plain or nested_plain
                body_html = body_html or nested_html

        return body_plain, body_html

    def _extract_gmail_attachments(self, payload: Dict[str, Any], message_id: str) -> List[EmailAttachment]:
        attachments = []

        for part in payload.get("parts", []):
            filename = part.get("filename", "")
            if filename:
                attachments.append(EmailAttachment(
                    id=part.get("body", {}).get("attachmentId") or f"att_{message_id}_{part.get('partId', '')}",
                    filename=filename,
                    content_type=part.get("mimeType", "application/octet-stream"),
                    size_bytes=part.get("body", {}).get("size", 0),
                ))

            if part.get("parts"):
                attachments.extend(self._extract_gmail_attachments({"parts": part["parts"]}, message_id))

        return attachments


def _append_unique(items: List[str], value: Optional[str]):
    if value and value not in items:
        items.append(value)


def _addresses(header: str) -> List[str]:
    return [addr for _, addr in getaddresses([header]) if addr] if header else []


def _decode_base64(data: str) -> str:
    """Decode URL-safe base64, tolerating missing padding."""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


@register_provider(ProviderType.GMAIL)
class DirectGmailSync(BaseEmailSync):
    """
    Gmail sync engine.

    Cursor semantics: the mailbox historyId. Listing returns ids only, so
    every message is fetched individually at 5 quota units each.
    """

    provider_type = ProviderType.GMAIL

    def default_config(self) -> EmailSyncConfig:
        return EmailSyncConfig(
            page_size=500,
            list_cost=GMAIL_LIST_COST,
            fetch_cost=GMAIL_FETCH_COST,
        )

    def create_rate_limiter(self) -> RateLimiter:
        return create_gmail_rate_limiter()

    def build_adapter(self, account_id: str) -> GmailAdapter:
        return GmailAdapter(account_id, self.context.credentials, page_size=self.config.page_size)

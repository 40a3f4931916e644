"""Microsoft Graph mailbox client (app-only client credentials).

Provides the mail operations used by the relay, the control API and the quote
webhook: fetch unread messages, list folders, mark one message read and send
a reply.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .logger import get_logger
from .models import Attachment, EmailPayload, MessageSource

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class GraphError(RuntimeError):
    """Raised when Microsoft Graph rejects a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GraphMailClient:
    """Thin aiohttp wrapper around the Graph mail endpoints."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 15.0,
        graph_base: str = GRAPH_BASE,
        login_base: str = LOGIN_BASE,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.graph_base = graph_base.rstrip("/")
        self.login_base = login_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self.logger = get_logger()

    def _user_url(self, mailbox: str, suffix: str) -> str:
        return f"{self.graph_base}/users/{quote(mailbox, safe='@')}/{suffix.lstrip('/')}"

    async def authenticate(self, *, force: bool = False) -> str:
        """Return a cached access token, requesting a new one when expired."""
        async with self._token_lock:
            if not force and self._token and time.monotonic() < self._token_expires_at:
                return self._token
            url = f"{self.login_base}/{self.tenant_id}/oauth2/v2.0/token"
            form = {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            }
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, data=form) as resp:
                    if resp.status >= 400:
                        raise GraphError(f"Graph token error: {await resp.text()}", resp.status)
                    data = await resp.json(content_type=None)
            token = data.get("access_token") if isinstance(data, dict) else None
            if not token:
                raise GraphError("Graph token error: no access_token in response")
            expires_in = int(data.get("expires_in", 3600))
            self._token = token
            # refresh one minute early
            self._token_expires_at = time.monotonic() + max(0, expires_in - 60)
            return token

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        token = await self.authenticate()
        headers = {"Authorization": f"Bearer {token}"}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.request(method, url, headers=headers, **kwargs) as resp:
                if resp.status == 401:
                    self._token = None
                if resp.status >= 400:
                    raise GraphError(f"Graph {method} {url} failed ({resp.status}): {await resp.text()}", resp.status)
                if resp.status == 204 or resp.content_length == 0:
                    return None
                return await resp.json(content_type=None)

    async def fetch_unread(self, mailbox: str, folder: str = "Inbox", limit: int = 10) -> List[Dict[str, Any]]:
        """Return the raw Graph records of unread messages in ``folder``."""
        url = self._user_url(mailbox, f"mailFolders/{quote(folder, safe='')}/messages")
        params = {
            "$filter": "isRead eq false",
            "$top": str(limit),
            "$expand": "attachments($select=id,name,contentType,size)",
        }
        data = await self._request("GET", url, params=params)
        messages = data.get("value", []) if isinstance(data, dict) else []
        return messages if isinstance(messages, list) else []

    async def list_folders(self, mailbox: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the top-level mail folders of ``mailbox`` with their item counts."""
        url = self._user_url(mailbox, "mailFolders")
        data = await self._request("GET", url, params={"$top": str(limit)})
        records = data.get("value", []) if isinstance(data, dict) else []
        return [
            {
                "id": record.get("id"),
                "name": record.get("displayName") or record.get("name") or "Unknown",
                "unreadItemCount": record.get("unreadItemCount") or 0,
                "totalItemCount": record.get("totalItemCount") or 0,
            }
            for record in records
            if isinstance(record, dict)
        ]

    async def mark_read(self, mailbox: str, message_id: str) -> None:
        """Flag a message as read. Idempotent on the Graph side."""
        url = self._user_url(mailbox, f"messages/{quote(message_id, safe='')}")
        await self._request("PATCH", url, json={"isRead": True})

    async def send_mail(self, sender: str, to: str, subject: str, html_body: str) -> Dict[str, Any]:
        """Send an HTML message from ``sender`` and return a small status dict."""
        url = self._user_url(sender, "sendMail")
        body = {
            "message": {
                "subject": subject,
                "body": {"contentType": "HTML", "content": html_body},
                "toRecipients": [{"emailAddress": {"address": addr.strip()}} for addr in to.split(",") if addr.strip()],
            },
            "saveToSentItems": True,
        }
        await self._request("POST", url, json=body)
        self.logger.info("Reply sent to %s (subject=%s)", to, subject)
        return {"ok": True, "to": to}


def convert_message(record: Dict[str, Any], mailbox: str) -> EmailPayload:
    """Translate a Graph message record into the relay payload shape."""
    sender = ((record.get("from") or {}).get("emailAddress") or {}).get("address") or ""
    body = (record.get("body") or {}).get("content") or ""
    attachments = [
        Attachment(
            filename=att.get("name"),
            content_type=att.get("contentType"),
            size=att.get("size"),
            id=att.get("id"),
        )
        for att in record.get("attachments") or []
        if isinstance(att, dict)
    ]
    return EmailPayload(
        from_addr=sender,
        subject=record.get("subject") or "",
        text=record.get("bodyPreview") or "",
        html=body,
        attachments=attachments,
        raw=body,
        source=MessageSource(kind="mailbox", mailbox=mailbox, message_id=record.get("id")),
    )

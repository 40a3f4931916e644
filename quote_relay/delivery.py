"""Delivery pipeline: one attempt for one claimed job.

The pipeline never raises for an attempt. Every path ends in exactly one
outcome variant which the dispatch loop applies to the job store:

1. POST the payload to the webhook (transport error or timeout -> retry)
2. non-2xx -> retry, the body is kept as diagnostic
3. body is not a valid acknowledgment -> retry
4. acknowledgment without a true ``ack`` flag -> retry
5. mark the originating message read (failure -> retry)
6. :class:`Delivered`
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import aiohttp

from .ingest.poller import MailboxClient
from .logger import get_logger
from .models import (
    Acknowledgment,
    AckParseError,
    Delivered,
    DeliveryOutcome,
    Job,
    RetryableFailure,
    TerminalFailure,
)

MAX_DIAGNOSTIC_CHARS = 4000


def _truncate(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit - 3]}..."


class DeliveryPipeline:
    """POST job payloads to the downstream webhook and confirm the side effect."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 15.0,
        mailbox_client: Optional[MailboxClient] = None,
        headers: Optional[Dict[str, str]] = None,
        logger=None,
    ):
        self.webhook_url = webhook_url
        self.timeout = float(timeout)
        self.mailbox_client = mailbox_client
        self.headers = headers or {}
        self.logger = logger or get_logger()

    async def _post(self, payload: dict) -> tuple[int, str]:
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.post(self.webhook_url, json=payload, headers=self.headers or None) as resp:
                return resp.status, await resp.text()

    async def _acknowledge_origin(self, job: Job) -> Optional[str]:
        """Mark the source message read. Returns an error text on failure."""
        source = job.source
        if source is None or source.kind != "mailbox":
            # SMTP captures have nothing to acknowledge upstream
            return None
        if self.mailbox_client is None:
            return "mailbox client not configured, cannot mark message read"
        mailbox = source.mailbox
        message_id = source.message_id or job.id
        if not mailbox:
            return "job source has no mailbox, cannot mark message read"
        try:
            async with asyncio.timeout(self.timeout):
                await self.mailbox_client.mark_read(mailbox, message_id)
        except Exception as exc:
            return f"mark-read failed: {str(exc) or type(exc).__name__}"
        return None

    async def attempt(self, job: Job) -> DeliveryOutcome:
        """Run the full attempt sequence for ``job``."""
        if "raw_payload" in job.payload:
            return TerminalFailure("stored payload is not valid JSON")

        try:
            status, body = await self._post(job.payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            return RetryableFailure(f"transport error: {str(exc) or type(exc).__name__}")

        if not 200 <= status < 300:
            return RetryableFailure(_truncate(f"HTTP {status}: {body}"))

        try:
            ack = Acknowledgment.parse(body)
        except AckParseError as exc:
            return RetryableFailure(_truncate(f"HTTP {status}: {exc}: {exc.body}"))

        if not ack.confirmed:
            return RetryableFailure(_truncate(f"HTTP {status}: {ack.describe()}"))

        error = await self._acknowledge_origin(job)
        if error is not None:
            return RetryableFailure(_truncate(f"HTTP {status}: delivered but {error}"))

        return Delivered(_truncate(body))

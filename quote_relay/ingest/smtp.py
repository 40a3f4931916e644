"""SMTP listener that turns every accepted message into a pending job."""

from __future__ import annotations

import asyncio
import os
import uuid
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from pathlib import Path
from typing import List, Optional

from aiosmtpd.smtp import SMTP, Envelope, Session

from ..logger import get_logger
from ..models import Attachment, EmailPayload, MessageSource
from ..persistence import JobStore, now_ms

ACCEPTED = "250 Message accepted for delivery"
REJECTED = "451 Requested action aborted: error in processing"


def _attachment_filename(name: Optional[str]) -> str:
    """Build ``<ms>-<uuid>-<name>`` with any directory part stripped from ``name``."""
    base = os.path.basename(name or "") or "attachment"
    return f"{now_ms()}-{uuid.uuid4()}-{base}"


class SMTPIngestHandler:
    """aiosmtpd handler: parse, persist attachments, insert one job per message."""

    def __init__(self, store: JobStore, attachments_dir: str, *, metrics=None, logger=None):
        self.store = store
        self.attachments_dir = Path(attachments_dir)
        self.metrics = metrics
        self.logger = logger or get_logger()

    def _save_attachments(self, message: EmailMessage) -> List[Attachment]:
        saved: List[Attachment] = []
        parts = list(message.iter_attachments())
        if not parts:
            return saved
        self.attachments_dir.mkdir(parents=True, exist_ok=True)
        for part in parts:
            content = part.get_payload(decode=True) or b""
            filename = part.get_filename()
            target = self.attachments_dir / _attachment_filename(filename)
            target.write_bytes(content)
            saved.append(
                Attachment(
                    filename=filename,
                    path=str(target),
                    content_type=part.get_content_type(),
                    size=len(content),
                )
            )
        return saved

    def _discard_attachments(self, attachments: List[Attachment]) -> None:
        """Remove files saved for a message that was not enqueued."""
        for attachment in attachments:
            if not attachment.path:
                continue
            try:
                Path(attachment.path).unlink(missing_ok=True)
            except OSError as exc:
                self.logger.warning("Could not remove attachment %s: %s", attachment.path, exc)

    @staticmethod
    def _body(message: EmailMessage, subtype: str) -> str:
        part = message.get_body(preferencelist=(subtype,))
        if part is None or part.get_content_type() != f"text/{subtype}":
            return ""
        return part.get_content()

    def build_payload(self, raw: bytes, mail_from: Optional[str] = None) -> EmailPayload:
        """Parse ``raw`` and build the job payload. Parser errors propagate."""
        message = BytesParser(policy=policy.default).parsebytes(raw)
        if message.defects and not message.keys():
            raise ValueError(f"unparseable message: {message.defects[0]!r}")
        return EmailPayload(
            from_addr=str(message.get("From") or mail_from or ""),
            subject=str(message.get("Subject") or ""),
            text=self._body(message, "plain"),
            html=self._body(message, "html"),
            attachments=self._save_attachments(message),
            raw=raw.decode("utf-8", errors="replace"),
            source=MessageSource(kind="smtp"),
        )

    async def handle_DATA(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        raw = envelope.original_content or envelope.content or b""
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        payload: Optional[EmailPayload] = None
        try:
            payload = self.build_payload(raw, envelope.mail_from)
            job_id = str(uuid.uuid4())
            await self.store.insert_job(job_id, payload.to_json_dict())
        except Exception:
            self.logger.exception("Failed to enqueue inbound SMTP message from %s", envelope.mail_from)
            if payload is not None:
                self._discard_attachments(payload.attachments)
            return REJECTED
        if self.metrics is not None:
            self.metrics.inc_ingested("smtp")
        self.logger.info("Enqueued job %s subject=%r from=%s", job_id, payload.subject, payload.from_addr)
        return ACCEPTED


async def start_smtp_server(
    handler: SMTPIngestHandler,
    host: str = "0.0.0.0",
    port: int = 2525,
    *,
    data_size_limit: int = 33554432,
) -> asyncio.AbstractServer:
    """Serve ``handler`` on the running event loop and return the server."""
    loop = asyncio.get_running_loop()

    def factory() -> SMTP:
        return SMTP(handler, loop=loop, data_size_limit=data_size_limit, enable_SMTPUTF8=True)

    server = await loop.create_server(factory, host=host, port=port)
    handler.logger.info("SMTP listener on %s:%d", host, port)
    return server

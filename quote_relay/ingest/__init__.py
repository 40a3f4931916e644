"""Producers that turn captured messages into pending jobs."""

from .poller import MailboxPoller
from .smtp import SMTPIngestHandler, start_smtp_server

__all__ = ["MailboxPoller", "SMTPIngestHandler", "start_smtp_server"]

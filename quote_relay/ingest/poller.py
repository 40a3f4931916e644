"""Mailbox poller: one job per unread remote message."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from ..graph import convert_message
from ..logger import get_logger
from ..persistence import JobStore


class MailboxClient(Protocol):
    """Operations the poller and the delivery pipeline need from a mail provider."""

    async def fetch_unread(self, mailbox: str, folder: str = "Inbox", limit: int = 10) -> List[Dict[str, Any]]: ...

    async def mark_read(self, mailbox: str, message_id: str) -> None: ...


FolderResolver = Callable[[], Optional[str]]


class MailboxPoller:
    """Fetch unread messages and enqueue them keyed by the provider message id.

    Messages are never marked read here: a crash between insert and delivery
    leaves them unread, so the next poll rediscovers them and the insert is a
    no-op because the job id already exists.
    """

    def __init__(
        self,
        store: JobStore,
        client: MailboxClient,
        mailbox: str,
        *,
        folder: str = "Inbox",
        fetch_limit: int = 10,
        folder_resolver: FolderResolver | None = None,
        logger=None,
    ):
        self.store = store
        self.client = client
        self.mailbox = mailbox
        self.folder = folder
        self.fetch_limit = max(1, int(fetch_limit))
        self._folder_resolver = folder_resolver
        self.logger = logger or get_logger()

    def current_folder(self) -> str:
        """Return the folder to poll, preferring the operator-selected one."""
        if self._folder_resolver is not None:
            selected = self._folder_resolver()
            if selected:
                return selected
        return self.folder

    async def poll_once(self) -> int:
        """Run one fetch and return the number of newly created jobs.

        Fetch and authentication errors propagate to the caller; the job store
        is untouched in that case.
        """
        folder = self.current_folder()
        records = await self.client.fetch_unread(self.mailbox, folder, self.fetch_limit)
        created = 0
        for record in records:
            message_id = record.get("id")
            if not message_id:
                self.logger.warning("Skipping mailbox record without id (subject=%s)", record.get("subject"))
                continue
            payload = convert_message(record, self.mailbox)
            if await self.store.insert_job(message_id, payload.to_json_dict()):
                created += 1
                self.logger.info(
                    "Enqueued job %s from mailbox %s/%s subject=%r from=%s",
                    message_id,
                    self.mailbox,
                    folder,
                    payload.subject,
                    payload.from_addr,
                )
            else:
                self.logger.debug("Message %s already queued, skipping", message_id)
        return created

import re
from email.message import EmailMessage
from types import SimpleNamespace

import pytest

from quote_relay.ingest.smtp import ACCEPTED, REJECTED, SMTPIngestHandler
from quote_relay.persistence import JobStore


class DummyMetrics:
    def __init__(self):
        self.ingested = []

    def inc_ingested(self, source, count=1):
        self.ingested.append((source, count))


def build_message(with_attachment=True) -> bytes:
    msg = EmailMessage()
    msg["From"] = "Buyer <buyer@example.com>"
    msg["To"] = "quotes@example.com"
    msg["Subject"] = "RFQ #42 flyers"
    msg.set_content("Please quote 500 A5 flyers")
    msg.add_alternative("<p>Please quote 500 A5 flyers</p>", subtype="html")
    if with_attachment:
        msg.add_attachment(b"%PDF-1.4 data", maintype="application", subtype="pdf", filename="../artwork.pdf")
    return msg.as_bytes()


async def make_handler(tmp_path, metrics=None):
    store = JobStore(str(tmp_path / "smtp.db"))
    await store.init_db()
    return SMTPIngestHandler(store, str(tmp_path / "attachments"), metrics=metrics)


def envelope(raw: bytes, mail_from="buyer@example.com"):
    return SimpleNamespace(original_content=raw, content=raw, mail_from=mail_from)


@pytest.mark.asyncio
async def test_build_payload_saves_attachments(tmp_path):
    handler = await make_handler(tmp_path)

    payload = handler.build_payload(build_message())

    assert payload.subject == "RFQ #42 flyers"
    assert payload.from_addr == "Buyer <buyer@example.com>"
    assert "500 A5 flyers" in payload.text
    assert payload.html.startswith("<p>")
    assert payload.source.kind == "smtp"
    [attachment] = payload.attachments
    assert attachment.filename == "../artwork.pdf"
    assert attachment.content_type == "application/pdf"
    assert attachment.size == len(b"%PDF-1.4 data")
    saved = tmp_path / "attachments"
    files = list(saved.iterdir())
    assert len(files) == 1
    assert re.fullmatch(r"\d+-[0-9a-f-]{36}-artwork\.pdf", files[0].name)
    assert files[0].read_bytes() == b"%PDF-1.4 data"


@pytest.mark.asyncio
async def test_message_without_attachments_creates_no_directory(tmp_path):
    handler = await make_handler(tmp_path)

    payload = handler.build_payload(build_message(with_attachment=False))

    assert payload.attachments == []
    assert not (tmp_path / "attachments").exists()


@pytest.mark.asyncio
async def test_handle_data_enqueues_pending_job(tmp_path):
    metrics = DummyMetrics()
    handler = await make_handler(tmp_path, metrics=metrics)

    reply = await handler.handle_DATA(None, None, envelope(build_message()))

    assert reply == ACCEPTED
    [job] = await handler.store.list_jobs()
    assert job.status.value == "pending"
    assert job.payload["from"] == "Buyer <buyer@example.com>"
    assert job.payload["source"] == {"kind": "smtp"}
    assert job.payload["attachments"][0]["contentType"] == "application/pdf"
    assert metrics.ingested == [("smtp", 1)]


@pytest.mark.asyncio
async def test_each_message_gets_its_own_job(tmp_path):
    handler = await make_handler(tmp_path)
    raw = build_message(with_attachment=False)

    await handler.handle_DATA(None, None, envelope(raw))
    await handler.handle_DATA(None, None, envelope(raw))

    assert len(await handler.store.list_jobs()) == 2


@pytest.mark.asyncio
async def test_storage_failure_rejects_message(tmp_path):
    metrics = DummyMetrics()
    handler = await make_handler(tmp_path, metrics=metrics)

    async def broken_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    handler.store.insert_job = broken_insert
    reply = await handler.handle_DATA(None, None, envelope(build_message(with_attachment=False)))

    assert reply == REJECTED
    assert metrics.ingested == []


@pytest.mark.asyncio
async def test_unparseable_message_is_rejected(tmp_path):
    metrics = DummyMetrics()
    handler = await make_handler(tmp_path, metrics=metrics)

    reply = await handler.handle_DATA(None, None, envelope(b"\x00\x01 not a mail message"))

    assert reply == REJECTED
    assert await handler.store.list_jobs() == []
    assert metrics.ingested == []


@pytest.mark.asyncio
async def test_rejected_message_leaves_no_attachment_files(tmp_path):
    handler = await make_handler(tmp_path)

    async def broken_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    handler.store.insert_job = broken_insert
    reply = await handler.handle_DATA(None, None, envelope(build_message()))

    assert reply == REJECTED
    assert list((tmp_path / "attachments").iterdir()) == []

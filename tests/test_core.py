import asyncio
import types
from typing import Any, Dict, List

import pytest
from aioresponses import aioresponses

from quote_relay.core import RelayCore
from quote_relay.delivery import DeliveryPipeline
from quote_relay.models import Delivered, Job, JobStatus, RetryableFailure, TerminalFailure
from quote_relay.persistence import JobStore, now_ms
from quote_relay.retry import RetryPolicy

WEBHOOK = "http://webhook.test/webhook/email"


class DummyPipeline:
    """Returns queued outcomes; defaults to Delivered."""

    def __init__(self):
        self.outcomes: List[Any] = []
        self.attempted: List[Job] = []
        self.gate: asyncio.Event | None = None

    async def attempt(self, job: Job):
        self.attempted.append(job)
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            return self.outcomes.pop(0)
        return Delivered("ok")


class DummyPoller:
    def __init__(self, store: JobStore, records: List[Dict[str, Any]] | None = None, fail: Exception | None = None):
        self.store = store
        self.records = records or []
        self.fail = fail
        self.calls = 0

    async def poll_once(self) -> int:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        created = 0
        for record in self.records:
            if await self.store.insert_job(record["id"], record["payload"]):
                created += 1
        return created


class DummyMailbox:
    def __init__(self):
        self.marked = []

    async def fetch_unread(self, mailbox, folder="Inbox", limit=10):
        return []

    async def mark_read(self, mailbox, message_id):
        self.marked.append((mailbox, message_id))


class DummyMetrics:
    def __init__(self):
        self.pending_value = None
        self.delivered = 0
        self.retried = 0
        self.failed = 0
        self.skipped = 0
        self.ingested: List[tuple] = []

    def set_pending(self, value: int):
        self.pending_value = value

    def inc_delivered(self):
        self.delivered += 1

    def inc_retried(self):
        self.retried += 1

    def inc_failed(self):
        self.failed += 1

    def inc_skipped_tick(self):
        self.skipped += 1

    def inc_ingested(self, source: str, count: int = 1):
        self.ingested.append((source, count))

    def generate_latest(self) -> bytes:
        return b""


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


async def make_core(tmp_path, pipeline=None, poller=None, **kwargs) -> RelayCore:
    store = JobStore(str(tmp_path / "core.db"))
    await store.init_db()
    core = RelayCore(
        store=store,
        pipeline=pipeline or DummyPipeline(),
        poller=poller,
        metrics=DummyMetrics(),
        logger=quiet_logger(),
        test_mode=True,
        **kwargs,
    )
    return core


def mailbox_payload(message_id: str) -> Dict[str, Any]:
    return {
        "from": "buyer@example.com",
        "subject": "RFQ",
        "text": "",
        "html": "",
        "attachments": [],
        "raw": "",
        "source": {"kind": "mailbox", "mailbox": "quotes@example.com", "message_id": message_id},
    }


@pytest.mark.asyncio
async def test_delivered_job_is_deleted(tmp_path):
    core = await make_core(tmp_path)
    await core.store.insert_job("a", {"subject": "x"})

    report = await core.run_tick()

    assert report.claimed == 1
    assert report.delivered == 1
    assert await core.store.get_job("a") is None
    assert core.metrics.delivered == 1
    assert core.metrics.pending_value == 0


@pytest.mark.asyncio
async def test_delivered_job_kept_as_done_when_not_deleting(tmp_path):
    core = await make_core(tmp_path, delete_on_success=False)
    await core.store.insert_job("a", {"subject": "x"})

    await core.run_tick()

    job = await core.store.get_job("a")
    assert job.status == JobStatus.DONE
    assert job.attempts == 1
    assert job.result == "ok"


@pytest.mark.asyncio
async def test_retryable_failure_reschedules_with_backoff(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline, retry_policy=RetryPolicy(base=1.0, max_delay=3600.0))
    await core.store.insert_job("a", {})

    pipeline.outcomes.append(RetryableFailure("HTTP 500: boom"))
    before = now_ms()
    report = await core.run_tick()

    job = await core.store.get_job("a")
    assert report.retried == 1
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.result == "HTTP 500: boom"
    assert job.next_run_at >= before + 2000
    # not claimable before its next_run_at
    assert await core.store.claim_batch(10, now=job.next_run_at - 1) == []


@pytest.mark.asyncio
async def test_backoff_grows_between_attempts(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline, retry_policy=RetryPolicy(base=1.0, max_delay=3600.0))
    await core.store.insert_job("a", {})

    gaps = []
    for _ in range(4):
        pipeline.outcomes.append(RetryableFailure("down"))
        job = await core.store.get_job("a")
        # make it eligible again right away
        await core.store.mark_retry("a", job.attempts, 0, job.result)
        started = now_ms()
        await core.run_tick()
        job = await core.store.get_job("a")
        gaps.append(job.next_run_at - started)

    assert (await core.store.get_job("a")).attempts == 4
    assert gaps == sorted(gaps)
    assert gaps[-1] > gaps[0]


@pytest.mark.asyncio
async def test_terminal_failure_parks_job_in_error(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline)
    await core.store.insert_job("a", {})
    pipeline.outcomes.append(TerminalFailure("stored payload is not valid JSON"))

    report = await core.run_tick()

    job = await core.store.get_job("a")
    assert report.failed == 1
    assert (job.status, job.attempts) == (JobStatus.ERROR, 1)
    assert core.metrics.failed == 1


@pytest.mark.asyncio
async def test_max_attempts_moves_job_to_error(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline, retry_policy=RetryPolicy(max_attempts=2))
    await core.store.insert_job("a", {})

    pipeline.outcomes.append(RetryableFailure("first"))
    await core.run_tick()
    await core.store.mark_retry("a", 1, 0, "first")

    pipeline.outcomes.append(RetryableFailure("second"))
    await core.run_tick()

    job = await core.store.get_job("a")
    assert job.status == JobStatus.ERROR
    assert job.attempts == 2
    assert "Max attempts (2) exceeded: second" == job.result


@pytest.mark.asyncio
async def test_jobs_are_attempted_oldest_first_and_bounded(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline, batch_size=2)
    await core.store.insert_job("c", {}, created_at=3)
    await core.store.insert_job("a", {}, created_at=1)
    await core.store.insert_job("b", {}, created_at=2)

    await core.run_tick()
    assert [job.id for job in pipeline.attempted] == ["a", "b"]
    await core.run_tick()
    assert [job.id for job in pipeline.attempted] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(tmp_path):
    pipeline = DummyPipeline()
    pipeline.gate = asyncio.Event()
    core = await make_core(tmp_path, pipeline=pipeline)
    await core.store.insert_job("a", {})

    first = asyncio.create_task(core.run_tick())
    while not pipeline.attempted:
        await asyncio.sleep(0.01)

    assert core.tick_running is True
    assert await core.run_tick() is None
    assert (await core.handle_command("run now"))["skipped"] is True
    assert core.metrics.skipped == 1

    pipeline.gate.set()
    report = await first
    assert report.delivered == 1
    assert len(pipeline.attempted) == 1
    assert core.tick_running is False


@pytest.mark.asyncio
async def test_poller_failure_does_not_block_claim(tmp_path):
    store = JobStore(str(tmp_path / "core.db"))
    poller = DummyPoller(store, fail=RuntimeError("graph unavailable"))
    core = await make_core(tmp_path, poller=poller)
    await core.store.insert_job("a", {})

    report = await core.run_tick()

    assert poller.calls == 1
    assert report.ingested == 0
    assert report.delivered == 1


@pytest.mark.asyncio
async def test_ingested_jobs_are_delivered_in_same_tick(tmp_path):
    store = JobStore(str(tmp_path / "core.db"))
    poller = DummyPoller(store, records=[{"id": "m1", "payload": {}}, {"id": "m2", "payload": {}}])
    core = await make_core(tmp_path, poller=poller)

    report = await core.run_tick()
    assert report.ingested == 2
    assert report.delivered == 2
    assert core.metrics.ingested == [("mailbox", 2)]


@pytest.mark.asyncio
async def test_start_recovers_abandoned_jobs(tmp_path):
    core = await make_core(tmp_path)
    await core.store.insert_job("a", {})
    await core.store.claim_batch(10)
    assert (await core.store.get_job("a")).status == JobStatus.PROCESSING

    recovered = await core.init()

    assert recovered == 1
    assert (await core.store.get_job("a")).status == JobStatus.PENDING
    assert core.metrics.pending_value == 1


@pytest.mark.asyncio
async def test_suspend_skips_work(tmp_path):
    core = await make_core(tmp_path)
    await core.store.insert_job("a", {})

    assert (await core.handle_command("suspend"))["active"] is False
    report = await core.run_tick()
    assert report.claimed == 0

    await core.handle_command("activate")
    report = await core.run_tick()
    assert report.delivered == 1


@pytest.mark.asyncio
async def test_failed_outcome_write_releases_whole_batch(tmp_path):
    core = await make_core(tmp_path)
    await core.store.insert_job("a", {}, created_at=1)
    await core.store.insert_job("b", {}, created_at=2)

    original = core.store.mark_done

    async def broken_mark_done(job_id, attempts, result=None):
        raise RuntimeError("disk full")

    core.store.mark_done = broken_mark_done
    with pytest.raises(RuntimeError):
        await core.run_tick()
    core.store.mark_done = original

    assert (await core.store.get_job("a")).status == JobStatus.PENDING
    assert (await core.store.get_job("b")).status == JobStatus.PENDING
    assert core.tick_running is False
    assert (await core.store.get_job("a")).attempts == 0


@pytest.mark.asyncio
async def test_cancelled_attempt_keeps_in_flight_job_processing(tmp_path):
    pipeline = DummyPipeline()
    pipeline.gate = asyncio.Event()
    core = await make_core(tmp_path, pipeline=pipeline)
    await core.store.insert_job("a", {}, created_at=1)
    await core.store.insert_job("b", {}, created_at=2)

    tick = asyncio.create_task(core.run_tick())
    while not pipeline.attempted:
        await asyncio.sleep(0.01)
    tick.cancel()
    with pytest.raises(asyncio.CancelledError):
        await tick

    assert (await core.store.get_job("a")).status == JobStatus.PROCESSING
    assert (await core.store.get_job("b")).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_commands_list_get_retry_delete(tmp_path):
    pipeline = DummyPipeline()
    core = await make_core(tmp_path, pipeline=pipeline)
    await core.store.insert_job("a", {"subject": "x"})
    await core.store.insert_job("b", {"subject": "y"})
    await core.store.mark_error("b", 3, "failed")

    listed = await core.handle_command("listJobs", {"status": "error"})
    assert [job["id"] for job in listed["jobs"]] == ["b"]

    got = await core.handle_command("getJob", {"id": "b"})
    assert got["job"]["result"] == "failed"
    assert (await core.handle_command("getJob", {"id": "zzz"}))["ok"] is False

    summary = await core.handle_command("summary")
    assert summary["counts"]["error"] == 1
    assert summary["counts"]["pending"] == 1

    assert (await core.handle_command("retryErrors", {"ids": ["b"]}))["reset"] == 1
    job = await core.store.get_job("b")
    assert (job.status, job.attempts) == (JobStatus.PENDING, 3)

    deleted = await core.handle_command("deleteJobs", {"ids": ["a", "missing"]})
    assert deleted == {"ok": True, "removed": 1, "not_found": ["missing"]}
    assert (await core.handle_command("nope"))["ok"] is False


@pytest.mark.asyncio
async def test_run_now_wakes_dispatch_loop(tmp_path):
    core = await make_core(tmp_path)
    await core.start()
    try:
        await core.store.insert_job("a", {})
        await core.handle_command("run now")
        for _ in range(100):
            if await core.store.get_job("a") is None:
                break
            await asyncio.sleep(0.02)
        assert await core.store.get_job("a") is None
    finally:
        await core.stop()


@pytest.mark.asyncio
async def test_end_to_end_acknowledged_then_failing_webhook(tmp_path):
    mailbox = DummyMailbox()
    pipeline = DeliveryPipeline(WEBHOOK, mailbox_client=mailbox)
    core = await make_core(tmp_path, pipeline=pipeline)
    await core.store.insert_job("ok-1", mailbox_payload("ok-1"))
    await core.store.insert_job("bad-1", mailbox_payload("bad-1"), created_at=now_ms() + 1, next_run_at=0)

    with aioresponses() as m:
        m.post(WEBHOOK, status=200, payload={"ok": True, "ack": True})
        m.post(WEBHOOK, status=500, body="boom")
        report = await core.run_tick()

    assert report.delivered == 1
    assert report.retried == 1
    assert await core.store.get_job("ok-1") is None
    assert mailbox.marked == [("quotes@example.com", "ok-1")]

    bad = await core.store.get_job("bad-1")
    assert bad.status == JobStatus.PENDING
    assert bad.attempts == 1
    assert bad.result == "HTTP 500: boom"
    assert bad.next_run_at > now_ms()


@pytest.mark.asyncio
async def test_negative_ack_leaves_job_pending(tmp_path):
    mailbox = DummyMailbox()
    core = await make_core(tmp_path, pipeline=DeliveryPipeline(WEBHOOK, mailbox_client=mailbox))
    await core.store.insert_job("m1", mailbox_payload("m1"))

    with aioresponses() as m:
        m.post(WEBHOOK, status=200, payload={"ok": True, "ack": False, "reason": "no-price"})
        await core.run_tick()

    job = await core.store.get_job("m1")
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "no-price" in job.result
    assert mailbox.marked == []

"""Core orchestration logic: the claim & dispatch loop."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, assert_never

from .delivery import DeliveryPipeline
from .ingest.poller import MailboxPoller
from .logger import get_logger
from .models import Delivered, DeliveryOutcome, Job, JobStatus, RetryableFailure, TerminalFailure
from .persistence import JobStore, now_ms
from .prometheus import RelayMetrics
from .retry import RetryPolicy

DEFAULT_POLL_INTERVAL = 1.5
DEFAULT_BATCH_SIZE = 10


@dataclass
class TickReport:
    """Counters describing one dispatch cycle."""

    ingested: int = 0
    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0


class RelayCore:
    """Coordinate ingestion, claiming, delivery and job bookkeeping.

    One tick runs at a time. The timer is fixed-rate: when a tick overruns
    the interval, the missed ticks are dropped rather than queued. A tick
    requested while another one runs is skipped.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        pipeline: DeliveryPipeline,
        poller: MailboxPoller | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: RelayMetrics | None = None,
        logger=None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delete_on_success: bool = True,
        start_active: bool = True,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        self.store = store
        self.pipeline = pipeline
        self.poller = poller
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or RelayMetrics()
        self.logger = logger or get_logger()
        self._batch_size = max(1, int(batch_size))
        self._delete_on_success = bool(delete_on_success)
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)
        base_interval = max(0.05, float(poll_interval))
        self._poll_interval = math.inf if self._test_mode else base_interval

        self._active = start_active
        self._tick_running = False
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_dispatch: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> int:
        """Initialise storage and return jobs recovered from a previous crash."""
        await self.store.init_db()
        recovered = await self.store.reset_abandoned()
        if recovered:
            self.logger.warning("Recovered %d job(s) left in processing by a previous run", recovered)
        await self._refresh_queue_gauge()
        return recovered

    async def start(self) -> None:
        """Recover abandoned jobs and start the background dispatch loop."""
        self.logger.debug("Starting RelayCore...")
        await self.init()
        self._stop.clear()
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="relay-dispatch-loop")

    async def stop(self) -> None:
        """Stop the dispatch loop once the current tick completes."""
        self._stop.set()
        self._wake_event.set()
        if self._task_dispatch:
            await asyncio.gather(self._task_dispatch, return_exceptions=True)
            self._task_dispatch = None

    @property
    def tick_running(self) -> bool:
        return self._tick_running

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            if self._tick_running:
                return {"ok": True, "skipped": True}
            self._wake_event.set()
            return {"ok": True}
        if cmd == "suspend":
            self._active = False
            return {"ok": True, "active": False}
        if cmd == "activate":
            self._active = True
            return {"ok": True, "active": True}
        if cmd == "listJobs":
            status = payload.get("status")
            jobs = await self.store.list_jobs(
                status=JobStatus(status) if status else None,
                limit=payload.get("limit"),
            )
            return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "getJob":
            job = await self.store.get_job(str(payload.get("id") or ""))
            if job is None:
                return {"ok": False, "error": "job not found"}
            return {"ok": True, "job": job.model_dump(mode="json")}
        if cmd == "summary":
            counts = await self.store.count_by_status()
            return {"ok": True, "counts": counts, "active": self._active, "tick_running": self._tick_running}
        if cmd == "retryErrors":
            ids = payload.get("ids")
            reset = await self.store.reset_errors(ids)
            await self._refresh_queue_gauge()
            if reset:
                self._wake_event.set()
            return {"ok": True, "reset": reset}
        if cmd == "deleteJobs":
            removed, not_found = await self._delete_jobs(payload.get("ids") or [])
            await self._refresh_queue_gauge()
            return {"ok": True, "removed": removed, "not_found": not_found}
        return {"ok": False, "error": "unknown command"}

    async def _delete_jobs(self, job_ids: Iterable[str]) -> Tuple[int, List[str]]:
        ids = {jid for jid in job_ids if jid}
        removed = 0
        missing: List[str] = []
        for jid in sorted(ids):
            if await self.store.delete_job(jid):
                removed += 1
            else:
                missing.append(jid)
        return removed, missing

    # ------------------------------------------------------------ dispatch loop
    async def _dispatch_loop(self) -> None:
        """Fixed-rate timer driving :meth:`run_tick`."""
        self.logger.debug("Dispatch loop started (interval=%s)", self._poll_interval)
        next_due = time.monotonic()
        while not self._stop.is_set():
            await self._wait_for_wakeup(next_due - time.monotonic())
            if self._stop.is_set():
                break
            started = time.monotonic()
            try:
                await self.run_tick()
            except Exception as exc:
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            if math.isinf(self._poll_interval):
                next_due = math.inf
                continue
            elapsed = time.monotonic() - started
            missed = int(elapsed // self._poll_interval)
            if missed:
                self.logger.debug("Tick took %.2fs, dropping %d timer firing(s)", elapsed, missed)
                for _ in range(missed):
                    self.metrics.inc_skipped_tick()
            next_due = started + (missed + 1) * self._poll_interval

    async def run_tick(self) -> Optional[TickReport]:
        """Run one cycle unless another is in flight (then return ``None``)."""
        if self._tick_running:
            self.metrics.inc_skipped_tick()
            self.logger.debug("Tick already running, skipping")
            return None
        self._tick_running = True
        try:
            return await self._process_tick()
        finally:
            self._tick_running = False

    async def _process_tick(self) -> TickReport:
        report = TickReport()
        if not self._active:
            return report

        report.ingested = await self._run_ingestion()

        jobs = await self.store.claim_batch(self._batch_size, now_ms())
        report.claimed = len(jobs)
        if jobs:
            self.logger.debug("Claimed %d job(s)", len(jobs))
        for index, job in enumerate(jobs):
            try:
                outcome = await self._attempt(job)
                await self._apply_outcome(job, outcome, report)
            except asyncio.CancelledError:
                await self._release_unattempted(jobs[index + 1:])
                raise
            except Exception:
                await self._release_unattempted(jobs[index:])
                raise

        await self._refresh_queue_gauge()
        return report

    async def _run_ingestion(self) -> int:
        """Poll the mailbox. Failures are logged and never abort the tick."""
        if self.poller is None:
            return 0
        try:
            created = await self.poller.poll_once()
        except Exception as exc:
            self.logger.error("Mailbox polling failed: %s", exc)
            return 0
        if created:
            self.metrics.inc_ingested("mailbox", created)
        return created

    async def _attempt(self, job: Job) -> DeliveryOutcome:
        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for job %s (attempt %d)", job.id, job.attempts + 1)
        return await self.pipeline.attempt(job)

    async def _apply_outcome(self, job: Job, outcome: DeliveryOutcome, report: TickReport) -> None:
        """Persist the state transition dictated by ``outcome``."""
        attempts = job.attempts + 1
        match outcome:
            case Delivered(detail=detail):
                await self.store.mark_done(job.id, attempts, detail)
                if self._delete_on_success:
                    await self.store.delete_job(job.id)
                report.delivered += 1
                self.metrics.inc_delivered()
                self.logger.info("Job %s delivered (attempt %d)", job.id, attempts)
            case RetryableFailure(reason=reason):
                if self.retry_policy.exhausted(attempts):
                    reason = f"Max attempts ({self.retry_policy.max_attempts}) exceeded: {reason}"
                    await self.store.mark_error(job.id, attempts, reason)
                    report.failed += 1
                    self.metrics.inc_failed()
                    self.logger.error("Job %s failed permanently after %d attempts: %s", job.id, attempts, reason)
                    return
                delay = self.retry_policy.delay_for(attempts)
                await self.store.mark_retry(job.id, attempts, self.retry_policy.next_run_at(attempts, now_ms()), reason)
                report.retried += 1
                self.metrics.inc_retried()
                self.logger.warning(
                    "Job %s attempt %d failed: %s - retrying in %ds", job.id, attempts, reason, round(delay)
                )
            case TerminalFailure(reason=reason):
                await self.store.mark_error(job.id, attempts, reason)
                report.failed += 1
                self.metrics.inc_failed()
                self.logger.error("Job %s failed with terminal error: %s", job.id, reason)
            case _:
                assert_never(outcome)

    async def _release_unattempted(self, jobs: List[Job]) -> None:
        """Hand claimed jobs without a recorded outcome back to the pool after a failed tick."""
        if not jobs:
            return
        try:
            await self.store.release([job.id for job in jobs])
        except Exception:
            self.logger.exception("Could not release %d claimed job(s); they will be recovered on restart", len(jobs))

    # -------------------------------------------------------------- housekeeping
    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing active jobs."""
        try:
            count = await self.store.count_active()
        except Exception:
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

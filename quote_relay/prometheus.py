"""Prometheus metrics exposed by the relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class RelayMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.delivered = Counter("qr_delivered_total", "Jobs delivered and acknowledged", registry=self.registry)
        self.retried = Counter("qr_retried_total", "Delivery attempts rescheduled", registry=self.registry)
        self.failed = Counter("qr_failed_total", "Jobs parked in error", registry=self.registry)
        self.ingested = Counter("qr_ingested_total", "Jobs created by ingestion", ["source"], registry=self.registry)
        self.skipped_ticks = Counter("qr_skipped_ticks_total", "Ticks skipped while another was running", registry=self.registry)
        self.pending = Gauge("qr_pending_jobs", "Jobs awaiting a final outcome", registry=self.registry)

    def inc_delivered(self):
        self.delivered.inc()

    def inc_retried(self):
        self.retried.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_ingested(self, source: str, count: int = 1):
        """Increase the ``ingested`` counter for the given source (smtp, mailbox)."""
        self.ingested.labels(source=source or "unknown").inc(count)

    def inc_skipped_tick(self):
        self.skipped_ticks.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking active jobs."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)

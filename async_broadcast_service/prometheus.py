"""Prometheus metrics exposed by the broadcast dispatcher."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class BroadcastMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("gbs_sent_total", "Total deliveries sent", ["kind"], registry=self.registry)
        self.failed = Counter("gbs_failed_total", "Total deliveries failed permanently", ["kind"], registry=self.registry)
        self.retried = Counter("gbs_retried_total", "Total deliveries scheduled for retry", ["kind"], registry=self.registry)
        self.unknown = Counter("gbs_unknown_total", "Total deliveries with unknown outcome", registry=self.registry)
        self.ticks_skipped = Counter("gbs_ticks_skipped_total", "Ticks skipped because one was already running", registry=self.registry)
        self.pending = Gauge("gbs_pending_deliveries", "Deliveries awaiting a final outcome", registry=self.registry)
        self.active_runs = Gauge("gbs_active_runs", "Runs queued or running", registry=self.registry)

    def inc_sent(self, kind: str):
        """Increase the ``sent`` counter for the given run kind."""
        self.sent.labels(kind=kind or "announcement").inc()

    def inc_failed(self, kind: str):
        self.failed.labels(kind=kind or "announcement").inc()

    def inc_retried(self, kind: str):
        self.retried.labels(kind=kind or "announcement").inc()

    def inc_unknown(self, amount: int = 1):
        """Count deliveries moved to UNKNOWN by the stale-lock sweep."""
        if amount > 0:
            self.unknown.inc(amount)

    def inc_tick_skipped(self):
        self.ticks_skipped.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking outstanding deliveries."""
        self.pending.set(value)

    def set_active_runs(self, value: int):
        self.active_runs.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)

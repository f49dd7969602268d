# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the bulk dispatch engine.

All metrics use the ``bds_`` prefix (bulk dispatch service).

Metrics exposed:
    - ``bds_jobs_submitted_total``: Counter of accepted bulk jobs per session.
    - ``bds_jobs_completed_total``: Counter of completed bulk jobs per session.
    - ``bds_recipients_sent_total``: Counter of successful sends per session.
    - ``bds_recipients_failed_total``: Counter of failed sends per session.
    - ``bds_jobs_pruned_total``: Counter of records evicted from the store.
    - ``bds_active_jobs``: Gauge of dispatch runners currently in flight.
    - ``bds_stored_jobs``: Gauge of records held by the job store.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class BulkMetrics:
    """Prometheus metrics collector for the bulk dispatch engine.

    Per-recipient and per-job counters are labeled by ``session_id``.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        submitted: Counter of accepted submissions.
        completed: Counter of jobs reaching ``completed``.
        sent: Counter of successful recipient sends.
        failed: Counter of failed recipient sends.
        pruned: Counter of evicted job records.
        active: Gauge of in-flight dispatch runners.
        stored: Gauge of records currently in the store.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private
                registry is created when omitted.
        """
        self.registry = registry or CollectorRegistry()
        self.submitted = Counter(
            "bds_jobs_submitted_total",
            "Total bulk jobs accepted",
            ["session_id"],
            registry=self.registry,
        )
        self.completed = Counter(
            "bds_jobs_completed_total",
            "Total bulk jobs completed",
            ["session_id"],
            registry=self.registry,
        )
        self.sent = Counter(
            "bds_recipients_sent_total",
            "Total recipients sent successfully",
            ["session_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "bds_recipients_failed_total",
            "Total recipients whose send failed",
            ["session_id"],
            registry=self.registry,
        )
        self.pruned = Counter(
            "bds_jobs_pruned_total",
            "Total bulk job records evicted from the store",
            registry=self.registry,
        )
        self.active = Gauge(
            "bds_active_jobs",
            "Bulk jobs currently being dispatched",
            registry=self.registry,
        )
        self.stored = Gauge(
            "bds_stored_jobs",
            "Bulk job records currently stored",
            registry=self.registry,
        )

    def inc_submitted(self, session_id: str) -> None:
        self.submitted.labels(session_id=session_id or "default").inc()

    def inc_completed(self, session_id: str) -> None:
        self.completed.labels(session_id=session_id or "default").inc()

    def inc_sent(self, session_id: str) -> None:
        """Increment the sent counter for a session.

        Args:
            session_id: The session identifier. Falls back to "default"
                if empty or None.
        """
        self.sent.labels(session_id=session_id or "default").inc()

    def inc_failed(self, session_id: str) -> None:
        """Increment the failed counter for a session.

        Args:
            session_id: The session identifier. Falls back to "default"
                if empty or None.
        """
        self.failed.labels(session_id=session_id or "default").inc()

    def inc_pruned(self, count: int = 1) -> None:
        if count > 0:
            self.pruned.inc(count)

    def set_active(self, value: int) -> None:
        self.active.set(value)

    def set_stored(self, value: int) -> None:
        self.stored.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format.

        Returns:
            Byte string suitable for an HTTP response to a Prometheus scraper.
        """
        return generate_latest(self.registry)

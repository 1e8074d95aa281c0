"""Prometheus metrics for the relay.

Each RelayerMetrics owns its registry, so several instances (tests, a second
relayer in one process) never collide on metric names.
"""

from __future__ import annotations

import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from relayer.core.models import TransactionStatus
from relayer.store.base import Store


BATCH_SIZE_BUCKETS = (1, 5, 10, 25, 50, 100)
POLL_DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300)


class RelayerMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._started = time.monotonic()

        self.events_processed = Counter(
            "relayer_events_processed_total",
            "Upstream events applied, by partition and kind",
            ["event_name", "kind"],
            registry=self.registry,
        )
        self.events_malformed = Counter(
            "relayer_events_malformed_total",
            "Upstream events skipped as malformed",
            ["event_name"],
            registry=self.registry,
        )
        self.transactions_failed = Counter(
            "relayer_transactions_failed_total",
            "Transactions moved to FAILED",
            ["reason"],
            registry=self.registry,
        )
        self.batches_sealed = Counter(
            "relayer_batches_processed_total",
            "L1 batches sealed into a vault controller transaction",
            registry=self.registry,
        )
        self.controllers_finished = Counter(
            "relayer_controllers_finished_total",
            "Vault controller transactions that reached a terminal status",
            ["status"],
            registry=self.registry,
        )
        self.submission_attempts = Counter(
            "relayer_submission_attempts_total",
            "Submission attempts against the destination chain",
            registry=self.registry,
        )
        self.batch_size = Histogram(
            "relayer_batch_size",
            "Members per sealed batch",
            buckets=BATCH_SIZE_BUCKETS,
            registry=self.registry,
        )
        self.poll_duration = Histogram(
            "relayer_partition_poll_duration_seconds",
            "Time spent on one partition page",
            ["event_name"],
            buckets=POLL_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.transactions_by_status = Gauge(
            "relayer_transactions_by_status",
            "Stored transactions per status",
            ["status"],
            registry=self.registry,
        )
        self.transactions_total = Gauge(
            "relayer_transactions_total",
            "Stored transactions",
            registry=self.registry,
        )
        self.pending_transactions = Gauge(
            "relayer_pending_transactions",
            "Transactions still PENDING",
            registry=self.registry,
        )
        self.uptime = Gauge(
            "relayer_uptime_seconds",
            "Seconds since the metrics were created",
            registry=self.registry,
        )
        self.uptime.set_function(lambda: time.monotonic() - self._started)

    def refresh(self, store: Store) -> None:
        """Reload the store-backed gauges."""
        with store.atomic() as session:
            counts = session.count_transactions_by_status()
        for status in TransactionStatus:
            self.transactions_by_status.labels(status=status.value).set(counts.get(status, 0))
        self.transactions_total.set(sum(counts.values()))
        self.pending_transactions.set(counts.get(TransactionStatus.PENDING, 0))

    def render(self) -> bytes:
        return generate_latest(self.registry)

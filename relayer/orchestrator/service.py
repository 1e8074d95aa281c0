"""Relayer service - follows upstream bridge events and relays aggregated vault updates.

This service:
1. Runs one partition worker per configured event name (Redis stream feed)
2. Records transactions and their finalization in PostgreSQL
3. Seals closed L1 batches into vault controller transactions
4. Submits and confirms each controller transaction on the destination chain
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from datetime import timedelta

import uvicorn

from relayer.aggregator.batch import BatchAggregator, RetryPolicy
from relayer.api.main import create_app
from relayer.core.clock import SystemClock
from relayer.core.errors import ConfigurationError
from relayer.core.settings import Settings, load_settings
from relayer.cursor.store import CursorStore
from relayer.feeds.closure import RedisBatchClosureSignal
from relayer.feeds.events import RedisStreamEventFeed
from relayer.metrics.prometheus import RelayerMetrics
from relayer.orchestrator.relay import RelayOrchestrator
from relayer.registry.transactions import TransactionRegistry
from relayer.store.base import Store
from relayer.store.memory import InMemoryStore
from relayer.store.postgres import PostgresStore
from relayer.submission.shares import TrailingWordShareDecoder
from relayer.submission.submitter import DryRunSubmitter


logger = logging.getLogger(__name__)


def create_store(s: Settings) -> Store:
    """Create the appropriate store based on configuration."""
    if s.postgres_dsn:
        logger.info("Using PostgreSQL store")
        store = PostgresStore(s.postgres_dsn)
        store.ensure_schema()
        return store
    logger.info("Using in-memory store (dev mode)")
    return InMemoryStore()


def build_orchestrator(s: Settings, store: Store) -> RelayOrchestrator:
    if not s.redis_url:
        raise ConfigurationError("redis url is required to run the relayer")

    clock = SystemClock()
    stop = threading.Event()
    metrics = RelayerMetrics()
    aggregator = BatchAggregator(
        store,
        decoder=TrailingWordShareDecoder(),
        submitter=DryRunSubmitter(dry_run=s.env != "prod"),
        submission_policy=RetryPolicy(
            max_attempts=s.submission_max_attempts,
            base_seconds=s.backoff_base_seconds,
            max_seconds=s.backoff_max_seconds,
        ),
        confirmation_policy=RetryPolicy(
            max_attempts=s.confirmation_max_attempts,
            base_seconds=s.backoff_base_seconds,
            max_seconds=s.backoff_max_seconds,
        ),
        clock=clock,
        # Backoff waits wake up immediately on shutdown.
        sleep=stop.wait,
        should_stop=stop.is_set,
        metrics=metrics,
    )
    return RelayOrchestrator(
        event_names=s.event_names,
        feed=RedisStreamEventFeed(s.redis_url),
        cursors=CursorStore(store, clock=clock),
        registry=TransactionRegistry(store, clock=clock, metrics=metrics),
        aggregator=aggregator,
        closure=RedisBatchClosureSignal(s.redis_url),
        batch_size=s.batch_size,
        poll_interval_seconds=s.poll_interval_seconds,
        maintenance_interval_seconds=s.maintenance_interval_seconds,
        pending_timeout=timedelta(minutes=s.pending_timeout_minutes),
        stop_event=stop,
        metrics=metrics,
    )


def start_api(orchestrator: RelayOrchestrator, store: Store, port: int) -> uvicorn.Server:
    """Serve /health, /metrics and the operator routes next to the workers."""
    server = uvicorn.Server(
        uvicorn.Config(create_app(store, orchestrator=orchestrator), host="0.0.0.0", port=port, log_level="warning")
    )
    threading.Thread(target=server.run, daemon=True, name="relayer-api").start()
    logger.info(f"API listening on port {port}")
    return server


def main() -> None:
    """Run the relayer service."""
    logging.basicConfig(level=logging.INFO)
    try:
        s = load_settings()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    logging.getLogger().setLevel(s.log_level)

    logger.info("Starting relayer service...")
    logger.info(f"Event names: {list(s.event_names)}")

    store = create_store(s)
    try:
        orchestrator = build_orchestrator(s, store)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    def _shutdown(signum, _frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        orchestrator.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    orchestrator.start()
    server = start_api(orchestrator, store, s.api_port)
    try:
        while not orchestrator.stop_event.wait(1.0):
            pass
    finally:
        server.should_exit = True
        orchestrator.join(timeout=30.0)
        if isinstance(store, PostgresStore):
            store.close()
    logger.info("Relayer service stopped")


if __name__ == "__main__":
    main()

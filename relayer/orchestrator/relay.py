"""Relay loop: partitions, sealing, submission watchers.

Threads:
- one partition worker per event name (sequential within the partition)
- one maintenance worker (stale expiry, sealing, starting watchers)
- one watcher per in-flight controller transaction

All of them share a single stop event; each loop finishes the atomic unit
it is in and exits.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Iterable, Optional

from relayer.aggregator.batch import BatchAggregator
from relayer.contracts.validation import parse_event
from relayer.core.errors import InvalidEvent, PartialBatchFailure
from relayer.core.models import RelayEvent, Transaction, VaultControllerTransaction
from relayer.cursor.store import CursorStore
from relayer.feeds.closure import BatchClosureSignal
from relayer.feeds.events import EventFeed, FeedEntry
from relayer.metrics.prometheus import RelayerMetrics
from relayer.registry.transactions import TransactionRegistry


logger = logging.getLogger(__name__)


class RelayOrchestrator:
    def __init__(
        self,
        *,
        event_names: Iterable[str],
        feed: EventFeed,
        cursors: CursorStore,
        registry: TransactionRegistry,
        aggregator: BatchAggregator,
        closure: BatchClosureSignal,
        batch_size: int = 25,
        poll_interval_seconds: float = 5.0,
        maintenance_interval_seconds: float = 30.0,
        pending_timeout: timedelta = timedelta(minutes=30),
        stop_event: Optional[threading.Event] = None,
        metrics: Optional[RelayerMetrics] = None,
    ) -> None:
        self.event_names = tuple(event_names)
        self._feed = feed
        self._cursors = cursors
        self._registry = registry
        self._aggregator = aggregator
        self._closure = closure
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.pending_timeout = pending_timeout
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics or RelayerMetrics()

        self._threads: list[threading.Thread] = []
        self._watchers: dict[int, threading.Thread] = {}
        self._watchers_lock = threading.Lock()

    # partitions

    def poll_partition(self, event_name: str) -> int:
        """Process one page of the partition. Returns the number of entries consumed."""
        started = time.monotonic()
        after_vid = self._cursors.read(event_name)
        entries = self._feed.fetch(event_name, after_vid, self.batch_size)
        consumed = 0
        for entry in entries:
            if self.stop_event.is_set():
                break
            self._process_entry(event_name, entry)
            consumed += 1
        self.metrics.poll_duration.labels(event_name=event_name).observe(time.monotonic() - started)
        return consumed

    def _process_entry(self, event_name: str, entry: FeedEntry) -> None:
        try:
            event = self._parse(event_name, entry)
        except InvalidEvent as e:
            logger.warning(
                "malformed_event_skipped",
                extra={"event_name": event_name, "vid": entry.vid, "error": str(e)},
            )
            self.metrics.events_malformed.labels(event_name=event_name).inc()
            self._cursors.advance(event_name, entry.vid)
            return

        if self._cursors.advance(event_name, event.vid, self._registry.effect_for(event)):
            self.metrics.events_processed.labels(event_name=event_name, kind=event.kind.value).inc()

    @staticmethod
    def _parse(event_name: str, entry: FeedEntry) -> RelayEvent:
        event = parse_event(entry.body)
        if event.vid != entry.vid:
            raise InvalidEvent(f"vid {event.vid} does not match feed position {entry.vid}")
        if event.event_name != event_name:
            raise InvalidEvent(f"event_name {event.event_name} delivered on partition {event_name}")
        return event

    def run_partition(self, event_name: str) -> None:
        logger.info(f"Partition worker started: event_name={event_name}")
        while not self.stop_event.is_set():
            try:
                consumed = self.poll_partition(event_name)
            except Exception:
                # Cursor did not move; the same entry is retried next poll.
                logger.exception("partition_poll_failed", extra={"event_name": event_name})
                consumed = 0
            if consumed < self.batch_size:
                self.stop_event.wait(self.poll_interval_seconds)
        logger.info(f"Partition worker stopped: event_name={event_name}")

    # maintenance

    def seal_closed_batches(self) -> list[VaultControllerTransaction]:
        sealed: list[VaultControllerTransaction] = []
        for l1_batch_number in self._closure.closed_batches():
            if self.stop_event.is_set():
                break
            try:
                controller = self._aggregator.seal(l1_batch_number)
            except PartialBatchFailure as e:
                logger.error(
                    "batch_seal_failed",
                    extra={"l1_batch_number": e.l1_batch_number, "error": e.reason},
                )
                continue
            if controller is not None:
                sealed.append(controller)
        return sealed

    def drive_submissions(self) -> list[int]:
        """Start a watcher for every in-flight controller without one."""
        started: list[int] = []
        for controller in self._aggregator.in_flight():
            controller_id = controller.id
            if controller_id is None or self.stop_event.is_set():
                continue
            with self._watchers_lock:
                current = self._watchers.get(controller_id)
                if current is not None and current.is_alive():
                    continue
                t = threading.Thread(
                    target=self._watch,
                    args=(controller_id,),
                    daemon=True,
                    name=f"relayer-controller-{controller_id}",
                )
                self._watchers[controller_id] = t
                t.start()
            started.append(controller_id)
        return started

    def _watch(self, controller_id: int) -> None:
        try:
            result = self._aggregator.drive(controller_id)
            if result is not None:
                logger.info(f"Watcher finished: controller_id={controller_id}, status={result.status.value}")
        except Exception:
            logger.exception("controller_watcher_failed", extra={"controller_id": controller_id})
        finally:
            with self._watchers_lock:
                if self._watchers.get(controller_id) is threading.current_thread():
                    del self._watchers[controller_id]

    def join_watchers(self, timeout: Optional[float] = None) -> None:
        with self._watchers_lock:
            watchers = list(self._watchers.values())
        for t in watchers:
            t.join(timeout)

    def expire_stale_transactions(self) -> list[Transaction]:
        return self._registry.expire_stale(self.pending_timeout)

    def run_maintenance_once(self) -> None:
        self.expire_stale_transactions()
        self.seal_closed_batches()
        self.drive_submissions()

    def run_maintenance(self) -> None:
        logger.info("Maintenance worker started")
        while not self.stop_event.is_set():
            try:
                self.run_maintenance_once()
            except Exception:
                logger.exception("maintenance_cycle_failed")
            self.stop_event.wait(self.maintenance_interval_seconds)
        logger.info("Maintenance worker stopped")

    # lifecycle

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("orchestrator already started")
        for name in self.event_names:
            self._threads.append(
                threading.Thread(
                    target=self.run_partition,
                    args=(name,),
                    daemon=True,
                    name=f"relayer-partition-{name}",
                )
            )
        self._threads.append(threading.Thread(target=self.run_maintenance, daemon=True, name="relayer-maintenance"))
        for t in self._threads:
            t.start()
        logger.info(f"Relay orchestrator started: partitions={list(self.event_names)}")

    def stop(self) -> None:
        logger.info("Relay orchestrator stopping")
        self.stop_event.set()

    def worker_status(self) -> dict[str, bool]:
        """Partition and maintenance thread names mapped to whether they are alive."""
        return {t.name: t.is_alive() for t in self._threads}

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout)
        self.join_watchers(timeout)

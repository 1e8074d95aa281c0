"""Transaction lifecycle: PENDING -> FINALIZED | FAILED.

Every operation that reacts to an upstream event is exposed as an *effect*:
a function of the open session returning the writes to apply. The cursor
store runs the effect and the cursor move in one unit, so state-machine
decisions always see the latest committed rows.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Sequence

from relayer.core.clock import Clock, SystemClock
from relayer.core.errors import InvalidEvent, OrphanFinalization
from relayer.core.models import (
    EventKind,
    QuarantinedEvent,
    RelayEvent,
    Transaction,
    TransactionStatus,
)
from relayer.cursor.store import Effect
from relayer.metrics.prometheus import RelayerMetrics
from relayer.store.base import (
    InsertTransaction,
    Quarantine,
    ReleaseQuarantine,
    Session,
    Store,
    UpdateTransaction,
    Write,
)


logger = logging.getLogger(__name__)


class TransactionRegistry:
    def __init__(self, store: Store, *, clock: Clock | None = None, metrics: RelayerMetrics | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.metrics = metrics or RelayerMetrics()

    # event effects

    def effect_for(self, event: RelayEvent) -> Effect:
        """Map an event to the effect that applies it."""
        if event.kind == EventKind.INITIATED:
            return lambda session: self.observe_initiation(session, event)
        if event.kind == EventKind.FINALIZED:
            return lambda session: self.apply_finalization(session, event)
        if event.kind == EventKind.L1_BATCH_ASSIGNED:
            return lambda session: self.assign_l1_batch(session, event)
        raise InvalidEvent(f"unsupported event kind: {event.kind}")

    def observe_initiation(self, session: Session, event: RelayEvent) -> Sequence[Write]:
        if event.origin is None:
            raise InvalidEvent("initiated event requires origin")

        bridge_hash = event.transaction_hash
        session.lock_bridge_hash(bridge_hash)
        if session.transaction_by_bridge_hash(bridge_hash) is not None:
            logger.debug("initiation_already_known", extra={"bridge_hash": bridge_hash, "vid": event.vid})
            return ()

        now = self._clock.now()
        tx = Transaction(
            origin=event.origin,
            status=TransactionStatus.PENDING,
            bridge_initiated_transaction_hash=bridge_hash,
            created_at=now,
            updated_at=now,
            origin_block_number=event.block_number,
            l1_batch_number=event.l1_batch_number,
            payload=event.payload,
            event_type=event.event_type,
            subgraph_id=event.subgraph_id,
        )
        writes: list[Write] = []

        # A finalization that overtook this initiation was parked; apply it now.
        parked = session.quarantined(bridge_hash)
        if parked:
            first = parked[0]
            tx = replace(
                tx,
                status=TransactionStatus.FINALIZED,
                finalized_transaction_hash=first.finalized_transaction_hash,
                block_number=first.block_number,
            )
            writes.extend(ReleaseQuarantine(event_name=q.event_name, vid=q.vid) for q in parked)
            logger.info(
                f"Released quarantined finalization for {bridge_hash} "
                f"(event_name={first.event_name}, vid={first.vid})"
            )

        writes.insert(0, InsertTransaction(tx))
        logger.info(f"Transaction observed: bridge_hash={bridge_hash}, origin={tx.origin.value}, status={tx.status.value}")
        return writes

    def apply_finalization(self, session: Session, event: RelayEvent) -> Sequence[Write]:
        bridge_hash = event.transaction_hash
        if not event.finalized_transaction_hash:
            raise InvalidEvent("finalized event requires finalized_transaction_hash")

        session.lock_bridge_hash(bridge_hash)
        tx = session.transaction_by_bridge_hash(bridge_hash, for_update=True)
        if tx is None:
            orphan = OrphanFinalization(bridge_hash)
            logger.warning(
                "orphan_finalization_quarantined",
                extra={"bridge_hash": bridge_hash, "event_name": event.event_name, "vid": event.vid, "error": str(orphan)},
            )
            return (
                Quarantine(
                    QuarantinedEvent(
                        event_name=event.event_name,
                        vid=event.vid,
                        bridge_initiated_transaction_hash=bridge_hash,
                        finalized_transaction_hash=event.finalized_transaction_hash,
                        block_number=event.block_number,
                        quarantined_at=self._clock.now(),
                    )
                ),
            )

        if tx.status != TransactionStatus.PENDING:
            logger.debug(
                "finalization_ignored",
                extra={"bridge_hash": bridge_hash, "status": tx.status.value, "vid": event.vid},
            )
            return ()

        finalized = replace(
            tx,
            status=TransactionStatus.FINALIZED,
            finalized_transaction_hash=event.finalized_transaction_hash,
            block_number=event.block_number,
            updated_at=self._clock.now(),
        )
        logger.info(
            f"Transaction finalized: bridge_hash={bridge_hash}, "
            f"finalized_hash={event.finalized_transaction_hash}, block={event.block_number}"
        )
        return (UpdateTransaction(finalized),)

    def assign_l1_batch(self, session: Session, event: RelayEvent) -> Sequence[Write]:
        if event.l1_batch_number is None:
            raise InvalidEvent("l1_batch_assigned event requires l1_batch_number")

        session.lock_bridge_hash(event.transaction_hash)
        tx = session.transaction_by_bridge_hash(event.transaction_hash, for_update=True)
        if tx is None:
            logger.warning(
                "l1_batch_for_unknown_transaction",
                extra={"bridge_hash": event.transaction_hash, "l1_batch_number": event.l1_batch_number},
            )
            return ()
        if tx.l1_batch_number is not None:
            if tx.l1_batch_number != event.l1_batch_number:
                logger.warning(
                    "l1_batch_already_assigned",
                    extra={
                        "bridge_hash": tx.bridge_initiated_transaction_hash,
                        "current": tx.l1_batch_number,
                        "ignored": event.l1_batch_number,
                    },
                )
            return ()
        if tx.status == TransactionStatus.FAILED:
            return ()

        logger.info(f"Assigned l1 batch {event.l1_batch_number} to {tx.bridge_initiated_transaction_hash}")
        return (UpdateTransaction(replace(tx, l1_batch_number=event.l1_batch_number, updated_at=self._clock.now())),)

    # operator / maintenance operations

    def mark_failed(self, bridge_hash: str, reason: str) -> Optional[Transaction]:
        """Destination rejected the submission. Terminal: nothing retries it."""
        with self._store.atomic() as session:
            tx = session.transaction_by_bridge_hash(bridge_hash, for_update=True)
            if tx is None or tx.status != TransactionStatus.PENDING:
                return None
            failed = replace(tx, status=TransactionStatus.FAILED, updated_at=self._clock.now())
            session.apply(UpdateTransaction(failed))
        logger.warning("transaction_failed", extra={"bridge_hash": bridge_hash, "reason": reason})
        self.metrics.transactions_failed.labels(reason="rejected").inc()
        return failed

    def expire_stale(self, timeout: timedelta, *, limit: int = 100) -> list[Transaction]:
        """Fail PENDING transactions created before now - timeout."""
        cutoff = self._clock.now() - timeout
        with self._store.atomic() as session:
            stale = session.transactions_with_status(
                TransactionStatus.PENDING, limit=limit, created_before=cutoff, for_update=True
            )
            now = self._clock.now()
            expired = [replace(tx, status=TransactionStatus.FAILED, updated_at=now) for tx in stale]
            session.apply(*(UpdateTransaction(tx) for tx in expired))
        if expired:
            self.metrics.transactions_failed.labels(reason="expired").inc(len(expired))
            logger.warning(
                f"Expired {len(expired)} pending transactions older than {timeout}",
                extra={"bridge_hashes": [tx.bridge_initiated_transaction_hash for tx in expired]},
            )
        return expired

    def get(self, bridge_hash: str) -> Optional[Transaction]:
        with self._store.atomic() as session:
            return session.transaction_by_bridge_hash(bridge_hash)

    def failed(self, *, limit: int = 100) -> list[Transaction]:
        with self._store.atomic() as session:
            return session.transactions_with_status(TransactionStatus.FAILED, limit=limit)

"""Batch aggregation into vault controller transactions.

Sealing:
- one controller row per l1 batch (unique key), never re-sealed
- members are PENDING/FINALIZED transactions of the batch with no link
- controller insert and member linking commit together or not at all

Submission lifecycle:
CREATED -> SUBMITTED -> CONFIRMED, or -> FAILED once the retry budget is spent
or the destination rejects/reverts. FAILED is never retried automatically.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from relayer.core.clock import Clock, SystemClock
from relayer.core.errors import DuplicateKey, PartialBatchFailure, SubmissionExhausted, TransientSubmissionError
from relayer.core.models import ControllerStatus, VaultControllerTransaction
from relayer.core.retry import retry_with_backoff
from relayer.metrics.prometheus import RelayerMetrics
from relayer.store.base import InsertController, LinkMembers, Store, UpdateController
from relayer.submission.shares import ShareDecoder
from relayer.submission.submitter import DestinationSubmitter, Receipt, ReceiptStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: float = 0.5
    max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {self.max_attempts}")
        if self.base_seconds <= 0 or self.max_seconds < self.base_seconds:
            raise ValueError("backoff must satisfy 0 < base_seconds <= max_seconds")


class BatchAggregator:
    def __init__(
        self,
        store: Store,
        *,
        decoder: ShareDecoder,
        submitter: DestinationSubmitter,
        submission_policy: RetryPolicy = RetryPolicy(),
        confirmation_policy: RetryPolicy = RetryPolicy(max_attempts=20),
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
        metrics: Optional[RelayerMetrics] = None,
    ) -> None:
        self._store = store
        self._decoder = decoder
        self._submitter = submitter
        self._submission_policy = submission_policy
        self._confirmation_policy = confirmation_policy
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._should_stop = should_stop
        self.metrics = metrics or RelayerMetrics()

    # sealing

    def seal(self, l1_batch_number: int) -> Optional[VaultControllerTransaction]:
        """Seal every eligible member of the batch into one controller row.

        Returns the new controller, or None when the batch is already sealed
        or has no eligible members. Raises PartialBatchFailure when anything
        fails mid-way; nothing is persisted in that case.
        """

        try:
            with self._store.atomic() as session:
                existing = session.controller_by_batch(l1_batch_number)
                if existing is not None:
                    logger.debug("batch_already_sealed", extra={"l1_batch_number": l1_batch_number, "controller_id": existing.id})
                    return None

                members = session.unlinked_batch_members(l1_batch_number, for_update=True)
                if not members:
                    logger.debug("batch_has_no_members", extra={"l1_batch_number": l1_batch_number})
                    return None

                total_shares = sum(self._decoder.shares(m.payload) for m in members)
                now = self._clock.now()
                controller = VaultControllerTransaction(
                    l1_batch_number=l1_batch_number,
                    total_shares=total_shares,
                    message_hash_count=len(members),
                    status=ControllerStatus.CREATED,
                    created_at=now,
                    updated_at=now,
                )
                session.apply(
                    InsertController(controller),
                    LinkMembers(
                        l1_batch_number=l1_batch_number,
                        transaction_ids=tuple(m.id for m in members if m.id is not None),
                        at=now,
                    ),
                )
                sealed = session.controller_by_batch(l1_batch_number)
        except DuplicateKey:
            # Another relayer instance sealed the batch first.
            logger.info(f"L1 batch {l1_batch_number} sealed concurrently by another instance")
            return None
        except Exception as e:
            raise PartialBatchFailure(l1_batch_number, str(e)) from e

        self.metrics.batches_sealed.inc()
        self.metrics.batch_size.observe(sealed.message_hash_count)
        logger.info(
            f"Sealed l1 batch {l1_batch_number}: controller_id={sealed.id}, "
            f"members={sealed.message_hash_count}, total_shares={sealed.total_shares}"
        )
        return sealed

    # submission lifecycle

    def get(self, controller_id: int) -> Optional[VaultControllerTransaction]:
        with self._store.atomic() as session:
            return session.controller(controller_id)

    def in_flight(self, *, limit: int = 100) -> list[VaultControllerTransaction]:
        with self._store.atomic() as session:
            return session.controllers_with_status(
                (ControllerStatus.CREATED, ControllerStatus.SUBMITTED), limit=limit
            )

    def failed(self, *, limit: int = 100) -> list[VaultControllerTransaction]:
        with self._store.atomic() as session:
            return session.controllers_with_status((ControllerStatus.FAILED,), limit=limit)

    def drive(self, controller_id: int) -> Optional[VaultControllerTransaction]:
        """Push a controller as far through its lifecycle as it will go now."""
        controller = self.get(controller_id)
        if controller is not None and controller.status == ControllerStatus.CREATED:
            controller = self.submit(controller_id)
        if controller is not None and controller.status == ControllerStatus.SUBMITTED:
            controller = self.confirm(controller_id)
        return controller

    def submit(self, controller_id: int) -> Optional[VaultControllerTransaction]:
        controller = self.get(controller_id)
        if controller is None or controller.status != ControllerStatus.CREATED:
            return controller

        def record_attempt(attempt: int, error: Optional[BaseException]) -> None:
            self.metrics.submission_attempts.inc()
            self._update(controller_id, lambda c: replace(
                c,
                submission_attempts=c.submission_attempts + 1,
                last_error=str(error) if error is not None else c.last_error,
            ))

        policy = self._submission_policy
        try:
            tx_hash = retry_with_backoff(
                lambda: self._submitter.submit(controller),
                max_attempts=policy.max_attempts,
                base_seconds=policy.base_seconds,
                max_seconds=policy.max_seconds,
                sleep=self._sleep,
                on_attempt=record_attempt,
                should_stop=self._should_stop,
            )
        except SubmissionExhausted as e:
            logger.error(
                "controller_submission_exhausted",
                extra={"controller_id": controller_id, "l1_batch_number": controller.l1_batch_number, "attempts": e.attempts},
            )
            return self._fail(controller_id, f"submission exhausted: {e.last_error}")
        except TransientSubmissionError:
            logger.info(f"Submission of controller {controller_id} interrupted by shutdown; left in CREATED")
            return self.get(controller_id)
        except Exception as e:
            record_attempt(0, e)
            logger.error(
                "controller_submission_rejected",
                extra={"controller_id": controller_id, "l1_batch_number": controller.l1_batch_number, "error": str(e)},
            )
            return self._fail(controller_id, f"submission rejected: {e}")

        submitted = self._update(controller_id, lambda c: replace(
            c, status=ControllerStatus.SUBMITTED, transaction_hash=tx_hash, last_error=None
        ))
        logger.info(f"Controller {controller_id} submitted: tx_hash={tx_hash}")
        return submitted

    def confirm(self, controller_id: int) -> Optional[VaultControllerTransaction]:
        controller = self.get(controller_id)
        if controller is None or controller.status != ControllerStatus.SUBMITTED:
            return controller

        def poll() -> Receipt:
            receipt = self._submitter.confirm(controller.transaction_hash)
            if receipt.status == ReceiptStatus.PENDING:
                raise TransientSubmissionError(f"{controller.transaction_hash} not yet included")
            return receipt

        policy = self._confirmation_policy
        try:
            receipt = retry_with_backoff(
                poll,
                max_attempts=policy.max_attempts,
                base_seconds=policy.base_seconds,
                max_seconds=policy.max_seconds,
                sleep=self._sleep,
                should_stop=self._should_stop,
            )
        except SubmissionExhausted as e:
            logger.error("controller_confirmation_exhausted", extra={"controller_id": controller_id, "attempts": e.attempts})
            return self._fail(controller_id, f"confirmation exhausted: {e.last_error}")
        except TransientSubmissionError:
            return self.get(controller_id)

        if receipt.status == ReceiptStatus.REVERTED:
            logger.error("controller_transaction_reverted", extra={"controller_id": controller_id, "tx_hash": controller.transaction_hash})
            return self._fail(controller_id, f"reverted: {receipt.message or controller.transaction_hash}")

        confirmed = self._update(controller_id, lambda c: replace(c, status=ControllerStatus.CONFIRMED))
        self.metrics.controllers_finished.labels(status=ControllerStatus.CONFIRMED.value).inc()
        logger.info(f"Controller {controller_id} confirmed at block {receipt.block_number}")
        return confirmed

    def _fail(self, controller_id: int, reason: str) -> Optional[VaultControllerTransaction]:
        failed = self._update(controller_id, lambda c: replace(c, status=ControllerStatus.FAILED, last_error=reason))
        self.metrics.controllers_finished.labels(status=ControllerStatus.FAILED.value).inc()
        return failed

    def _update(
        self,
        controller_id: int,
        change: Callable[[VaultControllerTransaction], VaultControllerTransaction],
    ) -> Optional[VaultControllerTransaction]:
        with self._store.atomic() as session:
            current = session.controller(controller_id, for_update=True)
            if current is None:
                return None
            updated = replace(change(current), updated_at=self._clock.now())
            session.apply(UpdateController(updated))
        return updated

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import pytest

from relayer.aggregator.batch import BatchAggregator, RetryPolicy
from relayer.core.clock import FixedClock
from relayer.core.errors import IntegrityViolation, PartialBatchFailure, TransientSubmissionError
from relayer.core.models import (
    BridgeOrigin,
    ControllerStatus,
    LinkedTo,
    Transaction,
    TransactionStatus,
    VaultControllerTransaction,
)
from relayer.store.base import DeleteController, InsertTransaction, commit
from relayer.store.memory import InMemorySession, InMemoryStore
from relayer.submission.shares import TrailingWordShareDecoder, encode_shares_word
from relayer.submission.submitter import DryRunSubmitter, Receipt, ReceiptStatus


class _FlakySubmitter:
    def __init__(self, failures: int, *, receipts: list[Receipt] | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.receipts = list(receipts or [])

    def submit(self, controller: VaultControllerTransaction) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientSubmissionError(f"rpc timeout {self.calls}")
        return f"0xdest{controller.l1_batch_number}"

    def confirm(self, transaction_hash: str) -> Receipt:
        if self.receipts:
            return self.receipts.pop(0)
        return Receipt(status=ReceiptStatus.CONFIRMED, block_number=77)


class _RejectingSubmitter:
    def submit(self, controller: VaultControllerTransaction) -> str:
        raise RuntimeError("nonce too low")

    def confirm(self, transaction_hash: str) -> Receipt:  # pragma: no cover
        raise AssertionError("not submitted")


class _FailAfterFirstLinkSession(InMemorySession):
    def _link_one(self, tx_id: int, controller_id: int, at: datetime) -> None:
        if tx_id > 1:
            raise RuntimeError("connection lost")
        super()._link_one(tx_id, controller_id, at)


def _tx(bridge_hash: str, shares: int, *, l1: int = 42, status=TransactionStatus.PENDING, clock: FixedClock) -> Transaction:
    now = clock.now()
    return Transaction(
        origin=BridgeOrigin.ORIGIN_A,
        status=status,
        bridge_initiated_transaction_hash=bridge_hash,
        created_at=now,
        updated_at=now,
        l1_batch_number=l1,
        payload=(b"\x00" * 64) + encode_shares_word(shares),
    )


def _aggregator(store: InMemoryStore, clock: FixedClock, submitter=None, *, max_attempts: int = 5) -> BatchAggregator:
    return BatchAggregator(
        store,
        decoder=TrailingWordShareDecoder(),
        submitter=submitter or DryRunSubmitter(),
        submission_policy=RetryPolicy(max_attempts=max_attempts, base_seconds=0.01, max_seconds=0.01),
        confirmation_policy=RetryPolicy(max_attempts=3, base_seconds=0.01, max_seconds=0.01),
        clock=clock,
        sleep=lambda _s: None,
    )


def _store_with_batch(clock: FixedClock, shares=(10, 20, 5)) -> InMemoryStore:
    store = InMemoryStore()
    commit(store, [InsertTransaction(_tx(f"0xh{i}", s, clock=clock)) for i, s in enumerate(shares, start=1)])
    return store


def test_seal_sums_shares_and_links_every_member() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    sealed = _aggregator(store, clock).seal(42)

    assert sealed is not None
    assert sealed.total_shares == 35
    assert sealed.message_hash_count == 3
    assert sealed.status == ControllerStatus.CREATED
    with store.atomic() as session:
        members = session.batch_members(sealed.id)
    assert len(members) == 3
    assert all(m.controller == LinkedTo(sealed.id) for m in members)


def test_seal_skips_failed_and_other_batches() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock, shares=(10,))
    commit(
        store,
        [
            InsertTransaction(_tx("0xfailed", 100, status=TransactionStatus.FAILED, clock=clock)),
            InsertTransaction(_tx("0xother", 7, l1=43, clock=clock)),
            InsertTransaction(_tx("0xfinal", 1, status=TransactionStatus.FINALIZED, clock=clock)),
        ],
    )
    sealed = _aggregator(store, clock).seal(42)
    assert sealed is not None
    assert (sealed.total_shares, sealed.message_hash_count) == (11, 2)


def test_reseal_is_a_noop() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    agg = _aggregator(store, clock)
    first = agg.seal(42)
    commit(store, [InsertTransaction(_tx("0xlate", 99, clock=clock))])

    assert agg.seal(42) is None
    again = agg.get(first.id)
    assert (again.total_shares, again.message_hash_count) == (35, 3)


def test_seal_with_no_members_creates_nothing() -> None:
    clock = FixedClock()
    store = InMemoryStore()
    assert _aggregator(store, clock).seal(42) is None
    with store.atomic() as session:
        assert session.controller_by_batch(42) is None


def test_partial_link_failure_rolls_back_whole_seal() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    store.session_class = _FailAfterFirstLinkSession

    with pytest.raises(PartialBatchFailure) as ei:
        _aggregator(store, clock).seal(42)
    assert ei.value.l1_batch_number == 42

    store.session_class = InMemorySession
    with store.atomic() as session:
        assert session.controller_by_batch(42) is None
        assert len(session.unlinked_batch_members(42)) == 3


def test_undecodable_payload_is_partial_failure() -> None:
    clock = FixedClock()
    store = InMemoryStore()
    bad = _tx("0xbad", 1, clock=clock)
    commit(store, [InsertTransaction(replace(bad, payload=b"\x01\x02"))])
    with pytest.raises(PartialBatchFailure):
        _aggregator(store, clock).seal(42)


def test_transient_failures_then_success_records_three_attempts() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    submitter = _FlakySubmitter(failures=2)
    agg = _aggregator(store, clock, submitter)
    sealed = agg.seal(42)

    submitted = agg.submit(sealed.id)
    assert submitted.status == ControllerStatus.SUBMITTED
    assert submitted.transaction_hash == "0xdest42"
    assert submitted.submission_attempts == 3

    confirmed = agg.confirm(sealed.id)
    assert confirmed.status == ControllerStatus.CONFIRMED
    assert submitter.calls == 3


def test_exhausted_submission_fails_and_is_not_retried() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    submitter = _FlakySubmitter(failures=100)
    agg = _aggregator(store, clock, submitter, max_attempts=3)
    sealed = agg.seal(42)

    failed = agg.drive(sealed.id)
    assert failed.status == ControllerStatus.FAILED
    assert failed.submission_attempts == 3
    assert "submission exhausted" in failed.last_error

    assert agg.drive(sealed.id).status == ControllerStatus.FAILED
    assert submitter.calls == 3
    assert [c.id for c in agg.failed()] == [sealed.id]
    assert agg.in_flight() == []


def test_rejected_submission_fails_immediately() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    agg = _aggregator(store, clock, _RejectingSubmitter())
    sealed = agg.seal(42)

    failed = agg.submit(sealed.id)
    assert failed.status == ControllerStatus.FAILED
    assert failed.submission_attempts == 1
    assert "nonce too low" in failed.last_error


def test_reverted_receipt_fails_controller() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    submitter = _FlakySubmitter(failures=0, receipts=[Receipt(status=ReceiptStatus.REVERTED, message="out of gas")])
    agg = _aggregator(store, clock, submitter)
    sealed = agg.seal(42)

    out = agg.drive(sealed.id)
    assert out.status == ControllerStatus.FAILED
    assert "out of gas" in out.last_error


def test_confirmation_waits_for_inclusion() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    pending = Receipt(status=ReceiptStatus.PENDING)
    submitter = _FlakySubmitter(failures=0, receipts=[pending, pending])
    agg = _aggregator(store, clock, submitter)
    sealed = agg.seal(42)

    assert agg.drive(sealed.id).status == ControllerStatus.CONFIRMED


def test_confirmation_exhausted_fails_controller() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    pending = Receipt(status=ReceiptStatus.PENDING)
    submitter = _FlakySubmitter(failures=0, receipts=[pending] * 10)
    agg = _aggregator(store, clock, submitter)
    sealed = agg.seal(42)

    out = agg.drive(sealed.id)
    assert out.status == ControllerStatus.FAILED
    assert "confirmation exhausted" in out.last_error


def test_shutdown_leaves_controller_created() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    agg = BatchAggregator(
        store,
        decoder=TrailingWordShareDecoder(),
        submitter=_FlakySubmitter(failures=100),
        submission_policy=RetryPolicy(max_attempts=5),
        clock=clock,
        sleep=lambda _s: None,
        should_stop=lambda: True,
    )
    sealed = agg.seal(42)

    out = agg.submit(sealed.id)
    assert out.status == ControllerStatus.CREATED
    assert out.submission_attempts == 1


def test_members_stay_linked_when_controller_fails() -> None:
    clock = FixedClock()
    store = _store_with_batch(clock)
    agg = _aggregator(store, clock, _RejectingSubmitter())
    sealed = agg.seal(42)
    agg.submit(sealed.id)

    with store.atomic() as session:
        assert len(session.batch_members(sealed.id)) == 3
    with pytest.raises(IntegrityViolation):
        commit(store, [DeleteController(sealed.id)])


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_seconds": 0},
        {"base_seconds": 2.0, "max_seconds": 1.0},
    ],
)
def test_retry_policy_rejects_unusable_budgets(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)

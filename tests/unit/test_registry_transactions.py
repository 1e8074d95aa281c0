from __future__ import annotations

from datetime import timedelta

import pytest

from relayer.core.clock import FixedClock
from relayer.core.errors import InvalidEvent
from relayer.core.models import BridgeOrigin, EventKind, RelayEvent, TransactionStatus
from relayer.cursor.store import CursorStore
from relayer.registry.transactions import TransactionRegistry
from relayer.store.memory import InMemorySession, InMemoryStore


EVENT_NAME = "origin_a.bridge"


def _setup():
    store = InMemoryStore()
    clock = FixedClock()
    return store, clock, CursorStore(store, clock=clock), TransactionRegistry(store, clock=clock)


def _initiated(vid: int, bridge_hash: str, *, block: int = 100, l1: int | None = None) -> RelayEvent:
    return RelayEvent(
        vid=vid,
        event_name=EVENT_NAME,
        kind=EventKind.INITIATED,
        transaction_hash=bridge_hash,
        origin=BridgeOrigin.ORIGIN_A,
        block_number=block,
        l1_batch_number=l1,
        payload=(10).to_bytes(32, "big"),
    )


def _finalized(vid: int, bridge_hash: str, *, block: int = 205, event_name: str = EVENT_NAME) -> RelayEvent:
    return RelayEvent(
        vid=vid,
        event_name=event_name,
        kind=EventKind.FINALIZED,
        transaction_hash=bridge_hash,
        finalized_transaction_hash="0xf" + bridge_hash[2:],
        block_number=block,
    )


def _assigned(vid: int, bridge_hash: str, l1: int) -> RelayEvent:
    return RelayEvent(
        vid=vid,
        event_name=EVENT_NAME,
        kind=EventKind.L1_BATCH_ASSIGNED,
        transaction_hash=bridge_hash,
        l1_batch_number=l1,
    )


def _feed(cursors: CursorStore, registry: TransactionRegistry, *events: RelayEvent) -> None:
    for ev in events:
        cursors.advance(ev.event_name, ev.vid, registry.effect_for(ev))


def test_initiation_then_finalization() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"), _finalized(2, "0xh1"))

    tx = registry.get("0xh1")
    assert tx is not None
    assert tx.status == TransactionStatus.FINALIZED
    assert tx.origin_block_number == 100
    assert tx.block_number == 205
    assert tx.finalized_transaction_hash == "0xfh1"
    assert cursors.read(EVENT_NAME) == 2


def test_repeated_initiation_for_known_hash_is_ignored() -> None:
    store, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"), _initiated(2, "0xh1", block=999))

    with store.atomic() as session:
        rows = session.transactions_with_status(TransactionStatus.PENDING)
    assert len(rows) == 1
    assert rows[0].origin_block_number == 100
    assert cursors.read(EVENT_NAME) == 2


def test_orphan_finalization_is_quarantined_and_cursor_advances() -> None:
    store, _, cursors, registry = _setup()
    _feed(cursors, registry, _finalized(1, "0xh9"))

    assert registry.get("0xh9") is None
    assert cursors.read(EVENT_NAME) == 1
    with store.atomic() as session:
        parked = session.quarantined("0xh9")
    assert [(q.event_name, q.vid) for q in parked] == [(EVENT_NAME, 1)]


def test_quarantined_finalization_is_released_by_initiation() -> None:
    store, _, cursors, registry = _setup()
    _feed(cursors, registry, _finalized(1, "0xh9", event_name="origin_b.bridge"), _initiated(1, "0xh9"))

    tx = registry.get("0xh9")
    assert tx is not None
    assert tx.status == TransactionStatus.FINALIZED
    assert tx.finalized_transaction_hash == "0xfh9"
    with store.atomic() as session:
        assert session.quarantined("0xh9") == []


def test_finalization_only_applies_to_pending() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"))
    registry.mark_failed("0xh1", "destination rejected")
    _feed(cursors, registry, _finalized(2, "0xh1"))

    tx = registry.get("0xh1")
    assert tx is not None
    assert tx.status == TransactionStatus.FAILED
    assert tx.finalized_transaction_hash == ""


def test_second_finalization_does_not_overwrite() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"), _finalized(2, "0xh1", block=205), _finalized(3, "0xh1", block=300))
    tx = registry.get("0xh1")
    assert tx is not None
    assert tx.block_number == 205


def test_l1_batch_assignment_is_set_once() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"), _assigned(2, "0xh1", 42), _assigned(3, "0xh1", 43))
    tx = registry.get("0xh1")
    assert tx is not None
    assert tx.l1_batch_number == 42
    assert cursors.read(EVENT_NAME) == 3


def test_l1_batch_assignment_for_unknown_hash_is_skipped() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _assigned(1, "0xnope", 42))
    assert registry.get("0xnope") is None
    assert cursors.read(EVENT_NAME) == 1


def test_mark_failed_is_terminal() -> None:
    _, _, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xh1"))
    assert registry.mark_failed("0xh1", "rejected") is not None
    assert registry.mark_failed("0xh1", "again") is None
    assert [tx.bridge_initiated_transaction_hash for tx in registry.failed()] == ["0xh1"]


def test_expire_stale_fails_old_pending_only() -> None:
    _, clock, cursors, registry = _setup()
    _feed(cursors, registry, _initiated(1, "0xold"), _initiated(2, "0xdone"), _finalized(3, "0xdone"))
    clock.advance(minutes=20)
    _feed(cursors, registry, _initiated(4, "0xnew"))
    clock.advance(minutes=15)

    expired = registry.expire_stale(timedelta(minutes=30))

    assert [tx.bridge_initiated_transaction_hash for tx in expired] == ["0xold"]
    assert registry.get("0xold").status == TransactionStatus.FAILED
    assert registry.get("0xdone").status == TransactionStatus.FINALIZED
    assert registry.get("0xnew").status == TransactionStatus.PENDING


def test_initiation_without_origin_is_invalid() -> None:
    store, _, _, registry = _setup()
    ev = RelayEvent(vid=1, event_name=EVENT_NAME, kind=EventKind.INITIATED, transaction_hash="0xh1")
    with store.atomic() as session:
        with pytest.raises(InvalidEvent):
            registry.observe_initiation(session, ev)


class _RecordingSession(InMemorySession):
    calls: list[str] = []

    def lock_bridge_hash(self, bridge_hash: str) -> None:
        self.calls.append(f"lock:{bridge_hash}")

    def transaction_by_bridge_hash(self, bridge_hash: str, *, for_update: bool = False):
        self.calls.append(f"read:{bridge_hash}")
        return super().transaction_by_bridge_hash(bridge_hash, for_update=for_update)

    def quarantined(self, bridge_hash: str):
        self.calls.append(f"quarantined:{bridge_hash}")
        return super().quarantined(bridge_hash)


@pytest.mark.parametrize(
    "event",
    [
        _initiated(1, "0xh1"),
        _finalized(1, "0xh1"),
        _assigned(1, "0xh1", 42),
    ],
)
def test_every_event_effect_locks_the_hash_before_reading(event: RelayEvent) -> None:
    store, _, cursors, registry = _setup()
    store.session_class = _RecordingSession
    _RecordingSession.calls = []

    cursors.advance(event.event_name, event.vid, registry.effect_for(event))

    assert _RecordingSession.calls[0] == "lock:0xh1"
    assert all(c.endswith("0xh1") for c in _RecordingSession.calls)


def test_finalization_on_other_partition_before_initiation_is_not_lost() -> None:
    _, clock, cursors, registry = _setup()
    _feed(cursors, registry, _finalized(7, "0xh1", event_name="origin_b.bridge"), _initiated(3, "0xh1"))
    clock.advance(minutes=60)

    assert registry.expire_stale(timedelta(minutes=30)) == []
    assert registry.get("0xh1").status == TransactionStatus.FINALIZED

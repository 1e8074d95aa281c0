"""In-memory store for tests and dev mode.

Units are serialised by a single lock. Each unit works on a copy of the state
and the copy replaces the live state only on commit, so an exception anywhere
in the unit leaves nothing behind.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Iterator, Optional

from relayer.core.errors import DuplicateKey, IntegrityViolation
from relayer.core.models import (
    ControllerStatus,
    EventCursor,
    LinkedTo,
    QuarantinedEvent,
    Transaction,
    TransactionStatus,
    VaultControllerTransaction,
)

from .base import (
    DeleteController,
    InsertController,
    InsertTransaction,
    LinkMembers,
    Quarantine,
    ReleaseQuarantine,
    SetCursor,
    UpdateController,
    UpdateTransaction,
    Write,
)


_SEALABLE = (TransactionStatus.PENDING, TransactionStatus.FINALIZED)


@dataclass
class _State:
    transactions: dict[int, Transaction] = field(default_factory=dict)
    controllers: dict[int, VaultControllerTransaction] = field(default_factory=dict)
    cursors: dict[str, EventCursor] = field(default_factory=dict)
    quarantine: dict[tuple[str, int], QuarantinedEvent] = field(default_factory=dict)
    next_transaction_id: int = 1
    next_controller_id: int = 1
    next_cursor_id: int = 1

    def copy(self) -> "_State":
        # Records are frozen, so copying the containers is enough.
        return _State(
            transactions=dict(self.transactions),
            controllers=dict(self.controllers),
            cursors=dict(self.cursors),
            quarantine=dict(self.quarantine),
            next_transaction_id=self.next_transaction_id,
            next_controller_id=self.next_controller_id,
            next_cursor_id=self.next_cursor_id,
        )


class InMemorySession:
    def __init__(self, state: _State) -> None:
        self._s = state

    # reads

    def cursor(self, event_name: str, *, for_update: bool = False) -> Optional[EventCursor]:
        return self._s.cursors.get(event_name)

    def cursors(self) -> list[EventCursor]:
        return sorted(self._s.cursors.values(), key=lambda c: c.event_name)

    def transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self._s.transactions.get(transaction_id)

    def transaction_by_bridge_hash(self, bridge_hash: str, *, for_update: bool = False) -> Optional[Transaction]:
        for tx in self._s.transactions.values():
            if tx.bridge_initiated_transaction_hash == bridge_hash:
                return tx
        return None

    def transactions_with_status(
        self,
        status: TransactionStatus,
        *,
        limit: int = 100,
        created_before: Optional[datetime] = None,
        for_update: bool = False,
    ) -> list[Transaction]:
        rows = [
            tx
            for tx in self._s.transactions.values()
            if tx.status == status and (created_before is None or tx.created_at < created_before)
        ]
        rows.sort(key=lambda tx: (tx.created_at, tx.id or 0))
        return rows[:limit]

    def unlinked_batch_members(self, l1_batch_number: int, *, for_update: bool = False) -> list[Transaction]:
        rows = [
            tx
            for tx in self._s.transactions.values()
            if tx.l1_batch_number == l1_batch_number and tx.status in _SEALABLE and not tx.is_linked
        ]
        rows.sort(key=lambda tx: tx.id or 0)
        return rows

    def batch_members(self, controller_id: int) -> list[Transaction]:
        rows = [tx for tx in self._s.transactions.values() if tx.controller == LinkedTo(controller_id)]
        rows.sort(key=lambda tx: tx.id or 0)
        return rows

    def controller(self, controller_id: int, *, for_update: bool = False) -> Optional[VaultControllerTransaction]:
        return self._s.controllers.get(controller_id)

    def controller_by_batch(self, l1_batch_number: int) -> Optional[VaultControllerTransaction]:
        for c in self._s.controllers.values():
            if c.l1_batch_number == l1_batch_number:
                return c
        return None

    def controllers_with_status(
        self, statuses: Iterable[ControllerStatus], *, limit: int = 100
    ) -> list[VaultControllerTransaction]:
        wanted = set(statuses)
        rows = [c for c in self._s.controllers.values() if c.status in wanted]
        rows.sort(key=lambda c: (c.created_at, c.id or 0))
        return rows[:limit]

    def count_transactions_by_status(self) -> dict[TransactionStatus, int]:
        counts = {status: 0 for status in TransactionStatus}
        for tx in self._s.transactions.values():
            counts[tx.status] += 1
        return counts

    def quarantined(self, bridge_hash: str) -> list[QuarantinedEvent]:
        rows = [q for q in self._s.quarantine.values() if q.bridge_initiated_transaction_hash == bridge_hash]
        rows.sort(key=lambda q: (q.event_name, q.vid))
        return rows

    def lock_bridge_hash(self, bridge_hash: str) -> None:
        # Units are already serialised by the store lock.
        return None

    # writes

    def apply(self, *writes: Write) -> None:
        for w in writes:
            if isinstance(w, InsertTransaction):
                self._insert_transaction(w)
            elif isinstance(w, UpdateTransaction):
                self._update_transaction(w)
            elif isinstance(w, InsertController):
                self._insert_controller(w)
            elif isinstance(w, UpdateController):
                self._update_controller(w)
            elif isinstance(w, LinkMembers):
                self._link_members(w)
            elif isinstance(w, DeleteController):
                self._delete_controller(w)
            elif isinstance(w, SetCursor):
                self._set_cursor(w)
            elif isinstance(w, Quarantine):
                self._s.quarantine[(w.event.event_name, w.event.vid)] = w.event
            elif isinstance(w, ReleaseQuarantine):
                self._s.quarantine.pop((w.event_name, w.vid), None)
            else:  # pragma: no cover
                raise TypeError(f"unknown write: {w!r}")

    def _insert_transaction(self, w: InsertTransaction) -> None:
        if self.transaction_by_bridge_hash(w.transaction.bridge_initiated_transaction_hash) is not None:
            raise DuplicateKey(f"transaction already exists for {w.transaction.bridge_initiated_transaction_hash}")
        tx_id = self._s.next_transaction_id
        self._s.next_transaction_id += 1
        self._s.transactions[tx_id] = replace(w.transaction, id=tx_id)

    def _update_transaction(self, w: UpdateTransaction) -> None:
        tx = w.transaction
        if tx.id is None or tx.id not in self._s.transactions:
            raise IntegrityViolation(f"unknown transaction id: {tx.id}")
        self._s.transactions[tx.id] = tx

    def _insert_controller(self, w: InsertController) -> None:
        if self.controller_by_batch(w.controller.l1_batch_number) is not None:
            raise DuplicateKey(f"controller already exists for l1 batch {w.controller.l1_batch_number}")
        cid = self._s.next_controller_id
        self._s.next_controller_id += 1
        self._s.controllers[cid] = replace(w.controller, id=cid)

    def _update_controller(self, w: UpdateController) -> None:
        c = w.controller
        current = self._s.controllers.get(c.id) if c.id is not None else None
        if current is None:
            raise IntegrityViolation(f"unknown controller id: {c.id}")
        if (current.total_shares, current.message_hash_count, current.l1_batch_number) != (
            c.total_shares,
            c.message_hash_count,
            c.l1_batch_number,
        ):
            raise IntegrityViolation(f"controller {c.id} is sealed; totals cannot change")
        self._s.controllers[c.id] = c

    def _link_members(self, w: LinkMembers) -> None:
        controller = self.controller_by_batch(w.l1_batch_number)
        if controller is None or controller.id is None:
            raise IntegrityViolation(f"no controller for l1 batch {w.l1_batch_number}")
        for tx_id in w.transaction_ids:
            self._link_one(tx_id, controller.id, w.at)

    def _link_one(self, tx_id: int, controller_id: int, at: datetime) -> None:
        tx = self._s.transactions.get(tx_id)
        if tx is None:
            raise IntegrityViolation(f"unknown transaction id: {tx_id}")
        if tx.is_linked:
            raise IntegrityViolation(f"transaction {tx_id} already belongs to a controller")
        self._s.transactions[tx_id] = replace(tx, controller=LinkedTo(controller_id), updated_at=at)

    def _delete_controller(self, w: DeleteController) -> None:
        if self.batch_members(w.controller_id):
            raise IntegrityViolation(f"controller {w.controller_id} is referenced by member transactions")
        self._s.controllers.pop(w.controller_id, None)

    def _set_cursor(self, w: SetCursor) -> None:
        current = self._s.cursors.get(w.event_name)
        if current is None:
            cid = self._s.next_cursor_id
            self._s.next_cursor_id += 1
            self._s.cursors[w.event_name] = EventCursor(
                event_name=w.event_name,
                last_processed_vid=w.last_processed_vid,
                created_at=w.at,
                updated_at=w.at,
                id=cid,
            )
            return
        if w.last_processed_vid <= current.last_processed_vid:
            raise IntegrityViolation(f"cursor {w.event_name} must move forward")
        self._s.cursors[w.event_name] = replace(current, last_processed_vid=w.last_processed_vid, updated_at=w.at)


class InMemoryStore:
    session_class = InMemorySession

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = _State()

    @contextmanager
    def atomic(self) -> Iterator[InMemorySession]:
        with self._lock:
            staged = self._state.copy()
            yield self.session_class(staged)
            # Reached only when the block exited cleanly.
            self._state = staged

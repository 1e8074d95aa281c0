"""Unit-of-work contract shared by the store backends.

An atomic unit is opened with `store.atomic()`. Inside it the session offers
reads of current persisted state and `apply(*writes)`; writes become visible
to other units only when the block exits without an exception. Any exception
discards every write of the unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ContextManager, Iterable, Optional, Protocol, Sequence, Union

from relayer.core.models import (
    ControllerStatus,
    EventCursor,
    QuarantinedEvent,
    Transaction,
    TransactionStatus,
    VaultControllerTransaction,
)


@dataclass(frozen=True)
class InsertTransaction:
    transaction: Transaction


@dataclass(frozen=True)
class UpdateTransaction:
    transaction: Transaction  # matched by id


@dataclass(frozen=True)
class InsertController:
    controller: VaultControllerTransaction


@dataclass(frozen=True)
class UpdateController:
    controller: VaultControllerTransaction  # matched by id; shares/count must not change


@dataclass(frozen=True)
class LinkMembers:
    """Point every listed transaction at the controller sealed for `l1_batch_number`."""
    l1_batch_number: int
    transaction_ids: tuple[int, ...]
    at: datetime


@dataclass(frozen=True)
class DeleteController:
    controller_id: int


@dataclass(frozen=True)
class SetCursor:
    event_name: str
    last_processed_vid: int
    at: datetime


@dataclass(frozen=True)
class Quarantine:
    event: QuarantinedEvent


@dataclass(frozen=True)
class ReleaseQuarantine:
    event_name: str
    vid: int


Write = Union[
    InsertTransaction,
    UpdateTransaction,
    InsertController,
    UpdateController,
    LinkMembers,
    DeleteController,
    SetCursor,
    Quarantine,
    ReleaseQuarantine,
]


class Session(Protocol):
    """Reads and writes inside one atomic unit.

    `for_update=True` takes a row lock on backends that support it; the
    in-memory backend serialises whole units instead.
    """

    def cursor(self, event_name: str, *, for_update: bool = False) -> Optional[EventCursor]:
        ...

    def cursors(self) -> list[EventCursor]:
        ...

    def transaction(self, transaction_id: int) -> Optional[Transaction]:
        ...

    def transaction_by_bridge_hash(self, bridge_hash: str, *, for_update: bool = False) -> Optional[Transaction]:
        ...

    def transactions_with_status(
        self,
        status: TransactionStatus,
        *,
        limit: int = 100,
        created_before: Optional[datetime] = None,
        for_update: bool = False,
    ) -> list[Transaction]:
        ...

    def unlinked_batch_members(self, l1_batch_number: int, *, for_update: bool = False) -> list[Transaction]:
        """PENDING or FINALIZED transactions of the batch with no controller link."""
        ...

    def batch_members(self, controller_id: int) -> list[Transaction]:
        ...

    def controller(self, controller_id: int, *, for_update: bool = False) -> Optional[VaultControllerTransaction]:
        ...

    def controller_by_batch(self, l1_batch_number: int) -> Optional[VaultControllerTransaction]:
        ...

    def controllers_with_status(
        self, statuses: Iterable[ControllerStatus], *, limit: int = 100
    ) -> list[VaultControllerTransaction]:
        ...

    def count_transactions_by_status(self) -> dict[TransactionStatus, int]:
        ...

    def quarantined(self, bridge_hash: str) -> list[QuarantinedEvent]:
        ...

    def lock_bridge_hash(self, bridge_hash: str) -> None:
        """Serialise every unit touching `bridge_hash` until this unit ends.

        Taken before the first read so that an initiation and a finalization
        for the same hash on different partitions see each other's writes.
        """
        ...

    def apply(self, *writes: Write) -> None:
        ...


class Store(Protocol):
    def atomic(self) -> ContextManager[Session]:
        ...


def commit(store: Store, writes: Sequence[Write]) -> None:
    """Apply a prepared list of writes as one unit."""
    with store.atomic() as session:
        session.apply(*writes)

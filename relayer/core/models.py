"""Persisted records and upstream event types.

All records are frozen; state changes produce a new record via
`dataclasses.replace` and are persisted through a store write.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class BridgeOrigin(str, Enum):
    """Which chain initiated the transfer."""
    ORIGIN_A = "origin_a"
    ORIGIN_B = "origin_b"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    FINALIZED = "FINALIZED"
    FAILED = "FAILED"


class ControllerStatus(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class EventKind(str, Enum):
    INITIATED = "initiated"
    FINALIZED = "finalized"
    L1_BATCH_ASSIGNED = "l1_batch_assigned"


@dataclass(frozen=True)
class Unlinked:
    """Transaction not (yet) aggregated into a controller transaction."""


@dataclass(frozen=True)
class LinkedTo:
    controller_id: int


ControllerLink = Union[Unlinked, LinkedTo]

UNLINKED = Unlinked()


@dataclass(frozen=True)
class Transaction:
    origin: BridgeOrigin
    status: TransactionStatus
    bridge_initiated_transaction_hash: str
    created_at: datetime
    updated_at: datetime
    finalized_transaction_hash: str = ""
    block_number: Optional[int] = None
    origin_block_number: Optional[int] = None
    l1_batch_number: Optional[int] = None
    payload: Optional[bytes] = None
    event_type: Optional[str] = None
    subgraph_id: Optional[str] = None
    controller: ControllerLink = UNLINKED
    id: Optional[int] = None

    @property
    def is_linked(self) -> bool:
        return isinstance(self.controller, LinkedTo)


@dataclass(frozen=True)
class EventCursor:
    event_name: str
    last_processed_vid: int
    created_at: datetime
    updated_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class VaultControllerTransaction:
    """One aggregated submission per settlement batch.

    `total_shares` and `message_hash_count` are fixed at sealing time.
    """
    l1_batch_number: int
    total_shares: int
    message_hash_count: int
    status: ControllerStatus
    created_at: datetime
    updated_at: datetime
    transaction_hash: str = ""
    submission_attempts: int = 0
    last_error: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class QuarantinedEvent:
    """A finalization that arrived before its initiation."""
    event_name: str
    vid: int
    bridge_initiated_transaction_hash: str
    finalized_transaction_hash: str
    block_number: Optional[int]
    quarantined_at: datetime


@dataclass(frozen=True)
class RelayEvent:
    """One upstream event, positioned by `vid` within its `event_name` feed."""
    vid: int
    event_name: str
    kind: EventKind
    transaction_hash: str
    finalized_transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    origin: Optional[BridgeOrigin] = None
    payload: Optional[bytes] = None
    subgraph_id: Optional[str] = None
    event_type: Optional[str] = None
    l1_batch_number: Optional[int] = None

"""Destination-chain submitter adapter.

The relayer core never talks to a chain directly: it hands sealed controller
transactions to a `DestinationSubmitter` and polls it for inclusion.
Implementations raise `TransientSubmissionError` for failures worth retrying
(RPC timeouts, nonce races, dropped connections); any other exception is
treated as a rejection.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from relayer.core.models import VaultControllerTransaction


class ReceiptStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    PENDING = "PENDING"


@dataclass(frozen=True)
class Receipt:
    status: ReceiptStatus
    block_number: Optional[int] = None
    message: str | None = None


class DestinationSubmitter(Protocol):
    def submit(self, controller: VaultControllerTransaction) -> str:
        """Send the aggregated update; return the destination transaction hash."""
        ...

    def confirm(self, transaction_hash: str) -> Receipt:
        ...


class DryRunSubmitter:
    """Stub submitter.

    In dry_run mode we derive a deterministic hash from the batch and report
    every submission as confirmed. Real implementations wrap a chain client.
    """

    name = "dry-run"

    def __init__(self, *, dry_run: bool = True) -> None:
        self.dry_run = dry_run
        self.submitted: set[str] = set()

    def submit(self, controller: VaultControllerTransaction) -> str:
        digest = hashlib.sha256(
            f"{controller.l1_batch_number}:{controller.total_shares}:{controller.message_hash_count}".encode()
        ).hexdigest()
        tx_hash = "0x" + digest
        self.submitted.add(tx_hash)
        return tx_hash

    def confirm(self, transaction_hash: str) -> Receipt:
        if transaction_hash not in self.submitted:
            return Receipt(status=ReceiptStatus.PENDING, message="unknown")
        return Receipt(status=ReceiptStatus.CONFIRMED, message="dry_run" if self.dry_run else "stub")

from __future__ import annotations


class RelayerError(Exception):
    """Base class for relayer failures."""


class ConfigurationError(RelayerError):
    """Missing or invalid configuration. Fatal at startup."""


class InvalidEvent(RelayerError, ValueError):
    """An upstream event does not match the wire contract."""


class OrphanFinalization(RelayerError):
    """A finalization arrived before (or without) its initiation."""

    def __init__(self, bridge_hash: str) -> None:
        super().__init__(f"no pending transaction for {bridge_hash}")
        self.bridge_hash = bridge_hash


class PartialBatchFailure(RelayerError):
    """Sealing a batch failed; the whole attempt was rolled back."""

    def __init__(self, l1_batch_number: int, reason: str) -> None:
        super().__init__(f"sealing l1 batch {l1_batch_number} failed: {reason}")
        self.l1_batch_number = l1_batch_number
        self.reason = reason


class TransientSubmissionError(RelayerError):
    """A destination-chain call failed in a way worth retrying."""


class SubmissionExhausted(RelayerError):
    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class IntegrityViolation(RelayerError):
    """A write would break a persisted invariant (immutable column, restricted delete)."""


class DuplicateKey(IntegrityViolation):
    """A unique key already exists (e.g. a second controller for one l1 batch)."""

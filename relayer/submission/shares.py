from __future__ import annotations

from typing import Optional, Protocol


WORD_SIZE = 32


class ShareDecoder(Protocol):
    def shares(self, payload: Optional[bytes]) -> int:
        """Share amount carried by a transaction payload."""
        ...


class TrailingWordShareDecoder:
    """Reads the share amount from the last 32-byte ABI word of the payload.

    Withdrawal messages encode `(nonce, kind, vault, receiver, shares)`, so the
    share amount is the final big-endian uint256.
    """

    def shares(self, payload: Optional[bytes]) -> int:
        if not payload:
            raise ValueError("payload is required to derive shares")
        if len(payload) < WORD_SIZE or len(payload) % WORD_SIZE:
            raise ValueError(f"payload length {len(payload)} is not a whole number of 32-byte words")
        return int.from_bytes(payload[-WORD_SIZE:], "big")


def encode_shares_word(shares: int) -> bytes:
    """Inverse of `TrailingWordShareDecoder` for a single word; used by fixtures and tools."""
    if shares < 0:
        raise ValueError("shares must be >= 0")
    return shares.to_bytes(WORD_SIZE, "big")

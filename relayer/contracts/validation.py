from __future__ import annotations

import re
from typing import Any

from relayer.core.errors import InvalidEvent
from relayer.core.models import BridgeOrigin, EventKind, RelayEvent


EVENT_REQUIRED_KEYS = {"vid", "event_name", "kind", "transaction_hash"}
EVENT_OPTIONAL_KEYS = {
    "finalized_transaction_hash",
    "block_number",
    "origin",
    "payload",
    "subgraph_id",
    "event_type",
    "l1_batch_number",
}

_HEX = re.compile(r"^0x[0-9a-fA-F]*$")


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise InvalidEvent(f"missing keys: {sorted(missing)}")
    if extra:
        raise InvalidEvent(f"extra keys not allowed: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise InvalidEvent(f"{k} must be non-empty string")
    return v


def _require_int(d: dict[str, Any], k: str, *, minimum: int = 0) -> int:
    v = d.get(k)
    # bool is an int subclass; reject it explicitly.
    if not isinstance(v, int) or isinstance(v, bool):
        raise InvalidEvent(f"{k} must be int")
    if v < minimum:
        raise InvalidEvent(f"{k} must be >= {minimum}")
    return v


def _require_hex(d: dict[str, Any], k: str, *, allow_empty: bool = False) -> str:
    v = _require_str(d, k)
    if not _HEX.match(v):
        raise InvalidEvent(f"{k} must be 0x-prefixed hex")
    if not allow_empty and len(v) == 2:
        raise InvalidEvent(f"{k} must not be empty")
    if (len(v) - 2) % 2:
        raise InvalidEvent(f"{k} must have an even number of hex digits")
    return v.lower()


def _optional(d: dict[str, Any], k: str) -> bool:
    return d.get(k) is not None


def validate_event_dict(event: dict[str, Any]) -> None:
    """Strict validation of one upstream event.

    - no unknown fields
    - kind-specific required fields
    """

    _require_exact_keys(event, required=EVENT_REQUIRED_KEYS, optional=EVENT_OPTIONAL_KEYS)
    _require_int(event, "vid", minimum=1)
    _require_str(event, "event_name")
    _require_hex(event, "transaction_hash")

    kind_raw = _require_str(event, "kind")
    try:
        kind = EventKind(kind_raw)
    except ValueError as e:
        raise InvalidEvent(f"unknown kind: {kind_raw}") from e

    if _optional(event, "block_number"):
        _require_int(event, "block_number")
    if _optional(event, "l1_batch_number"):
        _require_int(event, "l1_batch_number")
    if _optional(event, "payload"):
        _require_hex(event, "payload", allow_empty=True)
    if _optional(event, "finalized_transaction_hash"):
        _require_hex(event, "finalized_transaction_hash")
    for k in ("subgraph_id", "event_type"):
        if _optional(event, k):
            _require_str(event, k)
    if _optional(event, "origin"):
        origin = _require_str(event, "origin")
        if origin not in {o.value for o in BridgeOrigin}:
            raise InvalidEvent(f"origin must be one of {sorted(o.value for o in BridgeOrigin)}")

    if kind == EventKind.INITIATED and not _optional(event, "origin"):
        raise InvalidEvent("initiated event requires origin")
    if kind == EventKind.FINALIZED and not _optional(event, "finalized_transaction_hash"):
        raise InvalidEvent("finalized event requires finalized_transaction_hash")
    if kind == EventKind.L1_BATCH_ASSIGNED and not _optional(event, "l1_batch_number"):
        raise InvalidEvent("l1_batch_assigned event requires l1_batch_number")


def parse_event(event: dict[str, Any]) -> RelayEvent:
    validate_event_dict(event)
    payload = event.get("payload")
    origin = event.get("origin")
    finalized = event.get("finalized_transaction_hash")
    return RelayEvent(
        vid=event["vid"],
        event_name=event["event_name"],
        kind=EventKind(event["kind"]),
        transaction_hash=event["transaction_hash"].lower(),
        finalized_transaction_hash=finalized.lower() if finalized else None,
        block_number=event.get("block_number"),
        origin=BridgeOrigin(origin) if origin else None,
        payload=bytes.fromhex(payload[2:]) if payload is not None else None,
        subgraph_id=event.get("subgraph_id"),
        event_type=event.get("event_type"),
        l1_batch_number=event.get("l1_batch_number"),
    )


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    d: dict[str, Any] = {
        "vid": event.vid,
        "event_name": event.event_name,
        "kind": event.kind.value,
        "transaction_hash": event.transaction_hash,
    }
    if event.finalized_transaction_hash is not None:
        d["finalized_transaction_hash"] = event.finalized_transaction_hash
    if event.block_number is not None:
        d["block_number"] = event.block_number
    if event.origin is not None:
        d["origin"] = event.origin.value
    if event.payload is not None:
        d["payload"] = "0x" + event.payload.hex()
    if event.subgraph_id is not None:
        d["subgraph_id"] = event.subgraph_id
    if event.event_type is not None:
        d["event_type"] = event.event_type
    if event.l1_batch_number is not None:
        d["l1_batch_number"] = event.l1_batch_number
    return d

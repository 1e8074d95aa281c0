from __future__ import annotations

import json
from pathlib import Path

import pytest

from relayer.contracts.validation import event_to_dict, parse_event, validate_event_dict
from relayer.core.errors import InvalidEvent
from relayer.core.models import BridgeOrigin, EventKind


GOLDEN_DIR = Path("contracts") / "golden_events" / "relay"


def _load(name: str) -> dict:
    return json.loads((GOLDEN_DIR / name).read_text(encoding="utf-8"))


@pytest.mark.parametrize("path", sorted(GOLDEN_DIR.glob("*.json")))
def test_golden_events_contract_validation(path: Path) -> None:
    ev = json.loads(path.read_text(encoding="utf-8"))
    if "invalid" in path.name:
        with pytest.raises(ValueError):
            validate_event_dict(ev)
    else:
        validate_event_dict(ev)


def test_parse_initiated_event_decodes_payload() -> None:
    ev = parse_event(_load("01_initiated_origin_a.json"))
    assert ev.kind == EventKind.INITIATED
    assert ev.origin == BridgeOrigin.ORIGIN_A
    assert ev.vid == 1
    assert ev.payload is not None
    assert len(ev.payload) == 5 * 32
    assert int.from_bytes(ev.payload[-32:], "big") == 1000


def test_event_to_dict_is_accepted_by_validator() -> None:
    raw = _load("04_finalized.json")
    assert event_to_dict(parse_event(raw)) == raw


def test_invalid_event_is_a_value_error() -> None:
    assert issubclass(InvalidEvent, ValueError)


def test_bool_is_not_accepted_as_vid() -> None:
    raw = _load("03_l1_batch_assigned.json")
    raw["vid"] = True
    with pytest.raises(InvalidEvent):
        validate_event_dict(raw)


def test_unknown_kind_and_origin_are_rejected() -> None:
    raw = _load("01_initiated_origin_a.json")
    with pytest.raises(InvalidEvent):
        validate_event_dict({**raw, "kind": "bridged"})
    with pytest.raises(InvalidEvent):
        validate_event_dict({**raw, "origin": "origin_c"})


def test_odd_length_payload_is_rejected() -> None:
    raw = _load("01_initiated_origin_a.json")
    with pytest.raises(InvalidEvent):
        validate_event_dict({**raw, "payload": "0xabc"})

from __future__ import annotations

# Redis key layout shared by the event feed, the closure signal and the replay tool.

EVENT_STREAM_PREFIX = "relay.events"
L1_BATCH_DETAILS_KEY = "relay.l1_batches.details"


def event_stream(event_name: str) -> str:
    return f"{EVENT_STREAM_PREFIX}.{event_name}"


def stream_entry_id(vid: int) -> str:
    """Stream entry ids mirror the upstream vid so XRANGE resumes from a cursor."""
    return f"{vid}-0"

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from relayer.contracts.streams import event_stream, stream_entry_id
from relayer.contracts.validation import validate_event_dict


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedEntry:
    """One upstream entry, still in wire form.

    `vid` comes from the feed position, so a malformed body can still be
    skipped past.
    """

    vid: int
    body: dict[str, Any]


class EventFeed(Protocol):
    def fetch(self, event_name: str, after_vid: int, limit: int) -> list[FeedEntry]:
        """Entries with vid > after_vid, ascending, at most `limit`."""
        ...


class InMemoryEventFeed:
    """Feed backed by lists; used by tests and local dry runs."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[int, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def publish(self, event_name: str, body: dict[str, Any], *, vid: int | None = None) -> None:
        position = vid if vid is not None else body["vid"]
        with self._lock:
            self._entries.setdefault(event_name, {})[int(position)] = dict(body)

    def fetch(self, event_name: str, after_vid: int, limit: int) -> list[FeedEntry]:
        with self._lock:
            entries = self._entries.get(event_name, {})
            vids = sorted(v for v in entries if v > after_vid)[:limit]
            return [FeedEntry(vid=v, body=dict(entries[v])) for v in vids]


class RedisStreamEventFeed:
    """Redis Streams feed: one stream per event name, entry id `<vid>-0`.

    Reads are plain XRANGE scans from the cursor position; no consumer groups,
    the durable cursor is the only read position.
    """

    def __init__(self, redis_url: str, *, client=None) -> None:
        self.redis_url = redis_url
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def publish(self, event_name: str, body: dict[str, Any]) -> str:
        validate_event_dict(body)
        client = self._get_client()
        payload = json.dumps(body, ensure_ascii=False)
        return client.xadd(event_stream(event_name), {"event": payload}, id=stream_entry_id(body["vid"]))

    def fetch(self, event_name: str, after_vid: int, limit: int) -> list[FeedEntry]:
        client = self._get_client()
        items = client.xrange(event_stream(event_name), min=f"({stream_entry_id(after_vid)}", max="+", count=limit)
        out: list[FeedEntry] = []
        for (msg_id, fields) in items:
            vid = int(str(msg_id).split("-", 1)[0])
            body = fields.get("event")
            try:
                decoded = json.loads(body) if body else {}
            except json.JSONDecodeError as e:
                logger.warning("feed_entry_not_json", extra={"event_name": event_name, "vid": vid, "error": str(e)})
                decoded = {}
            out.append(FeedEntry(vid=vid, body=decoded if isinstance(decoded, dict) else {}))
        return out

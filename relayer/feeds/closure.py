from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping, Optional, Protocol

from relayer.contracts.streams import L1_BATCH_DETAILS_KEY


logger = logging.getLogger(__name__)

ZERO_HASH = "0x" + "0" * 64


def is_batch_executed(details: Optional[Mapping[str, Any]]) -> bool:
    """True once the batch has a real execute transaction on L1.

    `details` is the L1 batch details object; a missing, null or all-zero
    `executeTxHash` means the batch is not final yet.
    """
    if not details:
        return False
    tx_hash = details.get("executeTxHash")
    if not tx_hash:
        return False
    return str(tx_hash).lower() != ZERO_HASH


class BatchClosureSignal(Protocol):
    def closed_batches(self) -> list[int]:
        ...


class StaticBatchClosureSignal:
    def __init__(self, closed: Iterable[int] = ()) -> None:
        self._closed = set(closed)

    def close(self, l1_batch_number: int) -> None:
        self._closed.add(l1_batch_number)

    def closed_batches(self) -> list[int]:
        return sorted(self._closed)


class RedisBatchClosureSignal:
    """L1 batch details kept in a Redis hash: field = batch number, value = details JSON.

    A batch counts as closed once its details pass `is_batch_executed`;
    the watcher that polls the L1 node only has to keep the hash current.
    """

    def __init__(self, redis_url: str, *, key: str = L1_BATCH_DETAILS_KEY, client=None) -> None:
        self.redis_url = redis_url
        self.key = key
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def record(self, l1_batch_number: int, details: Mapping[str, Any]) -> None:
        self._get_client().hset(self.key, str(l1_batch_number), json.dumps(dict(details)))

    def closed_batches(self) -> list[int]:
        closed: list[int] = []
        for (field, raw) in self._get_client().hgetall(self.key).items():
            try:
                details = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning("l1_batch_details_not_json", extra={"l1_batch_number": field, "error": str(e)})
                continue
            if isinstance(details, dict) and is_batch_executed(details):
                closed.append(int(field))
        return sorted(closed)

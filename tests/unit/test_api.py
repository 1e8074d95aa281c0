from __future__ import annotations

from contextlib import contextmanager

from fastapi.testclient import TestClient

from relayer.api.main import create_app
from relayer.core.clock import FixedClock
from relayer.core.models import BridgeOrigin, ControllerStatus, Transaction, TransactionStatus, VaultControllerTransaction
from relayer.store.base import InsertController, InsertTransaction, SetCursor, commit
from relayer.metrics.prometheus import RelayerMetrics
from relayer.store.memory import InMemoryStore


def _seeded_store() -> InMemoryStore:
    now = FixedClock().now()
    store = InMemoryStore()
    commit(
        store,
        [
            SetCursor("origin_a.bridge", 12, now),
            InsertTransaction(
                Transaction(
                    origin=BridgeOrigin.ORIGIN_A,
                    status=TransactionStatus.FAILED,
                    bridge_initiated_transaction_hash="0xh1",
                    created_at=now,
                    updated_at=now,
                )
            ),
            InsertController(
                VaultControllerTransaction(
                    l1_batch_number=42,
                    total_shares=2**100,
                    message_hash_count=1,
                    status=ControllerStatus.FAILED,
                    created_at=now,
                    updated_at=now,
                    submission_attempts=5,
                    last_error="submission exhausted",
                )
            ),
        ],
    )
    return store


def test_health() -> None:
    client = TestClient(create_app(InMemoryStore()))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "checks": {"database": True, "workers": {}}}


def test_cursors() -> None:
    client = TestClient(create_app(_seeded_store()))
    body = client.get("/cursors").json()
    assert [(c["event_name"], c["last_processed_vid"]) for c in body] == [("origin_a.bridge", 12)]


def test_failed_lists_transactions_and_controllers() -> None:
    client = TestClient(create_app(_seeded_store()))
    body = client.get("/failed").json()
    assert [t["bridge_initiated_transaction_hash"] for t in body["transactions"]] == ["0xh1"]
    [controller] = body["controllers"]
    assert controller["l1_batch_number"] == 42
    assert controller["total_shares"] == str(2**100)
    assert controller["status"] == "FAILED"
    assert controller["submission_attempts"] == 5


class _Workers:
    def __init__(self, status: dict[str, bool]) -> None:
        self.metrics = RelayerMetrics()
        self._status = status

    def worker_status(self) -> dict[str, bool]:
        return dict(self._status)


class _DownStore:
    @contextmanager
    def atomic(self):
        raise ConnectionError("connection refused")
        yield


def test_health_is_degraded_when_a_worker_died() -> None:
    workers = _Workers({"relayer-partition-origin_a.bridge": True, "relayer-maintenance": False})
    client = TestClient(create_app(InMemoryStore(), orchestrator=workers))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "degraded"
    assert r.json()["checks"]["workers"]["relayer-maintenance"] is False


def test_health_is_unhealthy_when_the_store_does_not_answer() -> None:
    workers = _Workers({"relayer-maintenance": True})
    client = TestClient(create_app(_DownStore(), orchestrator=workers))
    r = client.get("/health")
    assert r.status_code == 503
    assert r.json() == {
        "status": "unhealthy",
        "checks": {"database": False, "workers": {"relayer-maintenance": True}},
    }


def test_metrics_exposes_store_gauges_and_counters() -> None:
    metrics = RelayerMetrics()
    metrics.batches_sealed.inc()
    client = TestClient(create_app(_seeded_store(), metrics=metrics))
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'relayer_transactions_by_status{status="FAILED"} 1.0' in r.text
    assert "relayer_pending_transactions 0.0" in r.text
    assert "relayer_batches_processed_total 1.0" in r.text


def test_metrics_are_served_when_the_store_is_down() -> None:
    metrics = RelayerMetrics()
    metrics.batches_sealed.inc()
    client = TestClient(create_app(_DownStore(), metrics=metrics))
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "relayer_batches_processed_total 1.0" in r.text

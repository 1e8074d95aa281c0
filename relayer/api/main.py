from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Optional

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
import uvicorn

from relayer.core.models import ControllerStatus, Transaction, TransactionStatus, VaultControllerTransaction
from relayer.core.settings import load_settings
from relayer.metrics.prometheus import RelayerMetrics
from relayer.orchestrator.relay import RelayOrchestrator
from relayer.store.base import Store


logger = logging.getLogger(__name__)


def _transaction_view(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "bridge_initiated_transaction_hash": tx.bridge_initiated_transaction_hash,
        "origin": tx.origin.value,
        "status": tx.status.value,
        "l1_batch_number": tx.l1_batch_number,
        "created_at": tx.created_at.isoformat(),
        "updated_at": tx.updated_at.isoformat(),
    }


def _controller_view(c: VaultControllerTransaction) -> dict[str, Any]:
    d = asdict(c)
    d["status"] = c.status.value
    d["total_shares"] = str(c.total_shares)  # uint256 does not fit a JSON number
    d["created_at"] = c.created_at.isoformat()
    d["updated_at"] = c.updated_at.isoformat()
    return d


def create_app(
    store: Store,
    *,
    metrics: Optional[RelayerMetrics] = None,
    orchestrator: Optional[RelayOrchestrator] = None,
) -> FastAPI:
    """HTTP surface over a store.

    `/health` is healthy when the store answers and every worker thread is
    alive, degraded when a worker has died, and unhealthy (503) when the
    store does not answer.
    """
    app = FastAPI(title="Bridge Relayer API")
    if metrics is None:
        metrics = orchestrator.metrics if orchestrator is not None else RelayerMetrics()

    @app.get("/health")
    def health():
        try:
            with store.atomic() as session:
                session.cursors()
            database = True
        except Exception:
            logger.exception("health_database_check_failed")
            database = False
        workers = orchestrator.worker_status() if orchestrator is not None else {}

        if not database:
            status = "unhealthy"
        elif not all(workers.values()):
            status = "degraded"
        else:
            status = "healthy"
        body = {"status": status, "checks": {"database": database, "workers": workers}}
        if status == "unhealthy":
            return JSONResponse(body, status_code=503)
        return body

    @app.get("/metrics")
    def prometheus_metrics() -> Response:
        try:
            metrics.refresh(store)
        except Exception:
            # Counters are served even when the store-backed gauges are stale.
            logger.exception("metrics_refresh_failed")
        return Response(metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/cursors")
    def cursors() -> list:
        with store.atomic() as session:
            rows = session.cursors()
        return [
            {
                "event_name": c.event_name,
                "last_processed_vid": c.last_processed_vid,
                "updated_at": c.updated_at.isoformat(),
            }
            for c in rows
        ]

    @app.get("/failed")
    def failed(limit: int = 100) -> dict:
        with store.atomic() as session:
            transactions = session.transactions_with_status(TransactionStatus.FAILED, limit=limit)
            controllers = session.controllers_with_status((ControllerStatus.FAILED,), limit=limit)
        return {
            "transactions": [_transaction_view(tx) for tx in transactions],
            "controllers": [_controller_view(c) for c in controllers],
        }

    return app


def main() -> None:
    # Imported here so the API module does not pull in the whole service wiring.
    from relayer.orchestrator.service import create_store

    s = load_settings()
    uvicorn.run(create_app(create_store(s)), host="0.0.0.0", port=s.api_port)


if __name__ == "__main__":
    main()

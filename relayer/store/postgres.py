"""PostgreSQL store for production.

Schema (created by `ensure_schema()`):

    CREATE TABLE vault_controller_transactions (...);   -- unique l1_batch_number
    CREATE TABLE transactions (...);                    -- FK ... ON DELETE RESTRICT, unique bridge hash
    CREATE TABLE event_cursors (...);                   -- PRIMARY KEY (id, event_name)
    CREATE TABLE quarantined_events (...);

Every unit runs at READ COMMITTED. Rows a decision depends on are read with
SELECT ... FOR UPDATE so concurrent relayer instances serialise on them.
Units keyed by a bridge hash also take a transaction-scoped advisory lock on
the hash first: a row that does not exist yet cannot be locked FOR UPDATE.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from relayer.core.errors import DuplicateKey, IntegrityViolation
from relayer.core.models import (
    UNLINKED,
    BridgeOrigin,
    ControllerStatus,
    EventCursor,
    LinkedTo,
    QuarantinedEvent,
    Transaction,
    TransactionStatus,
    VaultControllerTransaction,
)

from .base import (
    DeleteController,
    InsertController,
    InsertTransaction,
    LinkMembers,
    Quarantine,
    ReleaseQuarantine,
    SetCursor,
    UpdateController,
    UpdateTransaction,
    Write,
)


logger = logging.getLogger(__name__)


SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS vault_controller_transactions (
    id BIGSERIAL PRIMARY KEY,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    transaction_hash TEXT NOT NULL DEFAULT '',
    l1_batch_number BIGINT NOT NULL,
    total_shares NUMERIC(78, 0) NOT NULL,
    message_hash_count INTEGER NOT NULL,
    status VARCHAR(16) NOT NULL,
    submission_attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_vct_l1_batch_number ON vault_controller_transactions(l1_batch_number);
CREATE INDEX IF NOT EXISTS idx_vct_transaction_hash ON vault_controller_transactions(transaction_hash);
CREATE INDEX IF NOT EXISTS idx_vct_status ON vault_controller_transactions(status);

CREATE TABLE IF NOT EXISTS transactions (
    id BIGSERIAL PRIMARY KEY,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    origin VARCHAR(16) NOT NULL,
    status VARCHAR(16) NOT NULL,
    bridge_initiated_transaction_hash TEXT NOT NULL,
    finalized_transaction_hash TEXT NOT NULL DEFAULT '',
    block_number BIGINT,
    origin_block_number BIGINT,
    l1_batch_number BIGINT,
    payload BYTEA,
    event_type TEXT,
    subgraph_id TEXT,
    vault_controller_transaction_id BIGINT
        REFERENCES vault_controller_transactions(id) ON DELETE RESTRICT
);
CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status);
CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_bridge_hash ON transactions(bridge_initiated_transaction_hash);
CREATE INDEX IF NOT EXISTS idx_transactions_finalized_hash ON transactions(finalized_transaction_hash);
CREATE INDEX IF NOT EXISTS idx_transactions_block_number ON transactions(block_number);
CREATE INDEX IF NOT EXISTS idx_transactions_origin_block_number ON transactions(origin_block_number);
CREATE INDEX IF NOT EXISTS idx_transactions_l1_batch_number ON transactions(l1_batch_number);
CREATE INDEX IF NOT EXISTS idx_transactions_subgraph_id ON transactions(subgraph_id);

CREATE TABLE IF NOT EXISTS event_cursors (
    id BIGSERIAL,
    event_name TEXT NOT NULL,
    last_processed_vid BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (id, event_name)
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_event_cursors_event_name ON event_cursors(event_name);

CREATE TABLE IF NOT EXISTS quarantined_events (
    event_name TEXT NOT NULL,
    vid BIGINT NOT NULL,
    bridge_initiated_transaction_hash TEXT NOT NULL,
    finalized_transaction_hash TEXT NOT NULL,
    block_number BIGINT,
    quarantined_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (event_name, vid)
);
CREATE INDEX IF NOT EXISTS idx_quarantined_bridge_hash ON quarantined_events(bridge_initiated_transaction_hash);
"""

_TX_COLUMNS = (
    "id, created_at, updated_at, origin, status, bridge_initiated_transaction_hash, "
    "finalized_transaction_hash, block_number, origin_block_number, l1_batch_number, "
    "payload, event_type, subgraph_id, vault_controller_transaction_id"
)
_VCT_COLUMNS = (
    "id, created_at, updated_at, transaction_hash, l1_batch_number, total_shares, "
    "message_hash_count, status, submission_attempts, last_error"
)


def _rows(cur) -> list[dict[str, Any]]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


def _lock(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


def _row_to_transaction(d: dict[str, Any]) -> Transaction:
    controller_id = d.get("vault_controller_transaction_id")
    payload = d.get("payload")
    return Transaction(
        id=d["id"],
        created_at=d["created_at"],
        updated_at=d["updated_at"],
        origin=BridgeOrigin(d["origin"]),
        status=TransactionStatus(d["status"]),
        bridge_initiated_transaction_hash=d["bridge_initiated_transaction_hash"],
        finalized_transaction_hash=d["finalized_transaction_hash"] or "",
        block_number=d.get("block_number"),
        origin_block_number=d.get("origin_block_number"),
        l1_batch_number=d.get("l1_batch_number"),
        payload=bytes(payload) if payload is not None else None,
        event_type=d.get("event_type"),
        subgraph_id=d.get("subgraph_id"),
        controller=LinkedTo(controller_id) if controller_id is not None else UNLINKED,
    )


def _row_to_controller(d: dict[str, Any]) -> VaultControllerTransaction:
    return VaultControllerTransaction(
        id=d["id"],
        created_at=d["created_at"],
        updated_at=d["updated_at"],
        transaction_hash=d["transaction_hash"] or "",
        l1_batch_number=int(d["l1_batch_number"]),
        total_shares=int(d["total_shares"]),
        message_hash_count=int(d["message_hash_count"]),
        status=ControllerStatus(d["status"]),
        submission_attempts=int(d["submission_attempts"]),
        last_error=d.get("last_error"),
    )


def _row_to_cursor(d: dict[str, Any]) -> EventCursor:
    return EventCursor(
        id=d["id"],
        event_name=d["event_name"],
        last_processed_vid=int(d["last_processed_vid"]),
        created_at=d["created_at"],
        updated_at=d["updated_at"],
    )


def _row_to_quarantined(d: dict[str, Any]) -> QuarantinedEvent:
    return QuarantinedEvent(
        event_name=d["event_name"],
        vid=int(d["vid"]),
        bridge_initiated_transaction_hash=d["bridge_initiated_transaction_hash"],
        finalized_transaction_hash=d["finalized_transaction_hash"],
        block_number=d.get("block_number"),
        quarantined_at=d["quarantined_at"],
    )


def _controller_id(transaction: Transaction) -> Optional[int]:
    link = transaction.controller
    return link.controller_id if isinstance(link, LinkedTo) else None


class PostgresSession:
    def __init__(self, cur) -> None:
        self._cur = cur

    # reads

    def cursor(self, event_name: str, *, for_update: bool = False) -> Optional[EventCursor]:
        self._cur.execute(
            "SELECT id, event_name, last_processed_vid, created_at, updated_at "
            "FROM event_cursors WHERE event_name = %s" + _lock(for_update),
            (event_name,),
        )
        rows = _rows(self._cur)
        return _row_to_cursor(rows[0]) if rows else None

    def cursors(self) -> list[EventCursor]:
        self._cur.execute(
            "SELECT id, event_name, last_processed_vid, created_at, updated_at FROM event_cursors ORDER BY event_name"
        )
        return [_row_to_cursor(d) for d in _rows(self._cur)]

    def transaction(self, transaction_id: int) -> Optional[Transaction]:
        self._cur.execute(f"SELECT {_TX_COLUMNS} FROM transactions WHERE id = %s", (transaction_id,))
        rows = _rows(self._cur)
        return _row_to_transaction(rows[0]) if rows else None

    def transaction_by_bridge_hash(self, bridge_hash: str, *, for_update: bool = False) -> Optional[Transaction]:
        self._cur.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions WHERE bridge_initiated_transaction_hash = %s "
            "ORDER BY id LIMIT 1" + _lock(for_update),
            (bridge_hash,),
        )
        rows = _rows(self._cur)
        return _row_to_transaction(rows[0]) if rows else None

    def transactions_with_status(
        self,
        status: TransactionStatus,
        *,
        limit: int = 100,
        created_before: Optional[datetime] = None,
        for_update: bool = False,
    ) -> list[Transaction]:
        sql = f"SELECT {_TX_COLUMNS} FROM transactions WHERE status = %s"
        params: list[Any] = [status.value]
        if created_before is not None:
            sql += " AND created_at < %s"
            params.append(created_before)
        sql += " ORDER BY created_at, id LIMIT %s" + _lock(for_update)
        params.append(limit)
        self._cur.execute(sql, tuple(params))
        return [_row_to_transaction(d) for d in _rows(self._cur)]

    def unlinked_batch_members(self, l1_batch_number: int, *, for_update: bool = False) -> list[Transaction]:
        self._cur.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions "
            "WHERE l1_batch_number = %s AND status IN (%s, %s) AND vault_controller_transaction_id IS NULL "
            "ORDER BY id" + _lock(for_update),
            (l1_batch_number, TransactionStatus.PENDING.value, TransactionStatus.FINALIZED.value),
        )
        return [_row_to_transaction(d) for d in _rows(self._cur)]

    def batch_members(self, controller_id: int) -> list[Transaction]:
        self._cur.execute(
            f"SELECT {_TX_COLUMNS} FROM transactions WHERE vault_controller_transaction_id = %s ORDER BY id",
            (controller_id,),
        )
        return [_row_to_transaction(d) for d in _rows(self._cur)]

    def controller(self, controller_id: int, *, for_update: bool = False) -> Optional[VaultControllerTransaction]:
        self._cur.execute(
            f"SELECT {_VCT_COLUMNS} FROM vault_controller_transactions WHERE id = %s" + _lock(for_update),
            (controller_id,),
        )
        rows = _rows(self._cur)
        return _row_to_controller(rows[0]) if rows else None

    def controller_by_batch(self, l1_batch_number: int) -> Optional[VaultControllerTransaction]:
        self._cur.execute(
            f"SELECT {_VCT_COLUMNS} FROM vault_controller_transactions WHERE l1_batch_number = %s",
            (l1_batch_number,),
        )
        rows = _rows(self._cur)
        return _row_to_controller(rows[0]) if rows else None

    def controllers_with_status(
        self, statuses: Iterable[ControllerStatus], *, limit: int = 100
    ) -> list[VaultControllerTransaction]:
        values = [s.value for s in statuses]
        if not values:
            return []
        self._cur.execute(
            f"SELECT {_VCT_COLUMNS} FROM vault_controller_transactions WHERE status = ANY(%s) "
            "ORDER BY created_at, id LIMIT %s",
            (values, limit),
        )
        return [_row_to_controller(d) for d in _rows(self._cur)]

    def count_transactions_by_status(self) -> dict[TransactionStatus, int]:
        self._cur.execute("SELECT status, COUNT(*) AS n FROM transactions GROUP BY status")
        counts = {status: 0 for status in TransactionStatus}
        for d in _rows(self._cur):
            counts[TransactionStatus(d["status"])] = int(d["n"])
        return counts

    def quarantined(self, bridge_hash: str) -> list[QuarantinedEvent]:
        self._cur.execute(
            "SELECT event_name, vid, bridge_initiated_transaction_hash, finalized_transaction_hash, "
            "block_number, quarantined_at FROM quarantined_events "
            "WHERE bridge_initiated_transaction_hash = %s ORDER BY event_name, vid",
            (bridge_hash,),
        )
        return [_row_to_quarantined(d) for d in _rows(self._cur)]

    def lock_bridge_hash(self, bridge_hash: str) -> None:
        # Transaction-scoped: released on commit or rollback.
        self._cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (bridge_hash,))

    # writes

    def apply(self, *writes: Write) -> None:
        for w in writes:
            if isinstance(w, InsertTransaction):
                self._insert_transaction(w.transaction)
            elif isinstance(w, UpdateTransaction):
                self._update_transaction(w.transaction)
            elif isinstance(w, InsertController):
                self._insert_controller(w.controller)
            elif isinstance(w, UpdateController):
                self._update_controller(w.controller)
            elif isinstance(w, LinkMembers):
                self._link_members(w)
            elif isinstance(w, DeleteController):
                self._cur.execute("DELETE FROM vault_controller_transactions WHERE id = %s", (w.controller_id,))
            elif isinstance(w, SetCursor):
                self._set_cursor(w)
            elif isinstance(w, Quarantine):
                q = w.event
                self._cur.execute(
                    """
                    INSERT INTO quarantined_events (
                        event_name, vid, bridge_initiated_transaction_hash,
                        finalized_transaction_hash, block_number, quarantined_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (event_name, vid) DO NOTHING
                    """,
                    (q.event_name, q.vid, q.bridge_initiated_transaction_hash,
                     q.finalized_transaction_hash, q.block_number, q.quarantined_at),
                )
            elif isinstance(w, ReleaseQuarantine):
                self._cur.execute(
                    "DELETE FROM quarantined_events WHERE event_name = %s AND vid = %s",
                    (w.event_name, w.vid),
                )
            else:  # pragma: no cover
                raise TypeError(f"unknown write: {w!r}")

    def _insert_transaction(self, tx: Transaction) -> None:
        self._cur.execute(
            """
            INSERT INTO transactions (
                created_at, updated_at, origin, status, bridge_initiated_transaction_hash,
                finalized_transaction_hash, block_number, origin_block_number, l1_batch_number,
                payload, event_type, subgraph_id, vault_controller_transaction_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tx.created_at,
                tx.updated_at,
                tx.origin.value,
                tx.status.value,
                tx.bridge_initiated_transaction_hash,
                tx.finalized_transaction_hash,
                tx.block_number,
                tx.origin_block_number,
                tx.l1_batch_number,
                self._binary(tx.payload),
                tx.event_type,
                tx.subgraph_id,
                _controller_id(tx),
            ),
        )

    def _update_transaction(self, tx: Transaction) -> None:
        self._cur.execute(
            """
            UPDATE transactions SET
                updated_at = %s, status = %s, finalized_transaction_hash = %s,
                block_number = %s, origin_block_number = %s, l1_batch_number = %s,
                payload = %s, event_type = %s, subgraph_id = %s,
                vault_controller_transaction_id = %s
            WHERE id = %s
            """,
            (
                tx.updated_at,
                tx.status.value,
                tx.finalized_transaction_hash,
                tx.block_number,
                tx.origin_block_number,
                tx.l1_batch_number,
                self._binary(tx.payload),
                tx.event_type,
                tx.subgraph_id,
                _controller_id(tx),
                tx.id,
            ),
        )
        if self._cur.rowcount != 1:
            raise IntegrityViolation(f"unknown transaction id: {tx.id}")

    def _insert_controller(self, c: VaultControllerTransaction) -> None:
        self._cur.execute(
            """
            INSERT INTO vault_controller_transactions (
                created_at, updated_at, transaction_hash, l1_batch_number, total_shares,
                message_hash_count, status, submission_attempts, last_error
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                c.created_at,
                c.updated_at,
                c.transaction_hash,
                c.l1_batch_number,
                str(c.total_shares),
                c.message_hash_count,
                c.status.value,
                c.submission_attempts,
                c.last_error,
            ),
        )

    def _update_controller(self, c: VaultControllerTransaction) -> None:
        current = self.controller(c.id, for_update=True) if c.id is not None else None
        if current is None:
            raise IntegrityViolation(f"unknown controller id: {c.id}")
        if (current.total_shares, current.message_hash_count, current.l1_batch_number) != (
            c.total_shares,
            c.message_hash_count,
            c.l1_batch_number,
        ):
            raise IntegrityViolation(f"controller {c.id} is sealed; totals cannot change")
        self._cur.execute(
            """
            UPDATE vault_controller_transactions SET
                updated_at = %s, transaction_hash = %s, status = %s,
                submission_attempts = %s, last_error = %s
            WHERE id = %s
            """,
            (c.updated_at, c.transaction_hash, c.status.value, c.submission_attempts, c.last_error, c.id),
        )

    def _link_members(self, w: LinkMembers) -> None:
        controller = self.controller_by_batch(w.l1_batch_number)
        if controller is None:
            raise IntegrityViolation(f"no controller for l1 batch {w.l1_batch_number}")
        self._cur.execute(
            """
            UPDATE transactions SET vault_controller_transaction_id = %s, updated_at = %s
            WHERE id = ANY(%s) AND vault_controller_transaction_id IS NULL
            """,
            (controller.id, w.at, list(w.transaction_ids)),
        )
        if self._cur.rowcount != len(w.transaction_ids):
            raise IntegrityViolation(
                f"linked {self._cur.rowcount} of {len(w.transaction_ids)} members for l1 batch {w.l1_batch_number}"
            )

    def _set_cursor(self, w: SetCursor) -> None:
        self._cur.execute(
            """
            INSERT INTO event_cursors (event_name, last_processed_vid, created_at, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (event_name) DO UPDATE SET
                last_processed_vid = EXCLUDED.last_processed_vid,
                updated_at = EXCLUDED.updated_at
            WHERE event_cursors.last_processed_vid < EXCLUDED.last_processed_vid
            """,
            (w.event_name, w.last_processed_vid, w.at, w.at),
        )
        if self._cur.rowcount != 1:
            raise IntegrityViolation(f"cursor {w.event_name} must move forward")

    @staticmethod
    def _binary(payload: Optional[bytes]):
        if payload is None:
            return None
        import psycopg2  # type: ignore

        return psycopg2.Binary(payload)


class PostgresStore:
    def __init__(self, dsn: str, *, min_connections: int = 1, max_connections: int = 10) -> None:
        self._dsn = dsn
        self._min = min_connections
        self._max = max_connections
        self._pool = None

    def _get_pool(self):
        if self._pool is None:
            from psycopg2.pool import ThreadedConnectionPool  # type: ignore

            self._pool = ThreadedConnectionPool(self._min, self._max, self._dsn)
        return self._pool

    def ensure_schema(self) -> None:
        with self.atomic() as session:
            session._cur.execute(SCHEMA_DDL)
        logger.info("Relayer schema ensured")

    @contextmanager
    def atomic(self) -> Iterator[PostgresSession]:
        import psycopg2  # type: ignore
        from psycopg2 import errors as pg_errors  # type: ignore
        from psycopg2.extensions import ISOLATION_LEVEL_READ_COMMITTED  # type: ignore

        pool = self._get_pool()
        conn = pool.getconn()
        broken = False
        try:
            conn.set_isolation_level(ISOLATION_LEVEL_READ_COMMITTED)
            try:
                with conn.cursor() as cur:
                    yield PostgresSession(cur)
                conn.commit()
            except pg_errors.UniqueViolation as e:
                conn.rollback()
                raise DuplicateKey(str(e).strip()) from e
            except (pg_errors.ForeignKeyViolation, pg_errors.RestrictViolation) as e:
                conn.rollback()
                raise IntegrityViolation(str(e).strip()) from e
            except psycopg2.InterfaceError:
                broken = True
                raise
            except BaseException:
                conn.rollback()
                raise
        finally:
            pool.putconn(conn, close=broken or bool(conn.closed))

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

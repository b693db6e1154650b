"""SQLite storage for recurring transfers and the execution ledger.

One file holds both tables. The connection is shared between the scheduler
thread and the relay API worker threads, so all access goes through
:py:meth:`Database.transaction`, which serialises writers with a lock and
``BEGIN IMMEDIATE``.
"""

import datetime
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

#: In-memory database, for tests
MEMORY = ":memory:"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS recurring_transfers (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        wallet_address TEXT NOT NULL,
        recipient TEXT NOT NULL,
        amount TEXT NOT NULL,
        cadence TEXT NOT NULL,
        destination_chain TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        next_due_at TEXT NOT NULL,
        last_executed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CONSTRAINT valid_status CHECK (status IN ('active', 'paused')),
        CONSTRAINT valid_cadence CHECK (cadence IN ('minute', 'daily', 'weekly', 'monthly', 'yearly'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_recurring_due ON recurring_transfers(status, next_due_at)",
    "CREATE INDEX IF NOT EXISTS idx_recurring_owner ON recurring_transfers(owner)",
    "CREATE INDEX IF NOT EXISTS idx_recurring_wallet ON recurring_transfers(wallet_address)",
    """
    CREATE TABLE IF NOT EXISTS transfer_executions (
        id TEXT PRIMARY KEY,
        seq INTEGER NOT NULL,
        owner TEXT NOT NULL,
        recurring_transfer_id TEXT,
        category TEXT NOT NULL,
        recipient TEXT NOT NULL,
        amount TEXT NOT NULL,
        destination_chain TEXT NOT NULL,
        source_chain TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        fee_amount TEXT,
        bridged_amount TEXT,
        release_tx_hash TEXT,
        burn_tx_hash TEXT,
        mint_tx_hash TEXT,
        tx_hash TEXT,
        error_message TEXT,
        resumed_from TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        CONSTRAINT valid_status CHECK (status IN ('pending', 'success', 'failed'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_owner ON transfer_executions(owner, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_executions_recurring ON transfer_executions(recurring_transfer_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_executions_status ON transfer_executions(status)",
]


def to_db_time(value: datetime.datetime | None) -> str | None:
    """Serialise an aware datetime as ISO-8601 UTC.

    Fixed-width UTC strings sort chronologically, so SQL comparisons on the
    text column are time comparisons.
    """
    if value is None:
        return None
    assert value.tzinfo is not None, f"Naive datetime: {value}"
    return value.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


def from_db_time(raw: str | None) -> datetime.datetime | None:
    if raw is None:
        return None
    parsed = datetime.datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class Database:
    """Shared SQLite connection with schema set up.

    :param path:
        Database file, or :py:data:`MEMORY`
    """

    def __init__(self, path: Path | str = MEMORY):
        self.path = str(path)
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        if self.path != MEMORY:
            self.conn.execute("PRAGMA journal_mode=WAL")

        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

        logger.info("Opened autopay database %s", self.path)

    def __repr__(self) -> str:
        return f"<Database {self.path}>"

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; roll back if the block raises."""
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self):
        with self._lock:
            self.conn.close()

"""Append-only record of every attempted transfer.

Life of a :py:class:`TransferExecution`:

1. :py:meth:`ExecutionLedger.create` inserts it as ``pending`` before any chain call.
2. :py:meth:`ExecutionLedger.record_progress` stores partial state as legs
   are broadcast or confirmed (funds released, burn hash, direct transfer
   hash) while it is still ``pending``.
3. :py:meth:`ExecutionLedger.finalise` moves it to ``success`` or ``failed``.
   This happens exactly once; a finalised execution is never reopened.

The ledger has no delete operation.
"""

from __future__ import annotations

import datetime
import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from arc_autopay.database import Database, from_db_time, to_db_time
from arc_autopay.errors import ExecutionAlreadyFinalised
from arc_autopay.utils import utc_now

logger = logging.getLogger(__name__)


class ExecutionStatus(enum.Enum):
    pending = "pending"
    success = "success"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.pending


class ExecutionCategory(enum.Enum):
    """What kind of payment produced the execution, used to filter history."""

    #: Scheduled run of a recurring transfer
    auto_pay = "auto-pay"

    #: One-shot same-chain payment
    send = "send"

    #: One-shot cross-chain payment
    cross_chain = "cross-chain"


#: Columns :py:meth:`ExecutionLedger.record_progress` may write
PROGRESS_FIELDS = frozenset(
    {
        "source_chain",
        "fee_amount",
        "bridged_amount",
        "release_tx_hash",
        "burn_tx_hash",
        "tx_hash",
    }
)


@dataclass(slots=True)
class TransferExecution:
    """One attempt to move funds, as stored in the ledger."""

    id: str

    #: Identity of the user the payment belongs to
    owner: str

    #: Owning recurring transfer, ``None`` for one-shot transfers
    recurring_transfer_id: str | None

    category: ExecutionCategory

    recipient: str

    #: Requested amount, fixed-point decimal string
    amount: str

    destination_chain: str

    status: ExecutionStatus

    created_at: datetime.datetime

    source_chain: str | None = None

    #: Relayer fee deducted before bridging, decimal string
    fee_amount: str | None = None

    #: Amount actually burned and minted, decimal string
    bridged_amount: str | None = None

    #: Custody wallet release transaction
    release_tx_hash: str | None = None

    #: ``depositForBurn()`` on the source chain
    burn_tx_hash: str | None = None

    #: ``receiveMessage()`` on the destination chain
    mint_tx_hash: str | None = None

    #: Direct ERC-20 transfer for same-chain payments
    tx_hash: str | None = None

    error_message: str | None = None

    #: Earlier failed execution whose burn or released funds this one continues
    resumed_from: str | None = None

    completed_at: datetime.datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_stranded_burn(self) -> bool:
        """Burned on the source chain but never minted."""
        return self.burn_tx_hash is not None and self.mint_tx_hash is None

    @property
    def has_unspent_release(self) -> bool:
        """Custody funds were released to the hot wallet but never sent on."""
        return self.release_tx_hash is not None and self.burn_tx_hash is None and self.tx_hash is None

    @property
    def has_unconfirmed_transfer(self) -> bool:
        """Failed with a direct transfer broadcast, whose receipt was never seen."""
        return self.status == ExecutionStatus.failed and self.tx_hash is not None

    @property
    def is_resumable(self) -> bool:
        """Failed after some leg reached the chain, so a rerun must continue from it."""
        if self.status != ExecutionStatus.failed:
            return False
        return self.is_stranded_burn or self.has_unspent_release or self.has_unconfirmed_transfer

    def to_json(self) -> dict:
        """Camel-case JSON for the HTTP API."""
        return {
            "id": self.id,
            "userId": self.owner,
            "autoPaymentId": self.recurring_transfer_id,
            "paymentType": self.category.value,
            "recipient": self.recipient,
            "amount": self.amount,
            "destinationChain": self.destination_chain,
            "sourceChain": self.source_chain,
            "status": self.status.value,
            "feeAmount": self.fee_amount,
            "bridgedAmount": self.bridged_amount,
            "burnTxHash": self.burn_tx_hash,
            "mintTxHash": self.mint_tx_hash,
            "txHash": self.tx_hash,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


def _row_to_execution(row) -> TransferExecution:
    return TransferExecution(
        id=row["id"],
        owner=row["owner"],
        recurring_transfer_id=row["recurring_transfer_id"],
        category=ExecutionCategory(row["category"]),
        recipient=row["recipient"],
        amount=row["amount"],
        destination_chain=row["destination_chain"],
        status=ExecutionStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        source_chain=row["source_chain"],
        fee_amount=row["fee_amount"],
        bridged_amount=row["bridged_amount"],
        release_tx_hash=row["release_tx_hash"],
        burn_tx_hash=row["burn_tx_hash"],
        mint_tx_hash=row["mint_tx_hash"],
        tx_hash=row["tx_hash"],
        error_message=row["error_message"],
        resumed_from=row["resumed_from"],
        completed_at=from_db_time(row["completed_at"]),
    )


class ExecutionLedger:
    """Queryable store of :py:class:`TransferExecution` records."""

    def __init__(self, db: Database, clock: Callable[[], datetime.datetime] = utc_now):
        self.db = db
        self.clock = clock

    def __repr__(self) -> str:
        return f"<ExecutionLedger {self.db.path}>"

    def create(
        self,
        *,
        owner: str,
        recipient: str,
        amount: str,
        destination_chain: str,
        category: ExecutionCategory,
        recurring_transfer_id: str | None = None,
        source_chain: str | None = None,
        release_tx_hash: str | None = None,
        burn_tx_hash: str | None = None,
        tx_hash: str | None = None,
        resumed_from: str | None = None,
    ) -> str:
        """Insert a ``pending`` execution.

        :return:
            New execution id
        """
        execution_id = uuid.uuid4().hex
        with self.db.transaction() as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM transfer_executions").fetchone()[0]
            conn.execute(
                """
                INSERT INTO transfer_executions (
                    id, seq, owner, recurring_transfer_id, category, recipient, amount,
                    destination_chain, source_chain, status, release_tx_hash, burn_tx_hash,
                    tx_hash, resumed_from, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    seq,
                    owner,
                    recurring_transfer_id,
                    category.value,
                    recipient,
                    amount,
                    destination_chain,
                    source_chain,
                    release_tx_hash,
                    burn_tx_hash,
                    tx_hash,
                    resumed_from,
                    to_db_time(self.clock()),
                ),
            )
        logger.debug("Created pending execution %s for %s", execution_id, owner)
        return execution_id

    def get(self, execution_id: str) -> TransferExecution | None:
        rows = self.db.query("SELECT * FROM transfer_executions WHERE id = ?", (execution_id,))
        return _row_to_execution(rows[0]) if rows else None

    def _raise_not_pending(self, execution_id: str):
        existing = self.get(execution_id)
        if existing is None:
            raise KeyError(f"No execution {execution_id}")
        raise ExecutionAlreadyFinalised(f"Execution {execution_id} is already {existing.status.value}")

    def record_progress(self, execution_id: str, **fields: str | None):
        """Persist partial state of a pending execution.

        Called as soon as each leg is confirmed, so a crash leaves the burn
        hash behind for :py:mod:`arc_autopay.reconcile`.

        :param fields:
            Any of :py:data:`PROGRESS_FIELDS`

        :raise ExecutionAlreadyFinalised:
            Execution is no longer pending
        """
        unknown = set(fields) - PROGRESS_FIELDS
        assert not unknown, f"Cannot record {unknown} as progress"
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE transfer_executions SET {assignments} WHERE id = ? AND status = 'pending'",
                (*fields.values(), execution_id),
            )
        if cursor.rowcount == 0:
            self._raise_not_pending(execution_id)

    def finalise(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        tx_hash: str | None = None,
        mint_tx_hash: str | None = None,
        error_message: str | None = None,
    ) -> TransferExecution:
        """Terminal update. Succeeds exactly once per execution.

        The pending check and the update are one statement, so two racing
        callers cannot both finalise the same execution.

        :raise ExecutionAlreadyFinalised:
            Execution already has a terminal status
        """
        assert status.is_terminal, f"Not a terminal status: {status}"

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE transfer_executions
                SET status = ?, tx_hash = COALESCE(?, tx_hash), mint_tx_hash = COALESCE(?, mint_tx_hash),
                    error_message = ?, completed_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (status.value, tx_hash, mint_tx_hash, error_message, to_db_time(self.clock()), execution_id),
            )
        if cursor.rowcount == 0:
            self._raise_not_pending(execution_id)

        execution = self.get(execution_id)
        logger.info("Execution %s finalised as %s", execution_id, status.value)
        return execution

    def list(self, owner: str, category: ExecutionCategory | None = None, limit: int | None = None) -> list[TransferExecution]:
        """Executions of one owner, newest first."""
        sql = "SELECT * FROM transfer_executions WHERE owner = ?"
        params: list = [owner]
        if category is not None:
            sql += " AND category = ?"
            params.append(category.value)
        sql += " ORDER BY created_at DESC, seq DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_execution(r) for r in self.db.query(sql, tuple(params))]

    def list_pending(self) -> list[TransferExecution]:
        """Executions left ``pending``, oldest first. Non-empty only after a crash."""
        rows = self.db.query("SELECT * FROM transfer_executions WHERE status = 'pending' ORDER BY seq")
        return [_row_to_execution(r) for r in rows]

    def latest_for_recurring(self, recurring_transfer_id: str) -> TransferExecution | None:
        """Most recent execution of a recurring transfer."""
        rows = self.db.query(
            "SELECT * FROM transfer_executions WHERE recurring_transfer_id = ? ORDER BY seq DESC LIMIT 1",
            (recurring_transfer_id,),
        )
        return _row_to_execution(rows[0]) if rows else None

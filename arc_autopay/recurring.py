"""Recurring transfers and their due-date arithmetic.

A :py:class:`RecurringTransfer` is created, paused, resumed and deleted by
the user. The scheduler is the only writer of ``next_due_at`` and
``last_executed_at``, through :py:meth:`RecurringTransferStore.mark_executed`.
"""

from __future__ import annotations

import calendar
import datetime
import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from arc_autopay.chain import ChainKey
from arc_autopay.database import Database, from_db_time, to_db_time
from arc_autopay.utils import format_token_amount, parse_token_amount, utc_now, validate_address

logger = logging.getLogger(__name__)


def add_months(when: datetime.datetime, months: int) -> datetime.datetime:
    """Calendar month arithmetic, clamped to the last day of the target month.

    ``add_months(2024-01-31, 1) == 2024-02-29``
    """
    month_index = when.month - 1 + months
    year = when.year + month_index // 12
    month = month_index % 12 + 1
    day = min(when.day, calendar.monthrange(year, month)[1])
    return when.replace(year=year, month=month, day=day)


class Cadence(enum.Enum):
    """How often a recurring transfer runs."""

    minute = "minute"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"

    def next_due_at(self, from_time: datetime.datetime) -> datetime.datetime:
        """Next due time, counted from ``from_time``."""
        if self == Cadence.monthly:
            return add_months(from_time, 1)
        elif self == Cadence.yearly:
            return add_months(from_time, 12)
        return from_time + _FIXED_CADENCE_STEPS[self]


#: Cadences that are a fixed number of seconds long
_FIXED_CADENCE_STEPS = {
    Cadence.minute: datetime.timedelta(minutes=1),
    Cadence.daily: datetime.timedelta(days=1),
    Cadence.weekly: datetime.timedelta(days=7),
}


class TransferStatus(enum.Enum):
    active = "active"
    paused = "paused"


@dataclass(slots=True)
class RecurringTransfer:
    """A payment the scheduler repeats every :py:attr:`cadence`."""

    id: str

    #: Identity of the user the payment belongs to
    owner: str

    #: User's custody contract that funds each run
    wallet_address: str

    recipient: str

    #: Fixed-point decimal string with 6 fractional digits
    amount: str

    cadence: Cadence

    destination_chain: str

    status: TransferStatus

    next_due_at: datetime.datetime

    created_at: datetime.datetime

    updated_at: datetime.datetime

    last_executed_at: datetime.datetime | None = None

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "userId": self.owner,
            "walletAddress": self.wallet_address,
            "recipient": self.recipient,
            "amount": self.amount,
            "frequency": self.cadence.value,
            "destinationChain": self.destination_chain,
            "status": self.status.value,
            "nextExecutionDate": self.next_due_at.isoformat(),
            "lastExecutionDate": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "createdAt": self.created_at.isoformat(),
        }


def _row_to_transfer(row) -> RecurringTransfer:
    return RecurringTransfer(
        id=row["id"],
        owner=row["owner"],
        wallet_address=row["wallet_address"],
        recipient=row["recipient"],
        amount=row["amount"],
        cadence=Cadence(row["cadence"]),
        destination_chain=row["destination_chain"],
        status=TransferStatus(row["status"]),
        next_due_at=from_db_time(row["next_due_at"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        last_executed_at=from_db_time(row["last_executed_at"]),
    )


class RecurringTransferStore:
    """SQLite-backed CRUD for :py:class:`RecurringTransfer`."""

    def __init__(self, db: Database, clock: Callable[[], datetime.datetime] = utc_now):
        self.db = db
        self.clock = clock

    def __repr__(self) -> str:
        return f"<RecurringTransferStore {self.db.path}>"

    def create(
        self,
        *,
        owner: str,
        wallet_address: str,
        recipient: str,
        amount: str,
        cadence: Cadence | str,
        destination_chain: ChainKey | str,
        first_due_at: datetime.datetime | None = None,
    ) -> RecurringTransfer:
        """Register a new active recurring transfer.

        Inputs are validated and normalised: addresses are checksummed, the
        amount is rewritten with all 6 fractional digits.

        :param first_due_at:
            When the first run is due. Defaults to now, so the next tick runs it.

        :raise ValidationError:
            Bad address, amount or chain
        """
        now = self.clock()
        transfer = RecurringTransfer(
            id=uuid.uuid4().hex,
            owner=owner,
            wallet_address=validate_address(wallet_address, "custody wallet address"),
            recipient=validate_address(recipient, "recipient"),
            amount=format_token_amount(parse_token_amount(amount)),
            cadence=Cadence(cadence),
            destination_chain=ChainKey.parse(destination_chain).value,
            status=TransferStatus.active,
            next_due_at=first_due_at or now,
            created_at=now,
            updated_at=now,
        )

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO recurring_transfers (
                    id, owner, wallet_address, recipient, amount, cadence, destination_chain,
                    status, next_due_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transfer.id,
                    transfer.owner,
                    transfer.wallet_address,
                    transfer.recipient,
                    transfer.amount,
                    transfer.cadence.value,
                    transfer.destination_chain,
                    transfer.status.value,
                    to_db_time(transfer.next_due_at),
                    to_db_time(transfer.created_at),
                    to_db_time(transfer.updated_at),
                ),
            )

        logger.info("Created %s recurring transfer %s of %s USDC for %s", transfer.cadence.value, transfer.id, transfer.amount, owner)
        return transfer

    def get(self, transfer_id: str) -> RecurringTransfer | None:
        rows = self.db.query("SELECT * FROM recurring_transfers WHERE id = ?", (transfer_id,))
        return _row_to_transfer(rows[0]) if rows else None

    def list(self, owner: str, status: TransferStatus | None = None) -> list[RecurringTransfer]:
        """Transfers of one owner, newest first."""
        sql = "SELECT * FROM recurring_transfers WHERE owner = ?"
        params: list = [owner]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC"
        return [_row_to_transfer(r) for r in self.db.query(sql, tuple(params))]

    def set_status(self, transfer_id: str, status: TransferStatus) -> bool:
        """Pause or resume.

        :return:
            ``False`` if no such transfer
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE recurring_transfers SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_db_time(self.clock()), transfer_id),
            )
        if cursor.rowcount:
            logger.info("Recurring transfer %s is now %s", transfer_id, status.value)
        return cursor.rowcount > 0

    def delete(self, transfer_id: str) -> bool:
        """Remove a transfer. Its executions stay in the ledger."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM recurring_transfers WHERE id = ?", (transfer_id,))
        if cursor.rowcount:
            logger.info("Deleted recurring transfer %s", transfer_id)
        return cursor.rowcount > 0

    def find_due(self, now: datetime.datetime) -> list[RecurringTransfer]:
        """Active transfers with ``next_due_at <= now``, most overdue first."""
        rows = self.db.query(
            "SELECT * FROM recurring_transfers WHERE status = 'active' AND next_due_at <= ? ORDER BY next_due_at, created_at",
            (to_db_time(now),),
        )
        return [_row_to_transfer(r) for r in rows]

    def mark_executed(self, transfer_id: str, executed_at: datetime.datetime) -> RecurringTransfer | None:
        """Record a successful run and move ``next_due_at`` one cadence past ``executed_at``.

        The next due time is counted from the execution time, not from the
        previous due time, so downtime never causes a burst of catch-up runs.

        :return:
            Updated transfer, or ``None`` if it was deleted meanwhile
        """
        transfer = self.get(transfer_id)
        if transfer is None:
            logger.warning("Recurring transfer %s vanished before it could be marked executed", transfer_id)
            return None

        next_due_at = transfer.cadence.next_due_at(executed_at)
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE recurring_transfers SET last_executed_at = ?, next_due_at = ?, updated_at = ? WHERE id = ?",
                (to_db_time(executed_at), to_db_time(next_due_at), to_db_time(self.clock()), transfer_id),
            )

        logger.info("Recurring transfer %s executed at %s, next due %s", transfer_id, executed_at.isoformat(), next_due_at.isoformat())
        transfer.last_executed_at = executed_at
        transfer.next_due_at = next_due_at
        return transfer

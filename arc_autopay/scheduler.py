"""Timer-driven execution of due recurring transfers.

One tick:

1. query active transfers with ``next_due_at <= now``
2. run them one at a time through the :py:class:`~arc_autopay.orchestrator.TransferOrchestrator`,
   sleeping ``pacing_delay`` between transfers
3. on success, move ``next_due_at`` one cadence past the execution time;
   on failure leave it, so the transfer is due again next tick

Transfers are never run in parallel: they all share the relayer hot wallet,
whose nonce sequence per chain must stay strictly increasing.

The clock and sleep are injected, so tests drive ticks with simulated time::

    scheduler = RecurrenceScheduler(store, orchestrator, clock=fake_clock, sleep=lambda s: None)
    report = scheduler.run_tick()
"""

import datetime
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from arc_autopay.chain import ChainKey
from arc_autopay.ledger import ExecutionStatus, TransferExecution
from arc_autopay.orchestrator import TransferOrchestrator, TransferRequest
from arc_autopay.recurring import RecurringTransfer, RecurringTransferStore
from arc_autopay.utils import utc_now

logger = logging.getLogger(__name__)

#: Seconds between ticks
DEFAULT_TICK_INTERVAL = 60.0

#: Seconds between two transfers within a tick
DEFAULT_PACING_DELAY = 2.0


@dataclass(slots=True)
class TickReport:
    """What one scheduler tick did."""

    started_at: datetime.datetime

    #: Transfers found due
    due: int = 0

    #: Recurring transfer ids that ended in a successful execution
    succeeded: list[str] = field(default_factory=list)

    #: Recurring transfer ids that failed and stay due
    failed: list[str] = field(default_factory=list)

    #: Recurring transfer ids not attempted, e.g. an execution was still pending
    skipped: list[str] = field(default_factory=list)

    #: Executions created during the tick
    executions: list[TransferExecution] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"<TickReport due={self.due} ok={len(self.succeeded)} failed={len(self.failed)} skipped={len(self.skipped)}>"


class RecurrenceScheduler:
    """Run each due recurring transfer once per due cycle.

    :param source_chain:
        Chain holding the custody contracts and the relayer funds.

    :param clock:
        Returns timezone-aware UTC now.

    :param sleep:
        Used for the pacing delay only. :py:meth:`run_forever` waits on its
        stop event between ticks.
    """

    def __init__(
        self,
        store: RecurringTransferStore,
        orchestrator: TransferOrchestrator,
        clock: Callable[[], datetime.datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        pacing_delay: float = DEFAULT_PACING_DELAY,
        source_chain: ChainKey = ChainKey.arc,
    ):
        assert tick_interval > 0, f"Bad tick interval {tick_interval}"
        self.store = store
        self.orchestrator = orchestrator
        self.clock = clock
        self.sleep = sleep
        self.tick_interval = tick_interval
        self.pacing_delay = pacing_delay
        self.source_chain = source_chain

    def __repr__(self) -> str:
        return f"<RecurrenceScheduler every {self.tick_interval}s from {self.source_chain.value}>"

    @property
    def ledger(self):
        return self.orchestrator.ledger

    def _find_resumable(self, transfer: RecurringTransfer) -> TransferExecution | None:
        """Failed run of this cycle with a release, burn or transfer that reached the chain."""
        latest = self.ledger.latest_for_recurring(transfer.id)
        if latest is not None and latest.is_resumable:
            return latest
        return None

    def execute_recurring_transfer(self, transfer: RecurringTransfer) -> TransferExecution | None:
        """Run one due transfer and fold the outcome back into its schedule.

        :return:
            Finalised execution, or ``None`` if the transfer was skipped
        """
        latest = self.ledger.latest_for_recurring(transfer.id)
        if latest is not None and latest.status == ExecutionStatus.pending:
            logger.warning("Recurring transfer %s has pending execution %s, skipping", transfer.id, latest.id)
            return None

        resume_from = self._find_resumable(transfer)

        request = TransferRequest(
            owner=transfer.owner,
            source_chain=self.source_chain,
            destination_chain=transfer.destination_chain,
            recipient=transfer.recipient,
            amount=transfer.amount,
            recurring_transfer_id=transfer.id,
            funding_wallet=transfer.wallet_address,
        )

        logger.info(
            "Executing recurring transfer %s: %s USDC to %s on %s",
            transfer.id,
            transfer.amount,
            transfer.recipient,
            transfer.destination_chain,
        )

        execution = self.orchestrator.execute_transfer(request, resume_from=resume_from)

        if execution.status == ExecutionStatus.success:
            self.store.mark_executed(transfer.id, self.clock())
        else:
            logger.warning("Recurring transfer %s failed, stays due: %s", transfer.id, execution.error_message)

        return execution

    def run_tick(self) -> TickReport:
        """Process every transfer due now, sequentially.

        One transfer failing, even with an unexpected exception, never stops
        the rest of the tick.
        """
        now = self.clock()
        due = self.store.find_due(now)
        report = TickReport(started_at=now, due=len(due))

        if due:
            logger.info("Scheduler tick at %s: %d transfers due", now.isoformat(), len(due))
        else:
            logger.debug("Scheduler tick at %s: nothing due", now.isoformat())

        for idx, transfer in enumerate(due):
            if idx > 0 and self.pacing_delay > 0:
                self.sleep(self.pacing_delay)

            try:
                execution = self.execute_recurring_transfer(transfer)
            except Exception:
                logger.exception("Recurring transfer %s could not be executed", transfer.id)
                report.failed.append(transfer.id)
                continue

            if execution is None:
                report.skipped.append(transfer.id)
                continue

            report.executions.append(execution)
            if execution.status == ExecutionStatus.success:
                report.succeeded.append(transfer.id)
            else:
                report.failed.append(transfer.id)

        if due:
            logger.info("Scheduler tick done: %s", report)
        return report

    def run_forever(self, stop_event: threading.Event | None = None):
        """Tick immediately, then every ``tick_interval`` seconds until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        logger.info("Recurrence scheduler started, tick every %.0fs", self.tick_interval)

        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_tick()
            except Exception:
                # Due query failed, e.g. database locked. Try again next tick.
                logger.exception("Scheduler tick failed")
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, self.tick_interval - elapsed))

        logger.info("Recurrence scheduler stopped")

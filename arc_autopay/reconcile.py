"""Recover executions left ``pending`` by a crashed or killed process.

Run once at startup, before the scheduler ticks. An execution with a
persisted burn hash is finished by polling the attestation again and minting.
The burn is never submitted twice. An execution without a burn hash is
marked failed, since the process died before anything irreversible was
recorded. A recurring transfer whose execution is recovered successfully
gets its due date advanced, as if the scheduler had finished the run.
"""

import logging
from dataclasses import dataclass, field

from arc_autopay.ledger import ExecutionStatus, TransferExecution
from arc_autopay.orchestrator import TransferOrchestrator
from arc_autopay.recurring import RecurringTransferStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileReport:
    recovered: list[TransferExecution] = field(default_factory=list)
    failed: list[TransferExecution] = field(default_factory=list)


def resume_pending_executions(
    orchestrator: TransferOrchestrator,
    store: RecurringTransferStore | None = None,
) -> ReconcileReport:
    """Drive every pending execution to a terminal status.

    :param store:
        Recurring transfer store, to advance due dates of recovered recurring runs.

    :return:
        Finalised executions, split by outcome
    """
    report = ReconcileReport()
    pending = orchestrator.ledger.list_pending()
    if not pending:
        logger.info("No pending executions to reconcile")
        return report

    logger.info("Reconciling %d pending executions", len(pending))

    for execution in pending:
        try:
            finalised = orchestrator.continue_pending(execution)
        except Exception:
            logger.exception("Could not reconcile execution %s", execution.id)
            failed = orchestrator.ledger.get(execution.id)
            report.failed.append(failed or execution)
            continue

        if finalised.status == ExecutionStatus.success:
            report.recovered.append(finalised)
            if store is not None and finalised.recurring_transfer_id:
                store.mark_executed(finalised.recurring_transfer_id, finalised.completed_at)
        else:
            report.failed.append(finalised)

    logger.info("Reconcile done: %d recovered, %d failed", len(report.recovered), len(report.failed))
    return report

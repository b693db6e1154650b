"""Startup recovery of executions a crashed process left pending."""

import datetime

from arc_autopay.ledger import ExecutionCategory, ExecutionStatus
from arc_autopay.orchestrator import INTERRUPTED_BEFORE_BURN
from arc_autopay.reconcile import resume_pending_executions

RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

CUSTODY_WALLET = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

BURN_TX = "0x" + "ee" * 32


def test_nothing_pending(orchestrator, store):
    report = resume_pending_executions(orchestrator, store)
    assert report.recovered == []
    assert report.failed == []


def test_recover_burned_recurring_execution(orchestrator, store, ledger, clock, arc, sepolia, iris):
    """Re-poll with the persisted burn hash and mint. Never burn again."""
    transfer = store.create(
        owner="alice",
        wallet_address=CUSTODY_WALLET,
        recipient=RECIPIENT,
        amount="10",
        cadence="weekly",
        destination_chain="sepolia",
        first_due_at=clock.now - datetime.timedelta(minutes=5),
    )
    burned = ledger.create(
        owner="alice",
        recipient=RECIPIENT,
        amount="10.000000",
        destination_chain="sepolia",
        category=ExecutionCategory.auto_pay,
        recurring_transfer_id=transfer.id,
        source_chain="arc",
        release_tx_hash="0x" + "dd" * 32,
        burn_tx_hash=BURN_TX,
    )
    interrupted = ledger.create(
        owner="bob",
        recipient=RECIPIENT,
        amount="5.000000",
        destination_chain="sepolia",
        category=ExecutionCategory.cross_chain,
        source_chain="arc",
    )
    iris.queue_complete()
    clock.advance(minutes=10)

    report = resume_pending_executions(orchestrator, store)

    assert [e.id for e in report.recovered] == [burned]
    assert [e.id for e in report.failed] == [interrupted]
    assert ledger.get(interrupted).error_message == INTERRUPTED_BEFORE_BURN
    assert ledger.list_pending() == []

    assert arc.calls == []
    assert len(sepolia.minted) == 1
    assert iris.urls[0].endswith(f"/v2/messages/26?transactionHash={BURN_TX}")

    updated = store.get(transfer.id)
    assert updated.last_executed_at == clock.now
    assert updated.next_due_at == clock.now + datetime.timedelta(days=7)


def test_recovery_timeout_stays_resumable(orchestrator, store, ledger, iris):
    burned = ledger.create(
        owner="alice",
        recipient=RECIPIENT,
        amount="10.000000",
        destination_chain="sepolia",
        category=ExecutionCategory.cross_chain,
        source_chain="arc",
        burn_tx_hash=BURN_TX,
    )
    iris.queue(404)

    report = resume_pending_executions(orchestrator, store)

    (failed,) = report.failed
    assert failed.id == burned
    assert failed.status == ExecutionStatus.failed
    assert failed.is_stranded_burn

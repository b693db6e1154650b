"""Recurring transfer store and cadence arithmetic."""

import datetime

import pytest

from arc_autopay.errors import ValidationError
from arc_autopay.recurring import Cadence, TransferStatus, add_months

RECIPIENT = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"

CUSTODY_WALLET = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

UTC = datetime.timezone.utc


@pytest.mark.parametrize(
    "cadence, start, expected",
    [
        (Cadence.minute, datetime.datetime(2025, 1, 1, 23, 59, tzinfo=UTC), datetime.datetime(2025, 1, 2, 0, 0, tzinfo=UTC)),
        (Cadence.daily, datetime.datetime(2025, 2, 28, 9, tzinfo=UTC), datetime.datetime(2025, 3, 1, 9, tzinfo=UTC)),
        (Cadence.weekly, datetime.datetime(2025, 12, 29, tzinfo=UTC), datetime.datetime(2026, 1, 5, tzinfo=UTC)),
        (Cadence.monthly, datetime.datetime(2024, 1, 31, tzinfo=UTC), datetime.datetime(2024, 2, 29, tzinfo=UTC)),
        (Cadence.monthly, datetime.datetime(2025, 12, 15, tzinfo=UTC), datetime.datetime(2026, 1, 15, tzinfo=UTC)),
        (Cadence.yearly, datetime.datetime(2024, 2, 29, tzinfo=UTC), datetime.datetime(2025, 2, 28, tzinfo=UTC)),
    ],
)
def test_cadence_next_due_at(cadence, start, expected):
    assert cadence.next_due_at(start) == expected


def test_add_months_clamps():
    assert add_months(datetime.datetime(2025, 3, 31, tzinfo=UTC), 1) == datetime.datetime(2025, 4, 30, tzinfo=UTC)


def test_create_normalises(store, clock):
    transfer = store.create(
        owner="alice",
        wallet_address=CUSTODY_WALLET,
        recipient=RECIPIENT,
        amount="25.5",
        cadence="monthly",
        destination_chain="baseSepolia",
    )

    assert transfer.recipient == "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
    assert transfer.amount == "25.500000"
    assert transfer.cadence == Cadence.monthly
    assert transfer.destination_chain == "base_sepolia"
    assert transfer.status == TransferStatus.active
    assert transfer.next_due_at == clock.now
    assert store.get(transfer.id) == transfer


@pytest.mark.parametrize(
    "kwargs",
    [
        {"recipient": "bob.eth"},
        {"amount": "0"},
        {"destination_chain": "dogechain"},
    ],
)
def test_create_rejects_bad_input(store, kwargs):
    params = dict(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="daily", destination_chain="sepolia")
    params.update(kwargs)
    with pytest.raises(ValidationError):
        store.create(**params)


def test_find_due_skips_paused_and_future(store, clock):
    due = store.create(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="daily", destination_chain="sepolia", first_due_at=clock.now - datetime.timedelta(hours=1))
    paused = store.create(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="daily", destination_chain="sepolia", first_due_at=clock.now - datetime.timedelta(hours=2))
    store.create(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="daily", destination_chain="sepolia", first_due_at=clock.now + datetime.timedelta(seconds=1))

    assert store.set_status(paused.id, TransferStatus.paused)
    assert [t.id for t in store.find_due(clock.now)] == [due.id]

    store.set_status(paused.id, TransferStatus.active)
    assert [t.id for t in store.find_due(clock.now)] == [paused.id, due.id]


def test_mark_executed_counts_from_execution_time(store, clock):
    """Advancing from the execution time drops missed cycles after downtime."""
    transfer = store.create(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="daily", destination_chain="sepolia", first_due_at=clock.now - datetime.timedelta(days=5))

    updated = store.mark_executed(transfer.id, clock.now)

    assert updated.last_executed_at == clock.now
    assert updated.next_due_at == clock.now + datetime.timedelta(days=1)
    assert store.get(transfer.id).next_due_at == clock.now + datetime.timedelta(days=1)
    assert store.find_due(clock.now) == []


def test_list_and_delete(store):
    a = store.create(owner="alice", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="weekly", destination_chain="arc")
    store.create(owner="bob", wallet_address=CUSTODY_WALLET, recipient=RECIPIENT, amount="1", cadence="weekly", destination_chain="arc")

    assert [t.id for t in store.list("alice")] == [a.id]
    assert store.list("alice", TransferStatus.paused) == []

    assert store.delete(a.id)
    assert not store.delete(a.id)
    assert store.get(a.id) is None
    assert store.mark_executed(a.id, a.created_at) is None

"""Print the transfer execution history of one owner.

Environment variables
---------------------
- ``OWNER``: Owner identity to query (required).
- ``CATEGORY``: ``auto-pay``, ``send`` or ``cross-chain`` (default: all).
- ``LIMIT``: Maximum rows (default: 50).
- ``AUTOPAY_DB_PATH``: SQLite database file (default: ``autopay.sqlite``).
- ``LOG_LEVEL``: Logging level (default: ``warning``).

Usage::

    OWNER=0xAbc... poetry run python scripts/autopay/check-execution-history.py

    # Only scheduled payments
    OWNER=0xAbc... CATEGORY=auto-pay poetry run python scripts/autopay/check-execution-history.py
"""

import os

from tabulate import tabulate

from arc_autopay.database import Database
from arc_autopay.ledger import ExecutionCategory, ExecutionLedger
from arc_autopay.utils import setup_console_logging


def _short(tx_hash: str | None) -> str:
    if not tx_hash:
        return "-"
    return f"{tx_hash[:10]}...{tx_hash[-6:]}"


def main():
    setup_console_logging(default_log_level=os.environ.get("LOG_LEVEL", "warning"))

    owner = os.environ.get("OWNER")
    assert owner, "OWNER environment variable required"

    category = os.environ.get("CATEGORY")
    category_filter = ExecutionCategory(category) if category else None
    limit = int(os.environ.get("LIMIT", "50"))

    db = Database(os.environ.get("AUTOPAY_DB_PATH", "autopay.sqlite"))
    ledger = ExecutionLedger(db)
    executions = ledger.list(owner, category=category_filter, limit=limit)

    print(f"Owner: {owner}")
    print(f"Executions: {len(executions)}")

    if not executions:
        return

    rows = [
        [
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.category.value,
            e.status.value,
            e.amount,
            e.bridged_amount or "-",
            f"{e.source_chain or '?'} -> {e.destination_chain}",
            e.recipient,
            _short(e.burn_tx_hash),
            _short(e.mint_tx_hash or e.tx_hash),
            (e.error_message or "")[:60],
        ]
        for e in executions
    ]

    print(
        tabulate(
            rows,
            headers=["Created", "Type", "Status", "Amount", "Bridged", "Route", "Recipient", "Burn tx", "Mint/transfer tx", "Error"],
            tablefmt="simple",
        )
    )

    db.close()


if __name__ == "__main__":
    main()

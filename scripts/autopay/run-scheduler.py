"""Run the recurring payment scheduler.

Recovers executions left pending by a previous run, then executes due
recurring transfers every tick until interrupted.

Environment variables
---------------------
- ``RELAYER_PRIVATE_KEY``: relayer hot wallet key (required).
- ``AUTOPAY_DB_PATH``: SQLite database file (default: ``autopay.sqlite``).
- ``IRIS_API_URL``: Circle attestation API (default: sandbox).
- ``SCHEDULER_TICK_SECONDS``: Seconds between ticks (default: 60).
- ``SCHEDULER_PACING_SECONDS``: Seconds between transfers within a tick (default: 2).
- ``JSON_RPC_ARC``, ``JSON_RPC_SEPOLIA``, ...: RPC endpoint overrides.
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    RELAYER_PRIVATE_KEY=0x... poetry run python scripts/autopay/run-scheduler.py
"""

import logging
import os
import signal
import threading

from arc_autopay.config import build_services, load_settings
from arc_autopay.reconcile import resume_pending_executions
from arc_autopay.scheduler import RecurrenceScheduler
from arc_autopay.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    settings = load_settings()
    services = build_services(settings)

    print(f"Relayer: {services.relayer_address}")
    print(f"Database: {settings.db_path}")
    print(f"Iris API: {settings.iris_api_url}")
    print(f"Chains: {', '.join(c.name for c in services.registry)}")

    report = resume_pending_executions(services.orchestrator, services.store)
    print(f"Reconciled pending executions: {len(report.recovered)} recovered, {len(report.failed)} failed")

    scheduler = RecurrenceScheduler(
        services.store,
        services.orchestrator,
        tick_interval=settings.tick_seconds,
        pacing_delay=settings.pacing_seconds,
    )

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info("Received signal %d, stopping after the current tick", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        scheduler.run_forever(stop_event)
    finally:
        services.db.close()


if __name__ == "__main__":
    main()

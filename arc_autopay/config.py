"""Environment configuration and service wiring.

All settings come from environment variables, read once at startup:

- ``RELAYER_PRIVATE_KEY``: 0x-prefixed hot wallet key, needed for any chain write
- ``AUTOPAY_DB_PATH``: SQLite file, default ``autopay.sqlite``
- ``IRIS_API_URL``: Circle attestation API, default sandbox
- ``SCHEDULER_TICK_SECONDS``, ``SCHEDULER_PACING_SECONDS``
- ``ATTESTATION_POLL_INTERVAL``, ``ATTESTATION_MAX_ATTEMPTS``
- ``TX_RECEIPT_TIMEOUT``
- ``JSON_RPC_<CHAIN>``: RPC override per chain, e.g. ``JSON_RPC_SEPOLIA``
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from arc_autopay.cctp.attestation import AttestationPoller
from arc_autopay.cctp.constants import IRIS_API_SANDBOX_URL
from arc_autopay.chain import ChainKey, ChainRegistry, create_chain_registry
from arc_autopay.database import Database
from arc_autopay.errors import ConfigurationError
from arc_autopay.gateway import GatewayFactory
from arc_autopay.ledger import ExecutionLedger
from arc_autopay.orchestrator import TransferOrchestrator
from arc_autopay.recurring import RecurringTransferStore
from arc_autopay.retry import RetryPolicy
from arc_autopay.session import create_iris_session

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Settings:
    """Process configuration."""

    relayer_private_key: str | None = field(default=None, repr=False)
    db_path: Path = Path("autopay.sqlite")
    iris_api_url: str = IRIS_API_SANDBOX_URL
    tick_seconds: float = 60.0
    pacing_seconds: float = 2.0
    attestation_poll_interval: float = 5.0
    attestation_max_attempts: int = 60
    receipt_timeout: float = 180.0
    rpc_overrides: dict[ChainKey, str] = field(default_factory=dict)

    @property
    def relayer_configured(self) -> bool:
        return bool(self.relayer_private_key)

    @property
    def attestation_policy(self) -> RetryPolicy:
        return RetryPolicy(interval=self.attestation_poll_interval, max_attempts=self.attestation_max_attempts)


def _read_number(env: Mapping[str, str], name: str, default, kind=float, allow_zero=False):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {raw!r}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Read :py:class:`Settings` from the environment.

    :param env:
        Defaults to ``os.environ``

    :raise ConfigurationError:
        Malformed value
    """
    if env is None:
        env = os.environ

    key = env.get("RELAYER_PRIVATE_KEY", "").strip() or None
    if key is not None and not key.startswith("0x"):
        key = f"0x{key}"

    rpc_overrides = {}
    for chain in ChainKey:
        url = env.get(f"JSON_RPC_{chain.value.upper()}", "").strip()
        if url:
            rpc_overrides[chain] = url

    return Settings(
        relayer_private_key=key,
        db_path=Path(env.get("AUTOPAY_DB_PATH", "").strip() or "autopay.sqlite"),
        iris_api_url=(env.get("IRIS_API_URL", "").strip() or IRIS_API_SANDBOX_URL).rstrip("/"),
        tick_seconds=_read_number(env, "SCHEDULER_TICK_SECONDS", 60.0),
        pacing_seconds=_read_number(env, "SCHEDULER_PACING_SECONDS", 2.0, allow_zero=True),
        attestation_poll_interval=_read_number(env, "ATTESTATION_POLL_INTERVAL", 5.0),
        attestation_max_attempts=_read_number(env, "ATTESTATION_MAX_ATTEMPTS", 60, kind=int),
        receipt_timeout=_read_number(env, "TX_RECEIPT_TIMEOUT", 180.0),
        rpc_overrides=rpc_overrides,
    )


@dataclass(slots=True)
class Services:
    """Everything a process needs, built from one :py:class:`Settings`."""

    settings: Settings
    db: Database
    registry: ChainRegistry
    ledger: ExecutionLedger
    store: RecurringTransferStore
    poller: AttestationPoller

    #: ``None`` when the relayer key is not configured
    gateways: GatewayFactory | None = None

    #: ``None`` when the relayer key is not configured
    orchestrator: TransferOrchestrator | None = None

    @property
    def relayer_address(self) -> str | None:
        return self.gateways.relayer_address if self.gateways else None


def build_services(settings: Settings, require_relayer: bool = True) -> Services:
    """Open the database and wire chains, ledger and orchestrator.

    :param require_relayer:
        Raise if no relayer key is set. The read-only API runs without one.

    :raise ConfigurationError:
        Relayer key missing or malformed, or chain configuration invalid
    """
    if require_relayer and not settings.relayer_configured:
        raise ConfigurationError("RELAYER_PRIVATE_KEY is not set")

    registry = create_chain_registry(settings.rpc_overrides)
    db = Database(settings.db_path)
    ledger = ExecutionLedger(db)
    store = RecurringTransferStore(db)
    poller = AttestationPoller(create_iris_session(settings.iris_api_url), policy=settings.attestation_policy)

    services = Services(settings=settings, db=db, registry=registry, ledger=ledger, store=store, poller=poller)

    if settings.relayer_configured:
        services.gateways = GatewayFactory(registry, settings.relayer_private_key, receipt_timeout=settings.receipt_timeout)
        services.orchestrator = TransferOrchestrator(registry, services.gateways, ledger, poller)
        logger.info("Relayer hot wallet %s", services.gateways.relayer_address)
    else:
        logger.warning("RELAYER_PRIVATE_KEY is not set, relaying disabled")

    return services

"""Relay HTTP API.

Completes CCTP transfers whose burn was signed by the user's browser wallet:
the client posts the attestation it fetched from Iris and the relayer pays
gas for ``receiveMessage()`` on the destination chain. Also serves the
execution history the web client shows.

Run with::

    uvicorn --factory arc_autopay.relay_api:create_app_from_env --port 3001
"""

import datetime
import logging
from typing import Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from web3 import Web3

from arc_autopay.chain import ChainRegistry
from arc_autopay.errors import AutopayError, ConfigurationError, ValidationError
from arc_autopay.ledger import ExecutionCategory, ExecutionLedger
from arc_autopay.orchestrator import TransferOrchestrator
from arc_autopay.utils import normalise_tx_hash, utc_now

logger = logging.getLogger(__name__)


class AttestationPayload(BaseModel):
    """Iris ``message`` and ``attestation``, 0x-prefixed hex."""

    message: str | None = None
    attestation: str | None = None


class RelayRequest(BaseModel):
    """POST /api/relay body.

    Fields are optional at the model level so missing ones produce our
    ``400 {error}`` rather than FastAPI's 422.
    """

    burnTxHash: str | None = Field(None, description="depositForBurn() transaction on the source chain")
    destinationChain: str | None = Field(None, description="Chain key to mint on, e.g. sepolia")
    attestation: AttestationPayload | None = None


class RelayResponse(BaseModel):
    success: bool
    mintTxHash: str
    blockNumber: int
    explorerUrl: str


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _decode_hex(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def create_app(
    registry: ChainRegistry,
    ledger: ExecutionLedger,
    orchestrator: TransferOrchestrator | None = None,
    relayer_address: str | None = None,
    clock: Callable[[], datetime.datetime] = utc_now,
) -> FastAPI:
    """Build the relay API.

    :param orchestrator:
        ``None`` when no relayer key is configured. Read-only endpoints keep
        working, relaying answers HTTP 500.

    :param relayer_address:
        Hot wallet address, shown by ``/api/relayer-info``.
    """
    app = FastAPI(
        title="Arc AutoPay relayer",
        description="Completes CCTP transfers and serves execution history.",
        version="0.1.0",
    )

    supported_chains = [c.key.value for c in registry]

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": clock().isoformat(),
            "relayerConfigured": orchestrator is not None,
        }

    @app.post("/api/relay", response_model=RelayResponse)
    def relay(body: RelayRequest):
        if not body.burnTxHash or not body.destinationChain or body.attestation is None:
            return error_response(400, "Missing required parameters", required=["burnTxHash", "destinationChain", "attestation"])

        if not body.attestation.message or not body.attestation.attestation:
            return error_response(400, "Invalid attestation format", required=["attestation.message", "attestation.attestation"])

        try:
            message = _decode_hex(body.attestation.message)
            attestation = _decode_hex(body.attestation.attestation)
        except ValueError:
            return error_response(400, "Invalid attestation format", details="message and attestation must be hex")

        try:
            chain = registry.get(body.destinationChain)
        except ValidationError:
            return error_response(400, "Invalid destination chain", supportedChains=supported_chains)

        if orchestrator is None:
            logger.error("Relay requested but RELAYER_PRIVATE_KEY is not configured")
            return error_response(500, "Relayer not configured on server")

        logger.info("Relay request: burn %s, minting on %s", normalise_tx_hash(body.burnTxHash), chain.name)

        try:
            mint = orchestrator.relay_attested_message(chain.key, message, attestation)
        except ConfigurationError as e:
            logger.error("Relayer misconfigured: %s", e)
            return error_response(500, "Relayer not configured on server")
        except AutopayError as e:
            logger.warning("Relay of burn %s failed: %s", body.burnTxHash, e)
            return error_response(500, "Failed to complete mint transaction", details=str(e), timestamp=clock().isoformat())

        return RelayResponse(
            success=True,
            mintTxHash=mint.tx_hash,
            blockNumber=mint.block_number,
            explorerUrl=chain.get_explorer_tx_url(mint.tx_hash),
        )

    @app.get("/api/relayer-info")
    def relayer_info():
        if orchestrator is None or relayer_address is None:
            return error_response(500, "Relayer not configured")

        balances = {}
        for chain in registry:
            try:
                wei = orchestrator.gateways(chain.key).native_balance(relayer_address)
                balances[chain.key.value] = {"balance": str(Web3.from_wei(wei, "ether")), "chain": chain.name}
            except AutopayError as e:
                logger.warning("Could not read relayer balance on %s: %s", chain.name, e)
                balances[chain.key.value] = {"error": "Failed to fetch balance"}

        return {
            "address": relayer_address,
            "balances": balances,
            "supportedChains": supported_chains,
        }

    @app.get("/api/executions/{owner}")
    def list_executions(owner: str, category: str | None = None, limit: int | None = None):
        try:
            category_filter = ExecutionCategory(category) if category else None
        except ValueError:
            return error_response(400, f"Unknown category {category!r}", supportedCategories=[c.value for c in ExecutionCategory])

        executions = ledger.list(owner, category=category_filter, limit=limit)
        return {"executions": [e.to_json() for e in executions]}

    return app


def create_app_from_env() -> FastAPI:
    """Wire the API from environment variables, for ``uvicorn --factory``."""
    from arc_autopay.config import build_services, load_settings

    settings = load_settings()
    services = build_services(settings, require_relayer=False)
    return create_app(
        services.registry,
        services.ledger,
        orchestrator=services.orchestrator,
        relayer_address=services.relayer_address,
    )

"""CCTP V2 burn and mint legs.

Thin wrappers issuing the bridge-protocol contract calls through a
:py:class:`~arc_autopay.gateway.ChainGateway` and waiting for confirmation.
Sequencing, fees and record keeping live in
:py:mod:`arc_autopay.orchestrator`.

A full bridge runs in three phases:

1. **Burn phase**: approve (only when the allowance is short) + ``depositForBurn()``
   on the source chain
2. **Attestation phase**: poll Circle's Iris API, see :py:mod:`arc_autopay.cctp.attestation`
3. **Receive phase**: ``receiveMessage()`` on the destination chain

Example::

    burn = burn_usdc_cctp(
        source=gateways.get(ChainKey.arc),
        dest_chain=registry.get(ChainKey.sepolia),
        recipient="0xAbc...",
        amount=9_995_000,
    )
    attestation = poller.poll(burn.burn_tx_hash, source_domain=26)
    mint = receive_usdc_cctp(dest=gateways.get(ChainKey.sepolia), attestation=attestation)
"""

import logging
from dataclasses import dataclass

from eth_typing import HexAddress

from arc_autopay.cctp.attestation import CCTPAttestation
from arc_autopay.cctp.constants import DEFAULT_MAX_FEE, FINALITY_THRESHOLD_FAST, MAX_UINT256
from arc_autopay.chain import ChainConfig
from arc_autopay.gateway import ChainGateway, ChainTransaction
from arc_autopay.utils import address_to_bytes32

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CCTPBurnResult:
    """Result of the burn phase of a CCTP bridge.

    Contains everything needed to proceed with attestation and receive phases.
    """

    #: Transaction hash of the burn on the source chain
    burn_tx_hash: str

    #: Block of the burn transaction
    block_number: int

    #: Amount burned in raw USDC units (6 decimals)
    amount: int

    #: CCTP domain of the source chain, used to look up the attestation
    source_domain: int

    #: CCTP domain of the destination chain
    dest_domain: int

    #: Address the USDC will be minted to
    recipient: HexAddress

    #: Approval transaction, if the allowance had to be raised
    approve_tx_hash: str | None = None


def ensure_burn_allowance(source: ChainGateway, amount: int) -> ChainTransaction | None:
    """Approve USDC to TokenMessengerV2 if the current allowance is below ``amount``.

    Approval is unlimited, so later burns skip this transaction.

    :return:
        Approval transaction, or ``None`` if the allowance was already enough
    """
    spender = source.chain.token_messenger
    allowance = source.token_allowance(source.sender, spender)
    if allowance >= amount:
        logger.debug("Allowance %d already covers %d on %s", allowance, amount, source.chain.name)
        return None

    logger.info("Allowance %d below %d on %s, approving TokenMessengerV2", allowance, amount, source.chain.name)
    return source.approve_token(spender, MAX_UINT256)


def burn_usdc_cctp(
    *,
    source: ChainGateway,
    dest_chain: ChainConfig,
    recipient: HexAddress,
    amount: int,
    max_fee: int = DEFAULT_MAX_FEE,
    min_finality_threshold: int = FINALITY_THRESHOLD_FAST,
) -> CCTPBurnResult:
    """Execute the approve + burn phase of a CCTP bridge.

    :param source:
        Gateway for the source chain, holding the USDC in its hot wallet.

    :param dest_chain:
        Destination chain config, for the CCTP domain.

    :param recipient:
        Address on the destination chain receiving the minted USDC.
        Zero-padded to ``bytes32``.

    :param amount:
        Amount in raw USDC units (6 decimals).

    :param max_fee:
        Max fee in raw USDC the burn may pay for fast attestation.

    :param min_finality_threshold:
        Finality required before Iris attests the burn.

    :return:
        :class:`CCTPBurnResult` with burn transaction hash and metadata.
    """
    assert amount > 0, f"Burn amount must be positive: {amount}"

    logger.info(
        "Burning %d raw USDC on %s for %s (recipient %s)",
        amount,
        source.chain.name,
        dest_chain.name,
        recipient,
    )

    # Step 1: Approve USDC to TokenMessengerV2
    approve_tx = ensure_burn_allowance(source, amount)

    # Step 2: Burn USDC via depositForBurn
    burn_tx = source.deposit_for_burn(
        amount=amount,
        destination_domain=dest_chain.domain,
        mint_recipient=address_to_bytes32(recipient),
        max_fee=max_fee,
        min_finality_threshold=min_finality_threshold,
    )
    logger.info("CCTP burn confirmed: %s", source.chain.get_explorer_tx_url(burn_tx.tx_hash))

    return CCTPBurnResult(
        burn_tx_hash=burn_tx.tx_hash,
        block_number=burn_tx.block_number,
        amount=amount,
        source_domain=source.chain.domain,
        dest_domain=dest_chain.domain,
        recipient=recipient,
        approve_tx_hash=approve_tx.tx_hash if approve_tx else None,
    )


def receive_usdc_cctp(*, dest: ChainGateway, attestation: CCTPAttestation) -> ChainTransaction:
    """Execute the receive phase of a CCTP bridge on the destination chain.

    Calls ``receiveMessage()`` on the destination chain's MessageTransmitterV2.
    Anyone can relay; no special permissions required. A message can be
    received only once: the second call for the same attestation reverts
    and surfaces as :py:class:`~arc_autopay.errors.ChainCallError`.

    :return:
        Confirmed mint transaction
    """
    mint_tx = dest.receive_message(attestation.message, attestation.attestation)
    logger.info("CCTP receive confirmed: %s", dest.chain.get_explorer_tx_url(mint_tx.tx_hash))
    return mint_tx


def transfer_usdc_direct(*, gateway: ChainGateway, recipient: HexAddress, amount: int) -> ChainTransaction:
    """Plain ERC-20 transfer for same-chain payments. No burn, no attestation."""
    assert amount > 0, f"Transfer amount must be positive: {amount}"
    logger.info("Direct USDC transfer of %d raw units on %s to %s", amount, gateway.chain.name, recipient)
    tx = gateway.transfer_token(recipient, amount)
    logger.info("Direct transfer confirmed: %s", gateway.chain.get_explorer_tx_url(tx.tx_hash))
    return tx

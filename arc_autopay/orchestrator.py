"""Run one funds transfer from start to a terminal ledger record.

Same-chain transfers are a single ERC-20 ``transfer()``. Cross-chain
transfers deduct the relayer fee and run the CCTP V2 flow:

1. approve (only if the allowance is short) and ``depositForBurn()`` on the source chain
2. poll Circle's Iris API for the attestation
3. ``receiveMessage()`` on the destination chain

Recurring transfers first release the payment from the user's custody
contract into the relayer hot wallet.

Every leg is persisted as soon as it confirms, or as soon as it is broadcast
if its receipt does not arrive in time. A failed execution keeps its partial
state, and a later execution can continue from it (``resume_from``) without
repeating a custody release, burn or transfer that reached the chain.

Example::

    orchestrator = TransferOrchestrator(registry, GatewayFactory(registry, key), ledger, poller)
    execution = orchestrator.execute_transfer(
        TransferRequest(
            owner="alice",
            source_chain="arc",
            destination_chain="sepolia",
            recipient="0xAbc...",
            amount="10.00",
        )
    )
    assert execution.status == ExecutionStatus.success
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable

from eth_typing import HexAddress

from arc_autopay.cctp.attestation import AttestationPoller
from arc_autopay.cctp.bridge import burn_usdc_cctp, receive_usdc_cctp, transfer_usdc_direct
from arc_autopay.cctp.constants import DEFAULT_MAX_FEE, FINALITY_THRESHOLD_FAST
from arc_autopay.chain import ChainConfig, ChainKey, ChainRegistry
from arc_autopay.errors import ChainCallError, InsufficientFundsError, TransferError, ValidationError
from arc_autopay.gateway import ChainGateway
from arc_autopay.ledger import ExecutionCategory, ExecutionLedger, ExecutionStatus, TransferExecution
from arc_autopay.utils import calculate_bridge_fee, format_token_amount, parse_token_amount, validate_address

logger = logging.getLogger(__name__)


#: Error recorded on pending executions that never got a burn hash
INTERRUPTED_BEFORE_BURN = "Interrupted before burn: no burn transaction recorded, state unknown"


@dataclass(slots=True)
class TransferRequest:
    """What to send, where, and who pays for it."""

    #: Identity of the user the payment belongs to
    owner: str

    source_chain: ChainKey | str

    destination_chain: ChainKey | str

    recipient: str

    #: Decimal string, e.g. ``"10.00"``
    amount: str

    #: Set for scheduled runs of a recurring transfer
    recurring_transfer_id: str | None = None

    #: Custody contract to release the amount from. ``None`` spends the hot wallet balance.
    funding_wallet: str | None = None

    #: Ledger category. Derived from the other fields when not given.
    category: ExecutionCategory | None = None


@dataclass(slots=True, frozen=True)
class _TransferPlan:
    """A validated :py:class:`TransferRequest` with amounts resolved."""

    request: TransferRequest
    source: ChainConfig
    dest: ChainConfig
    recipient: HexAddress
    funding_wallet: HexAddress | None
    raw_amount: int
    fee: int
    bridged: int

    @property
    def is_same_chain(self) -> bool:
        return self.source.key == self.dest.key

    @property
    def category(self) -> ExecutionCategory:
        if self.request.category is not None:
            return self.request.category
        if self.request.recurring_transfer_id is not None:
            return ExecutionCategory.auto_pay
        return ExecutionCategory.send if self.is_same_chain else ExecutionCategory.cross_chain


def request_from_execution(execution: TransferExecution) -> TransferRequest:
    """Rebuild the request an execution was created for."""
    return TransferRequest(
        owner=execution.owner,
        source_chain=execution.source_chain,
        destination_chain=execution.destination_chain,
        recipient=execution.recipient,
        amount=execution.amount,
        recurring_transfer_id=execution.recurring_transfer_id,
        category=execution.category,
    )


class TransferOrchestrator:
    """Sequence custody release, burn, attestation and mint for one transfer.

    Validation and configuration errors are raised before a ledger record
    exists. After that, every :py:class:`~arc_autopay.errors.TransferError`
    ends the execution as ``failed`` with the error message, and the failed
    execution is returned. Unexpected exceptions also mark the execution
    ``failed`` and are re-raised, so no execution is left ``pending`` after
    a call returns.

    :param gateways:
        Callable returning the :py:class:`~arc_autopay.gateway.ChainGateway`
        for a chain key, usually a :py:class:`~arc_autopay.gateway.GatewayFactory`.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        gateways: Callable[[ChainKey], ChainGateway],
        ledger: ExecutionLedger,
        poller: AttestationPoller,
        max_fee: int = DEFAULT_MAX_FEE,
        min_finality_threshold: int = FINALITY_THRESHOLD_FAST,
    ):
        self.registry = registry
        self.gateways = gateways
        self.ledger = ledger
        self.poller = poller
        self.max_fee = max_fee
        self.min_finality_threshold = min_finality_threshold

    def __repr__(self) -> str:
        return f"<TransferOrchestrator {self.registry} {self.ledger}>"

    def _plan(self, request: TransferRequest) -> _TransferPlan:
        """Validate a request.

        :raise ValidationError:
            Bad address, amount or chain
        """
        source = self.registry.get(request.source_chain)
        dest = self.registry.get(request.destination_chain)
        recipient = validate_address(request.recipient, "recipient")
        funding_wallet = validate_address(request.funding_wallet, "custody wallet address") if request.funding_wallet else None
        raw_amount = parse_token_amount(request.amount)

        if source.key == dest.key:
            fee, bridged = 0, raw_amount
        else:
            fee, bridged = calculate_bridge_fee(raw_amount)
            if bridged <= 0:
                raise ValidationError(f"Amount {request.amount} is too small to bridge after fees")

        return _TransferPlan(
            request=request,
            source=source,
            dest=dest,
            recipient=recipient,
            funding_wallet=funding_wallet,
            raw_amount=raw_amount,
            fee=fee,
            bridged=bridged,
        )

    def execute_transfer(self, request: TransferRequest, resume_from: TransferExecution | None = None) -> TransferExecution:
        """Run a transfer and return its finalised execution.

        :param resume_from:
            Earlier failed execution of the same payment. Its custody release,
            burn and direct transfer hashes are carried over. Each carried
            transaction is looked up first: one that succeeded is not repeated
            (a carried burn goes straight to attestation polling and mint), one
            that reverted is sent again, and one without a receipt fails the
            run without sending anything.

        :raise ValidationError:
            Request rejected, nothing recorded

        :raise ConfigurationError:
            Relayer credentials or chain missing, nothing recorded
        """
        plan = self._plan(request)

        source_gateway = self.gateways(plan.source.key)
        dest_gateway = source_gateway if plan.is_same_chain else self.gateways(plan.dest.key)

        release_tx_hash = resume_from.release_tx_hash if resume_from else None
        burn_tx_hash = resume_from.burn_tx_hash if resume_from else None
        transfer_tx_hash = resume_from.tx_hash if resume_from else None

        execution_id = self.ledger.create(
            owner=request.owner,
            recipient=plan.recipient,
            amount=format_token_amount(plan.raw_amount),
            destination_chain=plan.dest.key.value,
            category=plan.category,
            recurring_transfer_id=request.recurring_transfer_id,
            source_chain=plan.source.key.value,
            release_tx_hash=release_tx_hash,
            burn_tx_hash=burn_tx_hash,
            tx_hash=transfer_tx_hash,
            resumed_from=resume_from.id if resume_from else None,
        )

        if resume_from:
            logger.info(
                "Execution %s continues %s (release=%s, burn=%s, transfer=%s)",
                execution_id,
                resume_from.id,
                release_tx_hash,
                burn_tx_hash,
                transfer_tx_hash,
            )

        return self._finalise_on_error(
            execution_id,
            lambda: self._run(execution_id, plan, source_gateway, dest_gateway, release_tx_hash, burn_tx_hash, transfer_tx_hash),
        )

    def _finalise_on_error(self, execution_id: str, func: Callable[[], TransferExecution]) -> TransferExecution:
        try:
            return func()
        except TransferError as e:
            logger.warning("Execution %s failed: %s", execution_id, e)
            return self.ledger.finalise(execution_id, ExecutionStatus.failed, error_message=str(e))
        except Exception as e:
            logger.exception("Execution %s crashed", execution_id)
            self.ledger.finalise(execution_id, ExecutionStatus.failed, error_message=f"Unexpected error: {e}")
            raise

    def _run(
        self,
        execution_id: str,
        plan: _TransferPlan,
        source: ChainGateway,
        dest: ChainGateway,
        release_tx_hash: str | None,
        burn_tx_hash: str | None,
        transfer_tx_hash: str | None,
    ) -> TransferExecution:
        if not plan.is_same_chain:
            self.ledger.record_progress(
                execution_id,
                fee_amount=format_token_amount(plan.fee),
                bridged_amount=format_token_amount(plan.bridged),
            )

        # Carried hashes may belong to transactions that were never confirmed
        if burn_tx_hash is not None and not self._carried_tx_landed(source, burn_tx_hash, "Burn"):
            self.ledger.record_progress(execution_id, burn_tx_hash=None)
            burn_tx_hash = None

        if burn_tx_hash is None:
            if transfer_tx_hash is not None:
                if self._carried_tx_landed(source, transfer_tx_hash, "USDC transfer"):
                    return self.ledger.finalise(execution_id, ExecutionStatus.success, tx_hash=transfer_tx_hash)
                self.ledger.record_progress(execution_id, tx_hash=None)

            if release_tx_hash is not None and not self._carried_tx_landed(source, release_tx_hash, "Custody release"):
                self.ledger.record_progress(execution_id, release_tx_hash=None)
                release_tx_hash = None

            if release_tx_hash is None and plan.funding_wallet is not None:
                with self._keep_unconfirmed(execution_id, "release_tx_hash"):
                    release = self._release_custody_funds(source, plan)
                self.ledger.record_progress(execution_id, release_tx_hash=release.tx_hash)
            else:
                self._check_hot_wallet_balance(source, plan.raw_amount)

            if plan.is_same_chain:
                with self._keep_unconfirmed(execution_id, "tx_hash"):
                    tx = transfer_usdc_direct(gateway=source, recipient=plan.recipient, amount=plan.raw_amount)
                return self.ledger.finalise(execution_id, ExecutionStatus.success, tx_hash=tx.tx_hash)

            burn_tx_hash = self._burn(execution_id, plan, source)

        return self._attest_and_mint(execution_id, plan.source, burn_tx_hash, dest)

    @contextmanager
    def _keep_unconfirmed(self, execution_id: str, field: str):
        """Record the hash of a transaction that was broadcast but not confirmed.

        It may still land, so a rerun must look it up instead of sending again.
        """
        try:
            yield
        except ChainCallError as e:
            if e.tx_hash and not e.reverted:
                self.ledger.record_progress(execution_id, **{field: e.tx_hash})
            raise

    def _carried_tx_landed(self, gateway: ChainGateway, tx_hash: str, description: str) -> bool:
        """Look up a transaction carried over from an earlier execution.

        :return:
            ``True`` if it succeeded, ``False`` if it reverted and can be sent again

        :raise ChainCallError:
            No receipt: the transaction is pending or was dropped, and sending
            again could pay twice
        """
        succeeded = gateway.transaction_succeeded(tx_hash)
        if succeeded is None:
            raise ChainCallError(f"{description} {tx_hash} is still unconfirmed on {gateway.chain.name}, not sending again", tx_hash=tx_hash)
        if not succeeded:
            logger.warning("%s %s reverted on %s, sending again", description, tx_hash, gateway.chain.name)
        return succeeded

    def _release_custody_funds(self, source: ChainGateway, plan: _TransferPlan):
        """Move the payment from the user's custody contract to the hot wallet.

        :raise InsufficientFundsError:
            Custody contract holds less than the requested amount
        """
        available = source.custody_balance(plan.funding_wallet)
        if available < plan.raw_amount:
            raise InsufficientFundsError(
                f"Insufficient funds in custody wallet {plan.funding_wallet}: {format_token_amount(available)} < {format_token_amount(plan.raw_amount)}",
                available=available,
                required=plan.raw_amount,
            )

        transfer_id = plan.request.recurring_transfer_id or ""
        logger.info("Releasing %s USDC from custody wallet %s", format_token_amount(plan.raw_amount), plan.funding_wallet)
        return source.release_custody_funds(plan.funding_wallet, transfer_id)

    def _check_hot_wallet_balance(self, gateway: ChainGateway, required: int):
        available = gateway.token_balance(gateway.sender)
        if available < required:
            raise InsufficientFundsError(
                f"Insufficient relayer balance on {gateway.chain.name}: {format_token_amount(available)} < {format_token_amount(required)}",
                available=available,
                required=required,
            )

    def _burn(self, execution_id: str, plan: _TransferPlan, source: ChainGateway) -> str:
        """Burn and persist the hash before anything else happens."""
        with self._keep_unconfirmed(execution_id, "burn_tx_hash"):
            burn = burn_usdc_cctp(
                source=source,
                dest_chain=plan.dest,
                recipient=plan.recipient,
                amount=plan.bridged,
                max_fee=self.max_fee,
                min_finality_threshold=self.min_finality_threshold,
            )

        self.ledger.record_progress(execution_id, burn_tx_hash=burn.burn_tx_hash)
        return burn.burn_tx_hash

    def _attest_and_mint(self, execution_id: str, source: ChainConfig, burn_tx_hash: str, dest: ChainGateway) -> TransferExecution:
        attestation = self.poller.poll(burn_tx_hash, source_domain=source.domain)
        mint = receive_usdc_cctp(dest=dest, attestation=attestation)
        return self.ledger.finalise(execution_id, ExecutionStatus.success, mint_tx_hash=mint.tx_hash)

    def continue_pending(self, execution: TransferExecution) -> TransferExecution:
        """Finish an execution left ``pending`` by a crashed process.

        With a burn hash, the attestation is polled again and the message
        minted. The burn itself is never re-submitted. Without a burn hash
        there is no way to tell what happened on-chain, so the execution is
        marked failed.
        """
        assert execution.status == ExecutionStatus.pending, f"Not pending: {execution.id}"

        if execution.burn_tx_hash is None:
            logger.warning("Execution %s was interrupted before burn, marking failed", execution.id)
            return self.ledger.finalise(execution.id, ExecutionStatus.failed, error_message=INTERRUPTED_BEFORE_BURN)

        def _resume() -> TransferExecution:
            source = self.registry.get(execution.source_chain)
            dest = self.gateways(self.registry.get(execution.destination_chain).key)
            logger.info("Resuming execution %s from burn %s", execution.id, execution.burn_tx_hash)
            return self._attest_and_mint(execution.id, source, execution.burn_tx_hash, dest)

        return self._finalise_on_error(execution.id, _resume)

    def resume_execution(self, execution_id: str) -> TransferExecution:
        """Explicit resubmission of an unfinished transfer.

        - ``pending``: continued in place, see :py:meth:`continue_pending`
        - ``failed`` with a stranded burn, an unspent custody release or an
          unconfirmed direct transfer: a new execution continues from it
        - anything else has nothing to resume

        :raise ValidationError:
            Unknown execution, or nothing to resume
        """
        execution = self.ledger.get(execution_id)
        if execution is None:
            raise ValidationError(f"Unknown execution {execution_id}")

        if execution.status == ExecutionStatus.pending:
            return self.continue_pending(execution)

        if execution.is_resumable:
            return self.execute_transfer(request_from_execution(execution), resume_from=execution)

        raise ValidationError(f"Execution {execution_id} is {execution.status.value} with nothing to resume")

    def relay_attested_message(self, destination_chain: ChainKey | str, message: bytes, attestation: bytes):
        """Mint an already attested burn on behalf of a client.

        Used by the relay HTTP endpoint, where the browser wallet did the burn
        and fetched the attestation itself.

        :return:
            Confirmed :py:class:`~arc_autopay.gateway.ChainTransaction`
        """
        dest = self.registry.get(destination_chain)
        gateway = self.gateways(dest.key)
        return gateway.receive_message(message, attestation)

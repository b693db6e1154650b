"""Chain RPC collaborator.

:py:class:`ChainGateway` is the whole surface the transfer core needs from a
chain: read balances and allowances, and submit a handful of contract calls,
each blocking until the transaction is confirmed.

:py:class:`Web3ChainGateway` implements it with web3.py and the relayer
:py:class:`~arc_autopay.hotwallet.HotWallet`. It is the only place where
web3, JSON-RPC and HTTP exceptions are seen; they leave this module as
:py:class:`~arc_autopay.errors.ChainCallError`.
"""

import abc
import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests
from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import Contract, ContractFunction
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from arc_autopay.abi import AUTOPAY_WALLET_ABI, ERC20_ABI, MESSAGE_TRANSMITTER_V2_ABI, TOKEN_MESSENGER_V2_ABI
from arc_autopay.cctp.constants import ZERO_BYTES32
from arc_autopay.chain import ChainConfig, ChainKey, ChainRegistry
from arc_autopay.errors import ChainCallError, ConfigurationError
from arc_autopay.hotwallet import HotWallet

logger = logging.getLogger(__name__)

#: Exceptions a web3 call may raise for RPC, transport or revert failures
RPC_ERRORS = (Web3Exception, requests.RequestException, ValueError, OSError)

#: Default seconds to wait for a transaction receipt
DEFAULT_RECEIPT_TIMEOUT = 180.0

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class ChainTransaction:
    """A confirmed, successful transaction."""

    #: 0x-prefixed transaction hash
    tx_hash: str

    #: Block the transaction was included in
    block_number: int


class ChainGateway(abc.ABC):
    """Minimal capability surface of one chain, bound to the relayer hot wallet.

    All write methods sign with the relayer key, broadcast, and block until
    the receipt is available. They return only for successful transactions.

    :raise ChainCallError:
        From every method, for RPC failures, reverts and receipt timeouts
    """

    #: Chain this gateway talks to
    chain: ChainConfig

    @property
    @abc.abstractmethod
    def sender(self) -> HexAddress:
        """Relayer hot wallet address on this chain."""

    @abc.abstractmethod
    def native_balance(self, owner: HexAddress) -> int:
        """Gas token balance in wei."""

    @abc.abstractmethod
    def token_balance(self, owner: HexAddress) -> int:
        """USDC balance in raw units."""

    @abc.abstractmethod
    def token_allowance(self, owner: HexAddress, spender: HexAddress) -> int:
        """USDC allowance in raw units."""

    @abc.abstractmethod
    def approve_token(self, spender: HexAddress, amount: int) -> ChainTransaction:
        """``USDC.approve(spender, amount)`` from the hot wallet."""

    @abc.abstractmethod
    def transfer_token(self, recipient: HexAddress, amount: int) -> ChainTransaction:
        """``USDC.transfer(recipient, amount)`` from the hot wallet."""

    @abc.abstractmethod
    def deposit_for_burn(
        self,
        amount: int,
        destination_domain: int,
        mint_recipient: bytes,
        max_fee: int,
        min_finality_threshold: int,
    ) -> ChainTransaction:
        """``TokenMessengerV2.depositForBurn()`` burning this chain's USDC."""

    @abc.abstractmethod
    def receive_message(self, message: bytes, attestation: bytes) -> ChainTransaction:
        """``MessageTransmitterV2.receiveMessage()``, minting USDC on this chain."""

    @abc.abstractmethod
    def transaction_succeeded(self, tx_hash: str) -> bool | None:
        """Outcome of an earlier broadcast.

        :return:
            ``True`` if mined and successful, ``False`` if reverted,
            ``None`` if there is no receipt, i.e. still pending or dropped
        """

    @abc.abstractmethod
    def custody_balance(self, wallet: HexAddress) -> int:
        """USDC held by a user's custody contract."""

    @abc.abstractmethod
    def release_custody_funds(self, wallet: HexAddress, transfer_id: str) -> ChainTransaction:
        """``AutoPayWallet.executeAutoPayment(id)``, releasing funds to the hot wallet."""


class Web3ChainGateway(ChainGateway):
    """:py:class:`ChainGateway` backed by a web3.py connection."""

    def __init__(
        self,
        chain: ChainConfig,
        web3: Web3,
        hot_wallet: HotWallet,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        gas_limit: int | None = None,
    ):
        self.chain = chain
        self.web3 = web3
        self.hot_wallet = hot_wallet
        self.receipt_timeout = receipt_timeout
        self.gas_limit = gas_limit
        self._nonce_synced = False

        self.usdc: Contract = web3.eth.contract(address=chain.usdc, abi=ERC20_ABI)
        self.token_messenger: Contract = web3.eth.contract(address=chain.token_messenger, abi=TOKEN_MESSENGER_V2_ABI)
        self.message_transmitter: Contract = web3.eth.contract(address=chain.message_transmitter, abi=MESSAGE_TRANSMITTER_V2_ABI)

    def __repr__(self) -> str:
        return f"<Web3ChainGateway {self.chain.key.value} sender={self.sender}>"

    @property
    def sender(self) -> HexAddress:
        return self.hot_wallet.address

    def _call(self, description: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except RPC_ERRORS as e:
            raise ChainCallError(f"{description} failed on {self.chain.name}: {e}") from e

    def _transact(self, description: str, func: ContractFunction) -> ChainTransaction:
        """Sign, broadcast and wait for a contract call."""
        if not self._nonce_synced:
            self._call("Nonce sync", lambda: self.hot_wallet.sync_nonce(self.web3))
            self._nonce_synced = True

        tx_params = {"gas": self.gas_limit} if self.gas_limit else {}

        try:
            signed = self.hot_wallet.sign_bound_call_with_new_nonce(func, tx_params=tx_params, web3=self.web3)
            tx_hash = Web3.to_hex(self.web3.eth.send_raw_transaction(signed.raw_transaction))
        except RPC_ERRORS as e:
            # The node may or may not have seen the transaction, read the nonce again
            self._nonce_synced = False
            raise ChainCallError(f"{description} could not be submitted on {self.chain.name}: {e}") from e

        logger.info("%s submitted on %s: %s", description, self.chain.name, tx_hash)

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise ChainCallError(f"{description} not confirmed within {self.receipt_timeout:.0f}s on {self.chain.name}: {tx_hash}", tx_hash=tx_hash) from e
        except RPC_ERRORS as e:
            raise ChainCallError(f"{description} receipt lookup failed on {self.chain.name}: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise ChainCallError(f"{description} reverted on {self.chain.name}: {tx_hash}", tx_hash=tx_hash, reverted=True)

        logger.info("%s confirmed on %s in block %d: %s", description, self.chain.name, receipt["blockNumber"], tx_hash)
        return ChainTransaction(tx_hash=tx_hash, block_number=receipt["blockNumber"])

    def native_balance(self, owner: HexAddress) -> int:
        return self._call("Native balance", lambda: self.web3.eth.get_balance(owner))

    def token_balance(self, owner: HexAddress) -> int:
        return self._call("USDC balanceOf", lambda: self.usdc.functions.balanceOf(owner).call())

    def token_allowance(self, owner: HexAddress, spender: HexAddress) -> int:
        return self._call("USDC allowance", lambda: self.usdc.functions.allowance(owner, spender).call())

    def approve_token(self, spender: HexAddress, amount: int) -> ChainTransaction:
        return self._transact("USDC approve", self.usdc.functions.approve(spender, amount))

    def transfer_token(self, recipient: HexAddress, amount: int) -> ChainTransaction:
        return self._transact("USDC transfer", self.usdc.functions.transfer(recipient, amount))

    def deposit_for_burn(
        self,
        amount: int,
        destination_domain: int,
        mint_recipient: bytes,
        max_fee: int,
        min_finality_threshold: int,
    ) -> ChainTransaction:
        assert len(mint_recipient) == 32, f"mintRecipient must be 32 bytes, got {len(mint_recipient)}"
        func = self.token_messenger.functions.depositForBurn(
            amount,
            destination_domain,
            mint_recipient,
            self.chain.usdc,
            ZERO_BYTES32,
            max_fee,
            min_finality_threshold,
        )
        return self._transact("CCTP depositForBurn", func)

    def receive_message(self, message: bytes, attestation: bytes) -> ChainTransaction:
        func = self.message_transmitter.functions.receiveMessage(message, attestation)
        return self._transact("CCTP receiveMessage", func)

    def transaction_succeeded(self, tx_hash: str) -> bool | None:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_ERRORS as e:
            raise ChainCallError(f"Receipt lookup failed on {self.chain.name}: {e}", tx_hash=tx_hash) from e
        return receipt["status"] == 1

    def _custody_contract(self, wallet: HexAddress) -> Contract:
        return self.web3.eth.contract(address=Web3.to_checksum_address(wallet), abi=AUTOPAY_WALLET_ABI)

    def custody_balance(self, wallet: HexAddress) -> int:
        contract = self._custody_contract(wallet)
        return self._call("Custody getBalance", lambda: contract.functions.getBalance().call())

    def release_custody_funds(self, wallet: HexAddress, transfer_id: str) -> ChainTransaction:
        contract = self._custody_contract(wallet)
        return self._transact("Custody executeAutoPayment", contract.functions.executeAutoPayment(transfer_id))


def create_chain_web3(chain: ChainConfig, request_timeout: float = 30.0) -> Web3:
    """Connect to a chain's JSON-RPC endpoint.

    PoA extra-data handling is always injected: Polygon Amoy and some L2
    testnets return oversized ``extraData`` in block headers.
    """
    web3 = Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": request_timeout}))
    web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


class GatewayFactory:
    """Build one :py:class:`Web3ChainGateway` per chain and keep it.

    Keeping a single gateway per chain means a single hot wallet nonce
    counter per (wallet, chain).
    """

    def __init__(
        self,
        registry: ChainRegistry,
        private_key: str | None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        web3_factory: Callable[[ChainConfig], Web3] = create_chain_web3,
    ):
        if not private_key:
            raise ConfigurationError("Relayer private key not configured")

        try:
            self.hot_wallet = HotWallet.from_private_key(private_key)
        except Exception as e:
            # eth_keys raises its own ValidationError for bad key bytes
            raise ConfigurationError("Relayer private key is malformed") from e

        self.registry = registry
        self.receipt_timeout = receipt_timeout
        self.web3_factory = web3_factory
        self._gateways: dict[ChainKey, ChainGateway] = {}

    def __repr__(self) -> str:
        return f"<GatewayFactory relayer={self.hot_wallet.address} chains={len(self.registry)}>"

    @property
    def relayer_address(self) -> HexAddress:
        return self.hot_wallet.address

    def get(self, chain: ChainKey | str) -> ChainGateway:
        """Gateway for a chain, created on first use."""
        config = self.registry.get(chain)
        gateway = self._gateways.get(config.key)
        if gateway is None:
            gateway = Web3ChainGateway(
                config,
                self.web3_factory(config),
                self.hot_wallet.clone(),
                receipt_timeout=self.receipt_timeout,
            )
            self._gateways[config.key] = gateway
        return gateway

    __call__ = get

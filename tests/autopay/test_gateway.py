"""Relayer hot wallet and web3 gateway.

No RPC connection is made: ``web3.eth`` is replaced by a stub with scripted
answers, so the conversion of web3 failures into
:py:class:`~arc_autopay.errors.ChainCallError` runs against real signing.
"""

import pytest
from eth_utils import keccak
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from arc_autopay.chain import ChainKey
from arc_autopay.errors import ChainCallError, ConfigurationError
from arc_autopay.gateway import GatewayFactory, Web3ChainGateway
from arc_autopay.hotwallet import HotWallet

#: Anvil test account #0
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

SEPOLIA_CHAIN_ID = 11155111


class StubContractCall:
    """Bound contract call whose ``build_transaction()`` needs no RPC."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.built: list[dict] = []

    def build_transaction(self, params: dict) -> dict:
        if self.error is not None:
            raise self.error
        self.built.append(params)
        return {
            "to": ADDRESS,
            "value": 0,
            "data": "0x",
            "gas": 100_000,
            "maxFeePerGas": 10**9,
            "maxPriorityFeePerGas": 10**9,
            "chainId": params["chainId"],
            "nonce": params["nonce"],
        }


class StubEth:
    """The part of ``web3.eth`` the gateway uses."""

    def __init__(self):
        self._eth = Web3().eth
        self.chain_id = SEPOLIA_CHAIN_ID
        self.next_nonce = 4
        self.nonce_reads = 0
        self.sent: list[bytes] = []
        self.send_error: Exception | None = None
        self.receipt: dict | None = {"status": 1, "blockNumber": 123}
        self.receipt_error: Exception | None = None

    def contract(self, **kwargs):
        return self._eth.contract(**kwargs)

    def get_transaction_count(self, address, block_identifier):
        self.nonce_reads += 1
        return self.next_nonce

    def send_raw_transaction(self, raw_transaction):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(bytes(raw_transaction))
        return keccak(raw_transaction)

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt

    def get_transaction_receipt(self, tx_hash):
        if self.receipt is None:
            raise TransactionNotFound(f"Transaction with hash {tx_hash!r} not found")
        return self.receipt


class StubWeb3:
    def __init__(self):
        self.eth = StubEth()


@pytest.fixture()
def web3() -> StubWeb3:
    return StubWeb3()


@pytest.fixture()
def gateway(registry, web3) -> Web3ChainGateway:
    return Web3ChainGateway(registry.get("sepolia"), web3, HotWallet.from_private_key(PRIVATE_KEY), receipt_timeout=5)


def _sent_hash(web3: StubWeb3, idx: int = -1) -> str:
    return Web3.to_hex(keccak(web3.eth.sent[idx]))


def test_hot_wallet_nonces():
    wallet = HotWallet.from_private_key(PRIVATE_KEY)
    assert wallet.address == ADDRESS

    with pytest.raises(AssertionError):
        wallet.allocate_nonce()

    wallet.current_nonce = 7
    assert wallet.allocate_nonce() == 7
    assert wallet.allocate_nonce() == 8

    # Only the latest nonce can be given back
    wallet.release_nonce(7)
    assert wallet.current_nonce == 9
    wallet.release_nonce(8)
    assert wallet.current_nonce == 8


def test_hot_wallet_signs_bound_call(web3):
    wallet = HotWallet.from_private_key(PRIVATE_KEY)
    wallet.current_nonce = 3
    call = StubContractCall()

    signed = wallet.sign_bound_call_with_new_nonce(call, tx_params={"gas": 100_000}, web3=web3)

    assert wallet.current_nonce == 4
    (params,) = call.built
    assert params == {"gas": 100_000, "from": ADDRESS, "chainId": SEPOLIA_CHAIN_ID, "nonce": 3}
    assert len(signed.raw_transaction) > 0


def test_clone_has_own_nonce():
    wallet = HotWallet.from_private_key(PRIVATE_KEY)
    wallet.current_nonce = 5
    clone = wallet.clone()
    assert clone.address == wallet.address
    assert clone.current_nonce is None


@pytest.mark.parametrize("key", [None, "", "0x1234", "not-hex"])
def test_factory_rejects_bad_key(registry, key):
    with pytest.raises(ConfigurationError):
        GatewayFactory(registry, key)


def test_factory_caches_per_chain(registry):
    factory = GatewayFactory(registry, PRIVATE_KEY)

    arc = factory(ChainKey.arc)
    assert isinstance(arc, Web3ChainGateway)
    assert factory.get("arcTestnet") is arc
    assert factory.get("sepolia") is not arc
    assert arc.sender == ADDRESS
    assert factory.relayer_address == ADDRESS
    # One nonce counter per chain
    assert arc.hot_wallet is not factory.get("sepolia").hot_wallet


def test_read_errors_become_chain_call_errors(gateway):
    def _broken():
        raise ValueError({"code": -32000, "message": "header not found"})

    with pytest.raises(ChainCallError) as exc_info:
        gateway._call("USDC balanceOf", _broken)

    assert "Ethereum Sepolia" in str(exc_info.value)
    assert exc_info.value.tx_hash is None


def test_transact_confirmed(gateway, web3):
    """Nonce is synced once, then counted locally."""
    first = gateway._transact("USDC transfer", StubContractCall())
    second = gateway._transact("USDC transfer", StubContractCall())

    assert first.tx_hash == _sent_hash(web3, 0)
    assert second.tx_hash == _sent_hash(web3, 1)
    assert first.block_number == 123
    assert web3.eth.nonce_reads == 1
    assert gateway.hot_wallet.current_nonce == 6


def test_transact_reverted(gateway, web3):
    web3.eth.receipt = {"status": 0, "blockNumber": 124}

    with pytest.raises(ChainCallError) as exc_info:
        gateway._transact("CCTP receiveMessage", StubContractCall())

    assert exc_info.value.reverted
    assert exc_info.value.tx_hash == _sent_hash(web3)
    assert "reverted" in str(exc_info.value)


def test_transact_receipt_timeout_keeps_hash(gateway, web3):
    """The transaction may still be mined: the error carries its hash and is not a revert."""
    web3.eth.receipt_error = TimeExhausted("Transaction is not in the chain after 5 seconds")

    with pytest.raises(ChainCallError) as exc_info:
        gateway._transact("CCTP depositForBurn", StubContractCall())

    assert not exc_info.value.reverted
    assert exc_info.value.tx_hash == _sent_hash(web3)
    assert "not confirmed within 5s" in str(exc_info.value)


def test_gas_estimate_failure_releases_nonce(gateway, web3):
    call = StubContractCall(error=ContractLogicError("execution reverted: ERC20: transfer amount exceeds balance"))

    with pytest.raises(ChainCallError) as exc_info:
        gateway._transact("USDC transfer", call)

    assert exc_info.value.tx_hash is None
    assert web3.eth.sent == []
    assert gateway.hot_wallet.current_nonce == 4

    # Next transaction reads the nonce from the chain again
    gateway._transact("USDC transfer", StubContractCall())
    assert web3.eth.nonce_reads == 2


def test_submit_failure_forces_nonce_resync(gateway, web3):
    web3.eth.send_error = ValueError({"code": -32000, "message": "nonce too low"})

    with pytest.raises(ChainCallError) as exc_info:
        gateway._transact("USDC approve", StubContractCall())

    assert exc_info.value.tx_hash is None
    assert "could not be submitted" in str(exc_info.value)

    web3.eth.send_error = None
    web3.eth.next_nonce = 9
    call = StubContractCall()
    gateway._transact("USDC approve", call)

    assert web3.eth.nonce_reads == 2
    assert call.built[0]["nonce"] == 9


def test_transaction_succeeded(gateway, web3):
    tx_hash = "0x" + "ab" * 32

    web3.eth.receipt = None
    assert gateway.transaction_succeeded(tx_hash) is None

    web3.eth.receipt = {"status": 0, "blockNumber": 10}
    assert gateway.transaction_succeeded(tx_hash) is False

    web3.eth.receipt = {"status": 1, "blockNumber": 10}
    assert gateway.transaction_succeeded(tx_hash) is True

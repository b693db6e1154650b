"""Shared fixtures: in-memory database, fake chains, fake Iris API and simulated time.

Nothing here touches a network. The fake gateways keep just enough chain
state (balances, allowances, custody funds, received messages) for the
transfer flows to behave like the real contracts.
"""

import datetime

import pytest

from arc_autopay.cctp.attestation import AttestationPoller
from arc_autopay.chain import ChainConfig, ChainKey, ChainRegistry, create_chain_registry
from arc_autopay.database import Database
from arc_autopay.errors import ChainCallError
from arc_autopay.gateway import ChainGateway, ChainTransaction
from arc_autopay.ledger import ExecutionLedger
from arc_autopay.orchestrator import TransferOrchestrator
from arc_autopay.recurring import RecurringTransferStore
from arc_autopay.retry import DEFAULT_ATTESTATION_POLICY

#: Relayer hot wallet in all fake chains
RELAYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

#: Anvil test account #0, matches :py:data:`RELAYER`
RELAYER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

CUSTODY_WALLET = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

CCTP_MESSAGE = bytes.fromhex("00000001" + "ab" * 60)

CCTP_ATTESTATION = bytes.fromhex("cd" * 65)


class SimulatedClock:
    """Deterministic ``utc_now()`` replacement."""

    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


class FakeResponse:
    def __init__(self, status_code: int = 200, data: dict | None = None):
        self.status_code = status_code
        self.data = data

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self.data is None:
            raise ValueError("No JSON body")
        return self.data


class FakeIrisSession:
    """Replays scripted responses; repeats the last one when the script runs out."""

    def __init__(self, api_url: str = "https://iris.example"):
        self.api_url = api_url
        self.request_timeout = 1.0
        self.script: list = []
        self.urls: list[str] = []

    def queue(self, *responses):
        """Append responses: an int status code, a dict body (HTTP 200), or an exception."""
        for r in responses:
            if isinstance(r, int):
                r = FakeResponse(r)
            elif isinstance(r, dict):
                r = FakeResponse(200, r)
            self.script.append(r)

    def queue_complete(self, message: bytes = CCTP_MESSAGE, attestation: bytes = CCTP_ATTESTATION):
        self.queue(
            {
                "messages": [
                    {
                        "message": "0x" + message.hex(),
                        "attestation": "0x" + attestation.hex(),
                        "status": "complete",
                    }
                ]
            }
        )

    def get(self, url, timeout=None):
        self.urls.append(url)
        if not self.script:
            return FakeResponse(404)
        response = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeChainGateway(ChainGateway):
    """In-memory stand-in for one chain.

    ``failures`` maps a method name to an exception raised on its next call.
    ``receipts`` answers :py:meth:`transaction_succeeded`; hashes not in it
    have no receipt.
    """

    def __init__(self, chain: ChainConfig, sender: str = RELAYER):
        self.chain = chain
        self._sender = sender
        self.balances: dict[str, int] = {}
        self.native_balances: dict[str, int] = {}
        self.allowances: dict[tuple[str, str], int] = {}
        self.custody: dict[str, int] = {}
        self.used_messages: set[bytes] = set()
        self.minted: list[bytes] = []
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        #: Outcome of every transaction with a receipt: True for success, False for revert
        self.receipts: dict[str, bool] = {}
        #: Method names whose next call lands on chain but times out waiting for the receipt
        self.lost_receipts: set[str] = set()
        self.block_number = 1000
        self.tx_counter = 0

    @property
    def sender(self):
        return self._sender

    def _check_failure(self, name: str):
        error = self.failures.pop(name, None)
        if error is not None:
            raise error

    def _confirm(self, name: str | None = None) -> ChainTransaction:
        self.tx_counter += 1
        self.block_number += 1
        tx_hash = f"0x{self.chain.domain:02x}{self.tx_counter:062x}"
        if name in self.lost_receipts:
            self.lost_receipts.discard(name)
            raise ChainCallError(f"{name} not confirmed within 180s on {self.chain.name}: {tx_hash}", tx_hash=tx_hash)
        self.receipts[tx_hash] = True
        return ChainTransaction(tx_hash=tx_hash, block_number=self.block_number)

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def native_balance(self, owner):
        self._check_failure("native_balance")
        return self.native_balances.get(owner, 0)

    def token_balance(self, owner):
        self._check_failure("token_balance")
        return self.balances.get(owner, 0)

    def token_allowance(self, owner, spender):
        return self.allowances.get((owner, spender), 0)

    def approve_token(self, spender, amount):
        self.calls.append(("approve_token", spender, amount))
        self._check_failure("approve_token")
        self.allowances[(self.sender, spender)] = amount
        return self._confirm()

    def transfer_token(self, recipient, amount):
        self.calls.append(("transfer_token", recipient, amount))
        self._check_failure("transfer_token")
        self.balances[self.sender] = self.balances.get(self.sender, 0) - amount
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        return self._confirm("transfer_token")

    def deposit_for_burn(self, amount, destination_domain, mint_recipient, max_fee, min_finality_threshold):
        self.calls.append(("deposit_for_burn", amount, destination_domain, mint_recipient, max_fee, min_finality_threshold))
        self._check_failure("deposit_for_burn")
        self.balances[self.sender] = self.balances.get(self.sender, 0) - amount
        return self._confirm("deposit_for_burn")

    def receive_message(self, message, attestation):
        self.calls.append(("receive_message", message, attestation))
        self._check_failure("receive_message")
        if message in self.used_messages:
            tx = self._confirm()
            self.receipts[tx.tx_hash] = False
            raise ChainCallError(f"CCTP receiveMessage reverted on {self.chain.name}: {tx.tx_hash}", tx_hash=tx.tx_hash, reverted=True)
        self.used_messages.add(message)
        self.minted.append(message)
        return self._confirm()

    def transaction_succeeded(self, tx_hash):
        self._check_failure("transaction_succeeded")
        return self.receipts.get(tx_hash)

    def custody_balance(self, wallet):
        self._check_failure("custody_balance")
        return self.custody.get(wallet, 0)

    def release_custody_funds(self, wallet, transfer_id):
        self.calls.append(("release_custody_funds", wallet, transfer_id))
        self._check_failure("release_custody_funds")
        amount = self.custody.get(wallet, 0)
        self.custody[wallet] = 0
        self.balances[self.sender] = self.balances.get(self.sender, 0) + amount
        return self._confirm("release_custody_funds")


class FakeGateways:
    """Callable gateway lookup, like :py:class:`~arc_autopay.gateway.GatewayFactory`."""

    def __init__(self, registry: ChainRegistry):
        self.registry = registry
        self.gateways = {chain.key: FakeChainGateway(chain) for chain in registry}

    def __call__(self, chain) -> FakeChainGateway:
        return self.gateways[self.registry.get(chain).key]

    get = __call__

    @property
    def relayer_address(self) -> str:
        return RELAYER


@pytest.fixture()
def clock() -> SimulatedClock:
    return SimulatedClock(datetime.datetime(2025, 1, 31, 12, 0, tzinfo=datetime.timezone.utc))


@pytest.fixture()
def db():
    database = Database()
    yield database
    database.close()


@pytest.fixture()
def ledger(db, clock) -> ExecutionLedger:
    return ExecutionLedger(db, clock=clock)


@pytest.fixture()
def store(db, clock) -> RecurringTransferStore:
    return RecurringTransferStore(db, clock=clock)


@pytest.fixture()
def registry() -> ChainRegistry:
    return create_chain_registry()


@pytest.fixture()
def gateways(registry) -> FakeGateways:
    return FakeGateways(registry)


@pytest.fixture()
def arc(gateways) -> FakeChainGateway:
    return gateways(ChainKey.arc)


@pytest.fixture()
def sepolia(gateways) -> FakeChainGateway:
    return gateways(ChainKey.sepolia)


@pytest.fixture()
def iris() -> FakeIrisSession:
    return FakeIrisSession()


@pytest.fixture()
def sleeps() -> list[float]:
    """Every sleep the attestation poller did."""
    return []


@pytest.fixture()
def poller(iris, sleeps) -> AttestationPoller:
    return AttestationPoller(iris, policy=DEFAULT_ATTESTATION_POLICY, sleep=sleeps.append)


@pytest.fixture()
def orchestrator(registry, gateways, ledger, poller) -> TransferOrchestrator:
    return TransferOrchestrator(registry, gateways, ledger, poller)

"""Relayer hot wallet with local nonce management.

The relayer signs every transaction locally and broadcasts it with
``eth_sendRawTransaction``. Nonces are allocated from a local counter that is
synced from the chain once, so consecutive transactions from the same process
never race on ``eth_getTransactionCount``.

Nonces are per chain. Create one :py:class:`HotWallet` per chain from the same
account, as :py:class:`~arc_autopay.gateway.GatewayFactory` does.
"""

import logging
import threading

from eth_account import Account
from eth_account.datastructures import SignedTransaction
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import ContractFunction

logger = logging.getLogger(__name__)


class HotWallet:
    """Private key held in process memory, plus a local nonce counter.

    Example::

        wallet = HotWallet.from_private_key(os.environ["RELAYER_PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        signed = wallet.sign_bound_call_with_new_nonce(usdc.functions.transfer(to, amount), web3=web3)
        web3.eth.send_raw_transaction(signed.raw_transaction)
    """

    def __init__(self, account: LocalAccount):
        self.account = account
        self.current_nonce: int | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<HotWallet {self.address} nonce={self.current_nonce}>"

    @property
    def address(self) -> HexAddress:
        return self.account.address

    def sync_nonce(self, web3: Web3):
        """Read the next nonce from the chain, including pending transactions."""
        self.current_nonce = web3.eth.get_transaction_count(self.address, "pending")
        logger.info("Synced nonce for %s to %d", self.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Reserve the next nonce.

        :raise AssertionError:
            :py:meth:`sync_nonce` was never called
        """
        with self._lock:
            assert self.current_nonce is not None, "Call sync_nonce() first"
            nonce = self.current_nonce
            self.current_nonce += 1
            return nonce

    def release_nonce(self, nonce: int):
        """Give back a nonce that was allocated but never broadcast.

        Only the most recently allocated nonce can be returned, otherwise the
        sequence would get a gap.
        """
        with self._lock:
            if self.current_nonce == nonce + 1:
                self.current_nonce = nonce

    def sign_bound_call_with_new_nonce(
        self,
        func: ContractFunction,
        tx_params: dict | None = None,
        web3: Web3 | None = None,
    ) -> SignedTransaction:
        """Build, sign and nonce a contract call.

        Gas limit and EIP-1559 fees are estimated by web3 unless given in ``tx_params``.

        :param func:
            Bound contract function, e.g. ``usdc.functions.approve(spender, amount)``

        :param tx_params:
            Extra transaction fields such as ``gas``.

        :param web3:
            Connection used for ``chainId``. Defaults to the contract's own.
        """
        web3 = web3 or func.w3
        params = dict(tx_params or {})
        params["from"] = self.address
        params.setdefault("chainId", web3.eth.chain_id)

        nonce = self.allocate_nonce()
        params["nonce"] = nonce
        try:
            tx = func.build_transaction(params)
        except Exception:
            # Gas estimation reverted; nothing was broadcast
            self.release_nonce(nonce)
            raise
        return self.account.sign_transaction(tx)

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a ``0x``-prefixed hex private key."""
        assert key.startswith("0x"), "Private key must be 0x-prefixed hex"
        account = Account.from_key(key)
        return HotWallet(account)

    def clone(self) -> "HotWallet":
        """Same account, fresh nonce counter, for use on another chain."""
        return HotWallet(self.account)

"""Circle CCTP V2 constants for the testnet chain set.

Cross-Chain Transfer Protocol V2 moves USDC by burn-and-mint:

1. Source chain: call ``depositForBurn()`` on TokenMessengerV2 to burn USDC
2. Circle's Iris attestation service signs the burn event
3. Destination chain: call ``receiveMessage()`` on MessageTransmitterV2 to mint USDC

All CCTP V2 contracts share the same address across the EVM testnets (deployed via CREATE2).

- `CCTP V2 documentation <https://developers.circle.com/cctp>`_
- `EVM contract addresses <https://developers.circle.com/cctp/evm-smart-contracts>`_
"""

from eth_typing import HexAddress

#: CCTP V2 TokenMessengerV2 on testnets.
TOKEN_MESSENGER_V2_TESTNET: HexAddress = HexAddress("0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA")

#: CCTP V2 MessageTransmitterV2 on testnets.
MESSAGE_TRANSMITTER_V2_TESTNET: HexAddress = HexAddress("0xE737E5cEBeEBa77eFE34D4AA090756590b1CE275")

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnets).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: Maximum fee in raw USDC units the burn is allowed to pay for fast finality.
DEFAULT_MAX_FEE = 500

#: Minimum finality threshold passed to ``depositForBurn()``.
#:
#: 1000 is "confirmed" (fast transfer), 2000 is "finalized" (standard).
FINALITY_THRESHOLD_FAST = 1000

#: Minimum finality threshold for standard (finalized) transfers.
FINALITY_THRESHOLD_STANDARD = 2000

#: Relayer fee on cross-chain transfers, in basis points of the requested amount.
BRIDGE_FEE_BPS = 5

#: Basis point denominator
BPS_DENOMINATOR = 10_000

#: USDC has 6 decimals on every supported chain.
USDC_DECIMALS = 6

#: ``type(uint256).max``, used for unlimited ERC-20 approvals.
MAX_UINT256 = 2**256 - 1

#: Zero ``destinationCaller``: any address may call ``receiveMessage()``.
ZERO_BYTES32 = b"\x00" * 32

#: Iris message status when the attestation is signed and mint-ready.
ATTESTATION_STATUS_COMPLETE = "complete"

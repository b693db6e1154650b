"""Minimal ABI fragments for the contracts the relayer calls."""

#: ERC-20 subset used for USDC
ERC20_ABI: list[dict] = [
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "transfer",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

#: CCTP V2 TokenMessengerV2.depositForBurn
TOKEN_MESSENGER_V2_ABI: list[dict] = [
    {
        "type": "function",
        "name": "depositForBurn",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
            {"name": "destinationCaller", "type": "bytes32"},
            {"name": "maxFee", "type": "uint256"},
            {"name": "minFinalityThreshold", "type": "uint32"},
        ],
        "outputs": [],
    },
]

#: CCTP V2 MessageTransmitterV2.receiveMessage
MESSAGE_TRANSMITTER_V2_ABI: list[dict] = [
    {
        "type": "function",
        "name": "receiveMessage",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "message", "type": "bytes"}, {"name": "attestation", "type": "bytes"}],
        "outputs": [{"name": "success", "type": "bool"}],
    },
]

#: Per-user custody contract holding funds for recurring payments
AUTOPAY_WALLET_ABI: list[dict] = [
    {
        "type": "function",
        "name": "executeAutoPayment",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "string"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getBalance",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

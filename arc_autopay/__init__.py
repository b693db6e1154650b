"""Recurring and cross-chain USDC payments over Circle CCTP V2."""

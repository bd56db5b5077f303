"""
CAIP-2 network identifiers and wildcard matching
"""

from typing import Dict

# EVM chains
ETHEREUM_MAINNET = "eip155:1"
BASE_MAINNET = "eip155:8453"
BASE_SEPOLIA = "eip155:84532"
OPTIMISM = "eip155:10"
ARBITRUM = "eip155:42161"
POLYGON = "eip155:137"
EVM_WILDCARD = "eip155:*"

# Solana clusters (genesis hash prefixes)
SOLANA_MAINNET = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
SOLANA_DEVNET = "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1"
SOLANA_TESTNET = "solana:4uhcVJyU9pJkvQyS88uRDiswHXSCkY3z"
SOLANA_WILDCARD = "solana:*"

# Card processor
STRIPE_LIVE = "stripe:live"
STRIPE_TEST = "stripe:test"

# Scheme identifiers
SCHEME_EXACT = "exact"
SCHEME_UPTO = "upto"
SCHEME_STRIPE = "stripe-payment"
SCHEME_TOKEN = "token"

EVM_NETWORKS = [ETHEREUM_MAINNET, BASE_MAINNET, BASE_SEPOLIA, OPTIMISM, ARBITRUM, POLYGON]
SOLANA_NETWORKS = [SOLANA_MAINNET, SOLANA_DEVNET, SOLANA_TESTNET]

DISPLAY_NAMES: Dict[str, str] = {
    ETHEREUM_MAINNET: "Ethereum",
    BASE_MAINNET: "Base",
    BASE_SEPOLIA: "Base Sepolia",
    OPTIMISM: "Optimism",
    ARBITRUM: "Arbitrum One",
    POLYGON: "Polygon",
    SOLANA_MAINNET: "Solana",
    SOLANA_DEVNET: "Solana Devnet",
    SOLANA_TESTNET: "Solana Testnet",
    STRIPE_LIVE: "Card (live)",
    STRIPE_TEST: "Card (test)",
}


def is_wildcard(pattern: str) -> bool:
    return len(pattern) >= 2 and pattern.endswith("*")


def is_wildcard_match(pattern: str, network: str) -> bool:
    """
    Check a network against a family wildcard such as "eip155:*".

    The network must be strictly longer than the literal prefix, so
    "eip155:*" matches "eip155:1" but neither "eip155:" nor "eip155".
    """
    if not is_wildcard(pattern):
        return False
    prefix = pattern[:-1]
    return len(network) > len(prefix) and network.startswith(prefix)


def network_matches(pattern: str, network: str) -> bool:
    """Exact equality or wildcard family match"""
    return pattern == network or is_wildcard_match(pattern, network)


def display_name(network: str) -> str:
    if network in DISPLAY_NAMES:
        return DISPLAY_NAMES[network]
    if network.startswith("eip155:"):
        return f"EVM chain {network.split(':', 1)[1]}"
    return network

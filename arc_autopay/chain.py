"""Supported chains and their bridge configuration.

The chain set is closed: :py:class:`ChainKey` lists every chain the relayer
can burn from or mint to. Each key maps to one immutable
:py:class:`ChainConfig`, validated once when the :py:class:`ChainRegistry`
is built at startup. Code downstream never re-validates addresses or domains.

Example::

    from arc_autopay.chain import ChainKey, create_chain_registry

    registry = create_chain_registry(rpc_overrides={ChainKey.sepolia: "https://my-node.example"})
    sepolia = registry.get(ChainKey.sepolia)
    print(sepolia.domain, sepolia.get_explorer_tx_url("0xabc..."))
"""

import enum
import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Iterable, Mapping
from urllib.parse import urlparse

from eth_typing import HexAddress
from eth_utils import is_address, to_checksum_address

from arc_autopay.cctp.constants import MESSAGE_TRANSMITTER_V2_TESTNET, TOKEN_MESSENGER_V2_TESTNET
from arc_autopay.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


class ChainKey(enum.Enum):
    """Chains the relayer knows how to bridge between."""

    arc = "arc"
    sepolia = "sepolia"
    arbitrum_sepolia = "arbitrum_sepolia"
    optimism_sepolia = "optimism_sepolia"
    base_sepolia = "base_sepolia"
    polygon_amoy = "polygon_amoy"

    @classmethod
    def parse(cls, value: "str | ChainKey") -> "ChainKey":
        """Resolve a chain key, accepting the camelCase names used by the web client.

        :raise ValidationError:
            Unknown chain
        """
        if isinstance(value, ChainKey):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
            alias = _CHAIN_KEY_ALIASES.get(value)
            if alias is not None:
                return alias
        raise ValidationError(f"Unsupported chain: {value!r}, supported: {[k.value for k in cls]}")


#: Legacy chain names accepted by :py:meth:`ChainKey.parse`
_CHAIN_KEY_ALIASES: dict[str, ChainKey] = {
    "arcTestnet": ChainKey.arc,
    "arbitrumSepolia": ChainKey.arbitrum_sepolia,
    "optimismSepolia": ChainKey.optimism_sepolia,
    "baseSepolia": ChainKey.base_sepolia,
    "base": ChainKey.base_sepolia,
    "polygonAmoy": ChainKey.polygon_amoy,
}


@dataclass(slots=True, frozen=True)
class ChainConfig:
    """Static bridge configuration of a single chain."""

    #: Registry key
    key: ChainKey

    #: Human-readable chain name for logs
    name: str

    #: EVM chain id (``eth_chainId``)
    chain_id: int

    #: CCTP domain id, assigned by Circle and unrelated to :py:attr:`chain_id`
    domain: int

    #: JSON-RPC endpoint
    rpc_url: str

    #: USDC token contract
    usdc: HexAddress

    #: TokenMessengerV2, target of ``depositForBurn()``
    token_messenger: HexAddress

    #: MessageTransmitterV2, target of ``receiveMessage()``
    message_transmitter: HexAddress

    #: Block explorer base URL without trailing slash
    explorer_url: str

    def get_explorer_tx_url(self, tx_hash: str) -> str:
        """Link to a transaction on this chain's block explorer."""
        return f"{self.explorer_url}/tx/{tx_hash}"

    def __repr__(self) -> str:
        return f"<ChainConfig {self.key.value} chain_id={self.chain_id} domain={self.domain}>"


def _validate_contract_address(chain: str, field_name: str, address: str) -> HexAddress:
    if not is_address(address):
        raise ConfigurationError(f"Chain {chain}: {field_name} is not a valid address: {address!r}")
    return HexAddress(to_checksum_address(address))


def _validate_url(chain: str, field_name: str, url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Chain {chain}: {field_name} must be an http(s) URL, got {url!r}")
    return url.rstrip("/")


def validate_chain_config(config: ChainConfig) -> ChainConfig:
    """Check one chain config and return a normalised copy.

    :raise ConfigurationError:
        Malformed address, URL or identifier
    """
    chain = config.key.value

    if type(config.chain_id) != int or config.chain_id <= 0:
        raise ConfigurationError(f"Chain {chain}: bad chain id {config.chain_id!r}")

    if type(config.domain) != int or config.domain < 0:
        raise ConfigurationError(f"Chain {chain}: bad CCTP domain {config.domain!r}")

    return replace(
        config,
        rpc_url=_validate_url(chain, "rpc_url", config.rpc_url),
        explorer_url=_validate_url(chain, "explorer_url", config.explorer_url),
        usdc=_validate_contract_address(chain, "usdc", config.usdc),
        token_messenger=_validate_contract_address(chain, "token_messenger", config.token_messenger),
        message_transmitter=_validate_contract_address(chain, "message_transmitter", config.message_transmitter),
    )


class ChainRegistry:
    """Validated, read-only lookup of :py:class:`ChainConfig` by :py:class:`ChainKey`.

    All configs are checked in the constructor. A registry that was built
    successfully never raises on lookup of a registered key.
    """

    def __init__(self, configs: Iterable[ChainConfig]):
        chains: dict[ChainKey, ChainConfig] = {}
        domains: dict[int, ChainKey] = {}

        for config in configs:
            if config.key in chains:
                raise ConfigurationError(f"Chain {config.key.value} configured twice")

            validated = validate_chain_config(config)

            if validated.domain in domains:
                raise ConfigurationError(f"Chains {domains[validated.domain].value} and {config.key.value} share CCTP domain {validated.domain}")

            chains[config.key] = validated
            domains[validated.domain] = config.key

        if not chains:
            raise ConfigurationError("No chains configured")

        self._chains: Mapping[ChainKey, ChainConfig] = MappingProxyType(chains)
        self._domains: Mapping[int, ChainKey] = MappingProxyType(domains)

    def __contains__(self, key: ChainKey) -> bool:
        return key in self._chains

    def __iter__(self):
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)

    def __repr__(self) -> str:
        return f"<ChainRegistry {', '.join(k.value for k in self._chains)}>"

    def get(self, key: "ChainKey | str") -> ChainConfig:
        """Look up a chain.

        :param key:
            :py:class:`ChainKey` or any name accepted by :py:meth:`ChainKey.parse`

        :raise ValidationError:
            Chain is unknown or not configured in this registry
        """
        chain_key = ChainKey.parse(key)
        config = self._chains.get(chain_key)
        if config is None:
            raise ValidationError(f"Chain {chain_key.value} is not configured")
        return config

    def get_by_domain(self, domain: int) -> ChainConfig:
        """Look up a chain by its CCTP domain id."""
        key = self._domains.get(domain)
        if key is None:
            raise ValidationError(f"No chain configured for CCTP domain {domain}")
        return self._chains[key]


#: Default testnet configuration
DEFAULT_CHAINS: tuple[ChainConfig, ...] = (
    ChainConfig(
        key=ChainKey.arc,
        name="Arc Testnet",
        chain_id=5042002,
        domain=26,
        rpc_url="https://rpc.testnet.arc.network",
        usdc=HexAddress("0x3600000000000000000000000000000000000000"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://testnet.arcscan.app",
    ),
    ChainConfig(
        key=ChainKey.sepolia,
        name="Ethereum Sepolia",
        chain_id=11155111,
        domain=0,
        rpc_url="https://sepolia.drpc.org",
        usdc=HexAddress("0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://sepolia.etherscan.io",
    ),
    ChainConfig(
        key=ChainKey.arbitrum_sepolia,
        name="Arbitrum Sepolia",
        chain_id=421614,
        domain=3,
        rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
        usdc=HexAddress("0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://sepolia.arbiscan.io",
    ),
    ChainConfig(
        key=ChainKey.optimism_sepolia,
        name="Optimism Sepolia",
        chain_id=11155420,
        domain=2,
        rpc_url="https://sepolia.optimism.io",
        usdc=HexAddress("0x5fd84259d66Cd46123540766Be93DFE6D43130D7"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://sepolia-optimism.etherscan.io",
    ),
    ChainConfig(
        key=ChainKey.base_sepolia,
        name="Base Sepolia",
        chain_id=84532,
        domain=6,
        rpc_url="https://sepolia.base.org",
        usdc=HexAddress("0x036CbD53842c5426634e7929541eC2318f3dCF7e"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://sepolia.basescan.org",
    ),
    ChainConfig(
        key=ChainKey.polygon_amoy,
        name="Polygon Amoy",
        chain_id=80002,
        domain=7,
        rpc_url="https://rpc-amoy.polygon.technology",
        usdc=HexAddress("0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582"),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        explorer_url="https://amoy.polygonscan.com",
    ),
)


def create_chain_registry(
    rpc_overrides: Mapping[ChainKey, str] | None = None,
    chains: Iterable[ChainConfig] = DEFAULT_CHAINS,
) -> ChainRegistry:
    """Build the registry, optionally replacing public RPC endpoints.

    :param rpc_overrides:
        Private RPC URLs per chain, usually from ``JSON_RPC_<CHAIN>`` environment variables.
    """
    rpc_overrides = rpc_overrides or {}
    configs = []
    for config in chains:
        override = rpc_overrides.get(config.key)
        if override:
            logger.info("Using custom RPC for %s", config.name)
            config = replace(config, rpc_url=override)
        configs.append(config)
    return ChainRegistry(configs)

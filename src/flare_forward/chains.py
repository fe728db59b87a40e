"""
Chain registry.

Direct chains are natively supported by the FDC EVMTransaction attestation
type. Relay chains are read off-chain and relayed through PriceRelay on Flare,
where the relay transaction itself gets attested.
"""

from dataclasses import dataclass
from enum import Enum

from .errors import ConfigurationError


class ChainCategory(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"


FLARE_CHAIN_ID = 14
COSTON2_CHAIN_ID = 114
ETHEREUM_CHAIN_ID = 1
SEPOLIA_CHAIN_ID = 11155111
ARBITRUM_CHAIN_ID = 42161


@dataclass(frozen=True, slots=True)
class ChainProfile:
    """Static properties of a supported chain.

    Attributes:
        chain_id: EVM chain id
        name: Display name
        category: Trust tier (direct or relay)
        rpc_url: Public default RPC endpoint, overridable via ``RPC_URL_<id>``
        source_id: FDC source identifier (bytes32 hex), direct chains only
        verifier_path: Verifier URL path segment, direct chains only
        required_confirmations: Confirmations the verifier demands
        settle_delay: Extra wait after confirmations for indexer lag (seconds)
        prepare_budget: Time budget for prepareRequest retries (seconds)
        prepare_retry_interval: Delay between prepareRequest attempts (seconds)
        native_symbol: Symbol of the gas token
    """

    chain_id: int
    name: str
    category: ChainCategory
    rpc_url: str
    source_id: str | None = None
    verifier_path: str | None = None
    required_confirmations: int = 1
    settle_delay: float = 5.0
    prepare_budget: float = 300.0
    prepare_retry_interval: float = 10.0
    native_symbol: str = "ETH"
    testnet: bool = False

    @property
    def is_direct(self) -> bool:
        return self.category is ChainCategory.DIRECT


def _relay(chain_id: int, name: str, rpc_url: str, symbol: str = "ETH") -> ChainProfile:
    return ChainProfile(chain_id, name, ChainCategory.RELAY, rpc_url, native_symbol=symbol)


CHAINS: dict[int, ChainProfile] = {
    profile.chain_id: profile
    for profile in (
        # Direct chains
        ChainProfile(
            FLARE_CHAIN_ID, "Flare", ChainCategory.DIRECT,
            "https://flare-api.flare.network/ext/bc/C/rpc",
            source_id="0x464c520000000000000000000000000000000000000000000000000000000000",
            verifier_path="flr",
            native_symbol="FLR",
        ),
        ChainProfile(
            ETHEREUM_CHAIN_ID, "Ethereum", ChainCategory.DIRECT,
            "https://eth.llamarpc.com",
            source_id="0x4554480000000000000000000000000000000000000000000000000000000000",
            verifier_path="eth",
            required_confirmations=12,
            settle_delay=300.0,
            prepare_budget=1800.0,
            prepare_retry_interval=30.0,
        ),
        ChainProfile(
            SEPOLIA_CHAIN_ID, "Sepolia", ChainCategory.DIRECT,
            "https://ethereum-sepolia-rpc.publicnode.com",
            source_id="0x7465737445544800000000000000000000000000000000000000000000000000",
            verifier_path="sepolia",
            required_confirmations=6,
            settle_delay=300.0,
            testnet=True,
        ),
        ChainProfile(
            COSTON2_CHAIN_ID, "Coston2", ChainCategory.DIRECT,
            "https://coston2-api.flare.network/ext/C/rpc",
            source_id="0x7465737443324652000000000000000000000000000000000000000000000000",
            verifier_path="c2flr",
            native_symbol="C2FLR",
            testnet=True,
        ),
        # Relay chains
        _relay(ARBITRUM_CHAIN_ID, "Arbitrum", "https://arb1.arbitrum.io/rpc"),
        _relay(8453, "Base", "https://mainnet.base.org"),
        _relay(10, "Optimism", "https://mainnet.optimism.io"),
        _relay(137, "Polygon", "https://polygon-rpc.com", "MATIC"),
        _relay(43114, "Avalanche", "https://api.avax.network/ext/bc/C/rpc", "AVAX"),
        _relay(56, "BNB Chain", "https://bsc-dataseed.binance.org", "BNB"),
        _relay(250, "Fantom", "https://rpc.ftm.tools", "FTM"),
        _relay(324, "zkSync Era", "https://mainnet.era.zksync.io"),
        _relay(59144, "Linea", "https://rpc.linea.build"),
        _relay(534352, "Scroll", "https://rpc.scroll.io"),
        _relay(5000, "Mantle", "https://rpc.mantle.xyz", "MNT"),
        _relay(81457, "Blast", "https://rpc.blast.io"),
        _relay(100, "Gnosis", "https://rpc.gnosischain.com", "xDAI"),
        _relay(42220, "Celo", "https://forno.celo.org", "CELO"),
        _relay(1101, "Polygon zkEVM", "https://zkevm-rpc.com"),
        _relay(34443, "Mode", "https://mainnet.mode.network"),
        _relay(7777777, "Zora", "https://rpc.zora.energy"),
    )
}


def get_chain(chain_id: int) -> ChainProfile:
    """Look up a chain profile.

    Raises:
        ConfigurationError: If the chain is not in the registry
    """
    try:
        return CHAINS[chain_id]
    except KeyError:
        raise ConfigurationError(f"Unsupported chain id: {chain_id}") from None


def is_direct_chain(chain_id: int) -> bool:
    profile = CHAINS.get(chain_id)
    return profile is not None and profile.is_direct

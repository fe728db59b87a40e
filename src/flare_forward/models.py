"""
Shared data models for the Flare Forward relayer.

This module contains data classes used across the orchestrator, the
attestation client and the feed store.
"""

from dataclasses import dataclass, field
from typing import Any

from web3 import Web3

from .chains import ChainCategory, get_chain
from .errors import ConfigurationError

# Wider decimal spreads overflow the uint256 price arithmetic
MAX_TOKEN_DECIMALS = 36


def _checksum(value: str | None, label: str) -> str | None:
    if value is None or value == "":
        return None
    if not Web3.is_address(value):
        raise ConfigurationError(f"Invalid {label} address: {value}")
    return Web3.to_checksum_address(value)


@dataclass(frozen=True, slots=True)
class Feed:
    """A configured price target.

    Attributes:
        feed_id: Stable identifier, used for rotation and stats
        alias: Display name used in logs
        source_chain_id: Chain the pool lives on
        pool_address: Uniswap V3 pool on the source chain
        feed_address: CrossChainPoolPriceCustomFeed contract on Flare
        recorder_address: PriceRecorder on the source chain (direct feeds)
        relay_address: PriceRelay on Flare (relay feeds)
        token0_decimals: Decimals of token0
        token1_decimals: Decimals of token1
        invert_price: Report token0 per token1 instead
    """

    feed_id: str
    alias: str
    source_chain_id: int
    pool_address: str
    feed_address: str
    recorder_address: str | None = None
    relay_address: str | None = None
    token0_decimals: int = 18
    token1_decimals: int = 18
    invert_price: bool = False

    def __post_init__(self) -> None:
        if not self.feed_id:
            raise ConfigurationError("Feed id is required")

        for name in ("pool_address", "feed_address", "recorder_address", "relay_address"):
            object.__setattr__(self, name, _checksum(getattr(self, name), name.removesuffix("_address")))

        if self.pool_address is None or self.feed_address is None:
            raise ConfigurationError(f"Feed {self.alias}: pool and feed addresses are required")

        match self.category:
            case ChainCategory.DIRECT if self.recorder_address is None:
                raise ConfigurationError(
                    f"Feed {self.alias}: direct chain {self.source_chain_id} requires a recorder address"
                )
            case ChainCategory.RELAY if self.relay_address is None:
                raise ConfigurationError(
                    f"Feed {self.alias}: relay chain {self.source_chain_id} requires a relay address"
                )

        for name in ("token0_decimals", "token1_decimals"):
            if not 0 <= getattr(self, name) <= MAX_TOKEN_DECIMALS:
                raise ConfigurationError(
                    f"Feed {self.alias}: {name} must be between 0 and {MAX_TOKEN_DECIMALS}"
                )

    @property
    def category(self) -> ChainCategory:
        return get_chain(self.source_chain_id).category

    @property
    def is_relay(self) -> bool:
        return self.category is ChainCategory.RELAY

    def __str__(self) -> str:
        return f"{self.alias} ({self.category.value}, chain {self.source_chain_id})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.feed_id,
            "alias": self.alias,
            "sourceChainId": self.source_chain_id,
            "category": self.category.value,
            "poolAddress": self.pool_address,
            "customFeedAddress": self.feed_address,
            "priceRecorderAddress": self.recorder_address,
            "priceRelayAddress": self.relay_address,
            "token0Decimals": self.token0_decimals,
            "token1Decimals": self.token1_decimals,
            "invertPrice": self.invert_price,
        }


@dataclass(frozen=True, slots=True)
class Observation:
    """Pool state at a point in time, consumed once by the relay or the recorder.

    ``raw_timestamp`` keeps the source chain timestamp when the relay path
    clamped ``source_timestamp`` to Flare time plus the allowed skew.
    """

    source_chain_id: int
    pool_address: str
    sqrt_price_x96: int
    tick: int
    liquidity: int
    token0: str
    token1: str
    source_timestamp: int
    source_block_number: int
    raw_timestamp: int | None = None

    @property
    def timestamp_clamped(self) -> bool:
        return self.raw_timestamp is not None and self.raw_timestamp != self.source_timestamp


@dataclass(frozen=True, slots=True)
class AttestationRequest:
    """EVMTransaction request body sent to the verifier."""

    attestation_type: str
    source_id: str
    transaction_hash: str
    required_confirmations: int
    provide_input: bool = False
    list_events: bool = True
    log_indices: tuple[int, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "attestationType": self.attestation_type,
            "sourceId": self.source_id,
            "requestBody": {
                "transactionHash": self.transaction_hash,
                "requiredConfirmations": str(self.required_confirmations),
                "provideInput": self.provide_input,
                "listEvents": self.list_events,
                "logIndices": list(self.log_indices),
            },
        }


@dataclass(frozen=True, slots=True)
class AttestationCheckpoint:
    """Everything needed to resume an attestation after the request was paid for."""

    tx_hash: str
    source_chain_id: int
    request_bytes: str
    voting_round_id: int

    def __str__(self) -> str:
        return f"round {self.voting_round_id} for {self.tx_hash}"


@dataclass(slots=True)
class UpdateJob:
    """A transaction waiting to be attested and written back to its feed.

    Created once a record or relay transaction succeeds. Kept around after a
    failure so that ``retry_job`` can re-enter attestation without re-recording.
    """

    feed: Feed
    tx_hash: str
    attestation_chain_id: int
    price: int | None = None
    path: str = "direct"
    checkpoint: AttestationCheckpoint | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def unique_key(self) -> str:
        return f"{self.feed.feed_id}:{self.tx_hash}"


@dataclass(slots=True)
class FeedUpdateResult:
    """Outcome of one update attempt for one feed."""

    feed_id: str
    alias: str
    success: bool
    skipped: bool = False
    phase: str | None = None
    error: str | None = None
    tx_hash: str | None = None
    price: int | None = None
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedId": self.feed_id,
            "alias": self.alias,
            "success": self.success,
            "skipped": self.skipped,
            "phase": self.phase,
            "error": self.error,
            "txHash": self.tx_hash,
            "price": self.price,
            "duration": round(self.duration, 2),
        }


@dataclass(slots=True)
class FeedStats:
    """Per-feed counters kept by the orchestrator."""

    updates: int = 0
    failures: int = 0
    last_price: int | None = None
    last_update: float | None = None
    last_error: str | None = None


@dataclass(slots=True)
class BotStats:
    """Global counters kept by the orchestrator."""

    total_updates: int = 0
    successful_updates: int = 0
    failed_updates: int = 0
    skipped_ticks: int = 0
    consecutive_failures: int = 0
    failed_attestations: int = 0
    last_update_time: float | None = None
    last_check_time: float | None = None
    last_check_note: str | None = None
    total_gas_used: int = 0
    total_fdc_fees_wei: int = 0
    feeds: dict[str, FeedStats] = field(default_factory=dict)

    def feed(self, feed_id: str) -> FeedStats:
        return self.feeds.setdefault(feed_id, FeedStats())

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalUpdates": self.total_updates,
            "successfulUpdates": self.successful_updates,
            "failedUpdates": self.failed_updates,
            "skippedTicks": self.skipped_ticks,
            "consecutiveFailures": self.consecutive_failures,
            "failedAttestations": self.failed_attestations,
            "lastUpdateTime": self.last_update_time,
            "lastCheckTime": self.last_check_time,
            "lastCheckNote": self.last_check_note,
            "totalGasUsed": self.total_gas_used,
            "totalFdcFeesWei": self.total_fdc_fees_wei,
            "feeds": {
                feed_id: {
                    "updates": s.updates,
                    "failures": s.failures,
                    "lastPrice": s.last_price,
                    "lastUpdate": s.last_update,
                    "lastError": s.last_error,
                }
                for feed_id, s in self.feeds.items()
            },
        }

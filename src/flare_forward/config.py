#!/usr/bin/env python3
"""Configuration management for the Flare Forward relayer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .chains import CHAINS, COSTON2_CHAIN_ID, FLARE_CHAIN_ID
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

WEI_PER_FLR = 10**18
WEI_PER_GWEI = 10**9

FDC_HUB_ADDRESS = "0xc25c749DC27Efb1864Cb3DADa8845B7687eB2d44"
FDC_RELAY_ADDRESS = "0x57a4c3676d08Aa5d15410b5A6A80fBcEF72f3F45"
PUBLIC_VERIFIER_API_KEY = "00000000-0000-0000-0000-000000000000"

VERIFIER_BASE_URLS: dict[int, str] = {
    FLARE_CHAIN_ID: "https://fdc-verifiers-mainnet.flare.network/verifier",
    COSTON2_CHAIN_ID: "https://fdc-verifiers-testnet.flare.network/verifier",
}

DA_LAYER_URLS: dict[int, str] = {
    FLARE_CHAIN_ID: "https://flr-data-availability.flare.network",
    COSTON2_CHAIN_ID: "https://ctn2-data-availability.flare.network",
}


def _validate_url(url: str, label: str, schemes: tuple[str, ...] = ("http", "https")) -> None:
    if not url:
        raise ConfigurationError(f"{label} is required")
    parsed = urlparse(url)
    if parsed.scheme not in schemes:
        raise ConfigurationError(
            f"Invalid {label} scheme: {parsed.scheme}. Expected {', '.join(schemes)}"
        )


def _checksum_field(instance: object, name: str, label: str) -> None:
    value = getattr(instance, name)
    if not value:
        raise ConfigurationError(f"{label} is required")
    if not Web3.is_address(value):
        raise ConfigurationError(f"Invalid {label}: {value}")
    checksummed = Web3.to_checksum_address(value)
    if checksummed != value:
        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(instance, name, checksummed)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True, slots=True)
class FlareChainConfig:
    """Destination chain connection and signing key.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint for Flare
        private_key: Signing key shared by all chains (0x + 64 hex)
        chain_id: 14 for mainnet, 114 for Coston2
    """

    rpc_url: str
    private_key: str
    chain_id: int = FLARE_CHAIN_ID

    SUPPORTED_CHAIN_IDS: ClassVar[set[int]] = {FLARE_CHAIN_ID, COSTON2_CHAIN_ID}

    def __post_init__(self) -> None:
        _validate_url(self.rpc_url, "Flare RPC URL (FLARE_RPC_URL)", ("http", "https", "ws", "wss"))

        if self.chain_id not in self.SUPPORTED_CHAIN_IDS:
            raise ConfigurationError(
                f"Unsupported Flare chain id: {self.chain_id}. "
                f"Supported: {', '.join(str(c) for c in sorted(self.SUPPORTED_CHAIN_IDS))}"
            )

        if not self.private_key:
            raise ConfigurationError("Private key is required (PRIVATE_KEY)")

        key = self.private_key.removeprefix("0x")
        if len(key) != 64:
            raise ConfigurationError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ConfigurationError("Invalid private key format. Must be hexadecimal") from None


@dataclass(frozen=True, slots=True)
class AttestationConfig:
    """FDC endpoints, contracts and timing."""

    verifier_url: str = VERIFIER_BASE_URLS[FLARE_CHAIN_ID]
    da_layer_url: str = DA_LAYER_URLS[FLARE_CHAIN_ID]
    api_key: str = PUBLIC_VERIFIER_API_KEY
    fdc_hub_address: str = FDC_HUB_ADDRESS
    relay_address: str = FDC_RELAY_ADDRESS
    fallback_fee_wei: int = WEI_PER_FLR // 2
    request_gas_limit: int = 500_000
    finality_poll_interval: float = 10.0
    finality_timeout: float = 300.0
    da_settle_delay: float = 30.0
    request_timeout: float = 30.0
    attestation_type_id: int = 200

    def __post_init__(self) -> None:
        _validate_url(self.verifier_url, "Verifier URL (FDC_VERIFIER_URL)")
        _validate_url(self.da_layer_url, "DA layer URL (FDC_DA_LAYER_URL)")
        _checksum_field(self, "fdc_hub_address", "FdcHub address (FDC_HUB_ADDRESS)")
        _checksum_field(self, "relay_address", "FDC Relay address (FDC_RELAY_ADDRESS)")

        if self.fallback_fee_wei < 0:
            raise ConfigurationError("Fallback fee must be non-negative")
        if self.finality_poll_interval <= 0 or self.finality_timeout <= 0:
            raise ConfigurationError("Finality poll interval and timeout must be positive")
        if self.finality_poll_interval > self.finality_timeout:
            raise ConfigurationError("Finality poll interval cannot exceed the finality timeout")
        if self.da_settle_delay < 0:
            raise ConfigurationError("DA settle delay must be non-negative")
        if not 0 < self.request_timeout <= 120:
            raise ConfigurationError(
                f"Request timeout must be in (0, 120] seconds, got {self.request_timeout}"
            )

    @classmethod
    def for_flare_chain(cls, flare_chain_id: int, **overrides) -> "AttestationConfig":
        """Defaults for the given Flare network, with explicit overrides."""
        values = {
            "verifier_url": VERIFIER_BASE_URLS[flare_chain_id],
            "da_layer_url": DA_LAYER_URLS[flare_chain_id],
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True, slots=True)
class SafetyConfig:
    """Gas, balance and failure limits."""

    max_gas_price_gwei: float = 100.0
    min_balance_flr: float = 1.0
    critical_balance_flr: float = 0.1
    balance_check_every: int = 10
    circuit_breaker_threshold: int = 10
    tx_timeout: float = 300.0
    record_gas_limit: int = 150_000
    relay_gas_limit: int = 800_000
    proof_gas_limit: int = 500_000

    def __post_init__(self) -> None:
        if self.max_gas_price_gwei <= 0:
            raise ConfigurationError(f"Max gas price must be positive, got {self.max_gas_price_gwei}")
        if self.critical_balance_flr < 0 or self.min_balance_flr < self.critical_balance_flr:
            raise ConfigurationError(
                "Balance thresholds must satisfy 0 <= critical <= minimum "
                f"(got critical={self.critical_balance_flr}, minimum={self.min_balance_flr})"
            )
        if self.balance_check_every <= 0:
            raise ConfigurationError("Balance check frequency must be positive")
        if self.circuit_breaker_threshold <= 0:
            raise ConfigurationError("Circuit breaker threshold must be positive")
        if self.tx_timeout <= 0:
            raise ConfigurationError("Transaction timeout must be positive")

    @property
    def max_gas_price_wei(self) -> int:
        return int(self.max_gas_price_gwei * WEI_PER_GWEI)

    @property
    def min_balance_wei(self) -> int:
        return int(self.min_balance_flr * WEI_PER_FLR)

    @property
    def critical_balance_wei(self) -> int:
        return int(self.critical_balance_flr * WEI_PER_FLR)


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Tick timing and feed selection."""

    check_interval: float = 60.0
    stats_interval: float = 3600.0
    selected_feed_ids: tuple[str, ...] = ()
    confirmation_poll_interval: float = 12.0
    confirmation_timeout: float = 1800.0
    relay_settle_delay: float = 5.0
    attestation_retries: int = 2
    attestation_retry_delay: float = 10.0
    max_pending_jobs: int = 20

    def __post_init__(self) -> None:
        if self.check_interval <= 0:
            raise ConfigurationError(f"Check interval must be positive, got {self.check_interval}")
        if self.stats_interval <= 0:
            raise ConfigurationError(f"Stats interval must be positive, got {self.stats_interval}")
        if self.confirmation_poll_interval <= 0 or self.confirmation_timeout <= 0:
            raise ConfigurationError("Confirmation poll interval and timeout must be positive")
        if self.attestation_retries < 0 or self.attestation_retry_delay < 0:
            raise ConfigurationError("Attestation retries and retry delay must not be negative")
        if self.max_pending_jobs <= 0:
            raise ConfigurationError(f"Max pending jobs must be positive, got {self.max_pending_jobs}")


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the relayer.

    Attributes:
        flare: Destination chain connection and key
        attestation: FDC endpoints and timing
        safety: Gas, balance and failure limits
        scheduler: Tick timing and feed selection
        feeds_file: JSON feed store path; env discovery when None
        rpc_overrides: ``RPC_URL_<chain_id>`` values found in the environment
    """

    flare: FlareChainConfig
    attestation: AttestationConfig = field(default_factory=AttestationConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    feeds_file: str | None = None
    rpc_overrides: dict[int, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for chain_id, url in self.rpc_overrides.items():
            _validate_url(url, f"RPC_URL_{chain_id}", ("http", "https", "ws", "wss"))

    def rpc_url_for(self, chain_id: int) -> str:
        """RPC endpoint for a chain: env override, then Flare config, then registry default.

        Raises:
            ConfigurationError: If no endpoint is known for the chain
        """
        if chain_id in self.rpc_overrides:
            return self.rpc_overrides[chain_id]
        if chain_id == self.flare.chain_id:
            return self.flare.rpc_url
        if chain_id in CHAINS:
            return CHAINS[chain_id].rpc_url
        raise ConfigurationError(f"No RPC endpoint for chain {chain_id}. Set RPC_URL_{chain_id}.")

    @classmethod
    def from_env(cls, feeds_file: str | None = None) -> "RelayerConfig":
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If required variables are missing or invalid
        """
        flare_chain_id = _env_int("FLARE_CHAIN_ID", FLARE_CHAIN_ID)
        default_rpc = CHAINS[flare_chain_id].rpc_url if flare_chain_id in CHAINS else ""
        private_key = os.environ.get("PRIVATE_KEY") or os.environ.get("DEPLOYER_PRIVATE_KEY", "")
        if not private_key:
            raise ConfigurationError(
                "PRIVATE_KEY environment variable is required. "
                "This key signs record, relay, attestation and proof transactions."
            )

        flare = FlareChainConfig(
            rpc_url=os.environ.get("FLARE_RPC_URL", default_rpc),
            private_key=private_key,
            chain_id=flare_chain_id,
        )

        if flare_chain_id not in VERIFIER_BASE_URLS:
            raise ConfigurationError(f"No FDC endpoints known for Flare chain {flare_chain_id}")

        attestation = AttestationConfig.for_flare_chain(
            flare_chain_id,
            verifier_url=os.environ.get("FDC_VERIFIER_URL"),
            da_layer_url=os.environ.get("FDC_DA_LAYER_URL"),
            api_key=os.environ.get("FDC_VERIFIER_API_KEY"),
            fdc_hub_address=os.environ.get("FDC_HUB_ADDRESS"),
            relay_address=os.environ.get("FDC_RELAY_ADDRESS"),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
        )

        safety = SafetyConfig(
            max_gas_price_gwei=_env_float("MAX_GAS_PRICE_GWEI", 100.0),
            min_balance_flr=_env_float("MIN_BALANCE_FLR", 1.0),
            critical_balance_flr=_env_float("CRITICAL_BALANCE_FLR", 0.1),
            circuit_breaker_threshold=_env_int("CIRCUIT_BREAKER_THRESHOLD", 10),
        )

        selected = os.environ.get("BOT_SELECTED_FEEDS", "")
        scheduler = SchedulerConfig(
            check_interval=_env_int("BOT_CHECK_INTERVAL_SECONDS", 60),
            stats_interval=_env_int("BOT_STATS_INTERVAL_MINUTES", 60) * 60,
            selected_feed_ids=tuple(s.strip() for s in selected.split(",") if s.strip()),
            attestation_retries=_env_int("MAX_ATTESTATION_RETRIES", 2),
        )

        rpc_overrides = {}
        for key, value in os.environ.items():
            if key.startswith("RPC_URL_") and value:
                suffix = key.removeprefix("RPC_URL_")
                if suffix.isdigit():
                    rpc_overrides[int(suffix)] = value

        return cls(
            flare=flare,
            attestation=attestation,
            safety=safety,
            scheduler=scheduler,
            feeds_file=feeds_file or os.environ.get("FEEDS_FILE") or None,
            rpc_overrides=rpc_overrides,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Flare Forward Relayer Configuration")
        logger.info("=" * 60)

        logger.info("Flare:")
        logger.info(f"  Chain ID: {self.flare.chain_id}")
        logger.info(f"  RPC URL: {self.flare.rpc_url}")
        logger.info("  Private Key: [CONFIGURED]")

        logger.info("FDC:")
        logger.info(f"  Verifier: {self.attestation.verifier_url}")
        logger.info(f"  DA Layer: {self.attestation.da_layer_url}")
        logger.info(f"  FdcHub: {self.attestation.fdc_hub_address}")
        logger.info(f"  Relay: {self.attestation.relay_address}")
        api_key_state = "public" if self.attestation.api_key == PUBLIC_VERIFIER_API_KEY else "[CONFIGURED]"
        logger.info(f"  API Key: {api_key_state}")

        logger.info("Safety:")
        logger.info(f"  Max Gas Price: {self.safety.max_gas_price_gwei} gwei")
        logger.info(
            f"  Balance: warn < {self.safety.min_balance_flr} FLR, "
            f"halt < {self.safety.critical_balance_flr} FLR"
        )
        logger.info(f"  Circuit Breaker: {self.safety.circuit_breaker_threshold} consecutive failures")

        logger.info("Scheduler:")
        logger.info(f"  Check Interval: {self.scheduler.check_interval} seconds")
        logger.info(f"  Stats Interval: {self.scheduler.stats_interval / 60:.0f} minutes")
        logger.info(f"  Attestation Retries: {self.scheduler.attestation_retries}")
        if self.scheduler.selected_feed_ids:
            logger.info(f"  Selected Feeds: {', '.join(self.scheduler.selected_feed_ids)}")

        logger.info(f"Feed Store: {self.feeds_file or 'environment'}")
        for chain_id, url in sorted(self.rpc_overrides.items()):
            logger.info(f"  RPC override {chain_id}: {url}")

        logger.info("=" * 60)

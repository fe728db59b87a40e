"""
Relay invariant engine.

Python model of the PriceRelay contract deployed on Flare. It holds the
per-(chain, pool) configuration, the relayer authorization list and the
accept/reject decision for off-chain submitted observations. The orchestrator
talks to the deployed contract through its ABI; this engine is the executable
reference for the contract's rules and classifies its revert strings.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from web3 import Web3

from .models import Observation
from .payload import PriceRelayedPayload
from .price_math import UINT160_MAX, deviation_bps

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MAX_DEVIATION_BPS = 5000
MAX_FUTURE_SKEW = 600


class RejectReason(str, Enum):
    """Rejection reasons, valued by the contract's revert strings."""

    NOT_OWNER = "Not owner"
    SAME_OWNER = "Same owner"
    INVALID_ADDRESS = "Invalid address"
    INVALID_INTERVAL = "Invalid interval"
    INVALID_AGE = "Invalid age"
    INVALID_CHAIN_ID = "Invalid chain ID"
    ALREADY_ENABLED = "Already enabled"
    NOT_ENABLED = "Not enabled"
    INVALID_POOL = "Invalid pool"
    INVALID_TOKENS = "Invalid tokens"
    TOKENS_MUST_DIFFER = "Tokens must differ"
    TOKEN_BINDING_CONFLICT = "Token binding conflict"
    ALREADY_AUTHORIZED = "Already authorized"
    NOT_AUTHORIZED = "Not authorized"
    ALREADY_PAUSED = "Already paused"
    NOT_PAUSED = "Not paused"
    NOT_AUTHORIZED_RELAYER = "Not authorized relayer"
    PAUSED = "Relay paused"
    CHAIN_NOT_SUPPORTED = "Chain not supported"
    POOL_NOT_ENABLED = "Pool not enabled"
    INVALID_PRICE = "Invalid price"
    TOKEN_MISMATCH = "Token mismatch"
    FUTURE_TIMESTAMP = "Future timestamp"
    PRICE_TOO_OLD = "Price data too old"
    STALE_BLOCK = "Stale block number"
    INTERVAL_NOT_ELAPSED = "Relay interval not elapsed"
    DEVIATION_TOO_HIGH = "Price deviation too high"

    @classmethod
    def from_revert_message(cls, message: str) -> "RejectReason | None":
        """Find the reason embedded in a revert message, if any.

        Matches the longest known reason string so that "Not authorized
        relayer" is not mistaken for "Not authorized".
        """
        if not message:
            return None
        for reason in sorted(cls, key=lambda r: len(r.value), reverse=True):
            if reason.value in message:
                return reason
        return None


class RelayRejected(Exception):
    """Raised when an engine operation reverts."""

    def __init__(self, reason: RejectReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class Authorizer(ABC):
    """Capability that decides who may administer the relay and who may relay."""

    @abstractmethod
    def is_admin(self, caller: str) -> bool: ...

    @abstractmethod
    def is_relayer(self, caller: str) -> bool: ...

    @abstractmethod
    def add_relayer(self, relayer: str) -> None: ...

    @abstractmethod
    def remove_relayer(self, relayer: str) -> None: ...

    @abstractmethod
    def transfer_admin(self, new_admin: str) -> None: ...


class OwnerAuthorizer(Authorizer):
    """Single owner plus a set of relayers."""

    def __init__(self, owner: str):
        self.owner = Web3.to_checksum_address(owner)
        self.relayers: set[str] = set()

    def is_admin(self, caller: str) -> bool:
        return Web3.to_checksum_address(caller) == self.owner

    def is_relayer(self, caller: str) -> bool:
        return Web3.to_checksum_address(caller) in self.relayers

    def add_relayer(self, relayer: str) -> None:
        self.relayers.add(Web3.to_checksum_address(relayer))

    def remove_relayer(self, relayer: str) -> None:
        self.relayers.discard(Web3.to_checksum_address(relayer))

    def transfer_admin(self, new_admin: str) -> None:
        self.owner = Web3.to_checksum_address(new_admin)


@dataclass(slots=True)
class PoolConfig:
    """State for one (source chain, pool) pair.

    The token binding survives ``disable_pool`` together with the replay state
    so that a pool cannot be re-enabled against different tokens or rewound to
    an older block without an explicit ``reset_pool``.
    """

    token0: str
    token1: str
    enabled: bool = True
    last_block_number: int = 0
    last_sqrt_price_x96: int = 0
    last_relay_time: int = 0

    def as_tuple(self) -> tuple[str, str, int, int]:
        """Shape of the contract's ``getPoolConfig`` return value."""
        return (self.token0, self.token1, self.last_block_number, self.last_sqrt_price_x96)


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """An event emitted by an engine operation."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    payload: PriceRelayedPayload | None = None


class RelayInvariantEngine:
    """Accepts or rejects relayed price observations.

    Every operation takes ``caller`` first, standing in for ``msg.sender``.
    ``clock`` returns the chain time in seconds. The deployer becomes owner
    and is authorized as a relayer, as the contract constructor does.
    """

    def __init__(
        self,
        min_relay_interval: int,
        max_price_age: int,
        owner: str,
        clock: Callable[[], int] | None = None,
        authorizer: Authorizer | None = None,
        max_deviation_bps: int = MAX_DEVIATION_BPS,
        max_future_skew: int = MAX_FUTURE_SKEW,
    ):
        if min_relay_interval <= 0:
            raise RelayRejected(RejectReason.INVALID_INTERVAL)
        if max_price_age <= 0:
            raise RelayRejected(RejectReason.INVALID_AGE, "max price age")

        self.min_relay_interval = min_relay_interval
        self.max_price_age = max_price_age
        self.max_deviation_bps = max_deviation_bps
        self.max_future_skew = max_future_skew
        self.clock = clock or (lambda: int(time.time()))

        self.paused = False
        self.supported_chains: set[int] = set()
        self.pools: dict[tuple[int, str], PoolConfig] = {}
        self.events: list[EngineEvent] = []

        if authorizer is None:
            authorizer = OwnerAuthorizer(owner)
            authorizer.add_relayer(owner)
            self._emit("RelayerAuthorized", relayer=Web3.to_checksum_address(owner))
        self.authorizer = authorizer

    # ------------------------------------------------------------------
    # Helpers

    def _emit(self, name: str, payload: PriceRelayedPayload | None = None, **args: Any) -> None:
        self.events.append(EngineEvent(name=name, args=args, payload=payload))
        logger.debug(f"Event {name} {args}")

    def _only_owner(self, caller: str) -> None:
        if not self.authorizer.is_admin(caller):
            raise RelayRejected(RejectReason.NOT_OWNER)

    @staticmethod
    def _key(chain_id: int, pool: str) -> tuple[int, str]:
        return (chain_id, Web3.to_checksum_address(pool))

    def _enabled_pool(self, chain_id: int, pool: str) -> PoolConfig | None:
        config = self.pools.get(self._key(chain_id, pool))
        return config if config is not None and config.enabled else None

    # ------------------------------------------------------------------
    # Owner operations

    def enable_chain(self, caller: str, chain_id: int) -> None:
        self._only_owner(caller)
        if chain_id <= 0:
            raise RelayRejected(RejectReason.INVALID_CHAIN_ID)
        if chain_id in self.supported_chains:
            raise RelayRejected(RejectReason.ALREADY_ENABLED, f"chain {chain_id}")
        self.supported_chains.add(chain_id)
        self._emit("ChainEnabled", chainId=chain_id)

    def disable_chain(self, caller: str, chain_id: int) -> None:
        self._only_owner(caller)
        if chain_id not in self.supported_chains:
            raise RelayRejected(RejectReason.NOT_ENABLED, f"chain {chain_id}")
        self.supported_chains.discard(chain_id)
        self._emit("ChainDisabled", chainId=chain_id)

    def enable_pool(self, caller: str, chain_id: int, pool: str, token0: str, token1: str) -> None:
        """Enable a pool and bind its token pair.

        A disabled pool keeps its binding and replay state. Re-enabling it with
        the same tokens resumes where it left off; different tokens are
        rejected until the owner calls ``reset_pool``.
        """
        self._only_owner(caller)
        if chain_id not in self.supported_chains:
            raise RelayRejected(RejectReason.CHAIN_NOT_SUPPORTED, str(chain_id))

        pool = Web3.to_checksum_address(pool)
        token0 = Web3.to_checksum_address(token0)
        token1 = Web3.to_checksum_address(token1)
        if pool == ZERO_ADDRESS:
            raise RelayRejected(RejectReason.INVALID_POOL)
        if ZERO_ADDRESS in (token0, token1):
            raise RelayRejected(RejectReason.INVALID_TOKENS)
        if token0 == token1:
            raise RelayRejected(RejectReason.TOKENS_MUST_DIFFER)

        key = (chain_id, pool)
        match self.pools.get(key):
            case None:
                self.pools[key] = PoolConfig(token0=token0, token1=token1)
            case PoolConfig(enabled=True):
                raise RelayRejected(RejectReason.ALREADY_ENABLED, f"pool {pool}")
            case PoolConfig(token0=t0, token1=t1) if (t0, t1) != (token0, token1):
                raise RelayRejected(
                    RejectReason.TOKEN_BINDING_CONFLICT,
                    f"{pool} bound to {t0}/{t1}; call reset_pool first",
                )
            case existing:
                existing.enabled = True

        self._emit("PoolEnabled", chainId=chain_id, pool=pool, token0=token0, token1=token1)

    def disable_pool(self, caller: str, chain_id: int, pool: str) -> None:
        self._only_owner(caller)
        config = self._enabled_pool(chain_id, pool)
        if config is None:
            raise RelayRejected(RejectReason.NOT_ENABLED, f"pool {pool}")
        config.enabled = False
        self._emit("PoolDisabled", chainId=chain_id, pool=Web3.to_checksum_address(pool))

    def reset_pool(self, caller: str, chain_id: int, pool: str) -> None:
        """Forget a disabled pool's token binding and replay state."""
        self._only_owner(caller)
        key = self._key(chain_id, pool)
        config = self.pools.get(key)
        if config is None:
            raise RelayRejected(RejectReason.NOT_ENABLED, f"pool {key[1]}")
        if config.enabled:
            raise RelayRejected(RejectReason.ALREADY_ENABLED, "disable the pool before resetting it")
        del self.pools[key]
        self._emit("PoolReset", chainId=chain_id, pool=key[1])

    def authorize_relayer(self, caller: str, relayer: str) -> None:
        self._only_owner(caller)
        relayer = Web3.to_checksum_address(relayer)
        if relayer == ZERO_ADDRESS:
            raise RelayRejected(RejectReason.INVALID_ADDRESS)
        if self.authorizer.is_relayer(relayer):
            raise RelayRejected(RejectReason.ALREADY_AUTHORIZED)
        self.authorizer.add_relayer(relayer)
        self._emit("RelayerAuthorized", relayer=relayer)

    def revoke_relayer(self, caller: str, relayer: str) -> None:
        self._only_owner(caller)
        if not self.authorizer.is_relayer(relayer):
            raise RelayRejected(RejectReason.NOT_AUTHORIZED)
        self.authorizer.remove_relayer(relayer)
        self._emit("RelayerRevoked", relayer=Web3.to_checksum_address(relayer))

    def pause(self, caller: str) -> None:
        self._only_owner(caller)
        if self.paused:
            raise RelayRejected(RejectReason.ALREADY_PAUSED)
        self.paused = True
        self._emit("RelayPaused")

    def unpause(self, caller: str) -> None:
        self._only_owner(caller)
        if not self.paused:
            raise RelayRejected(RejectReason.NOT_PAUSED)
        self.paused = False
        self._emit("RelayUnpaused")

    def set_min_relay_interval(self, caller: str, seconds: int) -> None:
        self._only_owner(caller)
        if seconds <= 0:
            raise RelayRejected(RejectReason.INVALID_INTERVAL)
        self.min_relay_interval = seconds
        self._emit("ConfigUpdated", minRelayInterval=seconds, maxPriceAge=self.max_price_age)

    def set_max_price_age(self, caller: str, seconds: int) -> None:
        self._only_owner(caller)
        if seconds <= 0:
            raise RelayRejected(RejectReason.INVALID_AGE)
        self.max_price_age = seconds
        self._emit("ConfigUpdated", minRelayInterval=self.min_relay_interval, maxPriceAge=seconds)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self._only_owner(caller)
        new_owner = Web3.to_checksum_address(new_owner)
        if new_owner == ZERO_ADDRESS:
            raise RelayRejected(RejectReason.INVALID_ADDRESS)
        if self.authorizer.is_admin(new_owner):
            raise RelayRejected(RejectReason.SAME_OWNER)
        self.authorizer.transfer_admin(new_owner)

    # ------------------------------------------------------------------
    # Relaying

    def relay_price(
        self,
        caller: str,
        source_chain_id: int,
        pool: str,
        sqrt_price_x96: int,
        tick: int,
        liquidity: int,
        token0: str,
        token1: str,
        source_timestamp: int,
        source_block_number: int,
    ) -> PriceRelayedPayload:
        """Validate and accept an observation. The first failing check wins.

        Returns:
            The ``PriceRelayed`` payload that was emitted

        Raises:
            RelayRejected: With the reason of the first failed check
        """
        if not self.authorizer.is_relayer(caller):
            raise RelayRejected(RejectReason.NOT_AUTHORIZED_RELAYER)
        if self.paused:
            raise RelayRejected(RejectReason.PAUSED)

        now = self.clock()

        # 1. chain, pool, price
        if source_chain_id not in self.supported_chains:
            raise RelayRejected(RejectReason.CHAIN_NOT_SUPPORTED, str(source_chain_id))
        config = self._enabled_pool(source_chain_id, pool)
        if config is None:
            raise RelayRejected(RejectReason.POOL_NOT_ENABLED)
        if not 0 < sqrt_price_x96 <= UINT160_MAX:
            raise RelayRejected(RejectReason.INVALID_PRICE)

        # 2. token binding
        bound = (config.token0, config.token1)
        if (Web3.to_checksum_address(token0), Web3.to_checksum_address(token1)) != bound:
            raise RelayRejected(RejectReason.TOKEN_MISMATCH)

        # 3. timestamp
        if source_timestamp > now:
            if source_timestamp - now > self.max_future_skew:
                raise RelayRejected(RejectReason.FUTURE_TIMESTAMP, f"{source_timestamp - now}s ahead")
        elif now - source_timestamp > self.max_price_age:
            raise RelayRejected(RejectReason.PRICE_TOO_OLD, f"{now - source_timestamp}s old")

        # 4. replay protection
        if source_block_number <= config.last_block_number:
            raise RelayRejected(
                RejectReason.STALE_BLOCK, f"{source_block_number} <= {config.last_block_number}"
            )

        # 5. rate limit
        if now < config.last_relay_time + self.min_relay_interval:
            raise RelayRejected(RejectReason.INTERVAL_NOT_ELAPSED)

        # 6. deviation
        if config.last_sqrt_price_x96 > 0:
            deviation = deviation_bps(config.last_sqrt_price_x96, sqrt_price_x96)
            if deviation > self.max_deviation_bps:
                raise RelayRejected(RejectReason.DEVIATION_TOO_HIGH, f"{deviation} bps")

        config.last_block_number = source_block_number
        config.last_sqrt_price_x96 = sqrt_price_x96
        config.last_relay_time = now

        payload = PriceRelayedPayload(
            source_chain_id=source_chain_id,
            pool_address=Web3.to_checksum_address(pool),
            sqrt_price_x96=sqrt_price_x96,
            tick=tick,
            liquidity=liquidity,
            token0=config.token0,
            token1=config.token1,
            source_timestamp=source_timestamp,
            source_block_number=source_block_number,
            relay_timestamp=now,
            relayer=Web3.to_checksum_address(caller),
        )
        self._emit("PriceRelayed", payload=payload)
        return payload

    def relay_observation(self, caller: str, observation: Observation) -> PriceRelayedPayload:
        return self.relay_price(
            caller,
            observation.source_chain_id,
            observation.pool_address,
            observation.sqrt_price_x96,
            observation.tick,
            observation.liquidity,
            observation.token0,
            observation.token1,
            observation.source_timestamp,
            observation.source_block_number,
        )

    # ------------------------------------------------------------------
    # Views

    def is_active(self) -> bool:
        return not self.paused

    def is_relayer(self, address: str) -> bool:
        return self.authorizer.is_relayer(address)

    def can_relay(self, chain_id: int, pool: str) -> bool:
        """Pre-check of activity, chain/pool enablement and the rate limit.

        Price, token, timestamp and block checks are not evaluated, so a True
        result does not guarantee ``relay_price`` succeeds.
        """
        if self.paused or chain_id not in self.supported_chains:
            return False
        config = self._enabled_pool(chain_id, pool)
        if config is None:
            return False
        return self.clock() >= config.last_relay_time + self.min_relay_interval

    def time_until_next_relay(self, chain_id: int, pool: str) -> int:
        config = self.pools.get(self._key(chain_id, pool))
        last = config.last_relay_time if config is not None else 0
        next_allowed = last + self.min_relay_interval
        return max(0, next_allowed - self.clock())

    def get_pool_config(self, chain_id: int, pool: str) -> PoolConfig | None:
        return self.pools.get(self._key(chain_id, pool))

    def events_named(self, name: str) -> list[EngineEvent]:
        return [e for e in self.events if e.name == name]

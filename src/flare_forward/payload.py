"""
Typed observation payloads carried by attested event logs.

Both trust tiers deliver an observation to Flare as an event log inside an
attested transaction: ``PriceRelayed`` from PriceRelay on Flare (relay path)
or ``PriceRecorded`` from a PriceRecorder on the source chain (direct path).
Each payload kind has exactly one encoder and one decoder here, so the relay
engine, the orchestrator and the proof checks all agree on the layout.
"""

from dataclasses import dataclass
from typing import ClassVar, Iterable

from eth_abi import decode, encode
from web3 import Web3

from .models import Observation

SCHEMA_VERSION = 1


def _topic_for(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))


def _address_topic(address: str) -> bytes:
    return bytes.fromhex(address[2:].lower()).rjust(32, b"\0")


def _uint_topic(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _topic_to_address(topic: bytes) -> str:
    return Web3.to_checksum_address(topic[-20:])


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return bytes(Web3.to_bytes(hexstr=value))
    return bytes(value)


@dataclass(frozen=True, slots=True)
class PriceRelayedPayload:
    """``PriceRelayed`` emitted by PriceRelay when it accepts an observation."""

    SIGNATURE: ClassVar[str] = (
        "PriceRelayed(uint256,address,uint160,int24,uint128,address,address,uint256,uint256,uint256,address)"
    )
    DATA_TYPES: ClassVar[tuple[str, ...]] = (
        "uint160", "int24", "uint128", "address", "address",
        "uint256", "uint256", "uint256", "address",
    )
    kind: ClassVar[str] = "price_relayed"
    version: ClassVar[int] = SCHEMA_VERSION

    source_chain_id: int
    pool_address: str
    sqrt_price_x96: int
    tick: int
    liquidity: int
    token0: str
    token1: str
    source_timestamp: int
    source_block_number: int
    relay_timestamp: int
    relayer: str

    @classmethod
    def topic0(cls) -> bytes:
        return _topic_for(cls.SIGNATURE)

    def encode(self) -> tuple[list[bytes], bytes]:
        """Encode as ``(topics, data)`` exactly as the contract emits it."""
        topics = [
            self.topic0(),
            _uint_topic(self.source_chain_id),
            _address_topic(self.pool_address),
        ]
        data = encode(
            list(self.DATA_TYPES),
            [
                self.sqrt_price_x96, self.tick, self.liquidity,
                self.token0, self.token1,
                self.source_timestamp, self.source_block_number,
                self.relay_timestamp, self.relayer,
            ],
        )
        return topics, data

    @classmethod
    def decode(cls, topics: list[bytes], data: bytes) -> "PriceRelayedPayload":
        if len(topics) != 3:
            raise ValueError(f"PriceRelayed expects 3 topics, got {len(topics)}")
        (sqrt_price, tick, liquidity, token0, token1,
         source_ts, source_block, relay_ts, relayer) = decode(list(cls.DATA_TYPES), data)
        return cls(
            source_chain_id=int.from_bytes(topics[1], "big"),
            pool_address=_topic_to_address(topics[2]),
            sqrt_price_x96=sqrt_price,
            tick=tick,
            liquidity=liquidity,
            token0=Web3.to_checksum_address(token0),
            token1=Web3.to_checksum_address(token1),
            source_timestamp=source_ts,
            source_block_number=source_block,
            relay_timestamp=relay_ts,
            relayer=Web3.to_checksum_address(relayer),
        )

    @classmethod
    def from_observation(
        cls, observation: Observation, relay_timestamp: int, relayer: str
    ) -> "PriceRelayedPayload":
        return cls(
            source_chain_id=observation.source_chain_id,
            pool_address=observation.pool_address,
            sqrt_price_x96=observation.sqrt_price_x96,
            tick=observation.tick,
            liquidity=observation.liquidity,
            token0=observation.token0,
            token1=observation.token1,
            source_timestamp=observation.source_timestamp,
            source_block_number=observation.source_block_number,
            relay_timestamp=relay_timestamp,
            relayer=relayer,
        )

    def to_observation(self) -> Observation:
        return Observation(
            source_chain_id=self.source_chain_id,
            pool_address=self.pool_address,
            sqrt_price_x96=self.sqrt_price_x96,
            tick=self.tick,
            liquidity=self.liquidity,
            token0=self.token0,
            token1=self.token1,
            source_timestamp=self.source_timestamp,
            source_block_number=self.source_block_number,
        )


@dataclass(frozen=True, slots=True)
class PriceRecordedPayload:
    """``PriceRecorded`` emitted by a PriceRecorder on a direct chain.

    The recorder does not know its own chain id; ``source_chain_id`` is
    supplied by whoever decodes the log.
    """

    SIGNATURE: ClassVar[str] = (
        "PriceRecorded(address,uint160,int24,uint128,address,address,uint256,uint256)"
    )
    DATA_TYPES: ClassVar[tuple[str, ...]] = (
        "uint160", "int24", "uint128", "address", "address", "uint256", "uint256",
    )
    kind: ClassVar[str] = "price_recorded"
    version: ClassVar[int] = SCHEMA_VERSION

    pool_address: str
    sqrt_price_x96: int
    tick: int
    liquidity: int
    token0: str
    token1: str
    timestamp: int
    block_number: int
    source_chain_id: int = 0

    @classmethod
    def topic0(cls) -> bytes:
        return _topic_for(cls.SIGNATURE)

    def encode(self) -> tuple[list[bytes], bytes]:
        topics = [self.topic0(), _address_topic(self.pool_address)]
        data = encode(
            list(self.DATA_TYPES),
            [
                self.sqrt_price_x96, self.tick, self.liquidity,
                self.token0, self.token1, self.timestamp, self.block_number,
            ],
        )
        return topics, data

    @classmethod
    def decode(
        cls, topics: list[bytes], data: bytes, source_chain_id: int = 0
    ) -> "PriceRecordedPayload":
        if len(topics) != 2:
            raise ValueError(f"PriceRecorded expects 2 topics, got {len(topics)}")
        sqrt_price, tick, liquidity, token0, token1, timestamp, block_number = decode(
            list(cls.DATA_TYPES), data
        )
        return cls(
            pool_address=_topic_to_address(topics[1]),
            sqrt_price_x96=sqrt_price,
            tick=tick,
            liquidity=liquidity,
            token0=Web3.to_checksum_address(token0),
            token1=Web3.to_checksum_address(token1),
            timestamp=timestamp,
            block_number=block_number,
            source_chain_id=source_chain_id,
        )

    def to_observation(self) -> Observation:
        return Observation(
            source_chain_id=self.source_chain_id,
            pool_address=self.pool_address,
            sqrt_price_x96=self.sqrt_price_x96,
            tick=self.tick,
            liquidity=self.liquidity,
            token0=self.token0,
            token1=self.token1,
            source_timestamp=self.timestamp,
            source_block_number=self.block_number,
        )


ObservationPayload = PriceRelayedPayload | PriceRecordedPayload

_PAYLOAD_TYPES: tuple[type[PriceRelayedPayload] | type[PriceRecordedPayload], ...] = (
    PriceRelayedPayload,
    PriceRecordedPayload,
)


def decode_log(
    topics: Iterable[bytes | str], data: bytes | str, source_chain_id: int = 0
) -> ObservationPayload | None:
    """Decode an event log into its typed payload.

    Returns None for logs that are not observation payloads (e.g. ERC20
    transfers in the same transaction).
    """
    topic_list = [_as_bytes(t) for t in topics]
    if not topic_list:
        return None
    raw = _as_bytes(data)

    match topic_list[0]:
        case t if t == PriceRelayedPayload.topic0():
            return PriceRelayedPayload.decode(topic_list, raw)
        case t if t == PriceRecordedPayload.topic0():
            return PriceRecordedPayload.decode(topic_list, raw, source_chain_id)
        case _:
            return None


def payload_kind(topic0: bytes | str) -> str | None:
    """Map a log's first topic to its payload kind name."""
    topic = _as_bytes(topic0)
    for payload_type in _PAYLOAD_TYPES:
        if payload_type.topic0() == topic:
            return payload_type.kind
    return None

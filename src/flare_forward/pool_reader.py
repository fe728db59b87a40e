"""Reads Uniswap V3 pool state on a relay chain."""

import logging
from typing import TYPE_CHECKING

from web3 import Web3

from .errors import TransientError
from .models import Observation
from .relay_engine import MAX_FUTURE_SKEW

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class PoolLockedError(TransientError):
    """The pool is mid-swap (``slot0.unlocked`` is false)."""


def clamp_timestamp(source_timestamp: int, flare_now: int, max_future_skew: int = MAX_FUTURE_SKEW) -> int:
    """Clamp a source timestamp to at most ``flare_now + max_future_skew``."""
    return min(source_timestamp, flare_now + max_future_skew)


class PoolReader:
    """Reads a consistent pool snapshot pinned to one source block."""

    def __init__(self, contract_util: "ContractUtility", chain_id: int) -> None:
        self.contract_util = contract_util
        self.chain_id = chain_id

    def read_observation(
        self,
        pool_address: str,
        flare_now: int | None = None,
        max_future_skew: int = MAX_FUTURE_SKEW,
    ) -> Observation:
        """
        Read ``slot0``, ``liquidity``, tokens and the block timestamp at the latest block.

        Args:
            pool_address: Uniswap V3 pool on this chain
            flare_now: Current Flare block timestamp; when given, the source
                timestamp is clamped to ``flare_now + max_future_skew``
            max_future_skew: Allowed clock skew in seconds

        Returns:
            The observation; ``raw_timestamp`` holds the unclamped source time

        Raises:
            PoolLockedError: If the pool is locked
        """
        w3 = self.contract_util.w3
        block_number = w3.eth.block_number
        pool = self.contract_util.contract("UniswapV3Pool", pool_address)

        sqrt_price_x96, tick, *_, unlocked = pool.functions.slot0().call(block_identifier=block_number)
        if not unlocked:
            raise PoolLockedError(f"Pool {pool_address} on chain {self.chain_id} is locked")

        liquidity = pool.functions.liquidity().call(block_identifier=block_number)
        token0 = pool.functions.token0().call(block_identifier=block_number)
        token1 = pool.functions.token1().call(block_identifier=block_number)
        block = w3.eth.get_block(block_number)
        raw_timestamp = int(block["timestamp"])

        source_timestamp = raw_timestamp
        if flare_now is not None:
            source_timestamp = clamp_timestamp(raw_timestamp, flare_now, max_future_skew)
            if source_timestamp != raw_timestamp:
                logger.warning(
                    f"Chain {self.chain_id} timestamp {raw_timestamp} is "
                    f"{raw_timestamp - flare_now}s ahead of Flare, clamped to {source_timestamp}"
                )

        observation = Observation(
            source_chain_id=self.chain_id,
            pool_address=Web3.to_checksum_address(pool_address),
            sqrt_price_x96=int(sqrt_price_x96),
            tick=int(tick),
            liquidity=int(liquidity),
            token0=Web3.to_checksum_address(token0),
            token1=Web3.to_checksum_address(token1),
            source_timestamp=source_timestamp,
            source_block_number=int(block_number),
            raw_timestamp=raw_timestamp,
        )
        logger.debug(f"Read {observation}")
        return observation

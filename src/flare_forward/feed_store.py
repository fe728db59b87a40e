"""
Feed stores.

A feed store produces the list of ``Feed`` records the orchestrator runs. It
is read again on every tick so that added or archived feeds are picked up
without a restart.

``EnvFeedStore`` discovers feeds from ``CUSTOM_FEED_ADDRESS_<ALIAS>``
variables and reads the rest of the configuration from the feed contract on
Flare. ``JsonFeedStore`` reads a feeds file written by a dashboard.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from .chains import CHAINS, COSTON2_CHAIN_ID, FLARE_CHAIN_ID
from .errors import ConfigurationError
from .models import Feed
from .relay_engine import ZERO_ADDRESS
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

FEED_ADDRESS_PREFIX = "CUSTOM_FEED_ADDRESS_"


class FeedStore(ABC):
    """Source of feed records."""

    @abstractmethod
    def load(self) -> list[Feed]:
        """Return the current feeds.

        Raises:
            ConfigurationError: If a feed record is invalid
        """


def _same_address(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()


class EnvFeedStore(FeedStore):
    """Feeds discovered from the environment and hydrated from Flare.

    Variables per alias:
        CUSTOM_FEED_ADDRESS_<ALIAS>: feed contract on Flare (required)
        POOL_ADDRESS_<ALIAS>: expected pool, checked against the feed
        SOURCE_CHAIN_ID_<ALIAS>: source chain for direct feeds (default 14)
        PRICE_RELAY_ADDRESS_<ALIAS>: expected PriceRelay, checked against the feed
        PRICE_RECORDER_ADDRESS_<ALIAS>: expected PriceRecorder, checked against the feed
    """

    def __init__(
        self,
        flare_util: ContractUtility,
        environ: Mapping[str, str] | None = None,
        rpc_url_for: Callable[[int], str] | None = None,
        request_timeout: float = 30.0,
    ) -> None:
        """
        Args:
            flare_util: Contract utility connected to Flare
            environ: Environment mapping, ``os.environ`` by default
            rpc_url_for: Resolves a source chain RPC endpoint; enables the recorder pause check
            request_timeout: RPC timeout for source chain reads
        """
        self.flare_util = flare_util
        self.environ = environ if environ is not None else os.environ
        self.rpc_url_for = rpc_url_for
        self.request_timeout = request_timeout
        self._source_utils: dict[int, ContractUtility] = {}
        self._cache: dict[str, Feed | None] = {}

    def discover(self) -> list[dict[str, Any]]:
        """Raw feed records from the environment, before hydration."""
        records = []
        for key in sorted(self.environ):
            if not key.startswith(FEED_ADDRESS_PREFIX) or not self.environ[key]:
                continue
            alias = key.removeprefix(FEED_ADDRESS_PREFIX)
            chain_raw = self.environ.get(f"SOURCE_CHAIN_ID_{alias}", "")
            try:
                source_chain_id = int(chain_raw) if chain_raw else FLARE_CHAIN_ID
            except ValueError:
                raise ConfigurationError(f"SOURCE_CHAIN_ID_{alias} must be an integer") from None
            records.append({
                "alias": alias,
                "feed_address": self.environ[key],
                "pool_address": self.environ.get(f"POOL_ADDRESS_{alias}") or None,
                "source_chain_id": source_chain_id,
                "relay_address": self.environ.get(f"PRICE_RELAY_ADDRESS_{alias}") or None,
                "recorder_address": self.environ.get(f"PRICE_RECORDER_ADDRESS_{alias}") or None,
            })
        return records

    def hydrate(self, record: dict[str, Any]) -> Feed | None:
        """
        Read a feed's configuration from its contract on Flare.

        Returns:
            The feed, or None for native feeds (no recorder and no relay),
            which are not attestation driven

        Raises:
            ConfigurationError: If the feed is paused or an env value disagrees with the chain
        """
        alias = record["alias"]
        feed_address = record["feed_address"]
        if not Web3.is_address(feed_address):
            raise ConfigurationError(f"{FEED_ADDRESS_PREFIX}{alias} is not an address: {feed_address}")

        contract = self.flare_util.contract("CrossChainPoolPriceCustomFeed", feed_address)
        functions = contract.functions

        if not functions.acceptingUpdates().call():
            raise ConfigurationError(f"Feed is paused for {alias}")

        pool_address = functions.poolAddress().call()
        if record["pool_address"] and not _same_address(record["pool_address"], pool_address):
            raise ConfigurationError(f"POOL_ADDRESS_{alias} does not match feed.poolAddress()")

        common = {
            "feed_id": alias.lower(),
            "alias": alias,
            "pool_address": pool_address,
            "feed_address": feed_address,
            "token0_decimals": int(functions.token0Decimals().call()),
            "token1_decimals": int(functions.token1Decimals().call()),
            "invert_price": bool(functions.invertPrice().call()),
        }

        try:
            relay_address = functions.priceRelayAddress().call()
        except (BadFunctionCallOutput, ContractLogicError):
            # Direct feed contracts do not implement the relay getter
            relay_address = None
        if relay_address and relay_address != ZERO_ADDRESS:
            if record["relay_address"] and not _same_address(record["relay_address"], relay_address):
                raise ConfigurationError(
                    f"PRICE_RELAY_ADDRESS_{alias} does not match feed.priceRelayAddress()"
                )
            return Feed(
                source_chain_id=int(functions.sourceChainId().call()),
                relay_address=relay_address,
                **common,
            )

        recorder_address = functions.priceRecorderAddress().call()
        if recorder_address == ZERO_ADDRESS:
            logger.info(f"Feed {alias} is a native Flare feed, not attestation driven; skipping")
            return None
        if record["recorder_address"] and not _same_address(record["recorder_address"], recorder_address):
            raise ConfigurationError(
                f"PRICE_RECORDER_ADDRESS_{alias} does not match feed.priceRecorderAddress()"
            )

        feed = Feed(
            source_chain_id=record["source_chain_id"],
            recorder_address=recorder_address,
            **common,
        )
        self._check_recorder(feed)
        return feed

    def _check_recorder(self, feed: Feed) -> None:
        if self.rpc_url_for is None:
            return
        if (util := self._source_utils.get(feed.source_chain_id)) is None:
            util = ContractUtility(self.rpc_url_for(feed.source_chain_id), request_timeout=self.request_timeout)
            self._source_utils[feed.source_chain_id] = util
        recorder = util.contract("PriceRecorder", feed.recorder_address)
        try:
            recording = recorder.functions.isRecording().call()
        except (BadFunctionCallOutput, ContractLogicError):
            # Older recorders have no pause switch
            logger.debug(f"PriceRecorder for {feed.alias} does not expose isRecording()")
            return
        if not recording:
            raise ConfigurationError(f"PriceRecorder for {feed.alias} is paused")

    def load(self) -> list[Feed]:
        feeds = []
        for record in self.discover():
            key = record["feed_address"].lower()
            if key not in self._cache:
                feed = self.hydrate(record)
                self._cache[key] = feed
                if feed is not None:
                    logger.info(f"✓ Verified feed {feed}")
            if (feed := self._cache[key]) is not None:
                feeds.append(feed)
        return feeds


class JsonFeedStore(FeedStore):
    """Feeds from a JSON document ``{"version": ..., "feeds": [...]}``.

    Archived feeds and native Flare feeds are skipped. Legacy records with a
    ``network`` field instead of ``sourceChain`` map to Flare or Coston2.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @staticmethod
    def parse_feed(entry: dict[str, Any]) -> Feed | None:
        """Build a ``Feed`` from one stored record, or None if it should not run."""
        if entry.get("archivedAt") or entry.get("sourceKind") == "FLARE_NATIVE":
            return None

        if source_chain := entry.get("sourceChain"):
            chain_id = int(source_chain["id"])
        elif "sourceChainId" in entry:
            chain_id = int(entry["sourceChainId"])
        else:
            chain_id = COSTON2_CHAIN_ID if entry.get("network") == "coston2" else FLARE_CHAIN_ID

        if chain_id not in CHAINS:
            raise ConfigurationError(f"Feed {entry.get('alias')}: unsupported chain {chain_id}")

        token0 = entry.get("token0") or {}
        token1 = entry.get("token1") or {}
        return Feed(
            feed_id=str(entry.get("id", "")),
            alias=entry.get("alias") or str(entry.get("id", "")),
            source_chain_id=chain_id,
            pool_address=entry.get("sourcePoolAddress") or entry.get("poolAddress"),
            feed_address=entry.get("customFeedAddress"),
            recorder_address=entry.get("priceRecorderAddress") or None,
            relay_address=entry.get("priceRelayAddress") or None,
            token0_decimals=int(token0.get("decimals", entry.get("token0Decimals", 18))),
            token1_decimals=int(token1.get("decimals", entry.get("token1Decimals", 18))),
            invert_price=bool(entry.get("invertPrice", False)),
        )

    def load(self) -> list[Feed]:
        try:
            with self.path.open() as file:
                data = json.load(file)
        except FileNotFoundError:
            raise ConfigurationError(f"Feeds file not found: {self.path}") from None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Feeds file {self.path} is not valid JSON: {e}") from e

        entries = data.get("feeds", []) if isinstance(data, dict) else data
        feeds = [feed for entry in entries if (feed := self.parse_feed(entry)) is not None]
        logger.debug(f"Loaded {len(feeds)} feed(s) from {self.path}")
        return feeds

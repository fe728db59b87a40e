"""
Update orchestrator.

Ticks on a fixed interval and, on each tick, updates exactly one feed picked
round-robin from the feed store:

* direct feeds record a price on the source chain, wait for the chain's
  confirmation depth and attest the record transaction against that chain;
* relay feeds read the pool off-chain, submit ``relayPrice`` on Flare and
  attest the relay transaction against Flare.

The attested proof is checked for the expected observation payload and then
written to the feed contract with ``updateFromProof``. Only one update runs at
a time; a timer firing while an update is in flight is a no-op.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable

from web3 import Web3

from .chains import get_chain
from .config import RelayerConfig
from .errors import (
    AttestationAbandonedError,
    AttestationError,
    ConfigurationError,
    FlareForwardError,
    GasPriceTooHighError,
    ProofMismatchError,
    ResourceExhaustedError,
)
from .fdc_client import AttestationClient, AttestationResult
from .feed_store import EnvFeedStore, FeedStore, JsonFeedStore
from .models import BotStats, Feed, FeedUpdateResult, UpdateJob
from .payload import ObservationPayload, PriceRecordedPayload, PriceRelayedPayload, decode_log
from .pool_reader import PoolLockedError, PoolReader
from .price_math import format_price, sqrt_price_to_price
from .proof_codec import AttestationProof
from .transaction_submitter import TransactionSubmitter
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

SKIPPED_IN_PROGRESS = "Skipped: update already in progress"


class BotStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    HALTED = "halted"
    ERROR = "error"


class UpdateOrchestrator:
    """Schedules feed updates and drives them through attestation and write-back."""

    def __init__(
        self,
        config: RelayerConfig,
        feed_store: FeedStore,
        flare_util: ContractUtility,
        attestation_client: AttestationClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        Initialize the UpdateOrchestrator.

        Args:
            config: Relayer configuration
            feed_store: Source of feed records, reloaded every tick
            flare_util: Signing contract utility connected to Flare
            attestation_client: FDC client; built from ``config`` when omitted
            clock: Wall clock for statistics
            sleep: Awaitable sleep, injectable for tests
        """
        self.config = config
        self.feed_store = feed_store
        self.flare_util = flare_util
        self.clock = clock
        self.sleep = sleep

        self._source_utils: dict[int, ContractUtility] = {config.flare.chain_id: flare_util}
        self._submitters: dict[int, TransactionSubmitter] = {}

        self.attestation_client = attestation_client or AttestationClient(
            config.attestation, self.submitter(config.flare.chain_id), sleep=sleep
        )

        self.status = BotStatus.STOPPED
        self.halt_reason: str | None = None
        self.stats = BotStats()
        self.feeds: list[Feed] = []
        self.pending_jobs: dict[str, UpdateJob] = {}

        self._feed_index = 0
        self._cycle_count = 0
        self._started_at: float | None = None
        self._last_stats_time = clock()
        self._tick_task: asyncio.Task | None = None
        self._abort = asyncio.Event()
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: RelayerConfig) -> "UpdateOrchestrator":
        """Build the orchestrator and its services from configuration."""
        flare_util = ContractUtility(
            config.flare.rpc_url, config.flare.private_key, config.attestation.request_timeout
        )
        if config.feeds_file:
            feed_store: FeedStore = JsonFeedStore(config.feeds_file)
        else:
            feed_store = EnvFeedStore(
                flare_util,
                rpc_url_for=config.rpc_url_for,
                request_timeout=config.attestation.request_timeout,
            )
        return cls(config, feed_store, flare_util)

    # ------------------------------------------------------------------
    # Chain access

    def source_util(self, chain_id: int) -> ContractUtility:
        """Signing contract utility for ``chain_id``, created on first use.

        Raises:
            ConfigurationError: If no RPC endpoint is known for the chain
        """
        if (util := self._source_utils.get(chain_id)) is None:
            util = ContractUtility(
                self.config.rpc_url_for(chain_id),
                self.config.flare.private_key,
                self.config.attestation.request_timeout,
            )
            self._source_utils[chain_id] = util
            logger.info(f"Connected to chain {chain_id} at {util.rpc_url}")
        return util

    def submitter(self, chain_id: int) -> TransactionSubmitter:
        if (submitter := self._submitters.get(chain_id)) is None:
            submitter = TransactionSubmitter(
                self.source_util(chain_id),
                chain_id,
                self.config.safety.max_gas_price_wei,
                self.config.safety.tx_timeout,
                sleep=self.sleep,
            )
            self._submitters[chain_id] = submitter
        return submitter

    @property
    def flare_chain_id(self) -> int:
        return self.config.flare.chain_id

    # ------------------------------------------------------------------
    # Feeds

    def reload_feeds(self) -> list[Feed]:
        """Read the feed store and apply the selected-feeds filter."""
        feeds = self.feed_store.load()
        if selected := self.config.scheduler.selected_feed_ids:
            feeds = [feed for feed in feeds if feed.feed_id in selected]
        self.feeds = feeds
        if self._feed_index >= len(feeds):
            self._feed_index = 0
        return feeds

    def next_feed(self) -> Feed | None:
        """Next feed in rotation, regardless of readiness."""
        if not self.feeds:
            return None
        feed = self.feeds[self._feed_index % len(self.feeds)]
        self._feed_index = (self._feed_index + 1) % len(self.feeds)
        return feed

    def _price(self, feed: Feed, sqrt_price_x96: int) -> int:
        return sqrt_price_to_price(
            sqrt_price_x96, feed.token0_decimals, feed.token1_decimals, feed.invert_price
        )

    # ------------------------------------------------------------------
    # Safety

    def check_balance(self) -> int | None:
        """Check the Flare wallet balance on the first cycle and every ``balance_check_every`` after.

        Returns:
            Balance in wei when checked, else None

        Raises:
            ResourceExhaustedError: If the balance is below the critical threshold
        """
        safety = self.config.safety
        if (self._cycle_count - 1) % safety.balance_check_every != 0:
            return None

        balance = int(self.flare_util.w3.eth.get_balance(self.flare_util.address))
        balance_flr = Web3.from_wei(balance, "ether")
        if balance < safety.critical_balance_wei:
            raise ResourceExhaustedError(
                f"CRITICAL: Balance {balance_flr:.4f} FLR below {safety.critical_balance_flr} FLR"
            )
        if balance < safety.min_balance_wei:
            logger.warning(f"⚠️  LOW BALANCE: {balance_flr:.4f} FLR")
        return balance

    def halt(self, reason: str) -> None:
        """Stop scheduling for good. Requires operator intervention."""
        logger.error(f"🚨 HALTED: {reason}")
        self.status = BotStatus.HALTED
        self.halt_reason = reason
        self._abort.set()
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Update paths

    def check_eligibility(self, feed: Feed) -> str | None:
        """Return a skip reason, or None if the feed can be updated now."""
        if feed.is_relay:
            relay = self.flare_util.contract("PriceRelay", feed.relay_address)
            if not relay.functions.canRelay(feed.source_chain_id, feed.pool_address).call():
                return f"Not ready: {feed.alias}"
        else:
            recorder = self.source_util(feed.source_chain_id).contract("PriceRecorder", feed.recorder_address)
            if not recorder.functions.canUpdate(feed.pool_address).call():
                return f"Not ready: {feed.alias}"
        return None

    async def _settle(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._abort.is_set():
            raise AttestationAbandonedError("Stopped before attestation", phase="settle")
        await self.sleep(seconds)

    async def record_price(self, feed: Feed) -> UpdateJob:
        """Direct path: record on the source chain and wait for finality depth."""
        profile = get_chain(feed.source_chain_id)
        submitter = self.submitter(feed.source_chain_id)
        recorder = submitter.contract_util.contract("PriceRecorder", feed.recorder_address)

        logger.info(f"🚀 Recording {feed.alias} on chain {feed.source_chain_id}...")
        receipt = await submitter.send(
            recorder.functions.recordPrice(feed.pool_address),
            gas=self.config.safety.record_gas_limit,
            label=f"recordPrice {feed.alias}",
        )
        self.stats.total_gas_used += int(receipt.get("gasUsed", 0))

        price = None
        for log in receipt.get("logs", []):
            payload = decode_log(log["topics"], log["data"], feed.source_chain_id)
            if isinstance(payload, PriceRecordedPayload):
                price = self._price(feed, payload.sqrt_price_x96)
                break

        job = UpdateJob(
            feed=feed,
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            attestation_chain_id=feed.source_chain_id,
            price=price,
            path="direct",
        )
        self._remember_job(job)
        logger.info(f"✅ Recorded {feed.alias}: {format_price(price) if price is not None else 'n/a'}")

        if profile.required_confirmations > 1:
            await submitter.wait_for_confirmations(
                receipt["blockNumber"],
                profile.required_confirmations,
                self.config.scheduler.confirmation_poll_interval,
                self.config.scheduler.confirmation_timeout,
                self._abort,
            )
        await self._settle(profile.settle_delay)
        return job

    async def relay_price(self, feed: Feed) -> UpdateJob:
        """Relay path: read the pool off-chain and submit ``relayPrice`` on Flare."""
        flare_now = int(self.flare_util.w3.eth.get_block("latest")["timestamp"])
        reader = PoolReader(self.source_util(feed.source_chain_id), feed.source_chain_id)
        observation = reader.read_observation(feed.pool_address, flare_now)
        price = self._price(feed, observation.sqrt_price_x96)

        submitter = self.submitter(self.flare_chain_id)
        relay = self.flare_util.contract("PriceRelay", feed.relay_address)

        logger.info(f"📤 Relaying {feed.alias} (chain {feed.source_chain_id} → Flare)...")
        receipt = await submitter.send(
            relay.functions.relayPrice(
                observation.source_chain_id,
                observation.pool_address,
                observation.sqrt_price_x96,
                observation.tick,
                observation.liquidity,
                observation.token0,
                observation.token1,
                observation.source_timestamp,
                observation.source_block_number,
            ),
            gas=self.config.safety.relay_gas_limit,
            label=f"relayPrice {feed.alias}",
        )
        self.stats.total_gas_used += int(receipt.get("gasUsed", 0))

        job = UpdateJob(
            feed=feed,
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            attestation_chain_id=self.flare_chain_id,
            price=price,
            path="relay",
        )
        self._remember_job(job)
        logger.info(f"✅ Relayed {feed.alias}: {format_price(price)}")

        await self._settle(self.config.scheduler.relay_settle_delay)
        return job

    def _remember_job(self, job: UpdateJob) -> None:
        """Store ``job`` for retries, dropping the oldest jobs beyond ``max_pending_jobs``."""
        self.pending_jobs[job.tx_hash] = job
        while len(self.pending_jobs) > self.config.scheduler.max_pending_jobs:
            oldest = self.pending_jobs.pop(next(iter(self.pending_jobs)))
            logger.warning(
                f"⚠️  Dropping pending job for {oldest.feed.alias} tx {oldest.tx_hash} "
                f"({oldest.last_error or 'not attested'})"
            )

    def _drop_superseded_jobs(self, feed: Feed) -> None:
        """Forget pending jobs of ``feed`` once a newer price has been written."""
        for tx_hash in [k for k, job in self.pending_jobs.items() if job.feed.feed_id == feed.feed_id]:
            logger.debug(f"Dropping superseded job for {feed.alias} tx {tx_hash}")
            del self.pending_jobs[tx_hash]

    def verify_proof(self, job: UpdateJob, proof: AttestationProof) -> ObservationPayload:
        """
        Check that the proof attests ``job`` and carries the expected observation.

        Returns:
            The matching payload

        Raises:
            ProofMismatchError: If the proof is for another transaction, the
                transaction failed, or no matching payload was emitted
        """
        feed = job.feed
        if proof.response.transaction_hash.lower() != job.tx_hash.lower():
            raise ProofMismatchError(
                f"Proof is for {proof.response.transaction_hash}, expected {job.tx_hash}"
            )
        if proof.response.response_body.status != 1:
            raise ProofMismatchError(f"Attested transaction {job.tx_hash} did not succeed")

        expected_type = PriceRelayedPayload if feed.is_relay else PriceRecordedPayload
        emitter = feed.relay_address if feed.is_relay else feed.recorder_address

        for event, payload in proof.payloads(feed.source_chain_id):
            if not isinstance(payload, expected_type):
                continue
            if event.emitter_address != emitter or payload.pool_address != feed.pool_address:
                continue
            if isinstance(payload, PriceRelayedPayload) and payload.source_chain_id != feed.source_chain_id:
                continue
            return payload

        raise ProofMismatchError(
            f"No {expected_type.kind} event from {emitter} for pool {feed.pool_address} in {job.tx_hash}"
        )

    async def attest_and_update(self, job: UpdateJob, result: FeedUpdateResult) -> None:
        """Attest ``job``, verify the proof and write it to the feed contract."""
        feed = job.feed
        job.attempts += 1
        result.phase = "attestation"

        def remember(checkpoint):
            job.checkpoint = checkpoint

        attestation: AttestationResult
        if job.checkpoint is not None:
            logger.info(f"Resuming attestation for {feed.alias} from {job.checkpoint}")
            attestation = await self.attestation_client.resume(job.checkpoint, self._abort)
        else:
            logger.info(f"📤 Attesting {feed.alias} against chain {job.attestation_chain_id}...")
            attestation = await self.attestation_client.get_proof(
                job.tx_hash,
                job.attestation_chain_id,
                abort=self._abort,
                on_checkpoint=remember,
            )
        self.stats.total_fdc_fees_wei += attestation.fee_wei
        self.stats.total_gas_used += attestation.gas_used

        result.phase = "verify"
        payload = self.verify_proof(job, attestation.proof)
        if job.price is None:
            job.price = self._price(feed, payload.sqrt_price_x96)
            result.price = job.price

        result.phase = "write"
        feed_contract = self.flare_util.contract("CrossChainPoolPriceCustomFeed", feed.feed_address)
        receipt = await self.submitter(self.flare_chain_id).send(
            feed_contract.functions.updateFromProof(attestation.proof.to_contract_struct()),
            gas=self.config.safety.proof_gas_limit,
            label=f"updateFromProof {feed.alias}",
        )
        self.stats.total_gas_used += int(receipt.get("gasUsed", 0))

        latest_value = feed_contract.functions.latestValue().call()
        update_count = feed_contract.functions.updateCount().call()
        last_update = feed_contract.functions.lastUpdateTimestamp().call()
        logger.info(
            f"✅ Attested {feed.alias} (feed value: {format_price(latest_value)}, "
            f"updates: {update_count}, last update: {last_update})"
        )
        self._drop_superseded_jobs(feed)

    async def attest_with_retries(self, job: UpdateJob, result: FeedUpdateResult) -> None:
        """
        Run ``attest_and_update`` up to ``attestation_retries`` extra times.

        Retries reuse the job's checkpoint, so a request already paid for is
        resumed rather than paid again. Proof mismatches and stop requests are
        not retried.
        """
        retries = self.config.scheduler.attestation_retries
        delay = self.config.scheduler.attestation_retry_delay
        for attempt in range(retries + 1):
            try:
                await self.attest_and_update(job, result)
                return
            except (AttestationAbandonedError, ProofMismatchError):
                raise
            except AttestationError as e:
                if attempt >= retries:
                    raise
                job.last_error = str(e)
                logger.warning(
                    f"⚠️  Attestation failed for {job.feed.alias} (attempt {attempt + 1}, phase {e.phase}): "
                    f"{e}; retrying in {delay:.0f}s"
                )
                await self._settle(delay)

    async def update_feed(self, feed: Feed) -> FeedUpdateResult:
        """One update attempt for ``feed``. Never raises except on resource exhaustion."""
        start = self.clock()
        result = FeedUpdateResult(feed_id=feed.feed_id, alias=feed.alias, success=False)
        job: UpdateJob | None = None

        try:
            result.phase = "eligibility"
            if reason := self.check_eligibility(feed):
                result.skipped = True
                result.error = reason
                self.stats.last_check_note = reason
                logger.info(f"⏳ {reason}")
                return result

            self.stats.last_check_note = f"Updating: {feed.alias}"
            result.phase = "relay" if feed.is_relay else "record"
            job = await (self.relay_price(feed) if feed.is_relay else self.record_price(feed))
            result.tx_hash = job.tx_hash
            result.price = job.price
            self.stats.consecutive_failures = 0

            await self.attest_with_retries(job, result)
            result.success = True
            result.phase = None

        except (GasPriceTooHighError, PoolLockedError) as e:
            result.skipped = True
            result.error = str(e)
            logger.warning(f"⚠️  Skipping {feed.alias}: {e}")
        except AttestationAbandonedError as e:
            result.skipped = True
            result.error = str(e)
            logger.warning(f"Abandoned {feed.alias} during {e.phase}; retry with tx {result.tx_hash}")
        except ResourceExhaustedError:
            raise
        except Exception as e:
            if isinstance(e, AttestationError):
                result.phase = e.phase
            result.error = str(e)
            reason = getattr(e, "reason", None)
            logger.error(
                f"❌ Update failed for {feed.alias} (chain {feed.source_chain_id}, phase {result.phase}"
                f"{', tx ' + result.tx_hash if result.tx_hash else ''}"
                f"{', reason ' + reason.value if reason is not None else ''}): {e}",
                exc_info=not isinstance(e, FlareForwardError),
            )
            if job is not None:
                job.last_error = str(e)
        finally:
            result.duration = self.clock() - start

        self._record_result(feed, result)
        return result

    def _record_result(self, feed: Feed, result: FeedUpdateResult) -> None:
        if result.skipped:
            return

        stats = self.stats
        feed_stats = stats.feed(feed.feed_id)
        stats.total_updates += 1

        if result.success:
            stats.successful_updates += 1
            stats.consecutive_failures = 0
            stats.last_update_time = self.clock()
            feed_stats.updates += 1
            feed_stats.last_price = result.price
            feed_stats.last_update = stats.last_update_time
            return

        stats.failed_updates += 1
        feed_stats.failures += 1
        feed_stats.last_error = result.error

        # Only record and relay attempts count toward the breaker
        if result.tx_hash is not None:
            stats.failed_attestations += 1
            return

        stats.consecutive_failures += 1
        threshold = self.config.safety.circuit_breaker_threshold
        if stats.consecutive_failures >= threshold:
            self.halt(f"CIRCUIT BREAKER: {stats.consecutive_failures} consecutive failed record/relay attempts")

    # ------------------------------------------------------------------
    # Ticks

    async def tick(self) -> FeedUpdateResult | None:
        """Run one scheduling cycle: reload feeds, pick one, update it."""
        self._cycle_count += 1
        self.stats.last_check_time = self.clock()

        self.check_balance()

        if not self.reload_feeds():
            self.stats.last_check_note = "No feeds configured"
            logger.info("No feeds configured")
            return None

        feed = self.next_feed()
        return await self.update_feed(feed)

    async def _run_tick(self) -> FeedUpdateResult | None:
        try:
            return await self.tick()
        except ResourceExhaustedError as e:
            self.halt(str(e))
        except Exception as e:
            logger.error(f"❌ Error in tick: {e}", exc_info=True)
        return None

    def _fire_timer(self) -> asyncio.Task | None:
        """Start a tick unless one is still in flight."""
        if self._tick_task is not None and not self._tick_task.done():
            self.stats.skipped_ticks += 1
            self.stats.last_check_note = SKIPPED_IN_PROGRESS
            logger.info(SKIPPED_IN_PROGRESS)
            return None
        self._tick_task = asyncio.create_task(self._run_tick())
        return self._tick_task

    # ------------------------------------------------------------------
    # Manual operations

    def _busy(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    async def update_single_feed(self, feed_id: str) -> FeedUpdateResult:
        """Update one feed now, bypassing the rotation.

        Raises:
            ConfigurationError: If the feed is unknown
        """
        feeds = self.reload_feeds()
        feed = next((f for f in feeds if f.feed_id == feed_id), None)
        if feed is None:
            raise ConfigurationError(f"Feed {feed_id} not found")
        if self._busy():
            return FeedUpdateResult(feed.feed_id, feed.alias, success=False, skipped=True, error=SKIPPED_IN_PROGRESS)

        self._tick_task = asyncio.create_task(self.update_feed(feed))
        return await self._tick_task

    async def retry_job(self, tx_hash: str, feed_id: str | None = None) -> FeedUpdateResult:
        """
        Re-enter attestation for an already submitted record or relay transaction.

        Uses the stored job (and its checkpoint, so no second fee is paid once
        the request reached FdcHub). Without a stored job, ``feed_id`` names
        the feed the transaction belongs to and attestation starts at phase 1.

        Raises:
            ConfigurationError: If neither a stored job nor the feed is found
        """
        job = self.pending_jobs.get(tx_hash)
        if job is None:
            if feed_id is None:
                raise ConfigurationError(f"No pending job for {tx_hash}; pass the feed id")
            feed = next((f for f in self.reload_feeds() if f.feed_id == feed_id), None)
            if feed is None:
                raise ConfigurationError(f"Feed {feed_id} not found")
            job = UpdateJob(
                feed=feed,
                tx_hash=tx_hash,
                attestation_chain_id=self.flare_chain_id if feed.is_relay else feed.source_chain_id,
                path="relay" if feed.is_relay else "direct",
            )
            self._remember_job(job)

        feed = job.feed
        if self._busy():
            return FeedUpdateResult(feed.feed_id, feed.alias, success=False, skipped=True, error=SKIPPED_IN_PROGRESS)

        logger.info(f"🔁 Retrying attestation for {feed.alias} tx {tx_hash}")
        self._tick_task = asyncio.create_task(self._retry(job))
        return await self._tick_task

    async def _retry(self, job: UpdateJob) -> FeedUpdateResult:
        start = self.clock()
        feed = job.feed
        result = FeedUpdateResult(
            feed.feed_id, feed.alias, success=False, tx_hash=job.tx_hash, price=job.price
        )
        try:
            await self.attest_and_update(job, result)
            result.success = True
            result.phase = None
        except (GasPriceTooHighError, AttestationAbandonedError) as e:
            result.skipped = True
            result.error = str(e)
            logger.warning(f"⚠️  Retry of {job.tx_hash} deferred: {e}")
        except Exception as e:
            if isinstance(e, AttestationError):
                result.phase = e.phase
            result.error = job.last_error = str(e)
            logger.error(
                f"❌ Retry failed for {feed.alias} tx {job.tx_hash} (phase {result.phase}): {e}",
                exc_info=not isinstance(e, FlareForwardError),
            )
        finally:
            result.duration = self.clock() - start

        self._record_result(feed, result)
        return result

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        """Load feeds and enter the running state.

        Raises:
            RuntimeError: If already running
        """
        if self.status in (BotStatus.RUNNING, BotStatus.STARTING):
            raise RuntimeError(f"Orchestrator is already {self.status.value}")

        self.status = BotStatus.STARTING
        self.halt_reason = None
        self._abort.clear()
        self._stop_event.clear()
        try:
            feeds = self.reload_feeds()
        except Exception:
            self.status = BotStatus.ERROR
            raise

        if feeds:
            logger.info(f"📊 Loaded {len(feeds)} feed(s): {', '.join(str(f) for f in feeds)}")
        else:
            logger.warning("No feeds configured. Waiting for feeds to be added.")

        self._started_at = self.clock()
        self._last_stats_time = self._started_at
        self.status = BotStatus.RUNNING
        logger.info("▶️  Orchestrator started")
        logger.info(f"⏱️  Check interval: {self.config.scheduler.check_interval}s")

    def stop(self) -> None:
        """Request a stop. In-flight attestation waits are abandoned; pending jobs are kept."""
        if self.status is BotStatus.RUNNING:
            logger.info("⏸️  Stopping orchestrator...")
            self.status = BotStatus.STOPPING
        self._abort.set()
        self._stop_event.set()

    async def run(self) -> None:
        """Tick every ``check_interval`` seconds until stopped or halted."""
        await self.start()
        interval = self.config.scheduler.check_interval
        try:
            while self.status is BotStatus.RUNNING:
                self._fire_timer()
                self.maybe_log_stats()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._tick_task is not None and not self._tick_task.done():
                await self._tick_task
            if self.status is not BotStatus.HALTED:
                self.status = BotStatus.STOPPED
            self.log_final_stats()
            logger.info("✅ Orchestrator stopped")

    async def run_once(self) -> FeedUpdateResult | None:
        """Start, run a single tick and stop."""
        await self.start()
        try:
            return await self._run_tick()
        finally:
            if self.status is not BotStatus.HALTED:
                self.status = BotStatus.STOPPED
            self.log_final_stats()

    # ------------------------------------------------------------------
    # Statistics

    def maybe_log_stats(self) -> None:
        if self.clock() - self._last_stats_time >= self.config.scheduler.stats_interval:
            self.log_stats()
            self._last_stats_time = self.clock()

    def log_stats(self) -> None:
        stats = self.stats
        logger.info(
            f"📊 Stats: {stats.successful_updates} updated, {stats.failed_updates} failed, "
            f"{stats.skipped_ticks} ticks skipped, {len(self.pending_jobs)} pending job(s)"
        )

    def log_final_stats(self) -> None:
        stats = self.stats
        uptime = (self.clock() - self._started_at) / 60 if self._started_at else 0.0
        logger.info("=" * 60)
        logger.info("📊 Final Session Statistics")
        logger.info("=" * 60)
        logger.info(f"Uptime: {uptime:.0f} minutes")
        logger.info(f"Updates: {stats.successful_updates} successful, {stats.failed_updates} failed")
        logger.info(f"Gas used: {stats.total_gas_used}")
        logger.info(f"FDC fees: {Web3.from_wei(stats.total_fdc_fees_wei, 'ether')} FLR")
        for feed_id, feed_stats in stats.feeds.items():
            last = format_price(feed_stats.last_price) if feed_stats.last_price is not None else "n/a"
            logger.info(f"  {feed_id}: {feed_stats.updates} updates, {feed_stats.failures} failures, last {last}")
        for job in self.pending_jobs.values():
            logger.info(f"  Pending: {job.feed.alias} tx {job.tx_hash} ({job.last_error or 'not attested'})")
        logger.info("=" * 60)

    def get_status(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "haltReason": self.halt_reason,
            "feeds": [feed.feed_id for feed in self.feeds],
            "pendingJobs": [job.unique_key for job in self.pending_jobs.values()],
            "stats": self.stats.to_dict(),
        }

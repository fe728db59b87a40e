#!/usr/bin/env python3
"""Tests for the update orchestrator.

Chain access goes through mocked contract utilities and a mocked
TransactionSubmitter; the attestation client is mocked as a whole.
"""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from flare_forward.config import FlareChainConfig, RelayerConfig, SafetyConfig, SchedulerConfig
from flare_forward.errors import (
    AttestationAbandonedError,
    ConfigurationError,
    GasPriceTooHighError,
    ProofUnavailableError,
    TransactionRevertedError,
)
from flare_forward.fdc_client import AttestationResult
from flare_forward.models import AttestationCheckpoint, Observation, UpdateJob
from flare_forward.orchestrator import SKIPPED_IN_PROGRESS, BotStatus, UpdateOrchestrator
from flare_forward.relay_engine import RejectReason

from factories import (
    POOL,
    RECORDER,
    RELAY,
    TOKEN0,
    TOKEN1,
    TX_HASH,
    attestation_proof,
    direct_feed,
    event_log,
    recorded_payload,
    relay_feed,
    relayed_payload,
)

PRIVATE_KEY = "0x" + "11" * 32
NOW = 1_700_000_000.0
CHECKPOINT = AttestationCheckpoint(TX_HASH, 14, "0x" + "45" * 64, 1_000_000)


def make_config(threshold: int = 3, **scheduler) -> RelayerConfig:
    scheduler.setdefault("check_interval", 60)
    return RelayerConfig(
        flare=FlareChainConfig(rpc_url="https://flare-api.flare.network/ext/bc/C/rpc", private_key=PRIVATE_KEY),
        safety=SafetyConfig(circuit_breaker_threshold=threshold),
        scheduler=SchedulerConfig(**scheduler),
    )


def stale_block_revert() -> TransactionRevertedError:
    return TransactionRevertedError("relayPrice reverted: Stale block number", reason=RejectReason.STALE_BLOCK)


def relay_proof(**kwargs):
    return attestation_proof([event_log(relayed_payload(), RELAY)], **kwargs)


def recorded_proof(**kwargs):
    return attestation_proof([event_log(recorded_payload(), RECORDER)], **kwargs)


@pytest.fixture
def contracts():
    """Contract mocks keyed by ABI name."""
    relay = MagicMock()
    relay.functions.canRelay.return_value.call.return_value = True
    recorder = MagicMock()
    recorder.functions.canUpdate.return_value.call.return_value = True
    feed = MagicMock()
    feed.functions.latestValue.return_value.call.return_value = 2_999_999_999
    feed.functions.updateCount.return_value.call.return_value = 7
    feed.functions.lastUpdateTimestamp.return_value.call.return_value = int(NOW)
    return {"PriceRelay": relay, "PriceRecorder": recorder, "CrossChainPoolPriceCustomFeed": feed}


@pytest.fixture
def flare_util(contracts):
    """Create a mock ContractUtility connected to Flare."""
    mock = MagicMock()
    mock.address = "0x2222222222222222222222222222222222222222"
    mock.contract.side_effect = lambda name, address: contracts[name]
    mock.w3.eth.get_balance.return_value = 10 * 10**18
    mock.w3.eth.get_block.return_value = {"timestamp": int(NOW)}
    return mock


@pytest.fixture
def submitter(flare_util):
    mock = MagicMock()
    mock.contract_util = flare_util
    mock.send = AsyncMock(return_value={
        "status": 1,
        "blockNumber": 40_000_000,
        "gasUsed": 100_000,
        "transactionHash": bytes.fromhex(TX_HASH[2:]),
        "logs": [],
    })
    mock.wait_for_confirmations = AsyncMock(return_value=1)
    return mock


@pytest.fixture
def attestation_client():
    client = MagicMock()
    client.get_proof = AsyncMock(
        return_value=AttestationResult(proof=relay_proof(), checkpoint=CHECKPOINT, fee_wei=10**17, gas_used=50_000)
    )
    client.resume = AsyncMock(return_value=AttestationResult(proof=relay_proof(), checkpoint=CHECKPOINT))
    return client


@pytest.fixture
def feed_store():
    store = MagicMock()
    store.load.return_value = [relay_feed()]
    return store


def build_orchestrator(config, feed_store, flare_util, attestation_client, submitter) -> UpdateOrchestrator:
    orchestrator = UpdateOrchestrator(
        config,
        feed_store,
        flare_util,
        attestation_client=attestation_client,
        clock=lambda: NOW,
        sleep=AsyncMock(),
    )
    orchestrator.submitter = MagicMock(return_value=submitter)
    orchestrator.source_util = MagicMock(return_value=MagicMock())
    return orchestrator


@pytest.fixture
def orchestrator(feed_store, flare_util, attestation_client, submitter):
    return build_orchestrator(make_config(), feed_store, flare_util, attestation_client, submitter)


@pytest.fixture
def observation():
    return Observation(
        source_chain_id=42161,
        pool_address=POOL,
        sqrt_price_x96=4339505179874779489431521,
        tick=-196_000,
        liquidity=10**18,
        token0=TOKEN0,
        token1=TOKEN1,
        source_timestamp=int(NOW),
        source_block_number=150_000_000,
    )


@pytest.fixture
def pool_reader(observation):
    with patch('flare_forward.orchestrator.PoolReader') as mock_reader_class:
        mock_reader_class.return_value.read_observation.return_value = observation
        yield mock_reader_class


class TestRelayPath:
    """Tests for relay feeds."""

    @pytest.mark.asyncio
    async def test_successful_update(self, orchestrator, pool_reader, submitter, attestation_client, contracts):
        result = await orchestrator.update_feed(relay_feed())

        assert result.success, result.error
        assert result.tx_hash == TX_HASH
        assert result.price == 2_999_999_999

        pool_reader.return_value.read_observation.assert_called_once_with(POOL, int(NOW))
        contracts["PriceRelay"].functions.relayPrice.assert_called_once_with(
            42161, POOL, 4339505179874779489431521, -196_000, 10**18,
            TOKEN0, TOKEN1, int(NOW), 150_000_000,
        )
        labels = [c.kwargs["label"] for c in submitter.send.call_args_list]
        assert labels == ["relayPrice ARB_WETH_USDC", "updateFromProof ARB_WETH_USDC"]
        assert submitter.send.call_args_list[0].kwargs["gas"] == 800_000

        args, kwargs = attestation_client.get_proof.call_args
        assert args == (TX_HASH, 14)
        orchestrator.sleep.assert_awaited_with(5.0)

        assert orchestrator.stats.successful_updates == 1
        assert orchestrator.stats.total_fdc_fees_wei == 10**17
        assert orchestrator.stats.total_gas_used == 250_000
        assert orchestrator.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_not_ready_is_skipped(self, orchestrator, contracts, submitter):
        contracts["PriceRelay"].functions.canRelay.return_value.call.return_value = False

        result = await orchestrator.update_feed(relay_feed())

        assert result.skipped
        assert result.error == "Not ready: ARB_WETH_USDC"
        assert orchestrator.stats.total_updates == 0
        submitter.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_gas_price_too_high_is_skipped(self, orchestrator, pool_reader, submitter):
        submitter.send.side_effect = GasPriceTooHighError(14, 200 * 10**9, 100 * 10**9)

        result = await orchestrator.update_feed(relay_feed())

        assert result.skipped
        assert orchestrator.stats.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_proof_from_wrong_emitter_rejected(self, orchestrator, pool_reader, attestation_client, submitter):
        wrong = attestation_proof([event_log(relayed_payload(), RECORDER)])
        attestation_client.get_proof.return_value = AttestationResult(proof=wrong, checkpoint=CHECKPOINT)

        result = await orchestrator.update_feed(relay_feed())

        assert not result.success
        assert result.phase == "verify"
        assert submitter.send.await_count == 1
        assert attestation_client.get_proof.await_count == 1
        assert TX_HASH in orchestrator.pending_jobs
        assert orchestrator.stats.consecutive_failures == 0
        assert orchestrator.stats.failed_attestations == 1

    @pytest.mark.asyncio
    async def test_proof_for_other_transaction_rejected(self, orchestrator, pool_reader, attestation_client):
        other = relay_proof(tx_hash="0x" + "cd" * 32)
        attestation_client.get_proof.return_value = AttestationResult(proof=other, checkpoint=CHECKPOINT)

        result = await orchestrator.update_feed(relay_feed())

        assert result.phase == "verify"

    @pytest.mark.asyncio
    async def test_failed_source_transaction_rejected(self, orchestrator, pool_reader, attestation_client):
        failed = relay_proof(status=0)
        attestation_client.get_proof.return_value = AttestationResult(proof=failed, checkpoint=CHECKPOINT)

        result = await orchestrator.update_feed(relay_feed())

        assert result.phase == "verify"


class TestDirectPath:
    """Tests for direct feeds."""

    @pytest.mark.asyncio
    async def test_successful_update(self, orchestrator, submitter, attestation_client, contracts):
        topics, data = recorded_payload().encode()
        submitter.send.return_value = {**submitter.send.return_value, "logs": [{"topics": topics, "data": data}]}
        attestation_client.get_proof.return_value = AttestationResult(proof=recorded_proof(), checkpoint=CHECKPOINT)

        result = await orchestrator.update_feed(direct_feed())

        assert result.success, result.error
        assert result.price == 10**18
        contracts["PriceRecorder"].functions.recordPrice.assert_called_once()
        assert submitter.send.call_args_list[0].kwargs["gas"] == 150_000
        # Flare needs a single confirmation
        submitter.wait_for_confirmations.assert_not_called()
        assert attestation_client.get_proof.call_args[0] == (TX_HASH, 14)

    @pytest.mark.asyncio
    async def test_ethereum_waits_for_confirmations(self, orchestrator, submitter, attestation_client):
        attestation_client.get_proof.return_value = AttestationResult(proof=recorded_proof(), checkpoint=CHECKPOINT)
        feed = direct_feed(source_chain_id=1)

        result = await orchestrator.update_feed(feed)

        assert result.success, result.error
        args = submitter.wait_for_confirmations.call_args[0]
        assert args[:2] == (40_000_000, 12)
        orchestrator.sleep.assert_awaited_with(300.0)
        assert attestation_client.get_proof.call_args[0] == (TX_HASH, 1)
        assert result.price == 10**18

    @pytest.mark.asyncio
    async def test_recorded_payload_for_other_pool_rejected(self, orchestrator, attestation_client):
        other_pool = recorded_payload(pool_address=POOL)
        proof = attestation_proof([event_log(other_pool, RECORDER)])
        attestation_client.get_proof.return_value = AttestationResult(proof=proof, checkpoint=CHECKPOINT)

        result = await orchestrator.update_feed(direct_feed())

        assert result.phase == "verify"


class TestFailurePolicy:
    """Tests for the circuit breaker and retries."""

    @pytest.mark.asyncio
    async def test_circuit_breaker_halts(self, orchestrator, pool_reader, submitter):
        submitter.send.side_effect = stale_block_revert()

        for _ in range(3):
            result = await orchestrator.update_feed(relay_feed())
            assert result.phase == "relay"
            assert result.tx_hash is None

        assert orchestrator.status is BotStatus.HALTED
        assert "CIRCUIT BREAKER" in orchestrator.halt_reason

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, orchestrator, pool_reader, submitter):
        receipt = submitter.send.return_value
        submitter.send.side_effect = [stale_block_revert(), stale_block_revert(), receipt, receipt]

        for _ in range(3):
            await orchestrator.update_feed(relay_feed())

        assert orchestrator.stats.consecutive_failures == 0
        assert orchestrator.stats.failed_updates == 2
        assert orchestrator.stats.successful_updates == 1
        assert orchestrator.status is not BotStatus.HALTED

    @pytest.mark.asyncio
    async def test_attestation_failures_do_not_trip_breaker(self, orchestrator, pool_reader, attestation_client):
        attestation_client.get_proof.side_effect = ProofUnavailableError("no proof")

        for _ in range(4):
            result = await orchestrator.update_feed(relay_feed())
            assert result.phase == "retrieve"
            assert result.tx_hash == TX_HASH

        assert orchestrator.status is not BotStatus.HALTED
        assert orchestrator.stats.consecutive_failures == 0
        assert orchestrator.stats.failed_attestations == 4
        assert orchestrator.stats.failed_updates == 4

    @pytest.mark.asyncio
    async def test_attestation_retried_from_checkpoint(
        self, orchestrator, pool_reader, attestation_client, submitter
    ):
        async def pay_then_fail(*args, on_checkpoint=None, **kwargs):
            on_checkpoint(CHECKPOINT)
            raise ProofUnavailableError("no proof", checkpoint=CHECKPOINT)

        attestation_client.get_proof.side_effect = pay_then_fail

        result = await orchestrator.update_feed(relay_feed())

        assert result.success, result.error
        attestation_client.get_proof.assert_awaited_once()
        attestation_client.resume.assert_awaited_once()
        assert attestation_client.resume.call_args[0][0] == CHECKPOINT
        orchestrator.sleep.assert_any_await(10.0)
        labels = [c.kwargs["label"] for c in submitter.send.call_args_list]
        assert labels == ["relayPrice ARB_WETH_USDC", "updateFromProof ARB_WETH_USDC"]
        assert orchestrator.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_attestation_retries_exhausted(self, orchestrator, pool_reader, attestation_client, submitter):
        attestation_client.get_proof.side_effect = ProofUnavailableError("no proof")

        result = await orchestrator.update_feed(relay_feed())

        assert not result.success
        assert result.phase == "retrieve"
        assert attestation_client.get_proof.await_count == 3
        assert [c.args for c in orchestrator.sleep.await_args_list].count((10.0,)) == 2
        assert submitter.send.await_count == 1
        job = orchestrator.pending_jobs[TX_HASH]
        assert job.attempts == 3
        assert job.last_error == "no proof"

    @pytest.mark.asyncio
    async def test_generic_error_during_retry_recorded(self, orchestrator, pool_reader, attestation_client):
        attestation_client.get_proof.side_effect = ProofUnavailableError("no proof")
        await orchestrator.update_feed(relay_feed())
        orchestrator.pending_jobs[TX_HASH].checkpoint = CHECKPOINT
        attestation_client.resume.side_effect = ValueError("malformed proof response")

        result = await orchestrator.retry_job(TX_HASH)

        assert not result.success
        assert not result.skipped
        assert result.error == "malformed proof response"
        assert orchestrator.pending_jobs[TX_HASH].last_error == "malformed proof response"
        assert orchestrator.stats.feed("arb_weth_usdc").last_error == "malformed proof response"

    @pytest.mark.asyncio
    async def test_overflowing_price_fails_before_sending(self, orchestrator, observation, pool_reader, submitter):
        pool_reader.return_value.read_observation.return_value = replace(observation, sqrt_price_x96=2**159)

        result = await orchestrator.update_feed(relay_feed(token0_decimals=36, token1_decimals=0))

        assert not result.success
        assert result.phase == "relay"
        assert result.tx_hash is None
        submitter.send.assert_not_called()
        assert orchestrator.stats.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_superseded_jobs_dropped(self, orchestrator, pool_reader, attestation_client, submitter):
        stale_hash = "0x" + "cd" * 32
        receipt = submitter.send.return_value
        submitter.send.side_effect = [{**receipt, "transactionHash": bytes.fromhex(stale_hash[2:])}, receipt, receipt]
        attestation_client.get_proof.side_effect = [ProofUnavailableError("no proof")] * 3 + [
            attestation_client.get_proof.return_value
        ]
        other = UpdateJob(feed=direct_feed(), tx_hash="0x" + "ef" * 32, attestation_chain_id=14)
        orchestrator.pending_jobs[other.tx_hash] = other

        stale = await orchestrator.update_feed(relay_feed())
        assert not stale.success
        assert stale_hash in orchestrator.pending_jobs

        result = await orchestrator.update_feed(relay_feed())

        assert result.success, result.error
        assert list(orchestrator.pending_jobs) == [other.tx_hash]

    @pytest.mark.asyncio
    async def test_pending_jobs_capped(self, feed_store, flare_util, attestation_client, submitter, pool_reader):
        config = make_config(attestation_retries=0, max_pending_jobs=2)
        orchestrator = build_orchestrator(config, feed_store, flare_util, attestation_client, submitter)
        receipt = submitter.send.return_value
        hashes = ["0x" + f"{i:02x}" * 32 for i in (1, 2, 3)]
        submitter.send.side_effect = [{**receipt, "transactionHash": bytes.fromhex(h[2:])} for h in hashes]
        attestation_client.get_proof.side_effect = ProofUnavailableError("no proof")

        for _ in hashes:
            await orchestrator.update_feed(relay_feed())

        assert list(orchestrator.pending_jobs) == hashes[1:]
        assert attestation_client.get_proof.await_count == 3

    @pytest.mark.asyncio
    async def test_abandoned_attestation_keeps_job(self, orchestrator, pool_reader, attestation_client):
        attestation_client.get_proof.side_effect = AttestationAbandonedError("stopped", phase="finality")

        result = await orchestrator.update_feed(relay_feed())

        assert result.skipped
        assert TX_HASH in orchestrator.pending_jobs
        assert orchestrator.stats.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_retry_resumes_from_checkpoint(self, orchestrator, pool_reader, attestation_client, submitter):
        async def pay_then_fail(*args, on_checkpoint=None, **kwargs):
            on_checkpoint(CHECKPOINT)
            raise ProofUnavailableError("no proof", checkpoint=CHECKPOINT)

        attestation_client.get_proof.side_effect = pay_then_fail
        success = attestation_client.resume.return_value
        attestation_client.resume.side_effect = [ProofUnavailableError("no proof")] * 2 + [success]
        first = await orchestrator.update_feed(relay_feed())
        assert not first.success
        assert attestation_client.resume.await_count == 2
        assert orchestrator.pending_jobs[TX_HASH].checkpoint == CHECKPOINT

        result = await orchestrator.retry_job(TX_HASH)

        assert result.success, result.error
        assert attestation_client.resume.await_count == 3
        attestation_client.get_proof.assert_awaited_once()
        assert attestation_client.resume.call_args[0][0] == CHECKPOINT
        labels = [c.kwargs["label"] for c in submitter.send.call_args_list]
        assert labels.count("relayPrice ARB_WETH_USDC") == 1
        assert orchestrator.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_retry_unknown_transaction_for_feed(self, orchestrator, attestation_client):
        result = await orchestrator.retry_job(TX_HASH, feed_id="arb_weth_usdc")

        assert result.success, result.error
        assert attestation_client.get_proof.call_args[0] == (TX_HASH, 14)

    @pytest.mark.asyncio
    async def test_retry_unknown_transaction_without_feed(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.retry_job(TX_HASH)


class TestScheduling:
    """Tests for ticks, rotation and the in-flight guard."""

    @pytest.mark.asyncio
    async def test_round_robin(self, orchestrator, feed_store):
        feeds = [relay_feed(), direct_feed()]
        feed_store.load.return_value = feeds
        orchestrator.reload_feeds()

        assert [orchestrator.next_feed() for _ in range(3)] == [feeds[0], feeds[1], feeds[0]]

    def test_selected_feeds(self, orchestrator, feed_store):
        feed_store.load.return_value = [relay_feed(), direct_feed()]
        orchestrator.config = RelayerConfig(
            flare=orchestrator.config.flare,
            scheduler=SchedulerConfig(selected_feed_ids=("flr_wflr_usdt",)),
        )

        assert [f.feed_id for f in orchestrator.reload_feeds()] == ["flr_wflr_usdt"]

    @pytest.mark.asyncio
    async def test_no_feeds(self, orchestrator, feed_store):
        feed_store.load.return_value = []

        assert await orchestrator.tick() is None
        assert orchestrator.stats.last_check_note == "No feeds configured"

    @pytest.mark.asyncio
    async def test_timer_skipped_while_update_in_flight(self, orchestrator, pool_reader, attestation_client):
        gate = asyncio.Event()
        done = attestation_client.get_proof.return_value

        async def slow_attestation(*args, **kwargs):
            await gate.wait()
            return done

        attestation_client.get_proof.side_effect = slow_attestation

        first = orchestrator._fire_timer()
        for _ in range(5):
            await asyncio.sleep(0)
        second = orchestrator._fire_timer()

        assert first is not None
        assert second is None
        assert orchestrator.stats.skipped_ticks == 1
        assert orchestrator.stats.last_check_note == SKIPPED_IN_PROGRESS

        gate.set()
        result = await first
        assert result.success
        assert attestation_client.get_proof.await_count == 1

    @pytest.mark.asyncio
    async def test_critical_balance_halts(self, orchestrator, flare_util, submitter):
        flare_util.w3.eth.get_balance.return_value = 5 * 10**16

        await orchestrator.run_once()

        assert orchestrator.status is BotStatus.HALTED
        assert "CRITICAL" in orchestrator.halt_reason
        submitter.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_low_balance_warns(self, orchestrator, flare_util, pool_reader, caplog):
        flare_util.w3.eth.get_balance.return_value = 5 * 10**17

        with caplog.at_level(logging.WARNING):
            result = await orchestrator.run_once()

        assert result.success
        assert "LOW BALANCE" in caplog.text
        assert orchestrator.status is BotStatus.STOPPED

    @pytest.mark.asyncio
    async def test_balance_checked_every_ten_cycles(self, orchestrator, flare_util, feed_store):
        feed_store.load.return_value = []

        for _ in range(11):
            await orchestrator.tick()

        assert flare_util.w3.eth.get_balance.call_count == 2

    @pytest.mark.asyncio
    async def test_update_single_feed_unknown(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.update_single_feed("missing")

    @pytest.mark.asyncio
    async def test_update_single_feed(self, orchestrator, pool_reader):
        result = await orchestrator.update_single_feed("arb_weth_usdc")
        assert result.success, result.error

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, orchestrator, feed_store):
        feed_store.load.return_value = []

        task = asyncio.create_task(orchestrator.run())
        for _ in range(5):
            await asyncio.sleep(0)
        assert orchestrator.status is BotStatus.RUNNING

        orchestrator.stop()
        await asyncio.wait_for(task, timeout=5)

        assert orchestrator.status is BotStatus.STOPPED

    @pytest.mark.asyncio
    async def test_run_stops_when_breaker_trips(self, feed_store, flare_util, attestation_client, submitter, pool_reader):
        config = make_config(threshold=2, check_interval=0.01)
        orchestrator = build_orchestrator(config, feed_store, flare_util, attestation_client, submitter)
        submitter.send.side_effect = stale_block_revert()

        await asyncio.wait_for(orchestrator.run(), timeout=5)

        assert orchestrator.status is BotStatus.HALTED
        assert "CIRCUIT BREAKER" in orchestrator.halt_reason
        assert submitter.send.await_count == 2
        assert orchestrator.stats.failed_updates == 2

    @pytest.mark.asyncio
    async def test_get_status(self, orchestrator, pool_reader):
        await orchestrator.run_once()

        status = orchestrator.get_status()
        assert status["status"] == "stopped"
        assert status["feeds"] == ["arb_weth_usdc"]
        assert status["stats"]["successfulUpdates"] == 1
        assert status["stats"]["failedAttestations"] == 0

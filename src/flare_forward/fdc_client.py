"""
Flare Data Connector client.

Drives one EVMTransaction attestation through its four phases:

1. prepare: the verifier builds the ABI-encoded request (with MIC)
2. submit: the request is paid for and sent to FdcHub
3. finality: the voting round is polled on the Relay contract
4. retrieve: the proof is fetched from the data availability layer

Once a request is paid for, an ``AttestationCheckpoint`` is produced. Phases
3 and 4 can be re-run from it with ``resume`` without paying again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import httpx
from web3 import Web3

from .chains import get_chain
from .config import AttestationConfig
from .errors import (
    AttestationAbandonedError,
    AttestationError,
    AttestationRequestError,
    AttestationSubmitError,
    AttestationTimeoutError,
    ConfigurationError,
    ProofUnavailableError,
    TransactionRevertedError,
)
from .models import AttestationCheckpoint, AttestationRequest
from .proof_codec import AttestationProof, build_proof

if TYPE_CHECKING:
    from .transaction_submitter import TransactionSubmitter

logger = logging.getLogger(__name__)

EVM_TRANSACTION_TYPE = "0x45564d5472616e73616374696f6e000000000000000000000000000000000000"


@dataclass(frozen=True, slots=True)
class SubmittedRequest:
    """Result of phase 2."""

    tx_hash: str
    voting_round_id: int
    fee_wei: int
    gas_used: int = 0


@dataclass(frozen=True, slots=True)
class AttestationResult:
    """A retrieved proof and the checkpoint it was produced from."""

    proof: AttestationProof
    checkpoint: AttestationCheckpoint
    fee_wei: int = 0
    gas_used: int = 0


class AttestationClient:
    """Requests EVMTransaction attestations and retrieves their proofs."""

    def __init__(
        self,
        config: AttestationConfig,
        submitter: "TransactionSubmitter",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        Initialize the AttestationClient.

        Args:
            config: FDC endpoints, contract addresses and timing
            submitter: Transaction submitter connected to Flare
            clock: Monotonic clock used for time budgets
            sleep: Awaitable sleep, injectable for tests
        """
        self.config = config
        self.submitter = submitter
        self.clock = clock
        self.sleep = sleep

        contract_util = submitter.contract_util
        self.fdc_hub = contract_util.contract("FdcHub", config.fdc_hub_address)
        self.relay = contract_util.contract("Relay", config.relay_address)

    async def _pause(
        self,
        seconds: float,
        abort: asyncio.Event | None,
        phase: str,
        checkpoint: AttestationCheckpoint | None = None,
    ) -> None:
        if abort is not None and abort.is_set():
            raise AttestationAbandonedError(
                f"Stopped during {phase}", phase=phase, checkpoint=checkpoint
            )
        await self.sleep(seconds)

    # ------------------------------------------------------------------
    # Phase 1

    async def prepare_request(
        self,
        tx_hash: str,
        source_chain_id: int,
        required_confirmations: int | None = None,
        abort: asyncio.Event | None = None,
    ) -> str:
        """
        Ask the verifier for the ABI-encoded attestation request.

        A 2xx response without ``abiEncodedRequest`` means the verifier has
        not indexed the transaction yet. It is retried on the source chain's
        interval until the chain's time budget runs out.

        Args:
            tx_hash: Transaction to attest
            source_chain_id: Chain the transaction was mined on (a direct chain)
            required_confirmations: Override for the chain's default depth
            abort: Set to stop waiting

        Returns:
            The ``abiEncodedRequest`` hex string

        Raises:
            ConfigurationError: If the chain has no verifier
            AttestationRequestError: On a non-2xx verifier response
            AttestationTimeoutError: If the budget runs out while not ready
        """
        profile = get_chain(source_chain_id)
        if not profile.is_direct:
            raise ConfigurationError(f"Chain {source_chain_id} has no FDC verifier")

        url = f"{self.config.verifier_url.rstrip('/')}/{profile.verifier_path}/EVMTransaction/prepareRequest"
        request = AttestationRequest(
            attestation_type=EVM_TRANSACTION_TYPE,
            source_id=profile.source_id,
            transaction_hash=tx_hash,
            required_confirmations=required_confirmations or profile.required_confirmations,
        )
        headers = {"X-API-KEY": self.config.api_key, "Content-Type": "application/json"}

        logger.info(f"Preparing attestation request for {tx_hash} via {profile.name} verifier")

        start = self.clock()
        deadline = start + profile.prepare_budget
        last_status: str | None = None
        attempt = 0

        async with httpx.AsyncClient() as client:
            while True:
                attempt += 1
                try:
                    response = await client.post(
                        url, json=request.to_json(), headers=headers, timeout=self.config.request_timeout
                    )
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise AttestationRequestError(
                        f"Verifier rejected request for {tx_hash}: "
                        f"HTTP {e.response.status_code} {e.response.text[:200]}"
                    ) from e
                except httpx.TransportError as e:
                    last_status = f"transport error: {e}"
                    logger.warning(f"Verifier unreachable (attempt {attempt}): {e}")
                else:
                    data: dict[str, Any] = response.json() or {}
                    if encoded := data.get("abiEncodedRequest"):
                        logger.info(f"Request prepared with MIC after {attempt} attempt(s)")
                        return encoded
                    last_status = str(data.get("status", "not ready"))
                    logger.info(f"Verifier not ready for {tx_hash} (status: {last_status})")

                if self.clock() + profile.prepare_retry_interval > deadline:
                    raise AttestationTimeoutError("prepare", self.clock() - start, last_status)
                await self._pause(profile.prepare_retry_interval, abort, "prepare")

    # ------------------------------------------------------------------
    # Phase 2

    def request_fee(self, request_bytes: str) -> int:
        """Fee for ``request_bytes``, or the configured fallback if the lookup fails."""
        try:
            fee_config_address = self.fdc_hub.functions.fdcRequestFeeConfigurations().call()
            fee_config = self.submitter.contract_util.contract(
                "FdcRequestFeeConfigurations", fee_config_address
            )
            fee = int(fee_config.functions.getRequestFee(Web3.to_bytes(hexstr=request_bytes)).call())
        except Exception as e:
            fallback = self.config.fallback_fee_wei
            logger.warning(f"Fee query failed ({e}), using fallback fee {Web3.from_wei(fallback, 'ether')} FLR")
            return fallback

        logger.info(f"Attestation fee: {Web3.from_wei(fee, 'ether')} FLR")
        return fee

    async def submit_request(self, request_bytes: str) -> SubmittedRequest:
        """
        Pay for and submit the request to FdcHub.

        Returns:
            The FdcHub transaction hash, voting round id and fee paid

        Raises:
            AttestationSubmitError: If the FdcHub transaction reverts
        """
        fee = self.request_fee(request_bytes)
        try:
            receipt = await self.submitter.send(
                self.fdc_hub.functions.requestAttestation(Web3.to_bytes(hexstr=request_bytes)),
                gas=self.config.request_gas_limit,
                value=fee,
                label="requestAttestation",
            )
        except TransactionRevertedError as e:
            raise AttestationSubmitError(
                "FdcHub transaction failed - check fee or request format", tx_hash=e.tx_hash
            ) from e

        block = self.submitter.w3.eth.get_block(receipt["blockNumber"])
        voting_round_id = int(self.relay.functions.getVotingRoundId(block["timestamp"]).call())
        tx_hash = Web3.to_hex(receipt["transactionHash"])

        logger.info(f"Attestation requested in {tx_hash}, voting round {voting_round_id}")
        return SubmittedRequest(
            tx_hash=tx_hash,
            voting_round_id=voting_round_id,
            fee_wei=fee,
            gas_used=int(receipt.get("gasUsed", 0)),
        )

    # ------------------------------------------------------------------
    # Phase 3

    async def wait_for_finality(
        self,
        voting_round_id: int,
        abort: asyncio.Event | None = None,
        checkpoint: AttestationCheckpoint | None = None,
    ) -> float:
        """
        Poll ``Relay.isFinalized`` until the round is final.

        The DA settle delay always follows finalization; a final round is not
        necessarily servable by the DA layer yet.

        Returns:
            Seconds spent waiting

        Raises:
            AttestationTimeoutError: Round not final within the timeout
            AttestationAbandonedError: ``abort`` was set while waiting
        """
        start = self.clock()
        logger.info(f"Waiting for voting round {voting_round_id} to finalize")

        while not self.relay.functions.isFinalized(
            self.config.attestation_type_id, voting_round_id
        ).call():
            elapsed = self.clock() - start
            if elapsed + self.config.finality_poll_interval > self.config.finality_timeout:
                raise AttestationTimeoutError("finality", elapsed, checkpoint=checkpoint)
            await self._pause(self.config.finality_poll_interval, abort, "finality", checkpoint)

        logger.info(f"✓ Round {voting_round_id} finalized after {self.clock() - start:.0f}s")
        await self._pause(self.config.da_settle_delay, abort, "finality", checkpoint)
        return self.clock() - start

    # ------------------------------------------------------------------
    # Phase 4

    async def retrieve_proof(self, voting_round_id: int, request_bytes: str) -> AttestationProof:
        """
        Fetch and decode the proof from the DA layer.

        Raises:
            ProofUnavailableError: On HTTP failure, a missing ``response_hex`` or an undecodable response
        """
        url = f"{self.config.da_layer_url.rstrip('/')}/api/v1/fdc/proof-by-request-round-raw"
        payload = {"votingRoundId": voting_round_id, "requestBytes": request_bytes}

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(url, json=payload, timeout=self.config.request_timeout)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProofUnavailableError(
                    f"DA layer returned HTTP {e.response.status_code} for round {voting_round_id}"
                ) from e
            except httpx.TransportError as e:
                raise ProofUnavailableError(f"DA layer unreachable: {e}") from e

        data: dict[str, Any] = response.json() or {}
        if not (response_hex := data.get("response_hex")):
            raise ProofUnavailableError(f"No proof for round {voting_round_id} on the DA layer")

        try:
            proof = build_proof(response_hex, data.get("proof") or [], voting_round_id)
        except ValueError as e:
            raise ProofUnavailableError(str(e)) from e

        logger.info(f"✓ Proof retrieved: {proof.summary()}")
        return proof

    # ------------------------------------------------------------------
    # Whole pipeline

    async def get_proof(
        self,
        tx_hash: str,
        source_chain_id: int,
        required_confirmations: int | None = None,
        abort: asyncio.Event | None = None,
        on_checkpoint: Callable[[AttestationCheckpoint], None] | None = None,
    ) -> AttestationResult:
        """
        Run all four phases for ``tx_hash``.

        Args:
            tx_hash: Transaction to attest
            source_chain_id: Chain the transaction was mined on
            required_confirmations: Override for the chain's default depth
            abort: Set to stop waiting
            on_checkpoint: Called as soon as the request is paid for

        Raises:
            AttestationError: Any phase failure. Failures after submission
                carry the checkpoint.
        """
        request_bytes = await self.prepare_request(
            tx_hash, source_chain_id, required_confirmations, abort
        )
        submitted = await self.submit_request(request_bytes)

        checkpoint = AttestationCheckpoint(
            tx_hash=tx_hash,
            source_chain_id=source_chain_id,
            request_bytes=request_bytes,
            voting_round_id=submitted.voting_round_id,
        )
        if on_checkpoint is not None:
            on_checkpoint(checkpoint)

        result = await self.resume(checkpoint, abort)
        return AttestationResult(
            proof=result.proof,
            checkpoint=checkpoint,
            fee_wei=submitted.fee_wei,
            gas_used=submitted.gas_used,
        )

    async def resume(
        self, checkpoint: AttestationCheckpoint, abort: asyncio.Event | None = None
    ) -> AttestationResult:
        """Re-run finality and retrieval for an already paid request."""
        logger.info(f"Attesting {checkpoint}")
        try:
            await self.wait_for_finality(checkpoint.voting_round_id, abort, checkpoint)
            proof = await self.retrieve_proof(checkpoint.voting_round_id, checkpoint.request_bytes)
        except AttestationError as e:
            if e.checkpoint is None:
                e.checkpoint = checkpoint
            raise
        return AttestationResult(proof=proof, checkpoint=checkpoint)

"""
Exception hierarchy for the Flare Forward relayer.

Errors fall into five categories that drive how the orchestrator reacts:
configuration problems stop the process at startup, transient problems defer
the attempt to a later tick, protocol-not-ready conditions are retried inside
the attestation client, protocol rejections fail the current attempt, and
resource exhaustion halts the orchestrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AttestationCheckpoint
    from .relay_engine import RejectReason


class FlareForwardError(Exception):
    """Base class for all relayer errors."""


class ConfigurationError(FlareForwardError, ValueError):
    """Missing or invalid configuration. Fatal at startup."""


class TransientError(FlareForwardError):
    """Infrastructure hiccup. The attempt is retried on a later tick."""


class GasPriceTooHighError(TransientError):
    """Current gas price is above the configured ceiling."""

    def __init__(self, chain_id: int, gas_price: int, ceiling: int):
        self.chain_id = chain_id
        self.gas_price = gas_price
        self.ceiling = ceiling
        super().__init__(
            f"Gas price {gas_price / 1e9:.2f} gwei on chain {chain_id} "
            f"exceeds ceiling {ceiling / 1e9:.2f} gwei"
        )


class TransactionTimeoutError(TransientError):
    """A submitted transaction was not mined within the receipt timeout."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Transaction {tx_hash} not mined within {timeout}s")


class ProtocolRejectionError(FlareForwardError):
    """An on-chain or off-chain protocol participant rejected the attempt.

    Attributes:
        reason: Parsed relay rejection reason when the revert string is known
        tx_hash: Transaction hash, if one was produced before the rejection
    """

    def __init__(
        self,
        message: str,
        reason: "RejectReason | None" = None,
        tx_hash: str | None = None,
    ):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(message)


class TransactionRevertedError(ProtocolRejectionError):
    """A transaction was mined with status 0 or reverted during estimation."""


class AttestationError(FlareForwardError):
    """Base class for attestation pipeline failures.

    Attributes:
        phase: Pipeline phase that failed (prepare, submit, finality, retrieve)
        checkpoint: Resume point when the request already reached the chain
    """

    phase: str = "attestation"

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        checkpoint: "AttestationCheckpoint | None" = None,
    ):
        if phase is not None:
            self.phase = phase
        self.checkpoint = checkpoint
        super().__init__(message)


class AttestationTimeoutError(AttestationError):
    """A time-budgeted phase gave up. Distinct from a protocol rejection."""

    def __init__(
        self,
        phase: str,
        elapsed: float,
        last_status: str | None = None,
        checkpoint: "AttestationCheckpoint | None" = None,
    ):
        self.elapsed = elapsed
        self.last_status = last_status
        message = f"Attestation {phase} timed out after {elapsed:.0f}s"
        if last_status:
            message += f" (last status: {last_status})"
        super().__init__(message, phase=phase, checkpoint=checkpoint)


class AttestationRequestError(AttestationError):
    """The verifier refused to prepare a request."""

    phase = "prepare"


class AttestationSubmitError(AttestationError, ProtocolRejectionError):
    """The FdcHub request transaction failed."""

    phase = "submit"

    def __init__(self, message: str, tx_hash: str | None = None):
        ProtocolRejectionError.__init__(self, message, tx_hash=tx_hash)
        self.checkpoint = None


class ProofUnavailableError(AttestationError):
    """The data availability layer returned no proof."""

    phase = "retrieve"


class ProofMismatchError(AttestationError):
    """The attested events do not carry the expected observation."""

    phase = "verify"


class AttestationAbandonedError(AttestationError):
    """A wait was interrupted by a stop request. Resume from the checkpoint."""


class ResourceExhaustedError(FlareForwardError):
    """Wallet balance or failure budget exhausted. Halts the orchestrator."""

#!/usr/bin/env python3
"""Transaction submission for the Flare Forward relayer.

Every state-changing call (record, relay, attestation request, proof
write-back) goes through a ``TransactionSubmitter`` bound to one chain. It
enforces the gas price ceiling, waits for the receipt and turns reverts into
typed errors.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.types import BlockIdentifier, TxParams, TxReceipt, Wei

from .errors import (
    AttestationAbandonedError,
    GasPriceTooHighError,
    TransactionRevertedError,
    TransactionTimeoutError,
)
from .relay_engine import RejectReason

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class TransactionSubmitter:
    """Sends contract transactions on a single chain."""

    def __init__(
        self,
        contract_util: "ContractUtility",
        chain_id: int,
        max_gas_price_wei: int,
        receipt_timeout: float = 300.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        Initialize the TransactionSubmitter.

        Args:
            contract_util: Signing contract utility for the chain
            chain_id: Chain the utility is connected to
            max_gas_price_wei: Ceiling above which transactions are not sent
            receipt_timeout: Seconds to wait for a receipt
            sleep: Awaitable sleep, injectable for tests
        """
        self.contract_util = contract_util
        self.chain_id = chain_id
        self.max_gas_price_wei = max_gas_price_wei
        self.receipt_timeout = receipt_timeout
        self.sleep = sleep

    @property
    def w3(self) -> Web3:
        return self.contract_util.w3

    def check_gas_price(self) -> int:
        """Return the current gas price.

        Raises:
            GasPriceTooHighError: If the price is above the ceiling
        """
        gas_price = int(self.w3.eth.gas_price)
        if gas_price > self.max_gas_price_wei:
            raise GasPriceTooHighError(self.chain_id, gas_price, self.max_gas_price_wei)
        return gas_price

    async def send(
        self,
        call: ContractFunction,
        gas: int,
        value: int = 0,
        label: str = "transaction",
    ) -> TxReceipt:
        """
        Send a contract call and wait for a successful receipt.

        The call is simulated against the pending block first. An explicit gas
        limit makes web3 skip estimation, so without the simulation a revert
        would only surface as a status 0 receipt.

        Args:
            call: Bound contract function, e.g. ``contract.functions.recordPrice(pool)``
            gas: Gas limit
            value: Native value to attach, in wei
            label: Name used in log lines

        Returns:
            The mined receipt (status 1)

        Raises:
            GasPriceTooHighError: Gas price above the ceiling, nothing was sent
            TransactionRevertedError: Reverted in simulation or mined with status 0.
                ``reason`` is set when the revert string is a known relay reason.
            TransactionTimeoutError: No receipt within ``receipt_timeout``
        """
        gas_price = self.check_gas_price()

        tx_params: TxParams = {"gas": gas, "gasPrice": Wei(gas_price)}
        if value:
            tx_params["value"] = Wei(value)

        if (message := self.revert_message(call, tx_params, "pending")) is not None:
            raise TransactionRevertedError(
                f"{label} reverted: {message}",
                reason=RejectReason.from_revert_message(message),
            )

        try:
            tx_hash = call.transact(tx_params)
        except ContractLogicError as e:
            message = str(e.message or e)
            raise TransactionRevertedError(
                f"{label} reverted: {message}",
                reason=RejectReason.from_revert_message(message),
            ) from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"{label} submitted on chain {self.chain_id}: {tx_hex}")

        try:
            receipt: TxReceipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt, tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise TransactionTimeoutError(tx_hex, self.receipt_timeout) from e

        if (status := receipt.get("status", 0)) != 1:
            message = self.revert_message(call, tx_params, receipt["blockNumber"])
            raise TransactionRevertedError(
                f"{label} failed with status={status}" + (f": {message}" if message else ""),
                reason=RejectReason.from_revert_message(message) if message else None,
                tx_hash=tx_hex,
            )

        logger.info(
            f"✓ {label} confirmed in block {receipt['blockNumber']} "
            f"(gas used: {receipt.get('gasUsed', 0)})"
        )
        return receipt

    def revert_message(
        self, call: ContractFunction, tx_params: TxParams, block_identifier: BlockIdentifier
    ) -> str | None:
        """Run ``call`` as an ``eth_call`` and return its revert message, or None if it succeeds."""
        params: TxParams = {"gas": tx_params["gas"]}
        if "value" in tx_params:
            params["value"] = tx_params["value"]
        if sender := self.contract_util.address:
            params["from"] = sender

        try:
            call.call(params, block_identifier=block_identifier)
        except ContractLogicError as e:
            return str(e.message or e)
        return None

    async def wait_for_confirmations(
        self,
        receipt_block: int,
        required: int,
        poll_interval: float,
        timeout: float,
        abort: asyncio.Event | None = None,
    ) -> int:
        """
        Poll the block number until the transaction has ``required`` confirmations.

        A transaction mined in block N has ``latest - N + 1`` confirmations.

        Returns:
            Confirmations observed

        Raises:
            TransactionTimeoutError: Depth not reached within ``timeout``
            AttestationAbandonedError: ``abort`` was set while waiting
        """
        waited = 0.0
        while True:
            confirmations = self.w3.eth.block_number - receipt_block + 1
            if confirmations >= required:
                logger.info(f"Reached {confirmations}/{required} confirmations on chain {self.chain_id}")
                return confirmations

            if waited >= timeout:
                raise TransactionTimeoutError(f"block {receipt_block}", timeout)
            if abort is not None and abort.is_set():
                raise AttestationAbandonedError("Stopped while waiting for confirmations", phase="confirm")

            logger.debug(f"Confirmations {confirmations}/{required}, waiting {poll_interval}s")
            await self.sleep(poll_interval)
            waited += poll_interval

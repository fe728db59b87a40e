import json
from pathlib import Path
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.middleware import SignAndSendRawMiddlewareBuilder
from web3.providers import BaseProvider, HTTPProvider, LegacyWebSocketProvider


class ContractUtility:
    """
    Utility for contract interaction and ABI loading on one chain.

    Can be used in two modes:
    1. Signing mode: Initialize with RPC URL and secret to send transactions
    2. Read-only mode: Initialize with RPC URL only for view calls
    """

    CONTRACTS_DIR: Path = Path(__file__).resolve().parent.parent / "contracts"

    def __init__(self, rpc_url: str, secret: str = "", request_timeout: float = 30.0) -> None:
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: HTTP(S) or WS(S) RPC URL for the network (required)
            secret: Private key for signing transactions (optional)
            request_timeout: Timeout for RPC calls in seconds
        """
        if not rpc_url:
            raise ValueError("RPC URL is required")

        self.rpc_url = rpc_url
        self.account: LocalAccount | None = None
        self.w3 = Web3(self.provider_for(rpc_url, request_timeout))

        if secret:
            self._add_signing_middleware(secret)

    @staticmethod
    def provider_for(rpc_url: str, request_timeout: float = 30.0) -> BaseProvider:
        """Pick a websocket provider for ws:// and wss:// URLs, HTTP otherwise."""
        if rpc_url.startswith(("ws://", "wss://")):
            return LegacyWebSocketProvider(rpc_url, websocket_timeout=request_timeout)
        return HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})

    def _add_signing_middleware(self, secret: str) -> None:
        """
        Add signing middleware to the existing Web3 instance.

        Args:
            secret: Private key for signing transactions
        """
        if not secret:
            raise ValueError("Private key is required for signing transactions")

        account: LocalAccount = Account.from_key(secret)
        self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(account))
        self.w3.eth.default_account = account.address
        self.account = account

    @property
    def address(self) -> str | None:
        return self.account.address if self.account else None

    def contract(self, contract_name: str, address: str) -> Contract:
        """Bind a contract instance at ``address`` using the named ABI."""
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )

    @classmethod
    def get_contract_abi(cls, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = cls.CONTRACTS_DIR / f"{contract_name}.json"

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]

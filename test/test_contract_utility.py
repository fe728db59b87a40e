#!/usr/bin/env python3
"""Tests for ContractUtility provider selection and signing setup."""

import unittest

import pytest
from eth_account import Account
from web3.providers import HTTPProvider, LegacyWebSocketProvider

from flare_forward.utils.contract_utility import ContractUtility

from factories import RELAY


class TestContractUtility(unittest.TestCase):
    """Test cases for ContractUtility."""

    def setUp(self):
        self.test_private_key = "0x" + "1" * 64
        self.test_address = Account.from_key(self.test_private_key).address

    def test_http_provider(self):
        utility = ContractUtility("https://flare-api.flare.network/ext/bc/C/rpc", request_timeout=5)

        assert isinstance(utility.w3.provider, HTTPProvider)
        assert utility.address is None

    def test_websocket_provider(self):
        for url in ("ws://localhost:8546", "wss://arbitrum.example/ws"):
            utility = ContractUtility(url, request_timeout=5)
            assert isinstance(utility.w3.provider, LegacyWebSocketProvider), url
            assert utility.w3.provider.endpoint_uri == url

    def test_signing_mode(self):
        utility = ContractUtility("wss://arbitrum.example/ws", self.test_private_key)

        assert utility.address == self.test_address
        assert utility.w3.eth.default_account == self.test_address

    def test_missing_url(self):
        with pytest.raises(ValueError, match="RPC URL"):
            ContractUtility("")

    def test_contract_binding(self):
        utility = ContractUtility("http://localhost:8545")

        relay = utility.contract("PriceRelay", RELAY.lower())

        assert relay.address == RELAY
        assert "relayPrice" in [fn["name"] for fn in relay.abi if fn.get("type") == "function"]

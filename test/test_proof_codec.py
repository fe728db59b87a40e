#!/usr/bin/env python3
"""Unit tests for the attestation response codec."""

import pytest
from web3 import Web3

from flare_forward.payload import PriceRecordedPayload, PriceRelayedPayload
from flare_forward.proof_codec import EventLog, build_proof, decode_response, encode_response

from factories import (
    RECORDER,
    RELAY,
    TX_HASH,
    attestation_proof,
    attestation_response,
    event_log,
    recorded_payload,
    relayed_payload,
    response_hex,
)


# EVMTransaction responseHex as the DA layer serves it for a relayPrice
# transaction on Flare, one 32-byte word per line
RELAY_RESPONSE_HEX = "0x" + (
    "0000000000000000000000000000000000000000000000000000000000000020"
    "45564d5472616e73616374696f6e000000000000000000000000000000000000"
    "464c520000000000000000000000000000000000000000000000000000000000"
    "00000000000000000000000000000000000000000000000000000000000feda0"
    "0000000000000000000000000000000000000000000000000000000067b5b6e3"
    "00000000000000000000000000000000000000000000000000000000000000c0"
    "0000000000000000000000000000000000000000000000000000000000000180"
    "7d2c4f0e9b1a3c5d6e8f0a2b4c6d8e0f1a3b5c7d9e1f2a4b6c8d0e2f4a6b8c0d"
    "0000000000000000000000000000000000000000000000000000000000000001"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000000000000000000000000000000000000000000000000000000001"
    "00000000000000000000000000000000000000000000000000000000000000a0"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "00000000000000000000000000000000000000000000000000000000024a9043"
    "0000000000000000000000000000000000000000000000000000000067b5b6e3"
    "0000000000000000000000004e5f7a1c2b3d9e8f6a7b5c4d3e2f1a0b9c8d7e6f"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000000000000000009f3b2c1a7e4d5c6b8a90f1e2d3c4b5a697887766"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000000000000000000000000000000000000000000000000000000120"
    "0000000000000000000000000000000000000000000000000000000000000001"
    "0000000000000000000000000000000000000000000000000000000000000140"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000000000000000000000000000000000000000000000000000000001"
    "0000000000000000000000000000000000000000000000000000000000000020"
    "0000000000000000000000000000000000000000000000000000000000000002"
    "0000000000000000000000009f3b2c1a7e4d5c6b8a90f1e2d3c4b5a697887766"
    "00000000000000000000000000000000000000000000000000000000000000a0"
    "0000000000000000000000000000000000000000000000000000000000000120"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000000000000000000000000000000000000000000000000000000003"
    "75c79671c8187d029ada1a8f8cacf6af122360061d5f3e78d2eb1f00871946f2"
    "000000000000000000000000000000000000000000000000000000000000a4b1"
    "000000000000000000000000c6962004f452be9203591991d15f6b388e09e8d0"
    "0000000000000000000000000000000000000000000000000000000000000120"
    "0000000000000000000000000000000000000000000396ed0c13c44a35a8efe1"
    "fffffffffffffffffffffffffffffffffffffffffffffffffffffffffffd0260"
    "000000000000000000000000000000000000000000000000657b06e80722ef3c"
    "00000000000000000000000082af49447d8a07e3bd95bd0d56f35241523fbab1"
    "000000000000000000000000af88d065e77c8cc2239327c5edb3a432268e5831"
    "0000000000000000000000000000000000000000000000000000000067b5b6db"
    "0000000000000000000000000000000000000000000000000000000012450935"
    "0000000000000000000000000000000000000000000000000000000067b5b6e1"
    "0000000000000000000000004e5f7a1c2b3d9e8f6a7b5c4d3e2f1a0b9c8d7e6f"
)
RELAY_EMITTER = "0x9F3B2C1A7e4D5C6b8a90F1e2d3C4b5A697887766"
RELAY_SENDER = "0x4e5f7A1C2b3D9e8F6a7b5c4D3E2f1A0B9c8d7e6F"
ARBITRUM_POOL = "0xC6962004f452bE9203591991D15f6b388e09E8D0"


class TestResponseCodec:
    """Tests for decode_response and encode_response."""

    def test_reencode_is_byte_identical(self):
        """updateFromProof must receive exactly the bytes the DA layer served."""
        raw = encode_response(attestation_response([event_log(relayed_payload(), RELAY)]))
        assert encode_response(decode_response(raw)) == raw

    def test_served_response_reencodes_byte_identical(self):
        raw = bytes.fromhex(RELAY_RESPONSE_HEX[2:])
        assert len(raw) == 1408
        assert encode_response(decode_response(RELAY_RESPONSE_HEX)) == raw

    def test_served_response_fields(self):
        response = decode_response(RELAY_RESPONSE_HEX)

        assert response.attestation_type == b"EVMTransaction".ljust(32, b"\x00")
        assert response.source_id == b"FLR".ljust(32, b"\x00")
        assert response.voting_round == 1_043_872
        assert response.lowest_used_timestamp == 1_739_962_083
        assert response.transaction_hash == "0x7d2c4f0e9b1a3c5d6e8f0a2b4c6d8e0f1a3b5c7d9e1f2a4b6c8d0e2f4a6b8c0d"

        request = response.request_body
        assert request.required_confirmations == 1
        assert (request.provide_input, request.list_events) == (False, True)
        assert request.log_indices == ()

        body = response.response_body
        assert body.block_number == 38_441_027
        assert body.timestamp == 1_739_962_083
        assert body.source_address == RELAY_SENDER
        assert body.receiving_address == RELAY_EMITTER
        assert not body.is_deployment
        assert (body.value, body.input, body.status) == (0, b"", 1)

        (event,) = body.events
        assert event.log_index == 2
        assert event.emitter_address == RELAY_EMITTER
        assert event.topics[0] == PriceRelayedPayload.topic0()
        assert not event.removed

    def test_served_response_payload(self):
        proof = build_proof(RELAY_RESPONSE_HEX, [])

        ((_, payload),) = proof.payloads(source_chain_id=14)

        assert isinstance(payload, PriceRelayedPayload)
        assert payload.source_chain_id == 42161
        assert payload.pool_address == ARBITRUM_POOL
        assert payload.sqrt_price_x96 == 4339505179874779489431521
        assert payload.tick == -196_000
        assert payload.liquidity == 7_312_446_013_588_041_532
        assert payload.token0 == "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
        assert payload.token1 == "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
        assert (payload.source_timestamp, payload.source_block_number) == (1_739_962_075, 306_514_229)
        assert payload.relay_timestamp == 1_739_962_081
        assert payload.relayer == RELAY_SENDER

    def test_decode_fields(self):
        response = decode_response(response_hex([event_log(relayed_payload(), RELAY, log_index=3)]))

        assert response.transaction_hash == TX_HASH
        assert response.voting_round == 1_000_000
        assert response.response_body.status == 1
        assert response.response_body.events[0].log_index == 3
        assert response.response_body.events[0].emitter_address == RELAY

    def test_malformed_bytes(self):
        with pytest.raises(ValueError):
            decode_response("0x1234")


class TestAttestationProof:
    """Tests for proof assembly and payload extraction."""

    def test_build_proof(self):
        proof = build_proof(
            response_hex([]), ["0x" + "01" * 32, "0x" + "02" * 32], voting_round_id=1_000_000
        )
        assert proof.merkle_proof == (b"\x01" * 32, b"\x02" * 32)
        assert proof.voting_round_id == 1_000_000
        assert proof.summary()["merkleProofLength"] == 2

    def test_contract_struct_shape(self):
        proof = attestation_proof([event_log(relayed_payload(), RELAY)])
        merkle_proof, response = proof.to_contract_struct()

        assert merkle_proof == [b"\x01" * 32, b"\x02" * 32]
        assert len(response) == 6
        assert response[4][0] == bytes.fromhex(TX_HASH[2:])
        assert response[5][7] == 1

    def test_payloads_skip_removed_and_foreign_logs(self):
        recorded = event_log(recorded_payload(), RECORDER, log_index=0)
        foreign = EventLog(
            log_index=1,
            emitter_address=RELAY,
            topics=(bytes(Web3.keccak(text="Transfer(address,address,uint256)")),),
            data=b"",
            removed=False,
        )
        removed = event_log(relayed_payload(), RELAY, log_index=2, removed=True)
        kept = event_log(relayed_payload(), RELAY, log_index=3)

        proof = attestation_proof([recorded, foreign, removed, kept])
        found = proof.payloads(source_chain_id=14)

        assert [event.log_index for event, _ in found] == [0, 3]
        assert isinstance(found[0][1], PriceRecordedPayload)
        assert found[0][1].source_chain_id == 14
        assert isinstance(found[1][1], PriceRelayedPayload)

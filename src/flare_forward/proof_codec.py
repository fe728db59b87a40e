"""
Codec for FDC EVMTransaction attestation responses.

The data availability layer returns the attested response as ABI-encoded bytes
(``response_hex``). It is decoded here into typed structures and re-encoded
into the argument expected by ``updateFromProof``. Decoding is a pure function
of the bytes, so resuming an attestation always yields the same proof content.
"""

from dataclasses import dataclass
from typing import Any

from eth_abi import decode, encode
from web3 import Web3

from .payload import ObservationPayload, decode_log

EVENT_TYPE = "(uint32,address,bytes32[],bytes,bool)"
REQUEST_BODY_TYPE = "(bytes32,uint16,bool,bool,uint32[])"
RESPONSE_BODY_TYPE = f"(uint64,uint64,address,bool,address,uint256,bytes,uint8,{EVENT_TYPE}[])"
RESPONSE_TYPE = f"(bytes32,bytes32,uint64,uint64,{REQUEST_BODY_TYPE},{RESPONSE_BODY_TYPE})"


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, str):
        return bytes(Web3.to_bytes(hexstr=value))
    return bytes(value)


@dataclass(frozen=True, slots=True)
class RequestBody:
    transaction_hash: bytes
    required_confirmations: int
    provide_input: bool
    list_events: bool
    log_indices: tuple[int, ...]

    def as_tuple(self) -> tuple:
        return (
            self.transaction_hash,
            self.required_confirmations,
            self.provide_input,
            self.list_events,
            list(self.log_indices),
        )


@dataclass(frozen=True, slots=True)
class EventLog:
    log_index: int
    emitter_address: str
    topics: tuple[bytes, ...]
    data: bytes
    removed: bool

    def as_tuple(self) -> tuple:
        return (self.log_index, self.emitter_address, list(self.topics), self.data, self.removed)


@dataclass(frozen=True, slots=True)
class ResponseBody:
    block_number: int
    timestamp: int
    source_address: str
    is_deployment: bool
    receiving_address: str
    value: int
    input: bytes
    status: int
    events: tuple[EventLog, ...]

    def as_tuple(self) -> tuple:
        return (
            self.block_number,
            self.timestamp,
            self.source_address,
            self.is_deployment,
            self.receiving_address,
            self.value,
            self.input,
            self.status,
            [event.as_tuple() for event in self.events],
        )


@dataclass(frozen=True, slots=True)
class AttestationResponse:
    """Decoded EVMTransaction response: metadata, request echo and response body."""

    attestation_type: bytes
    source_id: bytes
    voting_round: int
    lowest_used_timestamp: int
    request_body: RequestBody
    response_body: ResponseBody

    def as_tuple(self) -> tuple:
        return (
            self.attestation_type,
            self.source_id,
            self.voting_round,
            self.lowest_used_timestamp,
            self.request_body.as_tuple(),
            self.response_body.as_tuple(),
        )

    @property
    def transaction_hash(self) -> str:
        return Web3.to_hex(self.request_body.transaction_hash)


@dataclass(frozen=True, slots=True)
class AttestationProof:
    """Merkle proof plus the decoded response, ready for ``updateFromProof``."""

    merkle_proof: tuple[bytes, ...]
    response: AttestationResponse
    voting_round_id: int | None = None

    def to_contract_struct(self) -> tuple:
        return (list(self.merkle_proof), self.response.as_tuple())

    def payloads(self, source_chain_id: int = 0) -> list[tuple[EventLog, ObservationPayload]]:
        """Typed observation payloads found among the attested events."""
        found = []
        for event in self.response.response_body.events:
            if event.removed:
                continue
            payload = decode_log(event.topics, event.data, source_chain_id)
            if payload is not None:
                found.append((event, payload))
        return found

    def summary(self) -> dict[str, Any]:
        body = self.response.response_body
        return {
            "votingRound": self.response.voting_round,
            "transactionHash": self.response.transaction_hash,
            "blockNumber": body.block_number,
            "status": body.status,
            "events": len(body.events),
            "merkleProofLength": len(self.merkle_proof),
        }


def decode_response(response_hex: str | bytes) -> AttestationResponse:
    """Decode ``response_hex`` from the DA layer.

    Raises:
        ValueError: If the bytes are not a valid EVMTransaction response
    """
    raw = _to_bytes(response_hex)
    try:
        (decoded,) = decode([RESPONSE_TYPE], raw)
    except Exception as e:
        raise ValueError(f"Malformed attestation response: {e}") from e

    attestation_type, source_id, voting_round, lowest_ts, request, response = decoded
    tx_hash, confirmations, provide_input, list_events, log_indices = request
    (block_number, timestamp, source_address, is_deployment, receiving_address,
     value, input_data, status, events) = response

    return AttestationResponse(
        attestation_type=attestation_type,
        source_id=source_id,
        voting_round=voting_round,
        lowest_used_timestamp=lowest_ts,
        request_body=RequestBody(
            transaction_hash=tx_hash,
            required_confirmations=confirmations,
            provide_input=provide_input,
            list_events=list_events,
            log_indices=tuple(log_indices),
        ),
        response_body=ResponseBody(
            block_number=block_number,
            timestamp=timestamp,
            source_address=Web3.to_checksum_address(source_address),
            is_deployment=is_deployment,
            receiving_address=Web3.to_checksum_address(receiving_address),
            value=value,
            input=input_data,
            status=status,
            events=tuple(
                EventLog(
                    log_index=log_index,
                    emitter_address=Web3.to_checksum_address(emitter),
                    topics=tuple(topics),
                    data=data,
                    removed=removed,
                )
                for log_index, emitter, topics, data, removed in events
            ),
        ),
    )


def encode_response(response: AttestationResponse) -> bytes:
    """Inverse of ``decode_response``."""
    return encode([RESPONSE_TYPE], [response.as_tuple()])


def build_proof(
    response_hex: str | bytes, merkle_proof: list[str | bytes] | None, voting_round_id: int | None = None
) -> AttestationProof:
    return AttestationProof(
        merkle_proof=tuple(_to_bytes(node) for node in merkle_proof or []),
        response=decode_response(response_hex),
        voting_round_id=voting_round_id,
    )

"""
vaasubmit Attestation Bodies

An attestation body (the unsigned part of a VAA) carries provenance
metadata and an opaque payload. Its canonical encoding, all big-endian:

    timestamp          u32
    nonce              u32
    emitter_chain      u16
    emitter_address    [u8; 32]
    sequence           u64
    consistency_level  u8
    payload            remaining bytes

Guardians sign the double SHA-256 of that encoding.
"""

import struct
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Union

from .hashing import attestation_digest, sha256_hash

EMITTER_ADDRESS_LENGTH = 32
BODY_HEADER = struct.Struct(">IIH32sQB")

DEFAULT_TIMESTAMP = 1234567890
DEFAULT_CONSISTENCY_LEVEL = 1


class ReplayPolicy(str, Enum):
    """Whether the program under test must refuse a second delivery."""
    NON_REPLAYABLE = "NonReplayable"  # default: replay must fail
    REPLAYABLE = "Replayable"          # idempotent operations, replay not checked


@dataclass(frozen=True)
class VerificationCheckSet:
    """
    Which automatic negative checks the verification oracle runs.

    Disable a check only for instructions where the field is intentionally
    unchecked (for example an initializer that derives its state from the
    emitter address, so any address is valid).
    """
    signature: bool = True
    emitter_chain: bool = True
    emitter_address: bool = True
    replay: bool = True
    replay_policy: ReplayPolicy = ReplayPolicy.NON_REPLAYABLE

    @property
    def replay_enabled(self) -> bool:
        return self.replay and self.replay_policy == ReplayPolicy.NON_REPLAYABLE


def emitter_address_from_20(address: bytes) -> bytes:
    """Left-pad a 20-byte (EVM-style) address to the canonical 32 bytes."""
    address = bytes(address)
    if len(address) != 20:
        raise ValueError(f"Expected a 20-byte address, got {len(address)}")
    return bytes(12) + address


def emitter_address_from_32(address: Union[bytes, object]) -> bytes:
    """Accept a 32-byte address (raw bytes or anything convertible to bytes)."""
    address = bytes(address)
    if len(address) != EMITTER_ADDRESS_LENGTH:
        raise ValueError(f"Expected a 32-byte address, got {len(address)}")
    return address


@dataclass(frozen=True)
class AttestationBody:
    """The signed portion of a VAA."""
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    payload: bytes = b""
    consistency_level: int = DEFAULT_CONSISTENCY_LEVEL
    timestamp: int = DEFAULT_TIMESTAMP
    nonce: int = 0
    checks: VerificationCheckSet = field(default_factory=VerificationCheckSet, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "emitter_address", emitter_address_from_32(self.emitter_address))
        object.__setattr__(self, "payload", bytes(self.payload))
        if not 0 <= self.emitter_chain <= 0xFFFF:
            raise ValueError(f"emitter_chain out of range: {self.emitter_chain}")
        if not 0 <= self.sequence <= 0xFFFFFFFFFFFFFFFF:
            raise ValueError(f"sequence out of range: {self.sequence}")
        if not 0 <= self.consistency_level <= 0xFF:
            raise ValueError(f"consistency_level out of range: {self.consistency_level}")

    def encode(self) -> bytes:
        """Canonical body bytes (what target programs receive)."""
        return BODY_HEADER.pack(
            self.timestamp,
            self.nonce,
            self.emitter_chain,
            self.emitter_address,
            self.sequence,
            self.consistency_level,
        ) + self.payload

    def digest(self) -> bytes:
        """The 32-byte digest every guardian signs."""
        return attestation_digest(self.encode())

    def digest_hash(self) -> str:
        return sha256_hash(self.encode())

    def with_emitter_chain(self, emitter_chain: int) -> "AttestationBody":
        return replace(self, emitter_chain=emitter_chain & 0xFFFF)

    def with_emitter_address(self, emitter_address: bytes) -> "AttestationBody":
        return replace(self, emitter_address=emitter_address)

    def with_checks(self, checks: VerificationCheckSet) -> "AttestationBody":
        return replace(self, checks=checks)


def decode_body(data: bytes) -> AttestationBody:
    """Parse canonical body bytes back into an AttestationBody."""
    data = bytes(data)
    if len(data) < BODY_HEADER.size:
        raise ValueError(f"Body too short: {len(data)} < {BODY_HEADER.size}")
    timestamp, nonce, chain, address, sequence, consistency = BODY_HEADER.unpack_from(data)
    return AttestationBody(
        emitter_chain=chain,
        emitter_address=address,
        sequence=sequence,
        payload=data[BODY_HEADER.size:],
        consistency_level=consistency,
        timestamp=timestamp,
        nonce=nonce,
    )

"""
resolve_execute_vaa_v1 Wire Codec

The resolve/execute contract is owned by target programs, not by this
library. This module is the one place that knows its byte layout, and it
decodes strictly: truncated input, trailing bytes, unknown tags and
records that fail validation all surface as ResolutionProtocolError.

Request data (sent to the target program, simulated only):

    discriminator  [u8; 8]   first 8 bytes of sha256("global:resolve_execute_vaa_v1")
    body_len       u32 LE
    body           [u8; body_len]

Return data (little-endian, length-prefixed vectors):

    tag u8
      0 Resolved   -> Vec<InstructionGroup>
      1 Missing    -> Vec<Pubkey> accounts, Vec<Pubkey> address_lookup_tables
      2 Account    -> (unsupported)

    InstructionGroup        = Vec<SerializableInstruction>, Vec<Pubkey> address_lookup_tables
    SerializableInstruction = Pubkey program_id, Vec<SerializableAccountMeta>, Vec<u8> data
    SerializableAccountMeta = Pubkey, bool is_signer, bool is_writable
"""

import struct
from dataclasses import dataclass, field
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictBool, ValidationError, field_validator

from .errors import ResolutionProtocolError
from .hashing import instruction_discriminator
from .transaction import PUBKEY_LENGTH, AccountMeta, Instruction, Pubkey

RESOLVER_EXECUTE_VAA_V1 = instruction_discriminator("resolve_execute_vaa_v1")

TAG_RESOLVED = 0
TAG_MISSING = 1
TAG_ACCOUNT = 2

# Upper bound on any decoded vector length; guards against hostile lengths.
MAX_VEC_LEN = 1 << 16

# Placeholders a target program may put in resolved instructions.
RESOLVER_PUBKEY_PAYER = Pubkey.from_label("resolver:payer")
RESOLVER_PUBKEY_GUARDIAN_SET = Pubkey.from_label("resolver:guardian_set")
RESOLVER_PUBKEY_SHIM_VAA_SIGS = Pubkey.from_label("resolver:shim_vaa_sigs")
RESOLVER_PUBKEY_KEYPAIRS = tuple(
    Pubkey.from_label(f"resolver:keypair_{i:02d}") for i in range(10)
)


# =============================================================================
# DECODED RECORDS
# =============================================================================

class SerializableAccountMeta(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    pubkey: Pubkey
    is_signer: StrictBool
    is_writable: StrictBool

    def to_account_meta(self, pubkey: Optional[Pubkey] = None) -> AccountMeta:
        return AccountMeta(pubkey or self.pubkey, self.is_signer, self.is_writable)


class SerializableInstruction(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    program_id: Pubkey
    accounts: List[SerializableAccountMeta]
    data: bytes

    def references(self, pubkey: Pubkey) -> bool:
        return any(meta.pubkey == pubkey for meta in self.accounts)


class InstructionGroup(BaseModel):
    """Instructions submitted together as one transaction."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    instructions: List[SerializableInstruction]
    address_lookup_tables: List[Pubkey] = []

    @field_validator("instructions")
    @classmethod
    def _not_empty(cls, value):
        if not value:
            raise ValueError("instruction group is empty")
        return value

    def references(self, pubkey: Pubkey) -> bool:
        return any(ix.references(pubkey) for ix in self.instructions)


@dataclass(frozen=True)
class Resolved:
    groups: List[InstructionGroup]


@dataclass(frozen=True)
class Missing:
    accounts: List[Pubkey]
    address_lookup_tables: List[Pubkey] = field(default_factory=list)


ResolverResponse = Union[Resolved, Missing]


# =============================================================================
# DECODING
# =============================================================================

class _Reader:
    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._offset = 0

    def take(self, n: int) -> bytes:
        end = self._offset + n
        if end > len(self._data):
            raise ValueError(
                f"unexpected end of data at offset {self._offset} (wanted {n} bytes)"
            )
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def boolean(self):
        value = self.u8()
        if value > 1:
            raise ValueError(f"invalid bool byte {value}")
        return value == 1

    def pubkey(self) -> Pubkey:
        return Pubkey(self.take(PUBKEY_LENGTH))

    def length(self) -> int:
        n = self.u32()
        if n > MAX_VEC_LEN:
            raise ValueError(f"vector length {n} exceeds limit")
        return n

    def bytes_vec(self) -> bytes:
        return self.take(self.length())

    def pubkey_vec(self) -> List[Pubkey]:
        return [self.pubkey() for _ in range(self.length())]

    def finish(self) -> None:
        if self._offset != len(self._data):
            raise ValueError(f"{len(self._data) - self._offset} trailing bytes")


def _read_instruction(reader: _Reader) -> SerializableInstruction:
    program_id = reader.pubkey()
    accounts = [
        SerializableAccountMeta(
            pubkey=reader.pubkey(),
            is_signer=reader.boolean(),
            is_writable=reader.boolean(),
        )
        for _ in range(reader.length())
    ]
    return SerializableInstruction(program_id=program_id, accounts=accounts, data=reader.bytes_vec())


def _read_group(reader: _Reader) -> InstructionGroup:
    instructions = [_read_instruction(reader) for _ in range(reader.length())]
    return InstructionGroup(instructions=instructions, address_lookup_tables=reader.pubkey_vec())


def decode_response(data: bytes, iteration: Optional[int] = None) -> ResolverResponse:
    """
    Decode resolver return data.

    Raises:
        ResolutionProtocolError: the data does not match the v1 layout
    """
    try:
        reader = _Reader(data)
        tag = reader.u8()
        if tag == TAG_RESOLVED:
            groups = [_read_group(reader) for _ in range(reader.length())]
            response: ResolverResponse = Resolved(groups)
        elif tag == TAG_MISSING:
            response = Missing(reader.pubkey_vec(), reader.pubkey_vec())
        elif tag == TAG_ACCOUNT:
            raise ResolutionProtocolError("resolver returned Account() -- not supported", iteration)
        else:
            raise ValueError(f"unknown resolver tag {tag}")
        reader.finish()
    except (ValueError, ValidationError) as e:
        raise ResolutionProtocolError(
            f"failed to deserialize resolver return data: {e}", iteration
        ) from e
    return response


# =============================================================================
# ENCODING
# =============================================================================

def encode_request(body: bytes) -> bytes:
    """Instruction data for a resolve_execute_vaa_v1 call."""
    return RESOLVER_EXECUTE_VAA_V1 + struct.pack("<I", len(body)) + bytes(body)


def decode_request(data: bytes) -> Optional[bytes]:
    """Body bytes of a resolve request, or None if `data` is not one."""
    if len(data) < 12 or data[:8] != RESOLVER_EXECUTE_VAA_V1:
        return None
    (length,) = struct.unpack_from("<I", data, 8)
    body = data[12:12 + length]
    return body if len(body) == length else None


def _vec(items: List[bytes]) -> bytes:
    return struct.pack("<I", len(items)) + b"".join(items)


def _encode_instruction(ix: Union[Instruction, SerializableInstruction]) -> bytes:
    metas = [
        bytes(m.pubkey) + struct.pack("<BB", int(m.is_signer), int(m.is_writable))
        for m in ix.accounts
    ]
    return bytes(ix.program_id) + _vec(metas) + struct.pack("<I", len(ix.data)) + bytes(ix.data)


def encode_resolved(groups: List[List[Union[Instruction, SerializableInstruction]]]) -> bytes:
    """Return data announcing a resolved plan (one inner list per group)."""
    encoded = [_vec([_encode_instruction(ix) for ix in group]) + _vec([]) for group in groups]
    return struct.pack("<B", TAG_RESOLVED) + _vec(encoded)


def encode_missing(accounts: List[Pubkey], address_lookup_tables: Optional[List[Pubkey]] = None) -> bytes:
    """Return data asking the submitter for more accounts."""
    return (
        struct.pack("<B", TAG_MISSING)
        + _vec([bytes(a) for a in accounts])
        + _vec([bytes(a) for a in address_lookup_tables or []])
    )

"""
Execution primitives shared by every connection implementation.

Addresses, keypairs, instructions, signed transactions, account snapshots
and receipts. Transactions are signed with Ed25519 over a deterministic
message encoding so that any environment can check signer authority.
"""

import os
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import MissingSigner
from .hashing import sha256_bytes

Blockhash = bytes

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64


class Pubkey:
    """A 32-byte account address."""

    __slots__ = ("_bytes",)

    def __init__(self, value: bytes):
        value = bytes(value)
        if len(value) != PUBKEY_LENGTH:
            raise ValueError(f"Pubkey must be {PUBKEY_LENGTH} bytes, got {len(value)}")
        self._bytes = value

    @classmethod
    def from_hex(cls, text: str) -> "Pubkey":
        return cls(bytes.fromhex(text))

    @classmethod
    def new_unique(cls) -> "Pubkey":
        return cls(os.urandom(PUBKEY_LENGTH))

    @classmethod
    def from_label(cls, label: str) -> "Pubkey":
        """Deterministic address for a well-known name."""
        return cls(sha256_bytes(f"vaasubmit:{label}"))

    @classmethod
    def derive(cls, seeds: Sequence[bytes], program_id: "Pubkey") -> "Pubkey":
        """Program-derived address: SHA-256 over the seeds and owning program."""
        material = b"".join(struct.pack("<B", len(s)) + bytes(s) for s in seeds)
        return cls(sha256_bytes(material + bytes(program_id) + b"ProgramDerivedAddress"))

    def __bytes__(self) -> bytes:
        return self._bytes

    def __eq__(self, other) -> bool:
        return isinstance(other, Pubkey) and self._bytes == other._bytes

    def __hash__(self) -> int:
        return hash(self._bytes)

    def __str__(self) -> str:
        return self._bytes.hex()

    def __repr__(self) -> str:
        return f"Pubkey({self._bytes.hex()[:16]}...)"


SYSTEM_PROGRAM_ID = Pubkey(bytes(PUBKEY_LENGTH))


class Keypair:
    """Ed25519 keypair used to sign transactions."""

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self._signing_key = signing_key or SigningKey.generate()
        self.pubkey = Pubkey(bytes(self._signing_key.verify_key))

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        return cls(SigningKey(seed))

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair({self.pubkey!r})"


@dataclass(frozen=True)
class AccountMeta:
    """An account reference within an instruction."""
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False

    @classmethod
    def writable(cls, pubkey: Pubkey, is_signer: bool = False) -> "AccountMeta":
        return cls(pubkey, is_signer=is_signer, is_writable=True)

    @classmethod
    def readonly(cls, pubkey: Pubkey, is_signer: bool = False) -> "AccountMeta":
        return cls(pubkey, is_signer=is_signer, is_writable=False)


@dataclass(frozen=True)
class Instruction:
    """A call into one program."""
    program_id: Pubkey
    accounts: List[AccountMeta]
    data: bytes = b""


@dataclass(frozen=True)
class Account:
    """Snapshot of an account's state."""
    lamports: int
    data: bytes = b""
    owner: Pubkey = SYSTEM_PROGRAM_ID
    executable: bool = False


@dataclass
class Receipt:
    """Outcome of a committed transaction."""
    signature: bytes
    logs: List[str] = field(default_factory=list)
    return_data: Optional[bytes] = None

    @property
    def signature_hex(self) -> str:
        return self.signature.hex()


def encode_message(
    instructions: Sequence[Instruction],
    payer: Pubkey,
    blockhash: Blockhash,
) -> bytes:
    """Deterministic byte encoding of everything a transaction commits to."""
    out = bytearray()
    out += bytes(blockhash)
    out += bytes(payer)
    out += struct.pack("<I", len(instructions))
    for ix in instructions:
        out += bytes(ix.program_id)
        out += struct.pack("<I", len(ix.accounts))
        for meta in ix.accounts:
            out += bytes(meta.pubkey)
            out += struct.pack("<BB", int(meta.is_signer), int(meta.is_writable))
        out += struct.pack("<I", len(ix.data))
        out += bytes(ix.data)
    return bytes(out)


def required_signers(instructions: Iterable[Instruction], payer: Pubkey) -> List[Pubkey]:
    """The payer followed by every other account flagged as signer, in order."""
    signers = [payer]
    for ix in instructions:
        for meta in ix.accounts:
            if meta.is_signer and meta.pubkey not in signers:
                signers.append(meta.pubkey)
    return signers


@dataclass(frozen=True)
class Transaction:
    """A signed, ordered list of instructions."""
    instructions: List[Instruction]
    payer: Pubkey
    blockhash: Blockhash
    signatures: Dict[Pubkey, bytes]

    @classmethod
    def new_signed_with_payer(
        cls,
        instructions: Sequence[Instruction],
        payer: Keypair,
        signers: Sequence[Keypair],
        blockhash: Blockhash,
    ) -> "Transaction":
        """
        Build and sign a transaction.

        Every account flagged as signer must be matched by a keypair in
        `signers` (the payer is always required).
        """
        instructions = list(instructions)
        message = encode_message(instructions, payer.pubkey, blockhash)
        by_key = {kp.pubkey: kp for kp in [payer, *signers]}

        signatures = {}
        for pubkey in required_signers(instructions, payer.pubkey):
            keypair = by_key.get(pubkey)
            if keypair is None:
                raise MissingSigner(pubkey)
            signatures[pubkey] = keypair.sign(message)

        return cls(instructions, payer.pubkey, blockhash, signatures)

    @property
    def message(self) -> bytes:
        return encode_message(self.instructions, self.payer, self.blockhash)

    @property
    def signature(self) -> bytes:
        """The payer signature, which identifies the transaction."""
        return self.signatures[self.payer]

    def verify_signatures(self) -> bool:
        """Check every required signer signed this exact message."""
        message = self.message
        for pubkey in required_signers(self.instructions, self.payer):
            signature = self.signatures.get(pubkey)
            if signature is None:
                return False
            try:
                VerifyKey(bytes(pubkey)).verify(message, signature)
            except BadSignatureError:
                return False
        return True

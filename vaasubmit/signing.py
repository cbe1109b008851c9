"""
vaasubmit Guardian Signing

Guardians sign attestation digests with Ed25519. A guardian set is an
ordered, index-unique collection of guardians with an implied quorum of
floor(2n/3) + 1 signatures.

Wire form of one guardian signature: 1 index byte followed by the 64-byte
signature. A serialized signed VAA is:

    version             u8 (1)
    guardian_set_index  u32 big-endian
    signature_count     u8
    signatures          [index u8 + signature 64 bytes] * count
    body                canonical body bytes
"""

import random
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import InvalidGuardianSubset
from .vaa import AttestationBody, decode_body

SIGNATURE_LENGTH = 64
GUARDIAN_SIGNATURE_LENGTH = 1 + SIGNATURE_LENGTH
# Signature counts are encoded as a u8.
MAX_GUARDIANS = 255
VAA_VERSION = 1


def quorum(size: int) -> int:
    """Smallest integer strictly greater than two thirds of `size`."""
    return (size * 2) // 3 + 1


@dataclass(frozen=True)
class Guardian:
    """A signing identity with a stable index within its set."""
    index: int
    seed: bytes

    @property
    def signing_key(self) -> SigningKey:
        return SigningKey(self.seed)

    @property
    def verify_key(self) -> bytes:
        return bytes(self.signing_key.verify_key)

    def sign(self, digest: bytes) -> "GuardianSignature":
        signature = self.signing_key.sign(digest).signature
        return GuardianSignature(self.index, signature)


@dataclass(frozen=True, order=True)
class GuardianSignature:
    """One (guardian_index, signature) pair."""
    guardian_index: int
    signature: bytes

    def to_bytes(self) -> bytes:
        return struct.pack("<B", self.guardian_index) + self.signature

    @classmethod
    def from_bytes(cls, data: bytes) -> "GuardianSignature":
        if len(data) != GUARDIAN_SIGNATURE_LENGTH:
            raise ValueError(
                f"Guardian signature must be {GUARDIAN_SIGNATURE_LENGTH} bytes, got {len(data)}"
            )
        return cls(data[0], bytes(data[1:]))

    def corrupted(self) -> "GuardianSignature":
        """Same guardian index, signature bytes that cannot verify."""
        return GuardianSignature(self.guardian_index, bytes(b ^ 0xFF for b in self.signature))


class GuardianSet:
    """
    Ordered, index-unique, immutable collection of guardians.

    Usage:
        guardians = GuardianSet.generate(13, seed=12345)
        guardians.quorum  # 9
    """

    def __init__(self, guardians: Iterable[Guardian]):
        members = tuple(sorted(guardians, key=lambda g: g.index))
        if not members:
            raise ValueError("A guardian set needs at least one guardian")
        if len(members) > MAX_GUARDIANS:
            raise ValueError(f"A guardian set holds at most {MAX_GUARDIANS} guardians")
        if [g.index for g in members] != list(range(len(members))):
            raise ValueError("Guardian indices must be unique and contiguous from 0")
        self._guardians = members

    @classmethod
    def generate(cls, size: int, seed: int) -> "GuardianSet":
        """Deterministically generate `size` guardians from an integer seed."""
        rng = random.Random(seed)
        return cls(
            Guardian(index, rng.getrandbits(256).to_bytes(32, "big"))
            for index in range(size)
        )

    @classmethod
    def single(cls, seed: bytes = bytes(range(32))) -> "GuardianSet":
        """A one-guardian set (quorum of one)."""
        return cls([Guardian(0, seed)])

    @property
    def quorum(self) -> int:
        return quorum(len(self._guardians))

    def __len__(self) -> int:
        return len(self._guardians)

    def __iter__(self):
        return iter(self._guardians)

    def __getitem__(self, index: int) -> Guardian:
        return self._guardians[index]

    def verify_keys(self) -> List[bytes]:
        return [g.verify_key for g in self._guardians]

    def sign_digest(self, digest: bytes, indices: Optional[Sequence[int]] = None) -> List[GuardianSignature]:
        """
        Sign a digest with every guardian, or only with `indices`.

        Raises:
            InvalidGuardianSubset: an index is out of range or repeated
        """
        if indices is None:
            chosen = list(range(len(self._guardians)))
        else:
            chosen = _validate_subset(indices, len(self._guardians))
        return [self._guardians[i].sign(digest) for i in chosen]


def _validate_subset(indices: Sequence[int], size: int) -> List[int]:
    indices = list(indices)
    if not indices:
        raise InvalidGuardianSubset(indices, "no guardians selected")
    for index in indices:
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < size:
            raise InvalidGuardianSubset(indices, f"index {index!r} outside set of size {size}")
    if len(set(indices)) != len(indices):
        raise InvalidGuardianSubset(indices, "duplicate guardian index")
    return sorted(indices)


@dataclass(frozen=True)
class SignedAttestation:
    """
    An attestation body plus its guardian signatures.

    Signatures are strictly ascending by guardian index.
    """
    body: AttestationBody
    signatures: Tuple[GuardianSignature, ...]
    guardian_set_index: int = 0

    def __post_init__(self):
        object.__setattr__(self, "signatures", tuple(self.signatures))
        indices = [s.guardian_index for s in self.signatures]
        if any(b <= a for a, b in zip(indices, indices[1:])):
            raise ValueError("Signatures must be strictly ascending by guardian index")

    @property
    def guardian_indices(self) -> List[int]:
        return [s.guardian_index for s in self.signatures]

    def signature_bytes(self) -> List[bytes]:
        """Signatures in wire form, ready for post_signatures."""
        return [s.to_bytes() for s in self.signatures]

    def corrupted(self) -> "SignedAttestation":
        """Same body and indices, every signature made invalid."""
        return SignedAttestation(
            self.body,
            tuple(s.corrupted() for s in self.signatures),
            self.guardian_set_index,
        )

    def serialize(self) -> bytes:
        """Full signed VAA bytes."""
        if len(self.signatures) > MAX_GUARDIANS:
            raise ValueError(f"A VAA carries at most {MAX_GUARDIANS} signatures")
        out = bytearray()
        out += struct.pack(">BIB", VAA_VERSION, self.guardian_set_index, len(self.signatures))
        for sig in self.signatures:
            out += sig.to_bytes()
        out += self.body.encode()
        return bytes(out)


def sign(body: AttestationBody, guardian_set: GuardianSet, guardian_set_index: int = 0) -> SignedAttestation:
    """Sign a body with every guardian in the set."""
    signatures = guardian_set.sign_digest(body.digest())
    return SignedAttestation(body, tuple(signatures), guardian_set_index)


def sign_with(
    body: AttestationBody,
    guardian_set: GuardianSet,
    indices: Sequence[int],
    guardian_set_index: int = 0,
) -> SignedAttestation:
    """
    Sign a body with the given guardian indices only.

    Indices may be given in any order; the result is ascending.

    Raises:
        InvalidGuardianSubset: an index is out of range or repeated
    """
    signatures = guardian_set.sign_digest(body.digest(), indices)
    return SignedAttestation(body, tuple(signatures), guardian_set_index)


def parse_signed_vaa(data: bytes) -> SignedAttestation:
    """Parse full signed VAA bytes."""
    data = bytes(data)
    if len(data) < 6:
        raise ValueError("Signed VAA too short")
    version, guardian_set_index, count = struct.unpack_from(">BIB", data)
    if version != VAA_VERSION:
        raise ValueError(f"Unsupported VAA version {version}")
    offset = 6
    signatures = []
    for _ in range(count):
        chunk = data[offset:offset + GUARDIAN_SIGNATURE_LENGTH]
        signatures.append(GuardianSignature.from_bytes(chunk))
        offset += GUARDIAN_SIGNATURE_LENGTH
    return SignedAttestation(decode_body(data[offset:]), tuple(signatures), guardian_set_index)


def verify_signatures(
    digest: bytes,
    signatures: Sequence[GuardianSignature],
    verify_keys: Sequence[bytes],
) -> Tuple[bool, Optional[str]]:
    """
    Check a signature set the way a correct on-chain verifier does.

    Returns:
        (True, None) if the set is acceptable, else (False, reason)
    """
    required = quorum(len(verify_keys))
    if len(signatures) < required:
        return False, f"no quorum: {len(signatures)} < {required}"

    last_index = -1
    for sig in signatures:
        if sig.guardian_index <= last_index:
            return False, "guardian indices not strictly ascending"
        if sig.guardian_index >= len(verify_keys):
            return False, f"guardian index {sig.guardian_index} out of range"
        last_index = sig.guardian_index
        try:
            VerifyKey(verify_keys[sig.guardian_index]).verify(digest, sig.signature)
        except BadSignatureError:
            return False, f"invalid signature from guardian {sig.guardian_index}"

    return True, None


def verify_signed_attestation(signed: SignedAttestation, guardian_set: GuardianSet) -> bool:
    """True if `signed` carries a valid quorum from `guardian_set`."""
    ok, _ = verify_signatures(signed.body.digest(), signed.signatures, guardian_set.verify_keys())
    return ok

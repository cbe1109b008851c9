"""
Verify VAA Shim

The shim hosts transient guardian signature records. A submitter posts the
signatures of one VAA into a fresh account, target programs ask the shim to
verify a digest against that record and a guardian set account, and the
submitter closes the record afterwards to reclaim its rent.

This module holds the instruction builders used by the lifecycle manager,
the account layouts, and the in-process program implementing the shim.

Signature record layout:
    authority           Pubkey (poster; must sign the close)
    guardian_set_index  u32 LE
    count               u8
    signatures          [index u8 + signature 64 bytes] * count

Guardian set account layout:
    index               u32 LE
    keys_len            u32 LE
    keys                [u8; 32] * keys_len
    creation_time       u32 LE
    expiration_time     u32 LE (0 = never)
"""

import struct
from dataclasses import dataclass
from typing import List, Sequence

from .errors import ProgramError
from .signing import GUARDIAN_SIGNATURE_LENGTH, MAX_GUARDIANS, GuardianSignature, verify_signatures
from .transaction import PUBKEY_LENGTH, AccountMeta, Instruction, Pubkey

VERIFY_VAA_SHIM_PROGRAM_ID = Pubkey.from_label("program:verify_vaa_shim")
CORE_BRIDGE_PROGRAM_ID = Pubkey.from_label("program:core_bridge")

IX_POST_SIGNATURES = 0
IX_VERIFY_HASH = 1
IX_CLOSE_SIGNATURES = 2

RECORD_HEADER = struct.Struct("<32sIB")


def guardian_set_address(index: int, core_bridge: Pubkey = CORE_BRIDGE_PROGRAM_ID) -> Pubkey:
    """Address of the guardian set account for a set index."""
    return Pubkey.derive([b"GuardianSet", struct.pack(">I", index)], core_bridge)


# =============================================================================
# ACCOUNT LAYOUTS
# =============================================================================

def build_guardian_set_data(verify_keys: Sequence[bytes], index: int) -> bytes:
    data = struct.pack("<II", index, len(verify_keys))
    for key in verify_keys:
        data += bytes(key)
    return data + struct.pack("<II", 0, 0)


@dataclass(frozen=True)
class GuardianSetData:
    index: int
    keys: List[bytes]
    creation_time: int = 0
    expiration_time: int = 0

    @classmethod
    def parse(cls, data: bytes) -> "GuardianSetData":
        if len(data) < 8:
            raise ValueError("guardian set data too short")
        index, count = struct.unpack_from("<II", data)
        end = 8 + count * PUBKEY_LENGTH
        if len(data) < end + 8:
            raise ValueError("guardian set data truncated")
        keys = [data[8 + i * PUBKEY_LENGTH:8 + (i + 1) * PUBKEY_LENGTH] for i in range(count)]
        creation, expiration = struct.unpack_from("<II", data, end)
        return cls(index, keys, creation, expiration)


@dataclass(frozen=True)
class SignatureRecordData:
    authority: Pubkey
    guardian_set_index: int
    signatures: List[GuardianSignature]

    def encode(self) -> bytes:
        header = RECORD_HEADER.pack(
            bytes(self.authority), self.guardian_set_index, len(self.signatures)
        )
        return header + b"".join(s.to_bytes() for s in self.signatures)

    @classmethod
    def parse(cls, data: bytes) -> "SignatureRecordData":
        if len(data) < RECORD_HEADER.size:
            raise ValueError("signature record too short")
        recipient, gsi, count = RECORD_HEADER.unpack_from(data)
        expected = RECORD_HEADER.size + count * GUARDIAN_SIGNATURE_LENGTH
        if len(data) != expected:
            raise ValueError(f"signature record length {len(data)} != {expected}")
        signatures = [
            GuardianSignature.from_bytes(
                data[RECORD_HEADER.size + i * GUARDIAN_SIGNATURE_LENGTH:
                     RECORD_HEADER.size + (i + 1) * GUARDIAN_SIGNATURE_LENGTH]
            )
            for i in range(count)
        ]
        return cls(Pubkey(recipient), gsi, signatures)


# =============================================================================
# INSTRUCTION BUILDERS
# =============================================================================

def build_post_signatures_ix(
    payer: Pubkey,
    record: Pubkey,
    guardian_set_index: int,
    signatures: Sequence[bytes],
    program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
) -> Instruction:
    """Allocate a signature record at `record` (which must co-sign)."""
    if len(signatures) > MAX_GUARDIANS:
        raise ValueError(f"A signature record holds at most {MAX_GUARDIANS} signatures")
    data = struct.pack("<BIB", IX_POST_SIGNATURES, guardian_set_index, len(signatures))
    data += b"".join(bytes(s) for s in signatures)
    return Instruction(
        program_id,
        [AccountMeta.writable(payer, True), AccountMeta.writable(record, True)],
        data,
    )


def build_close_signatures_ix(
    record: Pubkey,
    authority: Pubkey,
    refund_recipient: Pubkey,
    program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
) -> Instruction:
    """Delete a signature record and send its lamports to `refund_recipient`."""
    accounts = [AccountMeta.writable(record), AccountMeta.readonly(authority, True)]
    if refund_recipient == authority:
        accounts[1] = AccountMeta.writable(authority, True)
    else:
        accounts.append(AccountMeta.writable(refund_recipient))
    return Instruction(
        program_id,
        accounts,
        struct.pack("<B", IX_CLOSE_SIGNATURES),
    )


def build_verify_hash_ix(
    guardian_set: Pubkey,
    record: Pubkey,
    digest: bytes,
    program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
) -> Instruction:
    """Ask the shim to check `digest` against a posted record."""
    return Instruction(
        program_id,
        [AccountMeta.readonly(guardian_set), AccountMeta.readonly(record)],
        struct.pack("<B", IX_VERIFY_HASH) + bytes(digest),
    )


# =============================================================================
# IN-PROCESS PROGRAM
# =============================================================================

class VerifyVaaShimProgram:
    """In-process implementation of the shim for LocalExecutionEnvironment."""

    def __init__(self, core_bridge: Pubkey = CORE_BRIDGE_PROGRAM_ID):
        self.core_bridge = core_bridge

    def __call__(self, ctx, instruction: Instruction) -> None:
        if not instruction.data:
            raise ProgramError("empty instruction data")
        tag = instruction.data[0]
        if tag == IX_POST_SIGNATURES:
            self._post(ctx, instruction)
        elif tag == IX_VERIFY_HASH:
            self._verify(ctx, instruction)
        elif tag == IX_CLOSE_SIGNATURES:
            self._close(ctx, instruction)
        else:
            raise ProgramError(f"unknown shim instruction {tag}")

    def _post(self, ctx, instruction: Instruction) -> None:
        if len(instruction.accounts) < 2:
            raise ProgramError("post_signatures needs payer and record accounts")
        payer, record = (m.pubkey for m in instruction.accounts[:2])
        data = instruction.data
        if len(data) < 6:
            raise ProgramError("post_signatures data too short")
        gsi, count = struct.unpack_from("<IB", data, 1)
        raw = data[6:]
        if len(raw) != count * GUARDIAN_SIGNATURE_LENGTH:
            raise ProgramError("signature count does not match data length")
        signatures = [
            GuardianSignature.from_bytes(raw[i * GUARDIAN_SIGNATURE_LENGTH:(i + 1) * GUARDIAN_SIGNATURE_LENGTH])
            for i in range(count)
        ]
        if not ctx.is_signer(record):
            raise ProgramError("signature record must sign its own allocation")
        encoded = SignatureRecordData(payer, gsi, signatures).encode()
        ctx.create_account(record, encoded, owner=ctx.program_id, funder=payer)
        ctx.log(f"Posted {count} signatures for guardian set {gsi}")

    def _close(self, ctx, instruction: Instruction) -> None:
        if len(instruction.accounts) < 2:
            raise ProgramError("close_signatures needs record and authority accounts")
        record, authority = (m.pubkey for m in instruction.accounts[:2])
        recipient = instruction.accounts[2].pubkey if len(instruction.accounts) > 2 else authority
        account = ctx.get_account(record)
        if account is None or account.owner != ctx.program_id:
            raise ProgramError("signature record does not exist")
        try:
            stored = SignatureRecordData.parse(account.data)
        except ValueError as e:
            raise ProgramError(str(e)) from e
        if stored.authority != authority or not ctx.is_signer(authority):
            raise ProgramError("close must be signed by the account that posted the record")
        ctx.close_account(record, recipient)
        ctx.log("Closed signature record")

    def _verify(self, ctx, instruction: Instruction) -> None:
        if len(instruction.accounts) < 2:
            raise ProgramError("verify_hash needs guardian set and record accounts")
        guardian_set_key, record_key = (m.pubkey for m in instruction.accounts[:2])
        digest = instruction.data[1:]
        if len(digest) != 32:
            raise ProgramError("digest must be 32 bytes")

        guardian_account = ctx.get_account(guardian_set_key)
        record_account = ctx.get_account(record_key)
        if guardian_account is None or guardian_account.owner != self.core_bridge:
            raise ProgramError("invalid guardian set account")
        if record_account is None or record_account.owner != ctx.program_id:
            raise ProgramError("invalid signature record")

        try:
            guardian_set = GuardianSetData.parse(guardian_account.data)
            record = SignatureRecordData.parse(record_account.data)
        except ValueError as e:
            raise ProgramError(str(e)) from e
        if guardian_set_key != guardian_set_address(record.guardian_set_index, self.core_bridge):
            raise ProgramError("guardian set does not match record")

        ok, reason = verify_signatures(digest, record.signatures, guardian_set.keys)
        if not ok:
            raise ProgramError(f"verify_hash failed: {reason}")
        ctx.log("verify_hash ok")

"""
Example Target Programs

VaaVerifierProgram is a small in-process program implementing both halves
of the resolve/execute contract:

- resolve_execute_vaa_v1: round one asks for the guardian set account,
  round two resolves a single group calling verify_vaa.
- verify_vaa: checks provenance, verifies the VAA through the shim,
  consumes a per-digest replay marker and bumps a counter account.

Each defense can be switched off to build deliberately insecure targets,
which is how the verification oracle is exercised.

verify_vaa accounts:
    0 payer           writable, signer
    1 guardian set    readonly
    2 signature rec.  readonly
    3 replay marker   writable (PDA ["replay", digest])
    4 counter         writable (PDA ["counter"]): count u64 LE, last sequence u64 LE
"""

import struct
from typing import Callable, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .connection import ExecutionConnection
from .errors import ProgramError
from .hashing import attestation_digest, instruction_discriminator
from .protocol import (
    RESOLVER_EXECUTE_VAA_V1,
    RESOLVER_PUBKEY_GUARDIAN_SET,
    RESOLVER_PUBKEY_PAYER,
    RESOLVER_PUBKEY_SHIM_VAA_SIGS,
    decode_request,
    encode_missing,
    encode_resolved,
)
from .shim import GuardianSetData, SignatureRecordData, build_verify_hash_ix
from .transaction import AccountMeta, Instruction, Keypair, Pubkey, Receipt, Transaction
from .vaa import decode_body

VERIFY_VAA = instruction_discriminator("verify_vaa")

VERIFY_SHIM = "shim"
VERIFY_NONE = "none"
VERIFY_LENIENT = "lenient"

COUNTER_LAYOUT = struct.Struct("<QQ")

RESOLVE_NORMAL = "normal"
RESOLVE_NEVER = "never"
RESOLVE_GARBAGE = "garbage"
RESOLVE_WITHOUT_SHIM = "without_shim"


def counter_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.derive([b"counter"], program_id)


def replay_marker_address(program_id: Pubkey, digest: bytes) -> Pubkey:
    return Pubkey.derive([b"replay", digest], program_id)


def read_counter(connection: ExecutionConnection, program_id: Pubkey):
    """(count, last_sequence) or (0, None) if the counter was never written."""
    account = connection.get_account(counter_address(program_id))
    if account is None:
        return 0, None
    return COUNTER_LAYOUT.unpack(account.data)


def _encode_body_arg(discriminator: bytes, body: bytes) -> bytes:
    return discriminator + struct.pack("<I", len(body)) + bytes(body)


def build_verify_vaa_ix(
    program_id: Pubkey,
    payer: Pubkey,
    guardian_set: Pubkey,
    signatures: Pubkey,
    body: bytes,
) -> Instruction:
    digest = attestation_digest(body)
    return Instruction(
        program_id,
        [
            AccountMeta.writable(payer, True),
            AccountMeta.readonly(guardian_set),
            AccountMeta.readonly(signatures),
            AccountMeta.writable(replay_marker_address(program_id, digest)),
            AccountMeta.writable(counter_address(program_id)),
        ],
        _encode_body_arg(VERIFY_VAA, body),
    )


def verify_vaa_callback(
    program_id: Pubkey,
    payer: Keypair,
    guardian_set: Pubkey,
) -> Callable[[ExecutionConnection, Pubkey, bytes], Receipt]:
    """Oracle callback that submits one verify_vaa transaction."""

    def submit(connection: ExecutionConnection, signatures: Pubkey, body: bytes) -> Receipt:
        ix = build_verify_vaa_ix(program_id, payer.pubkey, guardian_set, signatures, body)
        tx = Transaction.new_signed_with_payer([ix], payer, [], connection.get_latest_blockhash())
        return connection.send_and_confirm(tx)

    return submit


class VaaVerifierProgram:
    """
    Configurable VAA consumer.

    Args:
        verify: "shim" (CPI into verify_hash), "lenient" (checks each
            signature but ignores quorum) or "none"
        expected_emitter_chain: Reject other chains; None disables the check
        expected_emitter_address: Reject other emitters; None disables the check
        replay_protection: Consume a per-digest marker account
        resolve_mode: "normal", "never" (asks for accounts forever),
            "garbage" (undecodable return data) or "without_shim"
            (plan that never references the signature record)
    """

    def __init__(
        self,
        verify: str = VERIFY_SHIM,
        expected_emitter_chain: Optional[int] = None,
        expected_emitter_address: Optional[bytes] = None,
        replay_protection: bool = True,
        resolve_mode: str = RESOLVE_NORMAL,
    ):
        if verify not in (VERIFY_SHIM, VERIFY_NONE, VERIFY_LENIENT):
            raise ValueError(f"unknown verify mode {verify!r}")
        self.verify = verify
        self.expected_emitter_chain = expected_emitter_chain
        self.expected_emitter_address = (
            bytes(expected_emitter_address) if expected_emitter_address is not None else None
        )
        self.replay_protection = replay_protection
        self.resolve_mode = resolve_mode

    def __call__(self, ctx, instruction: Instruction) -> None:
        prefix = instruction.data[:8]
        if prefix == RESOLVER_EXECUTE_VAA_V1:
            self._resolve(ctx, instruction)
        elif prefix == VERIFY_VAA:
            self._verify_vaa(ctx, instruction)
        else:
            raise ProgramError("unknown instruction")

    # -- resolve_execute_vaa_v1 -------------------------------------------

    def _resolve(self, ctx, instruction: Instruction) -> None:
        body = decode_request(instruction.data)
        if body is None:
            raise ProgramError("malformed resolve request")

        if self.resolve_mode == RESOLVE_GARBAGE:
            ctx.set_return_data(b"\xff\x00")
            return
        if self.resolve_mode == RESOLVE_NEVER:
            round_label = f"never:{len(instruction.accounts)}"
            ctx.set_return_data(encode_missing([Pubkey.from_label(round_label)]))
            return
        if not instruction.accounts:
            ctx.set_return_data(encode_missing([RESOLVER_PUBKEY_GUARDIAN_SET]))
            return

        guardian_set = instruction.accounts[0].pubkey
        signatures = RESOLVER_PUBKEY_SHIM_VAA_SIGS
        if self.resolve_mode == RESOLVE_WITHOUT_SHIM:
            signatures = guardian_set
        ix = build_verify_vaa_ix(ctx.program_id, RESOLVER_PUBKEY_PAYER, guardian_set, signatures, body)
        ctx.set_return_data(encode_resolved([[ix]]))

    # -- verify_vaa -------------------------------------------------------

    def _verify_vaa(self, ctx, instruction: Instruction) -> None:
        if len(instruction.accounts) < 5:
            raise ProgramError("verify_vaa needs 5 accounts")
        payer, guardian_set, signatures, marker, counter = (m.pubkey for m in instruction.accounts[:5])
        if len(instruction.data) < 12:
            raise ProgramError("verify_vaa data too short")
        (length,) = struct.unpack_from("<I", instruction.data, 8)
        raw = instruction.data[12:12 + length]
        if len(raw) != length:
            raise ProgramError("verify_vaa body truncated")
        try:
            body = decode_body(raw)
        except ValueError as e:
            raise ProgramError(str(e)) from e
        digest = attestation_digest(raw)

        if self.expected_emitter_chain is not None and body.emitter_chain != self.expected_emitter_chain:
            raise ProgramError(f"unexpected emitter chain {body.emitter_chain}")
        if self.expected_emitter_address is not None and body.emitter_address != self.expected_emitter_address:
            raise ProgramError("unexpected emitter address")

        if self.verify == VERIFY_SHIM:
            ctx.invoke(build_verify_hash_ix(guardian_set, signatures, digest))
        elif self.verify == VERIFY_LENIENT:
            self._lenient_verify(ctx, guardian_set, signatures, digest)

        if self.replay_protection:
            seeds = [b"replay", digest]
            if marker != Pubkey.derive(seeds, ctx.program_id):
                raise ProgramError("wrong replay marker account")
            ctx.create_account(marker, b"\x01", owner=ctx.program_id, funder=payer, seeds=seeds)

        self._bump_counter(ctx, counter, payer, body.sequence)
        ctx.log(f"Consumed VAA sequence {body.sequence}")

    def _lenient_verify(self, ctx, guardian_set: Pubkey, signatures: Pubkey, digest: bytes) -> None:
        # Checks every signature it was given but never counts them against quorum.
        guardian_account = ctx.get_account(guardian_set)
        record_account = ctx.get_account(signatures)
        if guardian_account is None or record_account is None:
            raise ProgramError("missing guardian set or signature record")
        try:
            keys = GuardianSetData.parse(guardian_account.data).keys
            record = SignatureRecordData.parse(record_account.data)
        except ValueError as e:
            raise ProgramError(str(e)) from e
        if not record.signatures:
            raise ProgramError("no signatures")
        for sig in record.signatures:
            if sig.guardian_index >= len(keys):
                raise ProgramError("guardian index out of range")
            try:
                VerifyKey(keys[sig.guardian_index]).verify(digest, sig.signature)
            except BadSignatureError as e:
                raise ProgramError(f"bad signature from guardian {sig.guardian_index}") from e

    def _bump_counter(self, ctx, counter: Pubkey, payer: Pubkey, sequence: int) -> None:
        seeds = [b"counter"]
        if counter != Pubkey.derive(seeds, ctx.program_id):
            raise ProgramError("wrong counter account")
        account = ctx.get_account(counter)
        if account is None:
            ctx.create_account(counter, COUNTER_LAYOUT.pack(1, sequence),
                               owner=ctx.program_id, funder=payer, seeds=seeds)
            return
        count, _ = COUNTER_LAYOUT.unpack(account.data)
        ctx.set_account_data(counter, COUNTER_LAYOUT.pack(count + 1, sequence))

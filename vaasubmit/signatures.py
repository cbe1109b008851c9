"""
vaasubmit Signature Lifecycle

Guardian signatures travel to target programs through a transient record
hosted by the verify shim. This module posts that record, guarantees it is
closed again, and orchestrates the full broadcast:

    resolve -> post_signatures -> execute -> close_signatures

The record never outlives the bracket that created it. Close runs on every
exit path. When close fails while another error is already propagating, the
original error wins: the close failure is logged, attached to it as
`cleanup_error`, and the original error is re-raised.

Usage:
    manager = SignatureLifecycleManager(conn, payer)
    result = manager.broadcast(program_id, signed)

    with manager.posted(guardian_set_index, signed.signature_bytes()) as record:
        ...
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Union

from . import config
from .connection import ExecutionConnection
from .errors import ExecutionConnectionError, SignatureLifecycleError, UnsupportedPlan
from .executor import execute_instruction_groups
from .logging_config import audit_log, set_correlation_id
from .protocol import RESOLVER_PUBKEY_SHIM_VAA_SIGS
from .resolver import ResolvedExecutionPlan, resolve_execute_vaa_v1
from .shim import (
    CORE_BRIDGE_PROGRAM_ID,
    VERIFY_VAA_SHIM_PROGRAM_ID,
    build_close_signatures_ix,
    build_post_signatures_ix,
    guardian_set_address,
)
from .signing import GuardianSignature, SignedAttestation
from .transaction import Keypair, Pubkey, Receipt, Transaction

logger = logging.getLogger(__name__)

SignatureInput = Union[bytes, GuardianSignature]


def _wire(signature: SignatureInput) -> bytes:
    if isinstance(signature, GuardianSignature):
        return signature.to_bytes()
    return bytes(signature)


def post_signatures(
    connection: ExecutionConnection,
    payer: Keypair,
    guardian_set_index: int,
    signatures: Sequence[SignatureInput],
    shim_program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
) -> Pubkey:
    """
    Allocate a signature record funded by `payer`.

    Returns:
        Address of the new record

    Raises:
        SignatureLifecycleError: the post transaction failed
    """
    record = Keypair()
    try:
        ix = build_post_signatures_ix(
            payer.pubkey, record.pubkey, guardian_set_index,
            [_wire(s) for s in signatures], shim_program_id,
        )
        blockhash = connection.get_latest_blockhash()
        tx = Transaction.new_signed_with_payer([ix], payer, [record], blockhash)
        connection.send_and_confirm(tx)
    except (ExecutionConnectionError, ValueError) as e:
        raise SignatureLifecycleError("post_signatures", e) from e

    audit_log.signatures_posted(str(record.pubkey), guardian_set_index, len(signatures))
    return record.pubkey


def close_signatures(
    connection: ExecutionConnection,
    payer: Keypair,
    record: Pubkey,
    rent_recipient: Optional[Pubkey] = None,
    shim_program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
) -> None:
    """
    Delete a signature record and refund its rent (to `payer` by default).

    Raises:
        SignatureLifecycleError: the close transaction failed
    """
    recipient = rent_recipient or payer.pubkey
    ix = build_close_signatures_ix(record, payer.pubkey, recipient, shim_program_id)
    try:
        blockhash = connection.get_latest_blockhash()
        tx = Transaction.new_signed_with_payer([ix], payer, [], blockhash)
        connection.send_and_confirm(tx)
    except ExecutionConnectionError as e:
        raise SignatureLifecycleError("close_signatures", e, record) from e

    audit_log.signatures_closed(str(record), str(recipient))


@dataclass
class BroadcastResult:
    """Outcome of a successful broadcast."""
    receipts: List[Receipt]
    plan: ResolvedExecutionPlan
    signatures_address: Pubkey

    @property
    def signatures(self) -> List[str]:
        return [r.signature_hex for r in self.receipts]


class SignatureLifecycleManager:
    """Posts, brackets and closes signature records for one payer."""

    def __init__(
        self,
        connection: ExecutionConnection,
        payer: Keypair,
        shim_program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
        core_bridge: Pubkey = CORE_BRIDGE_PROGRAM_ID,
    ):
        self.connection = connection
        self.payer = payer
        self.shim_program_id = shim_program_id
        self.core_bridge = core_bridge

    def post_signatures(self, guardian_set_index: int, signatures: Sequence[SignatureInput]) -> Pubkey:
        return post_signatures(
            self.connection, self.payer, guardian_set_index, signatures, self.shim_program_id
        )

    def close_signatures(self, record: Pubkey, rent_recipient: Optional[Pubkey] = None) -> None:
        close_signatures(self.connection, self.payer, record, rent_recipient, self.shim_program_id)

    @contextmanager
    def posted(
        self,
        guardian_set_index: int,
        signatures: Sequence[SignatureInput],
        rent_recipient: Optional[Pubkey] = None,
    ) -> Iterator[Pubkey]:
        """
        Post a record for the duration of a with-block.

        A close failure after a clean exit raises SignatureLifecycleError.
        """
        record = self.post_signatures(guardian_set_index, signatures)
        try:
            yield record
        except BaseException as primary:
            try:
                self.close_signatures(record, rent_recipient)
            except SignatureLifecycleError as cleanup:
                audit_log.cleanup_failed(str(record), str(cleanup), primary_error=str(primary))
                primary.cleanup_error = cleanup
            raise
        self.close_signatures(record, rent_recipient)

    def broadcast(
        self,
        program_id: Pubkey,
        signed: SignedAttestation,
        guardian_set_index: Optional[int] = None,
        guardian_set: Optional[Pubkey] = None,
        max_iterations: int = config.MAX_RESOLVER_ITERATIONS,
    ) -> BroadcastResult:
        """
        Deliver a signed VAA to a program implementing resolve_execute_vaa_v1.

        Args:
            program_id: Target program
            signed: Body and guardian signatures
            guardian_set_index: Defaults to the index recorded in `signed`
            guardian_set: Guardian set account; derived from the index if omitted
            max_iterations: Resolver round limit

        Raises:
            ResolutionExhausted, ResolutionProtocolError: resolution failed
                (nothing was posted)
            UnsupportedPlan: the plan never consumes the signature record
            SignatureLifecycleError: post failed, or close failed after a
                successful execution
            ExecutionFailure: a group failed (the record is still closed)
        """
        set_correlation_id()
        if guardian_set_index is None:
            guardian_set_index = signed.guardian_set_index
        if guardian_set is None:
            guardian_set = guardian_set_address(guardian_set_index, self.core_bridge)

        logger.info("Resolving accounts for %s", program_id)
        plan = resolve_execute_vaa_v1(
            self.connection, program_id, self.payer, signed.body.encode(),
            guardian_set, max_iterations,
        )

        # TODO: support programs that verify VAAs without the shim record
        if not plan.references(RESOLVER_PUBKEY_SHIM_VAA_SIGS):
            raise UnsupportedPlan(
                "Program does not use the verify VAA shim (no RESOLVER_PUBKEY_SHIM_VAA_SIGS "
                "in resolved instructions)"
            )

        with self.posted(guardian_set_index, signed.signature_bytes()) as record:
            receipts = execute_instruction_groups(
                self.connection, self.payer, plan, record, guardian_set
            )
        return BroadcastResult(receipts, plan, record)


def broadcast_vaa(
    connection: ExecutionConnection,
    payer: Keypair,
    program_id: Pubkey,
    signed: SignedAttestation,
    guardian_set_index: Optional[int] = None,
    guardian_set: Optional[Pubkey] = None,
    max_iterations: int = config.MAX_RESOLVER_ITERATIONS,
) -> BroadcastResult:
    """One-shot form of SignatureLifecycleManager.broadcast."""
    manager = SignatureLifecycleManager(connection, payer)
    return manager.broadcast(program_id, signed, guardian_set_index, guardian_set, max_iterations)

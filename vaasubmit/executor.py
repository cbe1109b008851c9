"""
vaasubmit Instruction Executor

Submits a resolved plan one group per transaction, in plan order. Execution
is fail-fast: the first group that fails stops the run, later groups are
never attempted, and the receipts already collected travel with the error.

Placeholder substitution at execution time:
    RESOLVER_PUBKEY_PAYER          -> payer
    RESOLVER_PUBKEY_SHIM_VAA_SIGS  -> posted signature record
    RESOLVER_PUBKEY_GUARDIAN_SET   -> guardian set account
    RESOLVER_PUBKEY_KEYPAIRS[i]    -> fresh keypair, shared by every group
                                      that names it and co-signing those groups
"""

import logging
from typing import Dict, List, Sequence

from .connection import ExecutionConnection
from .errors import ExecutionConnectionError, ExecutionFailure, MissingSigner
from .logging_config import audit_log
from .protocol import (
    RESOLVER_PUBKEY_GUARDIAN_SET,
    RESOLVER_PUBKEY_KEYPAIRS,
    RESOLVER_PUBKEY_PAYER,
    RESOLVER_PUBKEY_SHIM_VAA_SIGS,
    InstructionGroup,
    SerializableInstruction,
)
from .resolver import ResolvedExecutionPlan
from .transaction import Instruction, Keypair, Pubkey, Receipt, Transaction

logger = logging.getLogger(__name__)


class InstructionExecutor:
    """Executes the groups of one plan against one connection."""

    def __init__(
        self,
        connection: ExecutionConnection,
        payer: Keypair,
        signatures_address: Pubkey,
        guardian_set: Pubkey,
    ):
        self.connection = connection
        self.payer = payer
        self.signatures_address = signatures_address
        self.guardian_set = guardian_set
        self.generated: Dict[Pubkey, Keypair] = {}

    def _discover_keypairs(self, groups: Sequence[InstructionGroup]) -> None:
        self.generated = {
            placeholder: Keypair()
            for placeholder in RESOLVER_PUBKEY_KEYPAIRS
            if any(group.references(placeholder) for group in groups)
        }

    def substitute(self, pubkey: Pubkey) -> Pubkey:
        if pubkey == RESOLVER_PUBKEY_PAYER:
            return self.payer.pubkey
        if pubkey == RESOLVER_PUBKEY_SHIM_VAA_SIGS:
            return self.signatures_address
        if pubkey == RESOLVER_PUBKEY_GUARDIAN_SET:
            return self.guardian_set
        keypair = self.generated.get(pubkey)
        return keypair.pubkey if keypair is not None else pubkey

    def convert(self, ix: SerializableInstruction) -> Instruction:
        accounts = [meta.to_account_meta(self.substitute(meta.pubkey)) for meta in ix.accounts]
        return Instruction(ix.program_id, accounts, bytes(ix.data))

    def build_transaction(self, group: InstructionGroup) -> Transaction:
        instructions = [self.convert(ix) for ix in group.instructions]
        signers = [kp for placeholder, kp in self.generated.items() if group.references(placeholder)]
        blockhash = self.connection.get_latest_blockhash()
        return Transaction.new_signed_with_payer(instructions, self.payer, signers, blockhash)

    def execute(self, plan: ResolvedExecutionPlan) -> List[Receipt]:
        """
        Submit every group in order.

        Returns:
            One receipt per group

        Raises:
            ExecutionFailure: a group failed; carries its index, the cause
                and the receipts of the groups committed before it
        """
        self._discover_keypairs(plan.groups)
        receipts: List[Receipt] = []

        for index, group in enumerate(plan.groups):
            try:
                receipt = self.connection.send_and_confirm(self.build_transaction(group))
            except (ExecutionConnectionError, MissingSigner) as e:
                audit_log.group_failed(index, str(e))
                raise ExecutionFailure(index, e, receipts) from e
            audit_log.group_executed(index, receipt.signature_hex)
            receipts.append(receipt)

        logger.debug("Executed %d instruction groups", len(receipts))
        return receipts


def execute_instruction_groups(
    connection: ExecutionConnection,
    payer: Keypair,
    plan: ResolvedExecutionPlan,
    signatures_address: Pubkey,
    guardian_set: Pubkey,
) -> List[Receipt]:
    """Execute a plan; see InstructionExecutor.execute."""
    return InstructionExecutor(connection, payer, signatures_address, guardian_set).execute(plan)

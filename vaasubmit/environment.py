"""
In-Process Execution Environment

A deterministic, single-process stand-in for a live network. Programs are
plain Python callables; each transaction runs against a working copy of the
account map and is committed only if every instruction succeeds.

LocalExecutionEnvironment implements ExecutionConnection for the resolver,
executor and lifecycle manager, and SnapshotCapable for the verification
oracle: snapshot() returns an independent copy whose mutations never reach
the original.

Programs must be stateless (all state lives in accounts) because snapshots
share program objects.

Usage:
    env = LocalExecutionEnvironment()
    env.airdrop(payer.pubkey, 10_000_000_000)
    guardian_set = env.setup_guardians(guardians, index=0)
    env.add_program(MY_PROGRAM_ID, MyProgram())
"""

import struct
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set

from .connection import SnapshotConnection
from .errors import ProgramError, TransactionError
from .hashing import sha256_bytes
from .shim import (
    CORE_BRIDGE_PROGRAM_ID,
    VERIFY_VAA_SHIM_PROGRAM_ID,
    VerifyVaaShimProgram,
    build_guardian_set_data,
    guardian_set_address,
)
from .signing import GuardianSet
from .transaction import (
    Account,
    Blockhash,
    Instruction,
    Pubkey,
    Receipt,
    Transaction,
)

Program = Callable[["InvocationContext", Instruction], None]

BPF_LOADER_ID = Pubkey.from_label("program:loader")
MAX_CPI_DEPTH = 4
MAX_RECENT_BLOCKHASHES = 150


def minimum_balance(data_len: int) -> int:
    """Lamports needed for an account of `data_len` bytes to be rent exempt."""
    return (128 + data_len) * 6960


@dataclass
class _TransactionState:
    accounts: Dict[Pubkey, Account]
    signers: Set[Pubkey]
    logs: List[str] = field(default_factory=list)
    return_data: Optional[bytes] = None


class InvocationContext:
    """
    What a program sees while processing one instruction.

    Account access is limited to the accounts the instruction references;
    writes additionally require the writable flag and program ownership.
    """

    def __init__(self, env: "LocalExecutionEnvironment", tx: _TransactionState,
                 instruction: Instruction, signers: Set[Pubkey], depth: int = 0):
        self._env = env
        self._tx = tx
        self._signers = signers
        self._depth = depth
        self.instruction = instruction
        self.program_id = instruction.program_id
        self._metas = {}
        for meta in instruction.accounts:
            prev = self._metas.get(meta.pubkey)
            if prev is None or (meta.is_writable and not prev.is_writable):
                self._metas[meta.pubkey] = meta

    @property
    def accounts(self):
        return self.instruction.accounts

    def _require(self, pubkey: Pubkey, writable: bool = False):
        meta = self._metas.get(pubkey)
        if meta is None:
            raise ProgramError(f"account {pubkey} not provided to instruction")
        if writable and not meta.is_writable:
            raise ProgramError(f"account {pubkey} is not writable")
        return meta

    def is_signer(self, pubkey: Pubkey) -> bool:
        meta = self._metas.get(pubkey)
        return meta is not None and meta.is_signer and pubkey in self._signers

    def get_account(self, pubkey: Pubkey) -> Optional[Account]:
        self._require(pubkey)
        return self._tx.accounts.get(pubkey)

    def set_account_data(self, pubkey: Pubkey, data: bytes) -> None:
        """Overwrite the data of an account owned by the running program."""
        self._require(pubkey, writable=True)
        account = self._tx.accounts.get(pubkey)
        if account is None or account.owner != self.program_id:
            raise ProgramError(f"program does not own {pubkey}")
        self._tx.accounts[pubkey] = replace(account, data=bytes(data))

    def create_account(
        self,
        pubkey: Pubkey,
        data: bytes,
        owner: Pubkey,
        funder: Pubkey,
        seeds: Optional[Sequence[bytes]] = None,
    ) -> None:
        """
        Allocate a rent-exempt account funded by `funder`.

        The new address must either sign the transaction or be derived from
        `seeds` and the running program.
        """
        self._require(pubkey, writable=True)
        self._require(funder, writable=True)
        if not self.is_signer(funder):
            raise ProgramError("funder must sign")
        if seeds is not None:
            if Pubkey.derive(seeds, self.program_id) != pubkey:
                raise ProgramError("seeds do not derive the requested address")
        elif not self.is_signer(pubkey):
            raise ProgramError("new account must sign or be program-derived")
        if pubkey in self._tx.accounts:
            raise ProgramError(f"account {pubkey} already in use")

        lamports = minimum_balance(len(data))
        payer = self._tx.accounts.get(funder)
        if payer is None or payer.lamports < lamports:
            raise ProgramError("insufficient funds for rent")
        self._tx.accounts[funder] = replace(payer, lamports=payer.lamports - lamports)
        self._tx.accounts[pubkey] = Account(lamports=lamports, data=bytes(data), owner=owner)

    def close_account(self, pubkey: Pubkey, recipient: Pubkey) -> None:
        """Delete an account owned by the running program, refunding its lamports."""
        self._require(pubkey, writable=True)
        self._require(recipient, writable=True)
        account = self._tx.accounts.get(pubkey)
        if account is None or account.owner != self.program_id:
            raise ProgramError(f"program does not own {pubkey}")
        target = self._tx.accounts.get(recipient) or Account(lamports=0)
        self._tx.accounts[recipient] = replace(target, lamports=target.lamports + account.lamports)
        del self._tx.accounts[pubkey]

    def invoke(self, instruction: Instruction) -> None:
        """Cross-program invocation with the caller's privileges."""
        if self._depth + 1 > MAX_CPI_DEPTH:
            raise ProgramError("cross-program invocation too deep")
        for meta in instruction.accounts:
            caller_meta = self._require(meta.pubkey, writable=meta.is_writable)
            if meta.is_signer and not (caller_meta.is_signer and meta.pubkey in self._signers):
                raise ProgramError(f"signer privilege escalated for {meta.pubkey}")
        self._env._run_instruction(self._tx, instruction, self._signers, self._depth + 1)

    def set_return_data(self, data: bytes) -> None:
        self._tx.return_data = bytes(data)

    def log(self, message: str) -> None:
        self._tx.logs.append(f"Program {str(self.program_id)[:8]}: {message}")


class LocalExecutionEnvironment(SnapshotConnection):
    """Deterministic in-process execution environment."""

    def __init__(self):
        self._accounts: Dict[Pubkey, Account] = {}
        self._programs: Dict[Pubkey, Program] = {}
        self._processed: Set[bytes] = set()
        self._slot = 0
        self._recent: Deque[Blockhash] = deque([self._blockhash_for(0)], maxlen=MAX_RECENT_BLOCKHASHES)
        self.committed_transactions = 0

    # -- setup -------------------------------------------------------------

    def add_program(self, program_id: Pubkey, program: Program) -> None:
        self._programs[program_id] = program
        self._accounts[program_id] = Account(lamports=1, owner=BPF_LOADER_ID, executable=True)

    def set_account(self, pubkey: Pubkey, account: Account) -> None:
        self._accounts[pubkey] = account

    def airdrop(self, pubkey: Pubkey, lamports: int) -> None:
        account = self._accounts.get(pubkey) or Account(lamports=0)
        self._accounts[pubkey] = replace(account, lamports=account.lamports + lamports)

    def balance(self, pubkey: Pubkey) -> int:
        account = self._accounts.get(pubkey)
        return account.lamports if account else 0

    def setup_guardians(self, guardians: GuardianSet, index: int = 0) -> Pubkey:
        """
        Install the verify shim and a guardian set account.

        Returns:
            The guardian set account address
        """
        if VERIFY_VAA_SHIM_PROGRAM_ID not in self._programs:
            self.add_program(VERIFY_VAA_SHIM_PROGRAM_ID, VerifyVaaShimProgram())
        address = guardian_set_address(index)
        data = build_guardian_set_data(guardians.verify_keys(), index)
        self._accounts[address] = Account(
            lamports=minimum_balance(len(data)), data=data, owner=CORE_BRIDGE_PROGRAM_ID
        )
        return address

    # -- ExecutionConnection -----------------------------------------------

    def get_latest_blockhash(self) -> Blockhash:
        return self._recent[-1]

    def simulate(self, tx: Transaction) -> Optional[bytes]:
        state = self._execute(tx, check_blockhash=False)
        return state.return_data or None

    def send_and_confirm(self, tx: Transaction) -> Receipt:
        if tx.signature in self._processed:
            raise TransactionError("AlreadyProcessed: transaction has already been processed")
        state = self._execute(tx, check_blockhash=True)
        self._accounts = state.accounts
        self._processed.add(tx.signature)
        self.committed_transactions += 1
        self._advance_slot()
        return Receipt(signature=tx.signature, logs=state.logs, return_data=state.return_data)

    def get_account(self, address: Pubkey) -> Optional[Account]:
        return self._accounts.get(address)

    # -- SnapshotCapable ---------------------------------------------------

    def snapshot(self) -> "LocalExecutionEnvironment":
        copy = LocalExecutionEnvironment.__new__(LocalExecutionEnvironment)
        copy._accounts = dict(self._accounts)
        copy._programs = dict(self._programs)
        copy._processed = set(self._processed)
        copy._slot = self._slot
        copy._recent = deque(self._recent, maxlen=MAX_RECENT_BLOCKHASHES)
        copy.committed_transactions = self.committed_transactions
        return copy

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _blockhash_for(slot: int) -> Blockhash:
        return sha256_bytes(b"blockhash" + struct.pack("<Q", slot))

    def _advance_slot(self) -> None:
        self._slot += 1
        self._recent.append(self._blockhash_for(self._slot))

    def _execute(self, tx: Transaction, check_blockhash: bool) -> _TransactionState:
        if not tx.verify_signatures():
            raise TransactionError("SignatureFailure: transaction signature verification failed")
        if check_blockhash and tx.blockhash not in self._recent:
            raise TransactionError("BlockhashNotFound")
        payer = self._accounts.get(tx.payer)
        if payer is None or payer.lamports <= 0:
            raise TransactionError("AccountNotFound: fee payer has no funds")

        state = _TransactionState(accounts=dict(self._accounts), signers=set(tx.signatures))
        for index, instruction in enumerate(tx.instructions):
            try:
                self._run_instruction(state, instruction, state.signers, depth=0)
            except ProgramError as e:
                self._fail_instruction(state, index, str(e), e)
            except Exception as e:
                self._fail_instruction(state, index, f"program panicked: {type(e).__name__}: {e}", e)
        return state

    @staticmethod
    def _fail_instruction(state: _TransactionState, index: int, reason: str, cause: Exception) -> None:
        state.logs.append(f"Instruction {index} failed: {reason}")
        raise TransactionError(f"Instruction {index} failed: {reason}", state.logs) from cause

    def _run_instruction(self, state: _TransactionState, instruction: Instruction,
                         signers: Set[Pubkey], depth: int) -> None:
        program = self._programs.get(instruction.program_id)
        if program is None:
            raise ProgramError(f"program {instruction.program_id} not found")
        ctx = InvocationContext(self, state, instruction, signers, depth)
        program(ctx, instruction)

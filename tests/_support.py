"""Shared fixtures for the vaasubmit test suites."""

from typing import Dict, List, Optional, Sequence

from vaasubmit.connection import ExecutionConnection
from vaasubmit.environment import LocalExecutionEnvironment
from vaasubmit.errors import TransactionError
from vaasubmit.example_programs import VaaVerifierProgram
from vaasubmit.signing import GuardianSet
from vaasubmit.transaction import Account, Keypair, Pubkey, Receipt, Transaction
from vaasubmit.vaa import AttestationBody, emitter_address_from_20

EMITTER_CHAIN = 2
EMITTER = emitter_address_from_20(bytes([0xAB] * 20))
PROGRAM_ID = Pubkey.from_label("test:vaa_verifier")
LAMPORTS = 10_000_000_000


def make_body(sequence: int = 42, payload: bytes = b"hello", **kwargs) -> AttestationBody:
    return AttestationBody(
        emitter_chain=kwargs.pop("emitter_chain", EMITTER_CHAIN),
        emitter_address=kwargs.pop("emitter_address", EMITTER),
        sequence=sequence,
        payload=payload,
        **kwargs
    )


def secure_program(**overrides) -> VaaVerifierProgram:
    options = dict(
        verify="shim",
        expected_emitter_chain=EMITTER_CHAIN,
        expected_emitter_address=EMITTER,
        replay_protection=True,
    )
    options.update(overrides)
    return VaaVerifierProgram(**options)


def make_env(guardians: GuardianSet, program: Optional[VaaVerifierProgram] = None, index: int = 0):
    """Environment with the shim, a guardian set, a funded payer and the target program."""
    env = LocalExecutionEnvironment()
    guardian_set = env.setup_guardians(guardians, index=index)
    env.add_program(PROGRAM_ID, program or secure_program())
    payer = Keypair()
    env.airdrop(payer.pubkey, LAMPORTS)
    return env, payer, guardian_set


class ScriptedConnection(ExecutionConnection):
    """
    Connection double that replays canned simulate results.

    `responses` are returned by successive simulate() calls (the last one
    repeats). `fail_on_send` lists send indices that raise TransactionError.
    """

    def __init__(
        self,
        responses: Sequence[Optional[bytes]] = (),
        accounts: Optional[Dict[Pubkey, Account]] = None,
        fail_on_send: Sequence[int] = (),
    ):
        self.responses = list(responses)
        self.accounts = dict(accounts or {})
        self.fail_on_send = set(fail_on_send)
        self.simulated: List[Transaction] = []
        self.sent: List[Transaction] = []
        self.account_reads: List[Pubkey] = []
        self._slot = 0

    def get_latest_blockhash(self) -> bytes:
        self._slot += 1
        return self._slot.to_bytes(32, "little")

    def simulate(self, tx: Transaction) -> Optional[bytes]:
        self.simulated.append(tx)
        index = min(len(self.simulated), len(self.responses)) - 1
        return self.responses[index]

    def send_and_confirm(self, tx: Transaction) -> Receipt:
        index = len(self.sent)
        self.sent.append(tx)
        if index in self.fail_on_send:
            raise TransactionError(f"send {index} rejected", ["scripted failure"])
        return Receipt(signature=tx.signature)

    def get_account(self, address: Pubkey) -> Optional[Account]:
        self.account_reads.append(address)
        return self.accounts.get(address)

"""
vaasubmit Account Resolver

Drives the resolve_execute_vaa_v1 negotiation with a target program. Each
round simulates a resolve request carrying the body and every account
gathered so far; the program either answers with the instruction groups to
execute or asks for more accounts.

Rounds are strictly sequential (round i+1 is built from round i's answer)
and bounded by max_iterations.

Placeholder substitution at resolve time:
    RESOLVER_PUBKEY_PAYER         -> payer
    RESOLVER_PUBKEY_GUARDIAN_SET  -> guardian set account
    everything else               -> unchanged (the executor handles
                                     the signature record and keypairs)
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import config
from .connection import ExecutionConnection
from .errors import ResolutionExhausted, ResolutionProtocolError
from .logging_config import audit_log
from .protocol import (
    RESOLVER_PUBKEY_GUARDIAN_SET,
    RESOLVER_PUBKEY_PAYER,
    InstructionGroup,
    Missing,
    Resolved,
    ResolverResponse,
    decode_response,
    encode_request,
)
from .transaction import Account, AccountMeta, Instruction, Keypair, Pubkey, Transaction

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes, Optional[int]], ResolverResponse]


@dataclass
class ResolvedExecutionPlan:
    """
    Ordered instruction groups returned by a target program.

    Groups run in order; later groups may depend on state written by
    earlier ones.
    """
    groups: List[InstructionGroup]
    iterations: int
    fetched_accounts: Dict[Pubkey, Optional[Account]] = field(default_factory=dict)

    def references(self, pubkey: Pubkey) -> bool:
        """True if any instruction in any group names `pubkey`."""
        return any(group.references(pubkey) for group in self.groups)

    def __len__(self) -> int:
        return len(self.groups)


class AccountResolver:
    """
    Iterative resolver bound to one target program.

    Usage:
        resolver = AccountResolver(conn, program_id, payer, guardian_set)
        plan = resolver.resolve(body.encode())
    """

    def __init__(
        self,
        connection: ExecutionConnection,
        program_id: Pubkey,
        payer: Keypair,
        guardian_set: Pubkey,
        max_iterations: int = config.MAX_RESOLVER_ITERATIONS,
        decoder: Decoder = decode_response,
    ):
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self.connection = connection
        self.program_id = program_id
        self.payer = payer
        self.guardian_set = guardian_set
        self.max_iterations = max_iterations
        self.decoder = decoder

    def substitute(self, pubkey: Pubkey) -> Pubkey:
        if pubkey == RESOLVER_PUBKEY_PAYER:
            return self.payer.pubkey
        if pubkey == RESOLVER_PUBKEY_GUARDIAN_SET:
            return self.guardian_set
        return pubkey

    def _request(self, body: bytes, accounts: List[AccountMeta]) -> Transaction:
        ix = Instruction(self.program_id, list(accounts), encode_request(body))
        blockhash = self.connection.get_latest_blockhash()
        return Transaction.new_signed_with_payer([ix], self.payer, [], blockhash)

    def resolve(self, body: bytes) -> ResolvedExecutionPlan:
        """
        Run the negotiation to completion.

        Raises:
            ResolutionProtocolError: a round returned no data, undecodable
                data, or an empty plan
            ResolutionExhausted: max_iterations rounds without a plan
            ExecutionConnectionError: the connection failed
        """
        remaining: List[AccountMeta] = []
        fetched: Dict[Pubkey, Optional[Account]] = {}
        program = str(self.program_id)

        for iteration in range(1, self.max_iterations + 1):
            return_data = self.connection.simulate(self._request(body, remaining))
            if return_data is None:
                raise ResolutionProtocolError("no return data from resolver", iteration)

            response = self.decoder(return_data, iteration)

            if isinstance(response, Resolved):
                if not response.groups:
                    raise ResolutionProtocolError("resolver returned an empty plan", iteration)
                audit_log.resolution_round(program, iteration, "resolved")
                audit_log.resolution_complete(program, iteration, len(response.groups))
                return ResolvedExecutionPlan(list(response.groups), iteration, fetched)

            if not isinstance(response, Missing):
                raise ResolutionProtocolError(
                    f"unexpected resolver response {type(response).__name__}", iteration
                )

            missing = [self.substitute(pubkey) for pubkey in response.accounts]
            audit_log.resolution_round(program, iteration, "missing", [str(p) for p in missing])
            for pubkey in missing:
                fetched[pubkey] = self.connection.get_account(pubkey)
                remaining.append(AccountMeta.readonly(pubkey))

        logger.warning("Resolver for %s did not converge in %d rounds", program, self.max_iterations)
        raise ResolutionExhausted(self.max_iterations, [meta.pubkey for meta in remaining])


def resolve_execute_vaa_v1(
    connection: ExecutionConnection,
    program_id: Pubkey,
    payer: Keypair,
    body: bytes,
    guardian_set: Pubkey,
    max_iterations: int = config.MAX_RESOLVER_ITERATIONS,
    decoder: Decoder = decode_response,
) -> ResolvedExecutionPlan:
    """Resolve the instruction groups `program_id` needs to process `body`."""
    resolver = AccountResolver(connection, program_id, payer, guardian_set, max_iterations, decoder)
    return resolver.resolve(body)

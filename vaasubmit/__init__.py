"""
vaasubmit: Generic VAA Submission and Verification Harness

Delivers quorum-signed cross-chain attestations (VAAs) to any target
program implementing the resolve_execute_vaa_v1 protocol, and proves by
induced failure that a target program enforces its signature, provenance
and replay checks.

Architecture:
- Attestation & signing: bodies, guardian sets, quorum signature sets
- ExecutionConnection: the four-operation contract every environment meets
- AccountResolver: iterative resolve_execute_vaa_v1 negotiation
- InstructionExecutor: sequential, fail-fast group submission
- SignatureLifecycleManager: bracketed signature records and broadcast
- VerificationOracle: snapshot-driven negative, positive and replay checks

Usage:
    from vaasubmit import (
        AttestationBody,
        GuardianSet,
        Keypair,
        LocalExecutionEnvironment,
        SignatureLifecycleManager,
        VerificationOracle,
        sign,
    )

    guardians = GuardianSet.generate(13, seed=12345)
    env = LocalExecutionEnvironment()
    guardian_set = env.setup_guardians(guardians, index=0)
    env.add_program(program_id, MyProgram())

    payer = Keypair()
    env.airdrop(payer.pubkey, 10_000_000_000)

    body = AttestationBody(emitter_chain=2, emitter_address=emitter, sequence=1, payload=b"hi")

    # Deliver it
    result = SignatureLifecycleManager(env, payer).broadcast(program_id, sign(body, guardians))

    # Or certify the program's defenses
    oracle = VerificationOracle(env, payer, guardians)
    report = oracle.run(body, callback)
    report.raise_for_defects()
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

# Errors
from .errors import (
    SubmitError,
    ExecutionConnectionError,
    TransactionError,
    ResolutionExhausted,
    ResolutionProtocolError,
    ExecutionFailure,
    UnsupportedPlan,
    SignatureLifecycleError,
    InvalidGuardianSubset,
    MissingSigner,
    SnapshotUnavailable,
    SecurityDefect,
    VerificationBypass,
    EmitterChainBypass,
    EmitterAddressBypass,
    ReplayProtectionMissing,
    MultipleDefects,
    ProgramError,
)

# Attestations and signing
from .vaa import (
    AttestationBody,
    ReplayPolicy,
    VerificationCheckSet,
    decode_body,
    emitter_address_from_20,
    emitter_address_from_32,
)
from .signing import (
    Guardian,
    GuardianSet,
    GuardianSignature,
    SignedAttestation,
    parse_signed_vaa,
    quorum,
    sign,
    sign_with,
    verify_signatures,
    verify_signed_attestation,
)

# Execution primitives and connections
from .transaction import (
    Account,
    AccountMeta,
    Instruction,
    Keypair,
    Pubkey,
    Receipt,
    Transaction,
)
from .connection import ExecutionConnection, SnapshotCapable, SnapshotConnection
from .environment import InvocationContext, LocalExecutionEnvironment

# Protocol
from .protocol import (
    RESOLVER_EXECUTE_VAA_V1,
    RESOLVER_PUBKEY_GUARDIAN_SET,
    RESOLVER_PUBKEY_KEYPAIRS,
    RESOLVER_PUBKEY_PAYER,
    RESOLVER_PUBKEY_SHIM_VAA_SIGS,
    InstructionGroup,
    SerializableAccountMeta,
    SerializableInstruction,
    decode_response,
)
from .shim import VERIFY_VAA_SHIM_PROGRAM_ID, CORE_BRIDGE_PROGRAM_ID, guardian_set_address

# Submission
from .resolver import AccountResolver, ResolvedExecutionPlan, resolve_execute_vaa_v1
from .executor import InstructionExecutor, execute_instruction_groups
from .signatures import (
    BroadcastResult,
    SignatureLifecycleManager,
    broadcast_vaa,
    close_signatures,
    post_signatures,
)

# Verification
from .oracle import VerificationOracle, VerificationReport, with_posted_signatures

# Logging
from .logging_config import audit_log, configure_logging

__all__ = [
    # Version
    "__version__",
    # Errors
    "SubmitError",
    "ExecutionConnectionError",
    "TransactionError",
    "ResolutionExhausted",
    "ResolutionProtocolError",
    "ExecutionFailure",
    "UnsupportedPlan",
    "SignatureLifecycleError",
    "InvalidGuardianSubset",
    "MissingSigner",
    "SnapshotUnavailable",
    "SecurityDefect",
    "VerificationBypass",
    "EmitterChainBypass",
    "EmitterAddressBypass",
    "ReplayProtectionMissing",
    "MultipleDefects",
    "ProgramError",
    # Attestations
    "AttestationBody",
    "ReplayPolicy",
    "VerificationCheckSet",
    "decode_body",
    "emitter_address_from_20",
    "emitter_address_from_32",
    "Guardian",
    "GuardianSet",
    "GuardianSignature",
    "SignedAttestation",
    "parse_signed_vaa",
    "quorum",
    "sign",
    "sign_with",
    "verify_signatures",
    "verify_signed_attestation",
    # Execution
    "Account",
    "AccountMeta",
    "Instruction",
    "Keypair",
    "Pubkey",
    "Receipt",
    "Transaction",
    "ExecutionConnection",
    "SnapshotCapable",
    "SnapshotConnection",
    "InvocationContext",
    "LocalExecutionEnvironment",
    # Protocol
    "RESOLVER_EXECUTE_VAA_V1",
    "RESOLVER_PUBKEY_GUARDIAN_SET",
    "RESOLVER_PUBKEY_KEYPAIRS",
    "RESOLVER_PUBKEY_PAYER",
    "RESOLVER_PUBKEY_SHIM_VAA_SIGS",
    "InstructionGroup",
    "SerializableAccountMeta",
    "SerializableInstruction",
    "decode_response",
    "VERIFY_VAA_SHIM_PROGRAM_ID",
    "CORE_BRIDGE_PROGRAM_ID",
    "guardian_set_address",
    # Submission
    "AccountResolver",
    "ResolvedExecutionPlan",
    "resolve_execute_vaa_v1",
    "InstructionExecutor",
    "execute_instruction_groups",
    "BroadcastResult",
    "SignatureLifecycleManager",
    "broadcast_vaa",
    "close_signatures",
    "post_signatures",
    # Verification
    "VerificationOracle",
    "VerificationReport",
    "with_posted_signatures",
    # Logging
    "audit_log",
    "configure_logging",
]

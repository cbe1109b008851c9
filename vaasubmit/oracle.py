"""
vaasubmit Verification Oracle

Certifies, by induced failure, that a target program enforces its security
checks. Each negative check runs the caller's callback against a disposable
snapshot with one input deliberately broken; the program must reject it.

    1. signature        corrupted signatures (same indices, bad bytes), and a
                        genuine but sub-quorum set when quorum > 1
    2. emitter_chain    body re-signed with emitter_chain + 1
    3. emitter_address  body re-signed with the last address byte flipped
    4. positive         correct signatures on the real environment
    5. replay           the same VAA again, on a snapshot taken after 4

Every enabled check runs; finding one defect never suppresses the others.
Only step 4 touches the real environment.

Callback contract:

    callback(connection, signatures_address, body_bytes) -> result

Returning normally means the program accepted the VAA. Raising any
exception means it rejected it.

Usage:
    oracle = VerificationOracle(env, payer, guardians)
    result = oracle.with_vaa(body, submit_verify_tx)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from . import config
from .connection import ExecutionConnection, SnapshotCapable
from .errors import (
    EmitterAddressBypass,
    EmitterChainBypass,
    MultipleDefects,
    ReplayProtectionMissing,
    SecurityDefect,
    SnapshotUnavailable,
    VerificationBypass,
)
from .logging_config import audit_log, set_correlation_id
from .shim import VERIFY_VAA_SHIM_PROGRAM_ID
from .signatures import SignatureInput, SignatureLifecycleManager, post_signatures
from .signing import GuardianSet, sign, sign_with
from .transaction import Keypair, Pubkey
from .vaa import AttestationBody, VerificationCheckSet

logger = logging.getLogger(__name__)

Callback = Callable[[ExecutionConnection, Pubkey, bytes], Any]

CHECK_SIGNATURE = "signature"
CHECK_EMITTER_CHAIN = "emitter_chain"
CHECK_EMITTER_ADDRESS = "emitter_address"
CHECK_POSITIVE = "positive"
CHECK_REPLAY = "replay"


@dataclass
class VerificationReport:
    """Everything one oracle run observed."""
    result: Any = None
    defects: List[SecurityDefect] = field(default_factory=list)
    checks_run: List[str] = field(default_factory=list)
    checks_skipped: List[str] = field(default_factory=list)
    positive_error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return not self.defects and self.positive_error is None

    def raise_for_defects(self) -> None:
        """
        Raise what the run found.

        Defects come first: a single defect is raised as itself, several as
        MultipleDefects. Otherwise a positive-step failure is re-raised.
        """
        if len(self.defects) == 1:
            raise self.defects[0]
        if self.defects:
            raise MultipleDefects(self.defects)
        if self.positive_error is not None:
            raise self.positive_error


def with_posted_signatures(
    connection: ExecutionConnection,
    payer: Keypair,
    guardian_set_index: int,
    signatures: Sequence[SignatureInput],
    callback: Callable[[ExecutionConnection, Pubkey], Any],
) -> Any:
    """Post a record, run `callback(connection, record)`, always close the record."""
    manager = SignatureLifecycleManager(connection, payer)
    with manager.posted(guardian_set_index, signatures) as record:
        return callback(connection, record)


class VerificationOracle:
    """
    Runs the negative, positive and replay checks against one environment.

    The connection must be SnapshotCapable; live network connections are
    rejected with SnapshotUnavailable.
    """

    def __init__(
        self,
        connection: ExecutionConnection,
        payer: Keypair,
        guardians: GuardianSet,
        guardian_set_index: int = config.GUARDIAN_SET_INDEX,
        shim_program_id: Pubkey = VERIFY_VAA_SHIM_PROGRAM_ID,
    ):
        if not isinstance(connection, SnapshotCapable):
            raise SnapshotUnavailable(
                f"{type(connection).__name__} cannot produce snapshots; "
                "the verification oracle needs an in-process environment"
            )
        self.connection = connection
        self.payer = payer
        self.guardians = guardians
        self.guardian_set_index = guardian_set_index
        self.shim_program_id = shim_program_id
        self.manager = SignatureLifecycleManager(connection, payer, shim_program_id)

    def _accepted(self, callback: Callback, body_bytes: bytes, signatures: Sequence[SignatureInput]) -> bool:
        """Run one probe on a fresh snapshot; True if the program accepted it."""
        sandbox = self.connection.snapshot()
        record = post_signatures(
            sandbox, self.payer, self.guardian_set_index, signatures, self.shim_program_id
        )
        try:
            callback(sandbox, record, body_bytes)
        except Exception as e:
            logger.debug("Probe rejected: %s", e)
            return False
        return True

    def _defect(self, report: VerificationReport, defect: SecurityDefect) -> None:
        report.defects.append(defect)
        audit_log.oracle_check(defect.check, "defect", defect.message)
        audit_log.security_defect(type(defect).__name__, check=defect.check)

    def _passed(self, check: str) -> None:
        audit_log.oracle_check(check, "rejected")

    def check_signatures(self, body: AttestationBody, callback: Callback, report: VerificationReport) -> None:
        signed = sign(body, self.guardians, self.guardian_set_index)
        body_bytes = body.encode()
        probes = [("corrupted", signed.corrupted().signatures)]
        if self.guardians.quorum > 1:
            short = sign_with(body, self.guardians, range(self.guardians.quorum - 1), self.guardian_set_index)
            probes.append(("sub-quorum", short.signatures))

        accepted = [name for name, sigs in probes if self._accepted(callback, body_bytes, sigs)]
        if accepted:
            self._defect(report, VerificationBypass(
                f"SECURITY: Program accepted a VAA with {' and '.join(accepted)} signatures. "
                "It is not verifying guardian signatures; call verify_hash before "
                "processing the VAA."
            ))
        else:
            self._passed(CHECK_SIGNATURE)

    def check_emitter_chain(self, body: AttestationBody, callback: Callback, report: VerificationReport) -> None:
        wrong = body.with_emitter_chain(body.emitter_chain + 1)
        signed = sign(wrong, self.guardians, self.guardian_set_index)
        if self._accepted(callback, wrong.encode(), signed.signatures):
            self._defect(report, EmitterChainBypass(
                "SECURITY: Program accepted a VAA with the wrong emitter chain. "
                "Validate emitter_chain before processing."
            ))
        else:
            self._passed(CHECK_EMITTER_CHAIN)

    def check_emitter_address(self, body: AttestationBody, callback: Callback, report: VerificationReport) -> None:
        address = bytearray(body.emitter_address)
        address[31] ^= 0xFF
        wrong = body.with_emitter_address(bytes(address))
        signed = sign(wrong, self.guardians, self.guardian_set_index)
        if self._accepted(callback, wrong.encode(), signed.signatures):
            self._defect(report, EmitterAddressBypass(
                "SECURITY: Program accepted a VAA with the wrong emitter address. "
                "Validate emitter_address before processing."
            ))
        else:
            self._passed(CHECK_EMITTER_ADDRESS)

    def check_replay(self, body: AttestationBody, callback: Callback, report: VerificationReport) -> None:
        signed = sign(body, self.guardians, self.guardian_set_index)
        if self._accepted(callback, body.encode(), signed.signatures):
            self._defect(report, ReplayProtectionMissing(
                "SECURITY: Program accepted the same VAA twice. "
                "Mark each VAA as consumed before processing it."
            ))
        else:
            self._passed(CHECK_REPLAY)

    def run(
        self,
        body: AttestationBody,
        callback: Callback,
        checks: Optional[VerificationCheckSet] = None,
    ) -> VerificationReport:
        """
        Run every enabled check and collect the findings.

        Args:
            body: The attestation to deliver
            callback: Submits the program's instruction; see module docstring
            checks: Overrides `body.checks`

        Returns:
            VerificationReport; nothing is raised for defects or for a
            failing positive step
        """
        checks = checks or body.checks
        set_correlation_id()
        report = VerificationReport()

        negative = [
            (CHECK_SIGNATURE, checks.signature, self.check_signatures),
            (CHECK_EMITTER_CHAIN, checks.emitter_chain, self.check_emitter_chain),
            (CHECK_EMITTER_ADDRESS, checks.emitter_address, self.check_emitter_address),
        ]
        for name, enabled, check in negative:
            if not enabled:
                report.checks_skipped.append(name)
                audit_log.oracle_check(name, "skipped", "disabled by check set")
                continue
            report.checks_run.append(name)
            check(body, callback, report)

        report.checks_run.append(CHECK_POSITIVE)
        signed = sign(body, self.guardians, self.guardian_set_index)
        try:
            with self.manager.posted(self.guardian_set_index, signed.signature_bytes()) as record:
                report.result = callback(self.connection, record, body.encode())
        except Exception as e:
            report.positive_error = e
            audit_log.oracle_check(CHECK_POSITIVE, "failed", str(e))
        else:
            audit_log.oracle_check(CHECK_POSITIVE, "accepted")

        if not checks.replay_enabled:
            report.checks_skipped.append(CHECK_REPLAY)
            audit_log.oracle_check(CHECK_REPLAY, "skipped", "replayable or disabled")
        elif report.positive_error is not None:
            report.checks_skipped.append(CHECK_REPLAY)
            audit_log.oracle_check(CHECK_REPLAY, "skipped", "positive execution failed")
        else:
            report.checks_run.append(CHECK_REPLAY)
            self.check_replay(body, callback, report)

        return report

    def with_vaa(
        self,
        body: AttestationBody,
        callback: Callback,
        checks: Optional[VerificationCheckSet] = None,
    ) -> Any:
        """
        Run all checks and return the positive result.

        Raises:
            SecurityDefect: one defect (or MultipleDefects)
            Exception: whatever the positive step raised
        """
        report = self.run(body, callback, checks)
        report.raise_for_defects()
        return report.result

    def with_vaa_unchecked(self, body: AttestationBody, callback: Callback) -> Any:
        """Positive path only, on the real environment. Prefer with_vaa."""
        signed = sign(body, self.guardians, self.guardian_set_index)
        with self.manager.posted(self.guardian_set_index, signed.signature_bytes()) as record:
            return callback(self.connection, record, body.encode())

    def with_posted_signatures(
        self,
        signatures: Sequence[SignatureInput],
        callback: Callable[[ExecutionConnection, Pubkey], Any],
    ) -> Any:
        return with_posted_signatures(
            self.connection, self.payer, self.guardian_set_index, signatures, callback
        )

"""
vaasubmit Error Taxonomy

Two families of exceptions live here:

- SubmitError and its subclasses describe infrastructure failures, such as
  a broken connection or a resolver that never converged.
- SecurityDefect and its subclasses are raised by the verification oracle.
  They mean the program under test is insecure, not that the harness
  malfunctioned, and do not share a base with SubmitError.
"""

from typing import Any, List, Optional, Sequence


class SubmitError(Exception):
    """Base class for infrastructure errors raised while submitting a VAA."""


class ExecutionConnectionError(SubmitError):
    """Opaque transport or execution failure raised by a connection."""


class TransactionError(ExecutionConnectionError):
    """A transaction was rejected by the execution environment."""

    def __init__(self, message: str, logs: Optional[List[str]] = None):
        self.logs = list(logs or [])
        super().__init__(message)


class ResolutionExhausted(SubmitError):
    """The resolver did not produce a plan within max_iterations rounds."""

    def __init__(self, iterations: int, remaining_accounts: Sequence[Any] = ()):
        self.iterations = iterations
        self.remaining_accounts = list(remaining_accounts)
        super().__init__(
            f"Resolver did not resolve after {iterations} iterations. "
            f"Remaining accounts: {[str(a) for a in self.remaining_accounts]}"
        )


class ResolutionProtocolError(SubmitError):
    """A resolver round returned data that does not decode under the protocol."""

    def __init__(self, reason: str, iteration: Optional[int] = None):
        self.reason = reason
        self.iteration = iteration
        where = f" on iteration {iteration}" if iteration is not None else ""
        super().__init__(f"Resolver protocol error{where}: {reason}")


class ExecutionFailure(SubmitError):
    """
    An instruction group failed to execute.

    Execution is fail-fast: later groups were never attempted. Receipts of
    the groups committed before the failure are kept in `receipts`.
    """

    def __init__(
        self,
        group_index: int,
        cause: BaseException,
        receipts: Optional[List[Any]] = None,
    ):
        self.group_index = group_index
        self.cause = cause
        self.receipts = list(receipts or [])
        super().__init__(f"Instruction group {group_index} failed: {cause}")


class UnsupportedPlan(SubmitError):
    """The resolved plan does not consume a posted signature record."""


class SignatureLifecycleError(SubmitError):
    """Posting or closing the guardian signature record failed."""

    def __init__(self, operation: str, cause: BaseException, address: Any = None):
        self.operation = operation
        self.cause = cause
        self.address = address
        target = f" ({address})" if address is not None else ""
        super().__init__(f"{operation} failed{target}: {cause}")


class InvalidGuardianSubset(SubmitError, ValueError):
    """A requested signer subset is out of range or contains duplicates."""

    def __init__(self, indices: Sequence[int], reason: str):
        self.indices = list(indices)
        self.reason = reason
        super().__init__(f"Invalid guardian subset {self.indices}: {reason}")


class MissingSigner(SubmitError, ValueError):
    """A transaction names a signer no available keypair can sign for."""

    def __init__(self, pubkey: Any):
        self.pubkey = pubkey
        super().__init__(f"Missing signer for {pubkey}")


class SnapshotUnavailable(SubmitError):
    """The connection cannot produce disposable snapshots of its state."""


# =============================================================================
# SECURITY DEFECTS (reported by the verification oracle)
# =============================================================================

class SecurityDefect(Exception):
    """The program under test accepted input it must reject."""

    check = "unknown"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class VerificationBypass(SecurityDefect):
    """The program accepted a VAA without a valid quorum of signatures."""

    check = "signature"


class EmitterChainBypass(SecurityDefect):
    """The program accepted a VAA from the wrong emitter chain."""

    check = "emitter_chain"


class EmitterAddressBypass(SecurityDefect):
    """The program accepted a VAA from the wrong emitter address."""

    check = "emitter_address"


class ReplayProtectionMissing(SecurityDefect):
    """The program accepted the same VAA twice."""

    check = "replay"


class MultipleDefects(SecurityDefect):
    """More than one defect was found in a single oracle run."""

    check = "multiple"

    def __init__(self, defects: Sequence[SecurityDefect]):
        self.defects = list(defects)
        names = ", ".join(type(d).__name__ for d in self.defects)
        super().__init__(f"{len(self.defects)} security defects detected: {names}")


class ProgramError(Exception):
    """A program running inside an execution environment rejected its input."""

"""
vaasubmit Execution Connection

The resolver, executor, lifecycle manager and oracle talk to an execution
environment only through ExecutionConnection. A live network client and an
in-process environment both implement it; nothing above this interface
special-cases either one.

Snapshots are a separate capability. Only environments that own their state
(the in-process one) can hand out independent copies, so the verification
oracle requires SnapshotCapable and is unavailable against live networks.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .transaction import Account, Blockhash, Pubkey, Receipt, Transaction


class ExecutionConnection(ABC):
    """
    Abstract interface to an execution environment.

    Implementations raise ExecutionConnectionError (or a subclass) for any
    transport or execution failure.
    """

    @abstractmethod
    def get_latest_blockhash(self) -> Blockhash:
        """Recent blockhash to sign transactions against."""
        pass

    @abstractmethod
    def simulate(self, tx: Transaction) -> Optional[bytes]:
        """
        Dry-run a transaction without committing it.

        Returns:
            The program return data, or None if there was none
        """
        pass

    @abstractmethod
    def send_and_confirm(self, tx: Transaction) -> Receipt:
        """Submit a transaction and block until it is committed or fails."""
        pass

    @abstractmethod
    def get_account(self, address: Pubkey) -> Optional[Account]:
        """Fetch an account, or None if it does not exist."""
        pass


class SnapshotCapable(ABC):
    """An environment that can produce disposable copies of its state."""

    @abstractmethod
    def snapshot(self) -> "SnapshotConnection":
        """
        Independent, mutable copy of the current state.

        Mutations of the copy never reach the original and vice versa.
        """
        pass


class SnapshotConnection(ExecutionConnection, SnapshotCapable):
    """Connection type accepted by the verification oracle."""

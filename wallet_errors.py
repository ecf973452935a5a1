"""
Error taxonomy for the Ark wallet core.

Every failure surfaced by a core operation is a WalletError carrying a
stable `kind` plus a human-readable message. The inbound surface maps the
kind to its response payload; nothing else needs to inspect the subclass.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    REMOTE_REJECTED = "remote_rejected"
    TIMELOCK_NOT_EXPIRED = "timelock_not_expired"
    ALREADY_SETTLED = "already_settled"
    STORAGE_INCONSISTENCY = "storage_inconsistency"


class WalletError(Exception):
    """Base class for all core failures."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "error": self.message}


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class WalletNotFound(WalletError):
    kind = ErrorKind.NOT_FOUND


class TransactionNotFound(WalletError):
    kind = ErrorKind.NOT_FOUND


class OutputNotFound(WalletError):
    kind = ErrorKind.NOT_FOUND


class DerivationExhausted(WalletError):
    """The key-derivation library cannot produce a next index."""

    kind = ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class InvalidDestination(WalletError):
    kind = ErrorKind.VALIDATION


class InvalidAmount(WalletError):
    kind = ErrorKind.VALIDATION


class InvalidPriority(WalletError):
    kind = ErrorKind.VALIDATION


class NoEligibleInputs(WalletError):
    kind = ErrorKind.VALIDATION


class InsufficientFunds(WalletError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


# ---------------------------------------------------------------------------
# Remote collaborators
# ---------------------------------------------------------------------------


class RemoteUnavailable(WalletError):
    """Collaborator timed out or was unreachable. Recoverable."""

    kind = ErrorKind.REMOTE_UNAVAILABLE


class IndexerUnavailable(RemoteUnavailable):
    pass


class CoordinatorUnavailable(RemoteUnavailable):
    pass


class RemoteRejected(WalletError):
    """Collaborator explicitly refused the request. Never retried."""

    kind = ErrorKind.REMOTE_REJECTED


class IndexerRejected(RemoteRejected):
    pass


class CoordinatorRejected(RemoteRejected):
    pass


class BroadcastFailed(WalletError):
    """
    Broadcast was rejected or hit a network error.

    The kind follows the cause. Callers must resubmit explicitly: the
    transaction may already have reached the network.
    """

    kind = ErrorKind.REMOTE_REJECTED


# ---------------------------------------------------------------------------
# Off-chain state
# ---------------------------------------------------------------------------


class TimelockNotExpired(WalletError):
    kind = ErrorKind.TIMELOCK_NOT_EXPIRED

    def __init__(self, message: str, blocks_remaining: int | None = None) -> None:
        super().__init__(message)
        self.blocks_remaining = blocks_remaining


class AlreadySettled(WalletError):
    kind = ErrorKind.ALREADY_SETTLED


class StorageInconsistency(WalletError):
    """The ledger's atomicity or transition invariant was violated. Fatal."""

    kind = ErrorKind.STORAGE_INCONSISTENCY


# Warning code attached to send results when the fee service was unreachable
# and the floor rate was used instead.
FEE_ESTIMATION_DEGRADED = "fee_estimation_degraded"

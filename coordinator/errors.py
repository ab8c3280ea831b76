"""
Coordinator error taxonomy
"""

from enum import Enum


class RejectionReason(Enum):
    """Why a single command produced no state change"""
    EMPTY_COMMAND = "empty command"
    STATE_INDEX_OVERFLOW = "state leaf index overflow"
    VOTE_OPTION_OVERFLOW = "vote option index overflow"
    DEACTIVATED = "deactivated"
    INACTIVE = "inactive"
    NONCE_ERROR = "nonce error"
    SIGNATURE_ERROR = "signature error"
    INSUFFICIENT_BALANCE = "insufficient balance"
    DUPLICATE_DEACTIVATION = "duplicate deactivation"
    NOT_DEACTIVATION = "not a deactivation command"


class CoordinatorError(Exception):
    """Base exception for coordinator operations"""
    pass


class CommandRejection(CoordinatorError):
    """A command failed validation; recorded as a no-op slot"""

    def __init__(self, reason: RejectionReason, slot: int = -1):
        super().__init__(reason.value)
        self.reason = reason
        self.slot = slot


class CommitmentMismatch(CoordinatorError):
    """Prior commitment cannot be reproduced from the supplied values"""
    pass


class PeriodError(CoordinatorError):
    """Operation not allowed in the current round period"""
    pass


class LedgerRejection(CoordinatorError):
    """Ledger refused a submission (batch number, hash or proof)"""

    def __init__(self, message: str, expected_batch: int = -1):
        super().__init__(message)
        self.expected_batch = expected_batch


class ReactivationError(CoordinatorError):
    """Reactivation cannot proceed with this key"""
    pass


class NullifierAlreadyUsed(ReactivationError):
    """Nullifier was already recorded by an earlier reactivation"""
    pass

"""Ledger collaborators: in-memory reference ledger and HTTP client."""

from .ledger import (
    BatchSubmission,
    HttpLedgerClient,
    InMemoryLedger,
    Ledger,
    LedgerError,
    LedgerState,
    LedgerUnavailable,
    genesis_deactivate_commitment,
)

__all__ = [
    'BatchSubmission',
    'HttpLedgerClient',
    'InMemoryLedger',
    'Ledger',
    'LedgerError',
    'LedgerState',
    'LedgerUnavailable',
    'genesis_deactivate_commitment',
]

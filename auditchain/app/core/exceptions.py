"""
Ledger error taxonomy.

Integrity violations are not exceptions: the verifier reports them as
structured IntegrityCheckResult values.
"""


class AuditLedgerError(Exception):
    """Base class for audit ledger failures."""
    pass


class EventValidationError(AuditLedgerError):
    """Raised when an AuditEvent is malformed. Nothing has been written."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class PersistenceError(AuditLedgerError):
    """Raised when a record could not be persisted after bounded retries."""
    pass


class SequenceConflictError(PersistenceError):
    """Raised when the store rejected an append because another writer took the slot."""
    pass


class ScoringFault(AuditLedgerError):
    """Scoring or hashing raised. These are pure functions, so this is a defect."""
    pass

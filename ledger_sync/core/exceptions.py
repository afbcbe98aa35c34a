"""
Exception classes for ledger-sync.
"""


class LedgerSyncError(Exception):
    """Base exception for all ledger-sync errors."""
    pass


class ConfigurationError(LedgerSyncError):
    """Raised when configuration is invalid or missing."""
    pass


class NotAuthenticatedError(LedgerSyncError):
    """Raised when no owner id or store handle is available."""
    pass


class SyncInProgressError(LedgerSyncError):
    """Raised when a pass is already running for the same owner."""
    pass


class LedgerError(LedgerSyncError):
    """Base exception for ledger (document store) errors."""

    def __init__(self, message: str, context: str = ""):
        super().__init__(message)
        self.context = context


class PermissionDeniedError(LedgerError):
    """Raised when the store rejects a query or write."""
    pass


class TransientIOError(LedgerError):
    """Raised on network failures or timeouts."""
    pass


class MissingIndexError(LedgerError):
    """Raised when a query needs a composite index that does not exist."""
    pass


class BatchCommitError(LedgerError):
    """Raised when a batch write fails."""
    pass


class FirestoreImportError(LedgerError):
    """Raised when the Firestore client library is not available."""
    pass


class RemindersError(LedgerSyncError):
    """Base exception for Reminders-related errors."""
    pass


class AuthorizationError(RemindersError):
    """Raised when EventKit authorization fails."""
    pass


class EventKitImportError(RemindersError):
    """Raised when EventKit/PyObjC dependencies are not available."""
    pass


class TriageError(LedgerSyncError):
    """Raised when the remote classifier call fails."""
    pass

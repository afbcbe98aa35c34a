"""
Core module for ledger-sync - contains domain models, configuration, and exceptions.
"""

from .models import (
    LedgerTask,
    DeviceItem,
    DeviceList,
    TaskContext,
    TaskStatus,
    SyncConfig,
    SyncResult,
)

from .exceptions import (
    LedgerSyncError,
    ConfigurationError,
    NotAuthenticatedError,
    LedgerError,
    PermissionDeniedError,
    TransientIOError,
    MissingIndexError,
    BatchCommitError,
    RemindersError,
    SyncInProgressError,
)

__all__ = [
    # Models
    'LedgerTask',
    'DeviceItem',
    'DeviceList',
    'TaskContext',
    'TaskStatus',
    'SyncConfig',
    'SyncResult',
    # Exceptions
    'LedgerSyncError',
    'ConfigurationError',
    'NotAuthenticatedError',
    'LedgerError',
    'PermissionDeniedError',
    'TransientIOError',
    'MissingIndexError',
    'BatchCommitError',
    'RemindersError',
    'SyncInProgressError',
]

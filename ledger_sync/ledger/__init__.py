"""Ledger (remote document store) integration."""

from .gateway import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    FirestoreLedgerGateway,
    LedgerDocument,
    LedgerGateway,
    WriteOp,
)
from .tasks import LedgerTaskManager, LedgerWriteBatch

__all__ = [
    'DELETE_FIELD',
    'SERVER_TIMESTAMP',
    'FirestoreLedgerGateway',
    'LedgerDocument',
    'LedgerGateway',
    'WriteOp',
    'LedgerTaskManager',
    'LedgerWriteBatch',
]

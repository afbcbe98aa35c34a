"""Sync module for ledger <-> device store reconciliation."""

from .codec import NoteCodec
from .context import ContextResolver
from .deduplicator import LedgerDeduplicator, DuplicateGroup, DeduplicationResults
from .engine import ReconciliationEngine, OwnerLocks
from .matcher import IdentityResolver, LedgerIndex
from .resolver import ConflictResolver
from .state import SyncStateStore
from .triage import TriageClassifier, TriageResult, Persona

__all__ = [
    'NoteCodec', 'ContextResolver', 'LedgerDeduplicator', 'DuplicateGroup', 'DeduplicationResults',
    'ReconciliationEngine', 'OwnerLocks', 'IdentityResolver', 'LedgerIndex', 'ConflictResolver',
    'SyncStateStore', 'TriageClassifier', 'TriageResult', 'Persona',
]

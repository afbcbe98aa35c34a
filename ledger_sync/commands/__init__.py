"""
Command implementations for ledger-sync.
"""

from .sync import SyncCommand
from .dedupe import DedupeCommand
from .classify import ClassifyCommand
from .status import StatusCommand

__all__ = [
    'SyncCommand',
    'DedupeCommand',
    'ClassifyCommand',
    'StatusCommand',
]

"""ledger-sync - reconcile a remote task ledger with Apple Reminders."""

__version__ = "0.1.0"

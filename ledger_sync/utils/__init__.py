"""Utility helpers for ledger-sync."""

"""Sync website access grants from the ledger into the configuration database."""

__version__ = "0.1.0"

"""Spendflow: approval routing and budget ledger engine for corporate spend."""

__version__ = "0.1.0"

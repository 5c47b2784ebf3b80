"""
Internal Transfers Ledger

Account balances and atomic fund transfers between accounts, with exact
Decimal arithmetic, row-level locking in ascending account order, and an
append-only audit log of every transfer attempt.
"""

__version__ = "1.0.0"

"""
ATM Ledger

Transaction engine for a small banking backend: deposits, withdrawals and
transfers with exact Decimal math, per-account locking and an append-only,
queryable transaction history.
"""

__version__ = "1.0.0"

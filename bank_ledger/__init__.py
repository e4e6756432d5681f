"""
Bank Ledger

Account balance engine for a retail banking back-end: atomic credits,
debits and transfers over a transactional store, an append-only hash-chained
ledger, and post-commit notifications. All money math uses Decimal.
"""

__version__ = "1.0.0"

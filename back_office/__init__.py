"""
Back Office Core

Account ledger and request/authorization workflow engine for a small bank:
immutable ledger entries with derived balances, atomic account numbering,
login lockout and a pending/approved/rejected request workflow.
"""

__version__ = "1.0.0"

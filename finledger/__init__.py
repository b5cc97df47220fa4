"""
FinLedger - tamper-evident transaction ledger for a personal-finance backend.
"""

__version__ = "1.0.0"

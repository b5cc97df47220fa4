# FinLedger Test Suite
"""
Test suite including:
- Unit tests (hasher, blocks, mining, verification, storage, config)
- Integration tests (ledger service end to end)
- Security tests (tampering, wrong keys, malformed input)

Run with: pytest
Coverage: coverage run -m pytest && coverage report
"""

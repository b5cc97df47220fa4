# Blockchain Module
"""
Per-user transaction ledger including:
- Hash-chained blocks with encrypted payloads
- SHA-256 chaining over block header fields
- Bounded Proof of Work with adjustable difficulty
- Chain verification and transaction receipts

Security features:
- Tamper-evident linkage between consecutive blocks
- Verification failures returned as results
- Mining capped by a maximum nonce
"""

# Lazy imports to avoid RuntimeWarning when running module directly
def __getattr__(name):
    """Lazy import to avoid circular import issues."""
    from . import ledger
    return getattr(ledger, name)

__all__ = [
    'Block',
    'BlockFactory',
    'ProofOfWork',
    'ChainVerifier',
    'VerificationResult',
    'ValidationError',
    'MiningError',
    'InvalidPredecessorError',
    'compute_block_hash',
    'hash_block',
    'get_transaction_receipt',
    'verify_transaction',
    'create_factory',
    'build_chain',
    'GENESIS_PREV_HASH',
    'GENESIS_DATA',
    'DEFAULT_DIFFICULTY',
    'MAX_NONCE',
]

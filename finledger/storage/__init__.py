# Storage Module
"""
Block persistence including:
- In-memory store for tests and demos
- SQLite store backed by a blockchain_ledger table

Blocks are append-only: a block counts as committed once its row is written.
"""

def __getattr__(name):
    """Lazy import to avoid circular import issues."""
    from . import block_store
    return getattr(block_store, name)

__all__ = [
    'BlockStore',
    'InMemoryBlockStore',
    'SQLiteBlockStore',
    'StorageError',
]

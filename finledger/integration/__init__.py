# Integration Module
"""
Ledger orchestration that ties hashing, mining, storage and verification
together for each user's chain, and mirrors blocks to an Ethereum node.
"""

_MIRROR_NAMES = ('ChainMirror', 'MirrorResult')


def __getattr__(name):
    """Lazy import to avoid circular import issues."""
    if name in _MIRROR_NAMES:
        from . import chain_mirror
        return getattr(chain_mirror, name)
    from . import ledger_service
    return getattr(ledger_service, name)

__all__ = [
    'ChainMirror',
    'LedgerService',
    'MirrorResult',
    'create_memory_service',
]

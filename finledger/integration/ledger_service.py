"""
Ledger Service Module

Orchestrates each user's transaction chain:
- Genesis block at onboarding
- One mined block per ledger-eligible transaction
- Chain verification and transaction receipts
- Decrypted ledger views and JSON export/import
- Optional mirroring of each block to an Ethereum node

Blocks for the same user are created strictly one at a time: each new
block needs the finished hash of the one before it. Different users'
chains are independent and may be extended concurrently.

Author: FinLedger Project
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from ..blockchain.ledger import (
    Block, BlockFactory, ChainVerifier, ProofOfWork, VerificationResult,
    ValidationError, verify_transaction
)
from ..core_crypto.hasher import Hasher, DecryptionError
from ..storage.block_store import BlockStore, InMemoryBlockStore, SQLiteBlockStore
from .chain_mirror import ChainMirror, MirrorResult


logger = logging.getLogger(__name__)


class LedgerService:
    """
    Per-user hash-chained ledger on top of a block store.

    Example:
        >>> service = LedgerService.from_config(config)
        >>> service.record_transaction("u1", "t1", {"amount": 500, "type": "debit"})
        >>> service.verify_user_chain("u1").valid
        True
    """

    def __init__(
        self,
        store: BlockStore,
        factory: BlockFactory,
        verifier: Optional[ChainVerifier] = None,
        mirror: Optional[ChainMirror] = None
    ):
        """
        Initialize the service with its collaborators.

        Args:
            store: Block persistence
            factory: Builds and mines blocks
            verifier: Chain verifier (default: genesis-exempt verifier)
            mirror: Optional Ethereum mirror for recorded blocks
        """
        self._store = store
        self._factory = factory
        self._verifier = verifier or ChainVerifier()
        self._mirror = mirror
        # user_id -> [lock, number of callers holding or waiting on it]
        self._user_locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config, store: Optional[BlockStore] = None) -> 'LedgerService':
        """
        Build a service from a LedgerConfig.

        Args:
            config: Validated LedgerConfig
            store: Optional store; defaults to SQLite at config.db_path
        """
        hasher = Hasher(config.encryption_key, config.kdf_iterations)
        pow = ProofOfWork(config.difficulty, config.max_nonce)
        if store is None:
            store = SQLiteBlockStore(config.db_path)
        mirror = ChainMirror.from_url(config.ganache_url) if config.ganache_url else None
        return cls(store, BlockFactory(hasher, pow), mirror=mirror)

    @property
    def store(self) -> BlockStore:
        return self._store

    @property
    def verifier(self) -> ChainVerifier:
        return self._verifier

    @property
    def mirror(self) -> Optional[ChainMirror]:
        return self._mirror

    @contextmanager
    def _lock_for(self, user_id: str):
        """Hold the user's lock; the entry is dropped when the last caller leaves."""
        with self._locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    def _ensure_genesis_locked(self, user_id: str) -> Block:
        """Return the chain tail, creating genesis if the chain is empty."""
        tail = self._store.last_block(user_id)
        if tail is None:
            tail = self._factory.create_genesis(user_id)
            self._store.append(tail)
        return tail

    # ========================================================================
    # Chain Growth
    # ========================================================================

    def ensure_genesis(self, user_id: str) -> Block:
        """
        Create a user's genesis block if the chain does not exist yet.

        Returns:
            The user's block 0
        """
        with self._lock_for(user_id):
            self._ensure_genesis_locked(user_id)
            return self._store.list_blocks(user_id)[0]

    def record_transaction(self, user_id: str, transaction_id: str, payload: Any) -> Block:
        """
        Append a mined block for a transaction to the user's chain.

        The chain tail is always read back from storage, so a block lost
        between mining and persisting is simply mined again on the next call.
        When a mirror is configured the stored block is also written to the
        Ethereum node; a mirror failure is recorded, never raised.

        Args:
            user_id: Owner of the chain
            transaction_id: External transaction reference
            payload: JSON-serializable transaction data

        Returns:
            The stored block
        """
        if not transaction_id:
            raise ValueError("transaction_id is required")

        with self._lock_for(user_id):
            previous = self._ensure_genesis_locked(user_id)
            block = self._factory.create_block(user_id, transaction_id, payload, previous)
            self._store.append(block)

        if self._mirror is not None:
            self.mirror_block(block)
        return block

    def mirror_block(self, block: Block) -> MirrorResult:
        """
        Write a stored block to the mirror and keep the outcome.

        Raises:
            ValueError: If no mirror is configured
        """
        if self._mirror is None:
            raise ValueError("No chain mirror configured")
        result = self._mirror.store_block(block)
        self._store.save_mirror_receipt(result.to_row())
        if not result.mirrored:
            logger.warning("Block %s of user %s recorded without mirror: %s",
                           block.id, block.user_id, result.error)
        return result

    # ========================================================================
    # Verification
    # ========================================================================

    def get_chain(self, user_id: str) -> List[Block]:
        return self._store.list_blocks(user_id)

    def verify_user_chain(self, user_id: str) -> VerificationResult:
        """Verify the stored chain of a user."""
        result = self._verifier.verify_chain(self._store.list_blocks(user_id))
        if result.valid:
            logger.info("Chain for user %s verified: %s", user_id, result.message)
        return result

    def get_receipt(self, user_id: str, transaction_id: str) -> Dict[str, Any]:
        """Look up a transaction's receipt in the user's chain."""
        return verify_transaction(transaction_id, self._store.list_blocks(user_id))

    def get_mirror_receipts(self, user_id: str) -> List[MirrorResult]:
        """Mirror outcomes for a user's blocks, in the order they were written."""
        return [MirrorResult.from_row(row) for row in self._store.list_mirror_receipts(user_id)]

    def verify_mirrored(self, user_id: str, transaction_id: str) -> Dict[str, Any]:
        """
        Check a transaction's block against its mirrored copy on the node.

        Returns:
            {'verified': True, 'receipt': {...}} when the node holds a
            transaction carrying the block's data hash, otherwise
            {'verified': False, 'message': ...}
        """
        if self._mirror is None:
            return {'verified': False, 'message': 'No chain mirror configured'}

        block = self._store.find_by_transaction(user_id, transaction_id)
        if block is None:
            return {'verified': False, 'message': 'Transaction not found in blockchain'}

        mirrored = [r for r in self.get_mirror_receipts(user_id)
                    if r.block_id == block.id and r.mirrored]
        if not mirrored:
            return {'verified': False, 'message': 'Block was not mirrored'}

        tx_hash = mirrored[0].tx_hash
        receipt = self._mirror.verify_transaction(tx_hash)
        if receipt is None or not self._mirror.verify_block(block, tx_hash):
            return {'verified': False, 'message': 'Mirrored transaction does not match block'}
        return {'verified': True, 'receipt': receipt}

    # ========================================================================
    # Ledger Views
    # ========================================================================

    def get_user_ledger(self, user_id: str) -> List[Dict[str, Any]]:
        """
        List a user's blocks with decrypted payloads.

        A block whose payload cannot be decrypted is reported with
        `decryptedData=None` and an `integrityError` message.
        """
        entries = []
        for block in self._store.list_blocks(user_id):
            entry = block.to_dict()
            try:
                entry['decryptedData'] = self._factory.decrypt_payload(block)
            except DecryptionError as e:
                logger.error("Block %s of user %s failed integrity check: %s",
                             block.id, user_id, e)
                entry['decryptedData'] = None
                entry['integrityError'] = str(e)
            entries.append(entry)
        return entries

    def export_chain(self, user_id: str) -> str:
        """Export a user's chain as JSON."""
        return json.dumps({
            'userId': user_id,
            'difficulty': self._factory.difficulty,
            'chain': [block.to_dict() for block in self._store.list_blocks(user_id)],
        }, indent=2)

    def import_chain(self, json_str: str) -> List[Block]:
        """
        Parse and verify an exported chain.

        Raises:
            ValidationError: If the JSON is malformed or the chain is invalid
        """
        try:
            data = json.loads(json_str)
            blocks = [Block.from_dict(b) for b in data['chain']]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed chain export: {e}") from e

        result = self._verifier.verify_chain(blocks)
        if not result.valid:
            raise ValidationError(result.message)
        return blocks

    def delete_user(self, user_id: str) -> int:
        """Remove a user's whole chain."""
        with self._lock_for(user_id):
            return self._store.delete_user(user_id)


def create_memory_service(
    encryption_key: str,
    difficulty: int = 2,
    kdf_iterations: int = 1_000,
    mirror: Optional[ChainMirror] = None
) -> LedgerService:
    """Create a service over an in-memory store (tests and demos)."""
    hasher = Hasher(encryption_key, kdf_iterations)
    factory = BlockFactory(hasher, ProofOfWork(difficulty))
    return LedgerService(InMemoryBlockStore(), factory, mirror=mirror)

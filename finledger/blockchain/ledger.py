"""
Blockchain Ledger Module

Implements a per-user hash chain of financial transactions with:
- SHA-256 chaining over (index, timestamp, data hash, previous hash, nonce)
- AES-GCM encrypted transaction payloads
- Bounded Proof of Work with adjustable difficulty
- Chain verification and transaction receipts

Security features:
- Tamper evidence: any edited field breaks the block hash or the next link
- Mining cap: a misconfigured difficulty fails loudly instead of hanging
- Verification failures are reported as results, not exceptions

Author: FinLedger Project
"""

import logging
import time
import uuid
from dataclasses import dataclass, asdict
from typing import List, Optional, Dict, Any, Sequence

from ..core_crypto.hasher import (
    Hasher, digest, serialize_payload, DecryptionError, PayloadIntegrityError,
    PBKDF2_ITERATIONS
)


logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

GENESIS_PREV_HASH = "0"
GENESIS_DATA = "Genesis Block"
DEFAULT_DIFFICULTY = 2  # Number of leading zero hex characters required
MAX_DIFFICULTY = 64     # SHA-256 hex digest length
MAX_NONCE = 10_000_000  # Maximum attempts before giving up


# ============================================================================
# Errors
# ============================================================================

class ValidationError(Exception):
    """Raised when an imported chain fails validation."""
    pass


class MiningError(RuntimeError):
    """Raised when no valid nonce is found within the mining cap."""
    pass


class InvalidPredecessorError(ValueError):
    """Raised when a block is created without a mined previous block."""
    pass


# ============================================================================
# Block Structure
# ============================================================================

@dataclass
class Block:
    """
    One record in a user's hash chain.

    Mining sets `nonce` and `hash` once; after that a block is treated
    as read-only.
    """
    id: str
    user_id: str
    transaction_id: Optional[str]
    index: int
    timestamp: int  # milliseconds since epoch
    data_hash: str
    encrypted_data: Optional[str]
    previous_hash: str
    nonce: int = 0
    hash: str = ""

    @property
    def is_genesis(self) -> bool:
        return self.index == 0 and self.previous_hash == GENESIS_PREV_HASH

    def to_dict(self) -> Dict[str, Any]:
        """Convert block to the camelCase wire shape."""
        return {
            'id': self.id,
            'userId': self.user_id,
            'transactionId': self.transaction_id,
            'index': self.index,
            'timestamp': self.timestamp,
            'dataHash': self.data_hash,
            'encryptedData': self.encrypted_data,
            'previousHash': self.previous_hash,
            'nonce': self.nonce,
            'hash': self.hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Block':
        """Create block from the camelCase wire shape."""
        return cls(
            id=data['id'],
            user_id=data['userId'],
            transaction_id=data.get('transactionId'),
            index=int(data['index']),
            timestamp=int(data['timestamp']),
            data_hash=data['dataHash'],
            encrypted_data=data.get('encryptedData'),
            previous_hash=data['previousHash'],
            nonce=int(data['nonce']),
            hash=data['hash'],
        )

    def to_row(self) -> Dict[str, Any]:
        """Convert block to its persisted column shape."""
        row = asdict(self)
        row['block_index'] = row.pop('index')
        row['block_hash'] = row.pop('hash')
        return row

    @classmethod
    def from_row(cls, row) -> 'Block':
        """Rebuild a block from a persisted row (mapping or sqlite3.Row)."""
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            transaction_id=row['transaction_id'],
            index=int(row['block_index']),
            timestamp=int(row['timestamp']),
            data_hash=row['data_hash'],
            encrypted_data=row['encrypted_data'],
            previous_hash=row['previous_hash'],
            nonce=int(row['nonce']),
            hash=row['block_hash'],
        )

    def __str__(self) -> str:
        return (
            f"Block #{self.index}\n"
            f"  Hash: {self.hash[:16]}...\n"
            f"  Prev: {self.previous_hash[:16]}...\n"
            f"  Data: {self.data_hash[:16]}...\n"
            f"  Nonce: {self.nonce}\n"
            f"  Transaction: {self.transaction_id or '-'}"
        )


def current_millis() -> int:
    return int(time.time() * 1000)


# ============================================================================
# Proof of Work
# ============================================================================

def compute_block_hash(
    index: int,
    timestamp: int,
    data_hash: str,
    previous_hash: str,
    nonce: int
) -> str:
    """Compute the hash of a block header (fields concatenated in fixed order)."""
    return digest(f"{index}{timestamp}{data_hash}{previous_hash}{nonce}")


def hash_block(block: Block) -> str:
    """Recompute a block's hash from its stored fields."""
    return compute_block_hash(
        block.index,
        block.timestamp,
        block.data_hash,
        block.previous_hash,
        block.nonce
    )


class ProofOfWork:
    """
    Proof of Work with adjustable difficulty.

    Difficulty is measured in leading zero hex CHARACTERS of the hash,
    so each step multiplies the expected work by 16.
    """

    def __init__(self, difficulty: int = DEFAULT_DIFFICULTY, max_nonce: int = MAX_NONCE):
        """
        Initialize PoW with given difficulty.

        Args:
            difficulty: Leading zero characters required (0-64)
            max_nonce: Attempts allowed before MiningError
        """
        if not 0 <= difficulty <= MAX_DIFFICULTY:
            raise ValueError(f"Difficulty must be between 0 and {MAX_DIFFICULTY}")
        if max_nonce < 1:
            raise ValueError("max_nonce must be positive")
        self.difficulty = difficulty
        self.max_nonce = max_nonce
        self._target = '0' * difficulty

    @property
    def target(self) -> str:
        """Required hash prefix."""
        return self._target

    def hash_meets_target(self, block_hash: str) -> bool:
        """Check if a hash meets the difficulty target."""
        return bool(block_hash) and block_hash.startswith(self._target)

    def mine(self, block: Block) -> str:
        """
        Mine a block in place.

        Increments the nonce and recomputes the hash until the hash has
        the required prefix. Sets `block.nonce` and `block.hash`.

        Returns:
            The block hash

        Raises:
            MiningError: If no valid nonce is found within max_nonce attempts
        """
        start_nonce = block.nonce
        for _ in range(self.max_nonce):
            block.nonce += 1
            block_hash = hash_block(block)
            if block_hash.startswith(self._target):
                block.hash = block_hash
                logger.debug(
                    "Mined block %d after %d attempts (nonce=%d)",
                    block.index, block.nonce - start_nonce, block.nonce
                )
                return block_hash

        raise MiningError(
            f"Failed to find valid nonce after {self.max_nonce} attempts "
            f"at difficulty {self.difficulty}"
        )


# ============================================================================
# Block Factory
# ============================================================================

class BlockFactory:
    """
    Builds genesis and successor blocks and mines them.

    Payloads are serialized once; the same text is hashed into
    `data_hash` and encrypted into `encrypted_data`.
    """

    def __init__(self, hasher: Hasher, pow: ProofOfWork):
        self._hasher = hasher
        self._pow = pow

    @property
    def difficulty(self) -> int:
        return self._pow.difficulty

    def create_genesis(self, user_id: str) -> Block:
        """Create and mine the genesis block of a user's chain."""
        if not user_id:
            raise ValueError("user_id is required")

        block = Block(
            id=str(uuid.uuid4()),
            user_id=user_id,
            transaction_id=None,
            index=0,
            timestamp=current_millis(),
            data_hash=digest(GENESIS_DATA),
            encrypted_data=None,
            previous_hash=GENESIS_PREV_HASH,
        )
        self._pow.mine(block)
        logger.info("Created genesis block %s for user %s", block.id, user_id)
        return block

    def create_block(
        self,
        user_id: str,
        transaction_id: str,
        payload: Any,
        previous_block: Block
    ) -> Block:
        """
        Create and mine a block for a transaction.

        Args:
            user_id: Owner of the chain
            transaction_id: External transaction reference
            payload: JSON-serializable transaction data
            previous_block: Current chain tail (must be mined)

        Returns:
            The newly mined block

        Raises:
            InvalidPredecessorError: If previous_block is missing or unmined
        """
        if previous_block is None or not getattr(previous_block, 'hash', None):
            raise InvalidPredecessorError("previous_block must be a mined block")
        if not user_id:
            raise ValueError("user_id is required")

        serialized = serialize_payload(payload)
        block = Block(
            id=str(uuid.uuid4()),
            user_id=user_id,
            transaction_id=transaction_id,
            index=previous_block.index + 1,
            timestamp=current_millis(),
            data_hash=digest(serialized),
            encrypted_data=self._hasher.encrypt(serialized),
            previous_hash=previous_block.hash,
        )
        self._pow.mine(block)
        logger.info(
            "Created block #%d for transaction %s (user %s)",
            block.index, transaction_id, user_id
        )
        return block

    def decrypt_payload(self, block: Block) -> Any:
        """
        Decrypt a block's transaction payload.

        Returns:
            The payload, or None for a block without one (genesis)

        Raises:
            DecryptionError: If the ciphertext cannot be decrypted
            PayloadIntegrityError: If the plaintext is not JSON or does not
                match the block's data hash
        """
        if block.encrypted_data is None:
            return None
        payload = self._hasher.decrypt_json(block.encrypted_data)
        if digest(serialize_payload(payload)) != block.data_hash:
            raise PayloadIntegrityError(
                f"Payload of block {block.id} does not match its data hash"
            )
        return payload


# ============================================================================
# Chain Verification
# ============================================================================

@dataclass
class VerificationResult:
    """Outcome of a chain verification."""
    valid: bool
    message: str
    invalid_block: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'valid': self.valid, 'message': self.message}
        if self.invalid_block is not None:
            result['invalidBlock'] = self.invalid_block
        return result


class ChainVerifier:
    """
    Walks an ordered chain, checking links and recomputing hashes.

    Only positions 1 onward are checked by default; the genesis block is
    trusted as stored. `check_genesis=True` also self-checks position 0.
    """

    def __init__(self, check_genesis: bool = False):
        self.check_genesis = check_genesis

    def verify_chain(self, blocks: Sequence[Block]) -> VerificationResult:
        """
        Verify a chain ordered by index.

        Returns:
            VerificationResult; the first failure short-circuits
        """
        if len(blocks) == 0:
            return VerificationResult(True, "Empty chain")

        if self.check_genesis:
            genesis = blocks[0]
            if (genesis.index != 0 or genesis.previous_hash != GENESIS_PREV_HASH
                    or hash_block(genesis) != genesis.hash):
                return self._fail("Invalid genesis block", genesis)

        for i in range(1, len(blocks)):
            current = blocks[i]
            previous = blocks[i - 1]

            if current.previous_hash != previous.hash:
                return self._fail(f"Invalid previous hash at block {i}", current)

            if hash_block(current) != current.hash:
                return self._fail(f"Invalid hash at block {i}", current)

        return VerificationResult(True, "Chain is valid")

    @staticmethod
    def _fail(message: str, block: Block) -> VerificationResult:
        logger.warning("Chain verification failed: %s (block %s)", message, block.id)
        return VerificationResult(False, message, block.id)


# ============================================================================
# Receipts
# ============================================================================

def get_transaction_receipt(block: Block) -> Dict[str, Any]:
    """Project a block into a user-facing receipt. Does not re-verify."""
    return {
        'transactionId': block.transaction_id,
        'blockHash': block.hash,
        'blockIndex': block.index,
        'timestamp': block.timestamp,
        'dataHash': block.data_hash,
        'verified': True,
    }


def verify_transaction(transaction_id: str, blocks: Sequence[Block]) -> Dict[str, Any]:
    """
    Find the first block recording a transaction and return its receipt.

    Args:
        transaction_id: External transaction reference
        blocks: The user's chain

    Returns:
        {'verified': True, 'receipt': ...} or
        {'verified': False, 'message': ...}
    """
    block = next((b for b in blocks if b.transaction_id == transaction_id), None)
    if block is None:
        return {'verified': False, 'message': 'Transaction not found in blockchain'}

    return {
        'verified': True,
        'receipt': get_transaction_receipt(block),
    }


# ============================================================================
# Convenience Functions
# ============================================================================

def create_factory(
    encryption_key: str,
    difficulty: int = DEFAULT_DIFFICULTY,
    max_nonce: int = MAX_NONCE,
    kdf_iterations: Optional[int] = None
) -> BlockFactory:
    """Build a BlockFactory with its own Hasher and ProofOfWork."""
    hasher = Hasher(encryption_key, kdf_iterations or PBKDF2_ITERATIONS)
    return BlockFactory(hasher, ProofOfWork(difficulty, max_nonce))


def build_chain(
    factory: BlockFactory,
    user_id: str,
    transactions: List[tuple]
) -> List[Block]:
    """Create a genesis block followed by one block per (transaction_id, payload)."""
    chain = [factory.create_genesis(user_id)]
    for transaction_id, payload in transactions:
        chain.append(factory.create_block(user_id, transaction_id, payload, chain[-1]))
    return chain


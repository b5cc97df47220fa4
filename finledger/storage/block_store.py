"""
Block Store Module

Append-only persistence for per-user ledger chains.

Stores:
- InMemoryBlockStore: dict of per-user lists
- SQLiteBlockStore: `blockchain_ledger` table, one row per block, plus
  `blockchain_transactions` for mirror receipts

Each row carries every block field, so a chain read back from storage
can be re-verified without any other source.
"""

import logging
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from ..blockchain.ledger import Block


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS blockchain_ledger (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    transaction_id TEXT,
    block_index INTEGER NOT NULL,
    timestamp INTEGER NOT NULL,
    data_hash TEXT NOT NULL,
    encrypted_data TEXT,
    previous_hash TEXT NOT NULL,
    nonce INTEGER NOT NULL,
    block_hash TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, block_index)
)
"""

MIRROR_SCHEMA = """
CREATE TABLE IF NOT EXISTS blockchain_transactions (
    block_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    transaction_id TEXT,
    tx_hash TEXT,
    block_number INTEGER,
    gas_used INTEGER,
    error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

COLUMNS = (
    'id', 'user_id', 'transaction_id', 'block_index', 'timestamp',
    'data_hash', 'encrypted_data', 'previous_hash', 'nonce', 'block_hash',
)

MIRROR_COLUMNS = (
    'block_id', 'user_id', 'transaction_id', 'tx_hash', 'block_number', 'gas_used', 'error',
)


class StorageError(Exception):
    """Raised when a block cannot be written or read."""
    pass


class BlockStore:
    """
    Base class for block persistence.

    Implementations must keep each user's chain ordered by index and
    reject a second block at an index that is already taken. Mirror
    receipts are kept per block id as plain rows (see MIRROR_COLUMNS).
    """

    def append(self, block: Block) -> None:
        raise NotImplementedError

    def last_block(self, user_id: str) -> Optional[Block]:
        raise NotImplementedError

    def list_blocks(self, user_id: str) -> List[Block]:
        raise NotImplementedError

    def find_by_transaction(self, user_id: str, transaction_id: str) -> Optional[Block]:
        for block in self.list_blocks(user_id):
            if block.transaction_id == transaction_id:
                return block
        return None

    def delete_user(self, user_id: str) -> int:
        raise NotImplementedError

    def save_mirror_receipt(self, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    def list_mirror_receipts(self, user_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class InMemoryBlockStore(BlockStore):
    """Block store kept in process memory."""

    def __init__(self):
        self._chains: Dict[str, List[Block]] = {}
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def append(self, block: Block) -> None:
        with self._lock:
            chain = self._chains.setdefault(block.user_id, [])
            if any(b.index == block.index for b in chain):
                raise StorageError(
                    f"Block #{block.index} already exists for user {block.user_id}"
                )
            # Stored as a row copy so later edits to the caller's object don't leak in
            chain.append(Block.from_row(block.to_row()))
            chain.sort(key=lambda b: b.index)

    def last_block(self, user_id: str) -> Optional[Block]:
        with self._lock:
            chain = self._chains.get(user_id)
            return Block.from_row(chain[-1].to_row()) if chain else None

    def list_blocks(self, user_id: str) -> List[Block]:
        with self._lock:
            return [Block.from_row(b.to_row()) for b in self._chains.get(user_id, [])]

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            self._receipts = {
                k: r for k, r in self._receipts.items() if r['user_id'] != user_id
            }
            return len(self._chains.pop(user_id, []))

    def save_mirror_receipt(self, row: Dict[str, Any]) -> None:
        with self._lock:
            self._receipts[row['block_id']] = {c: row.get(c) for c in MIRROR_COLUMNS}

    def list_mirror_receipts(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._receipts.values() if r['user_id'] == user_id]


class SQLiteBlockStore(BlockStore):
    """
    Block store backed by SQLite.

    Example:
        >>> store = SQLiteBlockStore("finledger.db")
        >>> store.append(block)
        >>> store.list_blocks(block.user_id)
    """

    def __init__(self, path: str = ":memory:"):
        """
        Open (and create if needed) the ledger database.

        Args:
            path: SQLite database file, or ":memory:"
        """
        self._path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.execute(SCHEMA)
                self._conn.execute(MIRROR_SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Could not open ledger database {path}: {e}") from e
        logger.info("Opened ledger database %s", path)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> 'SQLiteBlockStore':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def append(self, block: Block) -> None:
        row = block.to_row()
        placeholders = ", ".join("?" for _ in COLUMNS)
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO blockchain_ledger ({', '.join(COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    [row[c] for c in COLUMNS]
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Block #{block.index} already exists for user {block.user_id}"
            ) from e
        except sqlite3.Error as e:
            raise StorageError(f"Could not store block #{block.index}: {e}") from e
        logger.info("Stored block #%d for user %s", block.index, block.user_id)

    def _fetch(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Could not read ledger database {self._path}: {e}") from e

    def _query(self, sql: str, params: tuple) -> List[Block]:
        return [Block.from_row(row) for row in self._fetch(sql, params)]

    def last_block(self, user_id: str) -> Optional[Block]:
        blocks = self._query(
            "SELECT * FROM blockchain_ledger WHERE user_id = ? "
            "ORDER BY block_index DESC LIMIT 1",
            (user_id,)
        )
        return blocks[0] if blocks else None

    def list_blocks(self, user_id: str) -> List[Block]:
        return self._query(
            "SELECT * FROM blockchain_ledger WHERE user_id = ? ORDER BY block_index ASC",
            (user_id,)
        )

    def find_by_transaction(self, user_id: str, transaction_id: str) -> Optional[Block]:
        blocks = self._query(
            "SELECT * FROM blockchain_ledger WHERE user_id = ? AND transaction_id = ? "
            "ORDER BY block_index ASC LIMIT 1",
            (user_id, transaction_id)
        )
        return blocks[0] if blocks else None

    def delete_user(self, user_id: str) -> int:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "DELETE FROM blockchain_transactions WHERE user_id = ?", (user_id,)
                )
                cursor = self._conn.execute(
                    "DELETE FROM blockchain_ledger WHERE user_id = ?", (user_id,)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Could not delete blocks for user {user_id}: {e}") from e
        logger.info("Deleted %d blocks for user %s", cursor.rowcount, user_id)
        return cursor.rowcount

    def save_mirror_receipt(self, row: Dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in MIRROR_COLUMNS)
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO blockchain_transactions "
                    f"({', '.join(MIRROR_COLUMNS)}) VALUES ({placeholders})",
                    [row.get(c) for c in MIRROR_COLUMNS]
                )
        except sqlite3.Error as e:
            raise StorageError(
                f"Could not store mirror receipt for block {row.get('block_id')}: {e}"
            ) from e

    def list_mirror_receipts(self, user_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch(
            f"SELECT {', '.join(MIRROR_COLUMNS)} FROM blockchain_transactions "
            "WHERE user_id = ? ORDER BY rowid ASC",
            (user_id,)
        )
        return [dict(row) for row in rows]

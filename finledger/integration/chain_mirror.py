"""
Chain Mirror Module

Mirrors ledger blocks to a local Ethereum test network (Ganache) with:
- Connection check before every write
- Self-transaction carrying the block's data hash as calldata
- On-chain lookup of mirrored transactions
- Wallet balance and network info helpers

A mirror that cannot be reached never stops a block from being recorded:
every write returns a MirrorResult, and failures are reported in it.

Author: FinLedger Project
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from web3 import Web3
from web3.exceptions import Web3Exception

from ..blockchain.ledger import Block


logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_GANACHE_URL = "http://127.0.0.1:8545"
REQUEST_TIMEOUT = 10        # seconds per RPC call
RECEIPT_TIMEOUT = 30        # seconds to wait for a mined transaction
NETWORK_NAME = "Ganache Local"

# RPC failures: web3 errors, transport errors, JSON-RPC error replies
MIRROR_ERRORS = (Web3Exception, OSError, ValueError)


# ============================================================================
# Mirror Result
# ============================================================================

@dataclass
class MirrorResult:
    """Outcome of mirroring one block."""
    block_id: str
    user_id: str
    transaction_id: Optional[str]
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None

    @property
    def mirrored(self) -> bool:
        return self.tx_hash is not None

    def to_row(self) -> Dict[str, Any]:
        return {
            'block_id': self.block_id,
            'user_id': self.user_id,
            'transaction_id': self.transaction_id,
            'tx_hash': self.tx_hash,
            'block_number': self.block_number,
            'gas_used': self.gas_used,
            'error': self.error,
        }

    @classmethod
    def from_row(cls, row) -> 'MirrorResult':
        return cls(
            block_id=row['block_id'],
            user_id=row['user_id'],
            transaction_id=row['transaction_id'],
            tx_hash=row['tx_hash'],
            block_number=row['block_number'],
            gas_used=row['gas_used'],
            error=row['error'],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire shape."""
        return {
            'mirrored': self.mirrored,
            'blockId': self.block_id,
            'transactionId': self.transaction_id,
            'txHash': self.tx_hash,
            'blockNumber': self.block_number,
            'gasUsed': self.gas_used,
            'error': self.error,
        }


# ============================================================================
# Chain Mirror
# ============================================================================

class ChainMirror:
    """
    Writes block data hashes to an Ethereum node as self-transactions.

    Example:
        >>> mirror = ChainMirror.from_url("http://127.0.0.1:8545")
        >>> result = mirror.store_block(block)
        >>> mirror.verify_block(block, result.tx_hash)
        True
    """

    def __init__(self, web3: Web3, account: Optional[str] = None):
        """
        Initialize the mirror.

        Args:
            web3: Connected (or connectable) Web3 instance
            account: Sending account; defaults to the node's first account
        """
        self._web3 = web3
        self._account = account

    @classmethod
    def from_url(cls, url: str = DEFAULT_GANACHE_URL,
                 account: Optional[str] = None) -> 'ChainMirror':
        """Create a mirror talking JSON-RPC over HTTP."""
        # No retry backoff: an unreachable node must not stall block recording
        provider = Web3.HTTPProvider(
            url,
            request_kwargs={'timeout': REQUEST_TIMEOUT},
            exception_retry_configuration=None,
        )
        return cls(Web3(provider), account)

    @property
    def web3(self) -> Web3:
        return self._web3

    def is_connected(self) -> bool:
        """Check whether the node answers."""
        try:
            return bool(self._web3.is_connected())
        except MIRROR_ERRORS:
            return False

    def _sender(self) -> str:
        if self._account is None:
            self._account = self._web3.eth.accounts[0]
        return self._account

    def store_block(self, block: Block) -> MirrorResult:
        """
        Mirror a block's data hash to the node.

        Returns:
            MirrorResult with the transaction hash, or with `error` set
            when the node is unreachable or rejects the transaction
        """
        result = MirrorResult(
            block_id=block.id,
            user_id=block.user_id,
            transaction_id=block.transaction_id,
        )

        if not self.is_connected():
            result.error = "Blockchain not connected"
            logger.warning("Mirror skipped for block %s: %s", block.id, result.error)
            return result

        try:
            sender = self._sender()
            tx_hash = self._web3.eth.send_transaction({
                'from': sender,
                'to': sender,  # Self-transaction to store data
                'value': 0,
                'data': Web3.to_hex(text=block.data_hash),
            })
            receipt = self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT
            )
        except (MIRROR_ERRORS + (IndexError,)) as e:
            result.error = f"Mirror write failed: {e}"
            logger.warning("Mirror write failed for block %s: %s", block.id, e)
            return result

        result.tx_hash = Web3.to_hex(receipt['transactionHash'])
        result.block_number = int(receipt['blockNumber'])
        result.gas_used = int(receipt['gasUsed'])
        logger.info("Mirrored block %s as %s (chain block %d)",
                    block.id, result.tx_hash, result.block_number)
        return result

    def verify_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """
        Look up a mirrored transaction's receipt.

        Returns:
            {'blockNumber', 'transactionHash', 'gasUsed'} or None if the
            transaction is unknown or the node is unreachable
        """
        try:
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except MIRROR_ERRORS as e:
            logger.warning("Mirror lookup failed for %s: %s", tx_hash, e)
            return None

        return {
            'blockNumber': int(receipt['blockNumber']),
            'transactionHash': Web3.to_hex(receipt['transactionHash']),
            'gasUsed': int(receipt['gasUsed']),
        }

    def verify_block(self, block: Block, tx_hash: str) -> bool:
        """Check that a mirrored transaction carries this block's data hash."""
        try:
            tx = self._web3.eth.get_transaction(tx_hash)
        except MIRROR_ERRORS as e:
            logger.warning("Mirror lookup failed for %s: %s", tx_hash, e)
            return False

        data = tx['input']
        if isinstance(data, str):
            data = Web3.to_bytes(hexstr=data)
        return bytes(data) == block.data_hash.encode('utf-8')

    def get_balance(self, address: str) -> str:
        """Balance of an address in ether, '0' when it cannot be read."""
        try:
            balance = self._web3.eth.get_balance(address)
        except MIRROR_ERRORS as e:
            logger.warning("Get balance failed for %s: %s", address, e)
            return '0'
        return str(self._web3.from_wei(balance, 'ether'))

    def get_network_info(self) -> Optional[Dict[str, Any]]:
        """Block height and chain id of the node, or None if unreachable."""
        try:
            block_number = self._web3.eth.block_number
            chain_id = self._web3.eth.chain_id
        except MIRROR_ERRORS as e:
            logger.warning("Get network info failed: %s", e)
            return None

        return {
            'blockNumber': str(block_number),
            'chainId': str(chain_id),
            'network': NETWORK_NAME,
        }

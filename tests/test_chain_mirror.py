"""
Tests for mirroring ledger blocks to an Ethereum node.

Uses web3's in-process EthereumTesterProvider as the node, and a closed
local port for the unreachable case.
"""

from decimal import Decimal

import pytest
from web3 import Web3, EthereumTesterProvider

from finledger.config import LedgerConfig
from finledger.integration.chain_mirror import ChainMirror, MirrorResult
from finledger.integration.ledger_service import LedgerService, create_memory_service
from finledger.storage.block_store import InMemoryBlockStore


UNREACHABLE_URL = "http://127.0.0.1:9"


@pytest.fixture
def w3():
    return Web3(EthereumTesterProvider())


@pytest.fixture
def mirror(w3):
    return ChainMirror(w3)


@pytest.fixture
def offline_mirror():
    return ChainMirror.from_url(UNREACHABLE_URL)


class TestChainMirror:
    """Direct mirror operations."""

    def test_connected(self, mirror):
        assert mirror.is_connected()

    def test_store_block(self, mirror, sample_chain, w3):
        """The data hash is written as calldata of a self-transaction."""
        block = sample_chain[1]
        result = mirror.store_block(block)

        assert result.mirrored
        assert result.error is None
        assert result.block_id == block.id
        assert result.transaction_id == "t1"
        assert result.gas_used > 21000

        tx = w3.eth.get_transaction(result.tx_hash)
        assert tx['from'] == tx['to'] == w3.eth.accounts[0]
        assert tx['value'] == 0

    def test_verify_transaction(self, mirror, sample_chain):
        result = mirror.store_block(sample_chain[1])
        receipt = mirror.verify_transaction(result.tx_hash)

        assert receipt['transactionHash'] == result.tx_hash
        assert receipt['blockNumber'] == result.block_number
        assert receipt['gasUsed'] == result.gas_used

    def test_verify_unknown_transaction(self, mirror):
        assert mirror.verify_transaction("0x" + "00" * 32) is None

    def test_verify_block_matches_data_hash(self, mirror, sample_chain):
        result = mirror.store_block(sample_chain[1])
        assert mirror.verify_block(sample_chain[1], result.tx_hash)
        assert not mirror.verify_block(sample_chain[2], result.tx_hash)

    def test_balance(self, mirror, w3):
        assert Decimal(mirror.get_balance(w3.eth.accounts[0])) > 0

    def test_balance_of_bad_address(self, mirror, w3):
        """Non-checksummed addresses are rejected by web3 and read as zero."""
        assert mirror.get_balance(w3.eth.accounts[0].lower()) == '0'

    def test_network_info(self, mirror):
        info = mirror.get_network_info()
        assert info['network'] == "Ganache Local"
        assert int(info['blockNumber']) >= 0
        assert int(info['chainId']) > 0


class TestUnreachableMirror:
    """A node that cannot be reached is reported, never raised."""

    def test_not_connected(self, offline_mirror):
        assert not offline_mirror.is_connected()

    def test_store_block_reports_failure(self, offline_mirror, sample_chain):
        result = offline_mirror.store_block(sample_chain[1])

        assert not result.mirrored
        assert result.tx_hash is None
        assert result.error == "Blockchain not connected"

    def test_lookups_degrade(self, offline_mirror):
        assert offline_mirror.verify_transaction("0x" + "00" * 32) is None
        assert offline_mirror.get_network_info() is None


class TestMirrorResult:

    def test_row_round_trip(self):
        result = MirrorResult("b1", "u1", "t1", tx_hash="0xab", block_number=2, gas_used=21400)
        assert MirrorResult.from_row(result.to_row()) == result

    def test_wire_shape(self):
        data = MirrorResult("b1", "u1", "t1", error="Blockchain not connected").to_dict()
        assert data['mirrored'] is False
        assert data['txHash'] is None
        assert data['error'] == "Blockchain not connected"


class TestServiceMirroring:
    """LedgerService writes each recorded block to its mirror."""

    def test_record_transaction_mirrors_block(self, mirror):
        service = create_memory_service("k", difficulty=1, mirror=mirror)
        block = service.record_transaction("u1", "t1", {"amount": 500})

        receipts = service.get_mirror_receipts("u1")
        assert len(receipts) == 1
        assert receipts[0].block_id == block.id
        assert receipts[0].mirrored

        verified = service.verify_mirrored("u1", "t1")
        assert verified['verified'] is True
        assert verified['receipt']['transactionHash'] == receipts[0].tx_hash

    def test_unreachable_mirror_is_not_fatal(self, offline_mirror):
        service = create_memory_service("k", difficulty=1, mirror=offline_mirror)
        block = service.record_transaction("u1", "t1", {"amount": 500})

        assert service.get_chain("u1")[1] == block
        assert service.verify_user_chain("u1").valid
        receipts = service.get_mirror_receipts("u1")
        assert receipts[0].error == "Blockchain not connected"
        assert service.verify_mirrored("u1", "t1") == {
            'verified': False, 'message': 'Block was not mirrored'
        }

    def test_without_mirror(self, service):
        service.record_transaction("u1", "t1", {"amount": 500})

        assert service.mirror is None
        assert service.get_mirror_receipts("u1") == []
        assert service.verify_mirrored("u1", "t1")['verified'] is False
        with pytest.raises(ValueError):
            service.mirror_block(service.get_chain("u1")[1])

    def test_unknown_transaction(self, mirror):
        service = create_memory_service("k", difficulty=1, mirror=mirror)
        service.record_transaction("u1", "t1", {"amount": 500})
        assert service.verify_mirrored("u1", "t404") == {
            'verified': False, 'message': 'Transaction not found in blockchain'
        }

    def test_delete_user_drops_receipts(self, mirror):
        service = create_memory_service("k", difficulty=1, mirror=mirror)
        service.record_transaction("u1", "t1", {"amount": 500})
        service.delete_user("u1")
        assert service.get_mirror_receipts("u1") == []

    def test_from_config_with_ganache_url(self):
        config = LedgerConfig(encryption_key="k", ganache_url=UNREACHABLE_URL)
        service = LedgerService.from_config(config, store=InMemoryBlockStore())
        assert isinstance(service.mirror, ChainMirror)

    def test_from_config_without_ganache_url(self):
        config = LedgerConfig(encryption_key="k")
        assert LedgerService.from_config(config, store=InMemoryBlockStore()).mirror is None

"""Shared fixtures: low difficulty and KDF iterations keep the suite fast."""

import pytest

from finledger.blockchain.ledger import BlockFactory, ChainVerifier, ProofOfWork
from finledger.core_crypto.hasher import Hasher
from finledger.integration.ledger_service import LedgerService
from finledger.storage.block_store import InMemoryBlockStore


TEST_KEY = "test-encryption-key"
TEST_ITERATIONS = 1_000
TEST_DIFFICULTY = 2


@pytest.fixture
def hasher():
    return Hasher(TEST_KEY, TEST_ITERATIONS)


@pytest.fixture
def factory(hasher):
    return BlockFactory(hasher, ProofOfWork(TEST_DIFFICULTY))


@pytest.fixture
def verifier():
    return ChainVerifier()


@pytest.fixture
def service(factory):
    return LedgerService(InMemoryBlockStore(), factory)


@pytest.fixture
def sample_chain(factory):
    """Genesis plus two transaction blocks for user u1."""
    genesis = factory.create_genesis("u1")
    block1 = factory.create_block("u1", "t1", {"amount": 500, "type": "debit"}, genesis)
    block2 = factory.create_block("u1", "t2", {"amount": 1200, "type": "credit"}, block1)
    return [genesis, block1, block2]

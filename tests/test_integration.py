"""
Integration tests for FinLedger.

Tests end-to-end workflows combining hashing, mining, storage and
verification through the ledger service.
"""

import json
import threading

import pytest

from finledger.blockchain.ledger import ChainVerifier, GENESIS_PREV_HASH
from finledger.config import LedgerConfig
from finledger.integration.ledger_service import LedgerService, create_memory_service
from finledger.storage.block_store import InMemoryBlockStore, SQLiteBlockStore
from finledger import main as cli


class TestLedgerWorkflow:
    """Onboarding, recording and verifying a user's chain."""

    def test_example_scenario(self, service):
        """Genesis, two transactions, then verification and receipts."""
        genesis = service.ensure_genesis("u1")
        block1 = service.record_transaction("u1", "t1", {"amount": 500, "type": "debit"})
        block2 = service.record_transaction("u1", "t2", {"amount": 1200, "type": "credit"})

        assert genesis.index == 0
        assert block1.previous_hash == genesis.hash
        assert block2.previous_hash == block1.hash

        result = service.verify_user_chain("u1")
        assert result.valid
        assert result.message == "Chain is valid"

        receipt = service.get_receipt("u1", "t1")
        assert receipt['verified'] is True
        assert receipt['receipt']['blockHash'] == block1.hash

    def test_genesis_created_on_first_transaction(self, service):
        """Recording without onboarding creates genesis first."""
        block = service.record_transaction("u1", "t1", {"amount": 10})
        chain = service.get_chain("u1")

        assert block.index == 1
        assert len(chain) == 2
        assert chain[0].previous_hash == GENESIS_PREV_HASH

    def test_ensure_genesis_idempotent(self, service):
        first = service.ensure_genesis("u1")
        service.record_transaction("u1", "t1", {"amount": 10})
        again = service.ensure_genesis("u1")

        assert first == again
        assert len(service.get_chain("u1")) == 2

    def test_gapless_indexes(self, service):
        for i in range(5):
            service.record_transaction("u1", f"t{i}", {"amount": i})
        assert [b.index for b in service.get_chain("u1")] == list(range(6))

    def test_missing_transaction_receipt(self, service):
        service.record_transaction("u1", "t1", {"amount": 10})
        result = service.get_receipt("u1", "nope")
        assert result == {'verified': False, 'message': 'Transaction not found in blockchain'}

    def test_transaction_id_required(self, service):
        with pytest.raises(ValueError):
            service.record_transaction("u1", "", {"amount": 10})

    def test_empty_chain_verifies(self, service):
        assert service.verify_user_chain("nobody").message == "Empty chain"

    def test_user_ledger_decrypts(self, service):
        service.record_transaction("u1", "t1", {"amount": 500, "type": "debit"})
        ledger = service.get_user_ledger("u1")

        assert ledger[0]['decryptedData'] is None
        assert ledger[1]['decryptedData'] == {"amount": 500, "type": "debit"}
        assert 'integrityError' not in ledger[1]

    def test_user_ledger_reports_corruption(self, factory):
        store = InMemoryBlockStore()
        service = LedgerService(store, factory)
        block = service.record_transaction("u1", "t1", {"amount": 500})

        # Rebuild the store with a corrupted ciphertext for block 1
        store.delete_user("u1")
        chain = [service.ensure_genesis("u1")]
        block.previous_hash = chain[0].hash
        block.encrypted_data = "corrupted"
        store.append(block)

        entry = service.get_user_ledger("u1")[1]
        assert entry['decryptedData'] is None
        assert entry['integrityError']

    def test_export_import_round_trip(self, service):
        service.record_transaction("u1", "t1", {"amount": 1})
        service.record_transaction("u1", "t2", {"amount": 2})

        exported = service.export_chain("u1")
        data = json.loads(exported)
        assert data['userId'] == "u1"
        assert data['difficulty'] == 2
        assert service.import_chain(exported) == service.get_chain("u1")

    def test_delete_user(self, service):
        service.record_transaction("u1", "t1", {"amount": 1})
        assert service.delete_user("u1") == 2
        assert service.get_chain("u1") == []

    def test_user_locks_released(self, service):
        """Per-user lock entries do not outlive their callers."""
        for i in range(50):
            service.record_transaction(f"user{i}", "t1", {"amount": i})
            service.delete_user(f"user{i}")
        assert len(service._user_locks) == 0


class TestRecovery:
    """The chain tail is always re-derived from storage."""

    def test_lost_block_is_remined(self, factory):
        store = InMemoryBlockStore()
        service = LedgerService(store, factory)
        service.record_transaction("u1", "t1", {"amount": 1})

        # A block mined but never stored (crash before persistence)
        tail = store.last_block("u1")
        factory.create_block("u1", "t2", {"amount": 2}, tail)

        block = service.record_transaction("u1", "t2", {"amount": 2})
        assert block.index == 2
        assert block.previous_hash == tail.hash
        assert service.verify_user_chain("u1").valid

    def test_sqlite_service_survives_restart(self, tmp_path):
        config = LedgerConfig(
            encryption_key="test-encryption-key",
            kdf_iterations=1_000,
            db_path=str(tmp_path / "ledger.db"),
        )
        first = LedgerService.from_config(config)
        first.record_transaction("u1", "t1", {"amount": 1})
        first.store.close()

        second = LedgerService.from_config(config)
        second.record_transaction("u1", "t2", {"amount": 2})

        assert [b.index for b in second.get_chain("u1")] == [0, 1, 2]
        assert second.verify_user_chain("u1").valid
        assert second.get_user_ledger("u1")[1]['decryptedData'] == {"amount": 1}
        second.store.close()


class TestConcurrency:
    """Blocks for one user are serialized; users are independent."""

    def test_concurrent_same_user(self, service):
        errors = []

        def worker(n):
            try:
                service.record_transaction("u1", f"t{n}", {"amount": n})
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        chain = service.get_chain("u1")
        assert [b.index for b in chain] == list(range(9))
        assert service.verify_user_chain("u1").valid

    def test_concurrent_many_users(self, service):
        threads = [
            threading.Thread(
                target=service.record_transaction, args=(f"user{i}", "t1", {"amount": i})
            )
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for i in range(4):
            assert len(service.get_chain(f"user{i}")) == 2
            assert service.verify_user_chain(f"user{i}").valid


class TestServiceConstruction:

    def test_memory_service(self):
        service = create_memory_service("k", difficulty=1)
        block = service.record_transaction("u1", "t1", {"amount": 1})
        assert block.hash.startswith("0")

    def test_custom_verifier(self, factory):
        service = LedgerService(InMemoryBlockStore(), factory, ChainVerifier(check_genesis=True))
        service.record_transaction("u1", "t1", {"amount": 1})
        assert service.verifier.check_genesis
        assert service.verify_user_chain("u1").valid

    def test_from_config_defaults_to_sqlite(self, tmp_path):
        config = LedgerConfig(encryption_key="k", db_path=str(tmp_path / "x.db"))
        service = LedgerService.from_config(config)
        assert isinstance(service.store, SQLiteBlockStore)
        service.store.close()


class TestCommandLine:
    """The finledger entry point."""

    @pytest.fixture
    def env(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("")
        monkeypatch.setenv("FINLEDGER_ENCRYPTION_KEY", "cli-key")
        monkeypatch.setenv("FINLEDGER_KDF_ITERATIONS", "1000")
        monkeypatch.setenv("FINLEDGER_DB_PATH", str(tmp_path / "cli.db"))
        monkeypatch.delenv("FINLEDGER_GANACHE_URL", raising=False)
        return str(env_file)

    def test_demo(self, env, capsys):
        assert cli.main(["--env-file", env, "demo"]) == 0
        out = capsys.readouterr().out
        assert "Chain is valid" in out
        assert "Invalid hash at block 1" in out

    def test_verify_and_receipt(self, env, tmp_path, capsys):
        config = LedgerConfig.from_env(env)
        service = LedgerService.from_config(config)
        service.record_transaction("u1", "t1", {"amount": 1})
        service.store.close()

        assert cli.main(["--env-file", env, "verify", "u1"]) == 0
        assert cli.main(["--env-file", env, "receipt", "u1", "t1"]) == 0
        assert cli.main(["--env-file", env, "receipt", "u1", "t404"]) == 1
        assert '"blockIndex": 1' in capsys.readouterr().out

    def test_store_closed_after_command(self, env, monkeypatch):
        """verify and receipt close the SQLite store they open."""
        opened = []

        class TrackingStore(SQLiteBlockStore):
            def __init__(self, path):
                super().__init__(path)
                self.closed = False
                opened.append(self)

            def close(self):
                self.closed = True
                super().close()

        monkeypatch.setattr(cli, "SQLiteBlockStore", TrackingStore)
        assert cli.main(["--env-file", env, "verify", "u1"]) == 0
        assert cli.main(["--env-file", env, "receipt", "u1", "t1"]) == 1

        assert len(opened) == 2
        assert all(store.closed for store in opened)

    def test_missing_key_exit_code(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("")
        monkeypatch.delenv("FINLEDGER_ENCRYPTION_KEY", raising=False)
        assert cli.main(["--env-file", str(env_file), "demo"]) == 2

"""
FinLedger - Main Entry Point
Tamper-evident transaction ledger for a personal-finance backend.

Usage:
    python -m finledger.main demo
    python -m finledger.main verify <user_id>
    python -m finledger.main receipt <user_id> <transaction_id>
"""

import argparse
import json
import logging
import sys

from .config import LedgerConfig, ConfigurationError
from .integration.ledger_service import LedgerService
from .storage.block_store import InMemoryBlockStore, SQLiteBlockStore


def run_demo(service: LedgerService) -> int:
    """Build a small chain, verify it, then show a tampered block failing."""
    print("=" * 60)
    print("FinLedger demo")
    print("=" * 60)

    service.ensure_genesis("u1")
    service.record_transaction("u1", "t1", {"amount": 500, "type": "debit"})
    service.record_transaction("u1", "t2", {"amount": 1200, "type": "credit"})

    chain = service.get_chain("u1")
    for block in chain:
        print(block)
        print("-" * 40)

    result = service.verify_user_chain("u1")
    print(f"\nVerification: {json.dumps(result.to_dict())}")
    print(f"Receipt t1:   {json.dumps(service.get_receipt('u1', 't1'))}")

    chain[1].hash = "00" + "f" * 62
    tampered = service.verifier.verify_chain(chain)
    print(f"\nAfter tampering with block 1: {json.dumps(tampered.to_dict())}")
    return 0 if result.valid and not tampered.valid else 1


def main(argv=None) -> int:
    """Main entry point for FinLedger."""
    parser = argparse.ArgumentParser(prog="finledger", description="Tamper-evident transaction ledger")
    parser.add_argument("--env-file", default=None, help="path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("demo", help="run an in-memory demo chain")
    verify = sub.add_parser("verify", help="verify a user's stored chain")
    verify.add_argument("user_id")
    receipt = sub.add_parser("receipt", help="look up a transaction receipt")
    receipt.add_argument("user_id")
    receipt.add_argument("transaction_id")
    args = parser.parse_args(argv)

    try:
        config = LedgerConfig.from_env(args.env_file)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    if args.command == "demo":
        return run_demo(LedgerService.from_config(config, store=InMemoryBlockStore()))

    with SQLiteBlockStore(config.db_path) as store:
        service = LedgerService.from_config(config, store=store)
        if args.command == "verify":
            result = service.verify_user_chain(args.user_id)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.valid else 1

        found = service.get_receipt(args.user_id, args.transaction_id)
        print(json.dumps(found, indent=2))
        return 0 if found['verified'] else 1


if __name__ == "__main__":
    sys.exit(main())

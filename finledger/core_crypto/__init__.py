# Core Cryptography Module
"""
Hashing and encryption primitives for the ledger:
- SHA-256 hex digests
- PBKDF2 key derivation
- AES-256-GCM payload encryption
"""

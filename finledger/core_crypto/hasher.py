"""
Hasher Module

Digest and symmetric encryption primitives for the transaction ledger:
- SHA-256 hex digests for block and payload hashing
- PBKDF2 key derivation from the deployment encryption key
- AES-256-GCM authenticated encryption of transaction payloads

Ciphertext Format (base64 text):
    [magic (4) | salt (16) | nonce (12) | ciphertext | tag (16)]

Security features:
- Random salt and nonce per payload
- Authenticated encryption: a wrong key or a flipped bit fails the tag check
- Failures surface as DecryptionError, never as low-level exceptions
"""

import base64
import binascii
import hashlib
import json
import secrets
from typing import Any, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.backends import default_backend


# Constants
MAGIC_BYTES = b"FLv1"
SALT_SIZE = 16              # 128-bit salt
NONCE_SIZE = 12             # 96-bit nonce for GCM
TAG_SIZE = 16               # 128-bit GCM tag
KEY_SIZE = 32               # AES-256

# PBKDF2 configuration
PBKDF2_ITERATIONS = 100_000
PBKDF2_ALGORITHM = hashes.SHA256()

HEADER_SIZE = len(MAGIC_BYTES) + SALT_SIZE + NONCE_SIZE


class DecryptionError(Exception):
    """Raised when a ciphertext cannot be decrypted with the given key."""
    pass


class PayloadIntegrityError(DecryptionError):
    """Raised when decrypted text is not the JSON payload it should be."""
    pass


def digest(data: Union[str, bytes]) -> str:
    """
    Compute the SHA-256 hex digest of a string or bytes.

    Args:
        data: Input data; strings are UTF-8 encoded

    Returns:
        64-character lowercase hex digest
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def _string_keys(value: Any) -> Any:
    """Convert dict keys to the strings JSON would write, recursively."""
    if isinstance(value, dict):
        converted = {}
        for key, item in value.items():
            if isinstance(key, str):
                name = key
            elif key is None or isinstance(key, (int, float)):
                name = json.dumps(key)
            else:
                raise TypeError(f"Payload key {key!r} is not a JSON name")
            if name in converted:
                raise ValueError(f"Payload key {key!r} collides with another key as JSON name {name!r}")
            converted[name] = _string_keys(item)
        return converted
    if isinstance(value, (list, tuple)):
        return [_string_keys(item) for item in value]
    return value


def serialize_payload(payload: Any) -> str:
    """
    Canonical compact JSON used for both hashing and encryption.

    Non-string keys (numbers, booleans, None) are written as JSON names
    before sorting, so mixed-key dicts serialize like any other.

    Raises:
        TypeError: If the payload holds a value JSON cannot represent
        ValueError: If two keys become the same JSON name (e.g. 1 and "1")
    """
    return json.dumps(_string_keys(payload), separators=(',', ':'), sort_keys=True)


def derive_key(key: str, salt: bytes,
               iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive an AES-256 key from the shared encryption key using PBKDF2.

    Args:
        key: Deployment encryption key
        salt: Random per-ciphertext salt
        iterations: Number of PBKDF2 iterations

    Returns:
        32-byte derived key
    """
    kdf = PBKDF2HMAC(
        algorithm=PBKDF2_ALGORITHM,
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
        backend=default_backend()
    )
    return kdf.derive(key.encode('utf-8'))


def encrypt(plaintext: str, key: str,
            iterations: int = PBKDF2_ITERATIONS) -> str:
    """
    Encrypt text with AES-256-GCM under a key derived from `key`.

    Args:
        plaintext: Text to encrypt
        key: Shared encryption key
        iterations: PBKDF2 iterations

    Returns:
        Base64 ciphertext text
    """
    salt = secrets.token_bytes(SALT_SIZE)
    nonce = secrets.token_bytes(NONCE_SIZE)
    aesgcm = AESGCM(derive_key(key, salt, iterations))
    ciphertext_with_tag = aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
    blob = MAGIC_BYTES + salt + nonce + ciphertext_with_tag
    return base64.b64encode(blob).decode('ascii')


def decrypt(ciphertext: str, key: str,
            iterations: int = PBKDF2_ITERATIONS) -> str:
    """
    Decrypt text produced by `encrypt`.

    Args:
        ciphertext: Base64 ciphertext text
        key: Shared encryption key
        iterations: PBKDF2 iterations used at encryption time

    Returns:
        The original plaintext

    Raises:
        DecryptionError: Wrong key, malformed or tampered ciphertext
    """
    try:
        blob = base64.b64decode(ciphertext.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e

    if len(blob) < HEADER_SIZE + TAG_SIZE or not blob.startswith(MAGIC_BYTES):
        raise DecryptionError("Ciphertext is malformed")

    offset = len(MAGIC_BYTES)
    salt = blob[offset:offset + SALT_SIZE]
    offset += SALT_SIZE
    nonce = blob[offset:offset + NONCE_SIZE]
    offset += NONCE_SIZE

    aesgcm = AESGCM(derive_key(key, salt, iterations))
    try:
        plaintext = aesgcm.decrypt(nonce, blob[offset:], None)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: wrong key or tampered data") from e

    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted data is not UTF-8 text") from e


class Hasher:
    """
    Digest and cipher bound to one deployment encryption key.

    Example:
        >>> hasher = Hasher("deployment-secret")
        >>> token = hasher.encrypt_json({"amount": 500})
        >>> hasher.decrypt_json(token)
        {'amount': 500}
    """

    def __init__(self, encryption_key: str, kdf_iterations: int = PBKDF2_ITERATIONS):
        if not encryption_key:
            raise ValueError("Encryption key must not be empty")
        if kdf_iterations < 1:
            raise ValueError("KDF iterations must be positive")
        self._key = encryption_key
        self._iterations = kdf_iterations

    @staticmethod
    def digest(data: Union[str, bytes]) -> str:
        """SHA-256 hex digest."""
        return digest(data)

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self._key, self._iterations)

    def decrypt(self, ciphertext: str) -> str:
        return decrypt(ciphertext, self._key, self._iterations)

    def encrypt_json(self, payload: Any) -> str:
        """Serialize a JSON-compatible payload and encrypt it."""
        return self.encrypt(serialize_payload(payload))

    def decrypt_json(self, ciphertext: str) -> Any:
        """
        Decrypt and parse a JSON payload.

        Raises:
            DecryptionError: If decryption fails
            PayloadIntegrityError: If the plaintext is not JSON
        """
        text = self.decrypt(ciphertext)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PayloadIntegrityError("Decrypted payload is not valid JSON") from e

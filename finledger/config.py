"""
Configuration Module

Loads ledger settings from the environment (and an optional .env file).

Variables:
    FINLEDGER_ENCRYPTION_KEY   shared payload key (required)
    FINLEDGER_DIFFICULTY       leading zero hex characters (default 2)
    FINLEDGER_MAX_NONCE        mining attempts before giving up
    FINLEDGER_KDF_ITERATIONS   PBKDF2 iterations for payload keys
    FINLEDGER_DB_PATH          SQLite ledger database
    FINLEDGER_LOG_LEVEL        logging level name
    FINLEDGER_GANACHE_URL      Ethereum JSON-RPC node to mirror blocks to (optional)
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .blockchain.ledger import DEFAULT_DIFFICULTY, MAX_DIFFICULTY, MAX_NONCE
from .core_crypto.hasher import PBKDF2_ITERATIONS


ENV_PREFIX = "FINLEDGER_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """Raised when required settings are missing or invalid."""
    pass


@dataclass(frozen=True)
class LedgerConfig:
    """Validated ledger settings."""
    encryption_key: str
    difficulty: int = DEFAULT_DIFFICULTY
    max_nonce: int = MAX_NONCE
    kdf_iterations: int = PBKDF2_ITERATIONS
    db_path: str = "finledger.db"
    log_level: str = "INFO"
    ganache_url: Optional[str] = None

    def __post_init__(self):
        if not self.encryption_key:
            raise ConfigurationError(f"{ENV_PREFIX}ENCRYPTION_KEY must be set")
        if not 0 <= self.difficulty <= MAX_DIFFICULTY:
            raise ConfigurationError(
                f"Difficulty must be between 0 and {MAX_DIFFICULTY}, got {self.difficulty}"
            )
        if self.max_nonce < 1:
            raise ConfigurationError("max_nonce must be positive")
        if self.kdf_iterations < 1:
            raise ConfigurationError("kdf_iterations must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")
        if self.ganache_url is not None and not self.ganache_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Ganache URL must be http(s), got {self.ganache_url!r}")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'LedgerConfig':
        """
        Build config from environment variables.

        Args:
            env_file: Optional .env path; by default the nearest .env is used.
                Variables already set in the environment take precedence.

        Raises:
            ConfigurationError: If the key is missing or a value is invalid
        """
        load_dotenv(env_file)

        key = os.getenv(f"{ENV_PREFIX}ENCRYPTION_KEY")
        if not key:
            raise ConfigurationError(f"{ENV_PREFIX}ENCRYPTION_KEY must be set")

        return cls(
            encryption_key=key,
            difficulty=_int_setting("DIFFICULTY", DEFAULT_DIFFICULTY),
            max_nonce=_int_setting("MAX_NONCE", MAX_NONCE),
            kdf_iterations=_int_setting("KDF_ITERATIONS", PBKDF2_ITERATIONS),
            db_path=os.getenv(f"{ENV_PREFIX}DB_PATH", "finledger.db"),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper(),
            ganache_url=os.getenv(f"{ENV_PREFIX}GANACHE_URL") or None,
        )


def _int_setting(name: str, default: int) -> int:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e

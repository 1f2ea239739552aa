"""
Configuration for the field encryption layer.

This module provides:
- CryptoConfig: key material and wire-format settings for the Cryptor
- StoreConfig: storage connection settings plus the crypto section
- load_config: build a StoreConfig from the environment (and an optional .env file)

Environment variables:
- DATABASE_URL: PostgreSQL DSN used by PostgresStorage and the CLI
- FIELD_CRYPTO_KEY: active encryption key (32+ characters)
- FIELD_CRYPTO_KEYS: comma-separated historical keys kept for decryption
- FIELD_CRYPTO_PREFIX: wire-format prefix (default "$$#")
- FIELD_CRYPTO_SEPARATOR: wire-format separator (default ":")
- FIELD_CRYPTO_ENABLED: "0/false/no/off" disables the whole layer
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_PREFIX: str = "$$#"
DEFAULT_SEPARATOR: str = ":"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class CryptoConfig:
    """
    Key material and wire-format settings.

    ``key`` is the active key. ``keys`` holds historical keys, either as a
    list or as a mapping of label to key; when ``key`` is missing the first
    entry of ``keys`` becomes the active key.
    """

    key: Optional[str] = None
    keys: Union[List[str], Dict[str, str]] = field(default_factory=list)
    prefix: str = DEFAULT_PREFIX
    separator: str = DEFAULT_SEPARATOR
    enabled: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.prefix, str) or not self.prefix:
            raise ConfigError("Crypto prefix must be a non-empty string")
        if not isinstance(self.separator, str) or not self.separator:
            raise ConfigError("Crypto separator must be a non-empty string")

    def historical_keys(self) -> List[str]:
        """Return the historical keys as a flat list, preserving order."""
        if isinstance(self.keys, dict):
            return list(self.keys.values())
        return list(self.keys or [])


@dataclass
class StoreConfig:
    """Store settings: connection DSN and the crypto section."""

    database_url: Optional[str] = None
    crypto: CryptoConfig = field(default_factory=CryptoConfig)


def _env_flag(name: str, *, default: bool) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {raw!r}")


def load_config(env_path: Optional[Union[str, Path]] = None) -> StoreConfig:
    """
    Load store settings from the environment.

    Args:
        env_path: Optional .env file loaded before reading the environment.
            Without it, python-dotenv searches for a .env file as usual.

    Returns:
        StoreConfig populated from the environment

    Raises:
        ConfigError: If a setting has an invalid value
    """
    if env_path is not None:
        load_dotenv(env_path)
    else:
        load_dotenv()

    raw_keys = os.environ.get("FIELD_CRYPTO_KEYS", "")
    keys = [k.strip() for k in raw_keys.split(",") if k.strip()]

    crypto = CryptoConfig(
        key=os.environ.get("FIELD_CRYPTO_KEY") or None,
        keys=keys,
        prefix=os.environ.get("FIELD_CRYPTO_PREFIX") or DEFAULT_PREFIX,
        separator=os.environ.get("FIELD_CRYPTO_SEPARATOR") or DEFAULT_SEPARATOR,
        enabled=_env_flag("FIELD_CRYPTO_ENABLED", default=True),
    )
    return StoreConfig(
        database_url=os.environ.get("DATABASE_URL") or None,
        crypto=crypto,
    )

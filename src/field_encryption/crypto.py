"""
Cryptographic primitives and the key-versioning Cryptor.

This module provides:
- AesCbcCipher: AES-256-CBC encryption/decryption of text with a string key
- evp_bytes_to_key: OpenSSL-compatible key/IV derivation from a key string
- Cryptor: key registry, key versioning and the tagged wire format

Wire format:
    PREFIX SEP VERSION SEP CIPHERTEXT
    e.g. "$$#:1a2b3c4d:9f0e..."

VERSION is the 8-character signature of the key that produced the value, so
data encrypted with a retired key stays decryptable as long as that key is
registered.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import DEFAULT_PREFIX, DEFAULT_SEPARATOR, CryptoConfig
from .errors import ConfigError, CryptoError

logger = logging.getLogger(__name__)

# Cryptographic constants
KEY_LENGTH: int = 32  # characters, AES-256
IV_SIZE: int = 16  # bytes, AES block
SIGNATURE_LENGTH: int = 8


# =============================================================================
# Cipher
# =============================================================================


@lru_cache(maxsize=64)
def evp_bytes_to_key(
    password: bytes, key_len: int = KEY_LENGTH, iv_len: int = IV_SIZE
) -> Tuple[bytes, bytes]:
    """
    Derive a key and IV from a password (OpenSSL EVP_BytesToKey, MD5, no salt).

    Args:
        password: Raw password bytes
        key_len: Derived key length in bytes
        iv_len: Derived IV length in bytes

    Returns:
        Tuple of (key, iv)
    """
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + password).digest()
        derived += block
    return derived[:key_len], derived[key_len : key_len + iv_len]


class AesCbcCipher:
    """
    AES-256-CBC over text.

    Key and IV are derived from the key string, so the same plaintext under
    the same key always yields the same ciphertext. Predicates on encrypted
    columns depend on that.
    """

    @staticmethod
    def encrypt(plaintext: str, key: str) -> str:
        """
        Encrypt text with AES-256-CBC.

        Args:
            plaintext: Text to encrypt
            key: Key string

        Returns:
            Ciphertext as lowercase hex

        Raises:
            CryptoError: If the key is empty or encryption fails
        """
        if not key:
            raise CryptoError("Encryption key is empty")
        aes_key, iv = evp_bytes_to_key(key.encode("utf-8"))
        try:
            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
            return (encryptor.update(data) + encryptor.finalize()).hex()
        except Exception as e:
            raise CryptoError(f"Encryption error: {e}")

    @staticmethod
    def decrypt(ciphertext: str, key: str) -> str:
        """
        Decrypt hex ciphertext produced by ``encrypt``.

        Args:
            ciphertext: Lowercase hex ciphertext
            key: Key string

        Returns:
            Decrypted text

        Raises:
            CryptoError: If the key is empty or decryption fails
        """
        if not key:
            raise CryptoError("Decryption key is empty")
        aes_key, iv = evp_bytes_to_key(key.encode("utf-8"))
        try:
            data = bytes.fromhex(ciphertext)
            decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except Exception:
            # Generic error to prevent oracle attacks
            raise CryptoError("Decryption failed")


# =============================================================================
# Cryptor
# =============================================================================


def normalize_key(key: Any) -> Optional[str]:
    """Truncate a key to 32 characters; return None if it is not a string or too short."""
    if not isinstance(key, str) or not key:
        return None
    if len(key) < KEY_LENGTH:
        return None
    return key[:KEY_LENGTH]


class Cryptor:
    """
    Key registry and transparent value encryption.

    The Cryptor never raises for data-quality problems (bad key length,
    malformed ciphertext, non-JSON plaintext): ``encrypt`` and ``decrypt``
    return ``None`` and the caller decides what to do.
    """

    def __init__(
        self,
        key: str,
        keys: Iterable[str] = (),
        prefix: str = DEFAULT_PREFIX,
        separator: str = DEFAULT_SEPARATOR,
    ) -> None:
        """
        Create a Cryptor.

        Args:
            key: Active key (truncated to 32 characters)
            keys: Historical keys kept for decrypting legacy data
            prefix: Wire-format prefix
            separator: Wire-format separator

        Raises:
            ConfigError: If the active key is missing or shorter than 32 characters
        """
        current = normalize_key(key)
        if current is None:
            raise ConfigError(
                f"Crypto key must be a string of at least {KEY_LENGTH} characters"
            )
        self._prefix = prefix
        self._separator = separator
        self._tag = f"{prefix}{separator}"
        self._lock = threading.RLock()
        self._keys: Dict[str, str] = {}
        self._versions: Dict[str, str] = {}
        self._current_key = current
        self._current_version = self.signature(current)
        for old_key in keys:
            if self.add_key(old_key) is False:
                logger.warning("Skipping historical crypto key shorter than %d characters", KEY_LENGTH)

    @classmethod
    def from_config(cls, config: Optional[CryptoConfig]) -> Optional[Cryptor]:
        """
        Build a Cryptor from configuration.

        Returns None (crypto disabled) when the config is missing, disabled
        or carries no usable key.
        """
        if config is None:
            logger.debug("Crypto config is missing")
            return None
        if not config.enabled:
            logger.info("Crypto is disabled by configuration")
            return None
        historical = config.historical_keys()
        key = config.key if isinstance(config.key, str) and config.key else None
        if key is None and historical:
            key = historical[0]
        if key is None:
            logger.warning("No crypto keys found. Crypto is disabled")
            return None
        try:
            return cls(
                key,
                keys=historical,
                prefix=config.prefix,
                separator=config.separator,
            )
        except ConfigError:
            logger.warning("Crypto key provided is not valid. Crypto is disabled")
            return None

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def separator(self) -> str:
        return self._separator

    @property
    def current_version(self) -> str:
        """Signature of the active key."""
        return self._current_version

    def signature(self, key: str) -> str:
        """
        Return the 8-character version signature of a key, registering it.

        signature = sha256_hex(key + sha1_hex(key))[:8]
        """
        with self._lock:
            sign = self._versions.get(key)
            if sign is None:
                inner = hashlib.sha1(key.encode("utf-8")).hexdigest()
                sign = hashlib.sha256((key + inner).encode("utf-8")).hexdigest()
                sign = sign[:SIGNATURE_LENGTH]
                self._versions[key] = sign
                self._keys[sign] = key
            return sign

    def has_version(self, version: str) -> bool:
        with self._lock:
            return version in self._keys

    def add_key(self, key: Union[str, Iterable[Optional[str]], None]) -> Union[str, bool]:
        """
        Register one or more keys so their ciphertext can be decrypted.

        Args:
            key: A key string, or a list of keys. Keys are truncated to 32
                characters; shorter keys are rejected (single) or skipped (list).

        Returns:
            The signature for a single key, False if it was rejected,
            True for a list.
        """
        if isinstance(key, (list, tuple)):
            for item in key:
                normalized = normalize_key(item)
                if normalized is None:
                    continue
                self.signature(normalized)
            return True
        normalized = normalize_key(key)
        if normalized is None:
            return False
        return self.signature(normalized)

    def is_encrypted(self, value: Any) -> bool:
        """Check whether a value carries the encrypted wire-format tag."""
        if not isinstance(value, str) or not value:
            return False
        return value.startswith(self._tag)

    def encrypt(self, value: Any, key: Optional[str] = None) -> Optional[str]:
        """
        Encrypt a JSON-serialisable value into the tagged wire format.

        Args:
            value: Any JSON-serialisable value
            key: Optional key, defaults to the active key

        Returns:
            Tagged ciphertext, or None on failure
        """
        try:
            text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError):
            logger.warning("Could not serialize value to encrypt model field")
            return None
        if key is None:
            key = self._current_key
        else:
            key = normalize_key(key)
            if key is None:
                logger.warning("Supplied key is less than %d characters. Skipping.", KEY_LENGTH)
                return None
        version = self.signature(key)
        try:
            ciphertext = AesCbcCipher.encrypt(text, key)
        except CryptoError as e:
            logger.debug("Encryption failed: %s", e)
            return None
        if not ciphertext:
            return None
        return f"{self._tag}{version}{self._separator}{ciphertext}"

    def decrypt(self, value: Any, key: Optional[str] = None) -> Any:
        """
        Decrypt a tagged value.

        Untagged strings are returned unchanged. The key registered for the
        value's version always wins over ``key``, which is only a fallback
        for unknown versions.

        Args:
            value: Tagged ciphertext (or any other string)
            key: Optional fallback key

        Returns:
            The decrypted value, the input if it is not encrypted, or None on failure
        """
        if not isinstance(value, str) or not value:
            return None
        if not self.is_encrypted(value):
            return value
        body = value[len(self._tag) :]
        idx = body.find(self._separator)
        if idx == -1:
            return None
        version = body[:idx]
        ciphertext = body[idx + len(self._separator) :]
        with self._lock:
            registered = self._keys.get(version)
        if registered is not None:
            use_key = registered
        else:
            use_key = normalize_key(key)
        if use_key is None:
            return None
        try:
            text = AesCbcCipher.decrypt(ciphertext, use_key)
        except CryptoError:
            return None
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return None

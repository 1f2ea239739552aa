"""
Exception classes for field encryption operations.

Data-quality problems inside the Cryptor never surface as exceptions (the
Cryptor returns ``None`` instead); everything here is structural.
"""

from __future__ import annotations


class FieldEncryptionError(Exception):
    """Base exception for all field encryption operations."""

    pass


class ConfigError(FieldEncryptionError):
    """Configuration error (missing key material, invalid settings)."""

    pass


class CryptoError(FieldEncryptionError):
    """Low-level cipher operation failed."""

    pass


class StorageError(FieldEncryptionError):
    """Storage backend error (database, in-memory, unknown model or field)."""

    pass


class MigrationError(FieldEncryptionError):
    """Batch re-encryption, encryption or decryption failed and was rolled back."""

    pass

"""
Field Encryption Library

Transparent, key-versioned encryption of selected entity fields, with
PostgreSQL-backed storage.

Overview
--------
Fields declared as encrypted are stored as tagged ciphertext:

- **Cryptor** encrypts JSON-serialisable values into ``$$#:VERSION:HEX``,
  where VERSION identifies the key that produced the value
- **Interceptor** hooks every model so predicates, results and writes are
  encrypted/decrypted without the application noticing
- **Pipeline** re-encrypts (or encrypts/decrypts) existing rows in batches,
  inside one transaction

Quick Start
-----------
```python
import asyncio
from field_encryption import QueryOptions, Store, load_config

async def main():
    store = await Store.connect(load_config())

    users = store.define("User", table="users")
    users.field("name").encrypted_field("email")

    await users.create({"name": "ada", "email": "ada@example.com"})

    # Predicate literals on encrypted fields are encrypted for you
    user = await users.find_one(QueryOptions(where={"email": "ada@example.com"}))
    print(user["email"])  # plaintext

    # Rotate to a new key
    await users.re_encrypt(new_key="another-key-of-at-least-32-characters")

asyncio.run(main())
```

Key Features
------------
- **AES-256-CBC**: Deterministic encryption, so equality predicates still match
- **Key Versioning**: Old ciphertext stays readable while its key is registered
- **Query Rewriting**: $and/$or groups, lists, operators and included relations
- **Batch Re-keying**: Sequential pages in a single transaction
- **PostgreSQL Storage**: asyncpg-backed storage backend

Modules
-------
- `crypto`: Cipher, key derivation and the key-versioning Cryptor
- `registry`: Per-entity-type encrypted and relation field metadata
- `interceptor`: Query and lifecycle hooks doing the transparent encryption
- `pipeline`: Batch re-encryption, encryption and decryption of existing rows
- `model`: Entity types, entities and their data-access operations
- `store`: Store binding storage, Cryptor and models together
- `storage`: Storage interface and in-memory storage for testing
- `postgres`: PostgreSQL storage backend
- `config`: Configuration from the environment
- `errors`: Error types and exception classes
"""

__version__ = "0.1.0"

# ============================================================================
# Config Exports
# ============================================================================

from .config import (
    DEFAULT_PREFIX,
    DEFAULT_SEPARATOR,
    CryptoConfig,
    StoreConfig,
    load_config,
)

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    KEY_LENGTH,
    SIGNATURE_LENGTH,
    AesCbcCipher,
    Cryptor,
    evp_bytes_to_key,
    normalize_key,
)

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    ConfigError,
    CryptoError,
    FieldEncryptionError,
    MigrationError,
    StorageError,
)

# ============================================================================
# Model Exports
# ============================================================================

from .options import (
    Include,
    QueryOptions,
    SaveOptions,
)

from .registry import (
    FieldRegistry,
    RelationField,
)

from .model import (
    BulkContext,
    Entity,
    FieldDef,
    FindAndCountResult,
    Model,
    Relation,
    SaveContext,
)

from .interceptor import CryptoInterceptor

from .pipeline import (
    MigrationResult,
    decrypt_existing,
    encrypt_existing,
    re_encrypt,
)

# ============================================================================
# Storage Exports
# ============================================================================

from .storage import (
    EntityStorage,
    InMemoryStorage,
    Transaction,
)

from .postgres import PostgresStorage

from .store import Store

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Config
    "DEFAULT_PREFIX",
    "DEFAULT_SEPARATOR",
    "CryptoConfig",
    "StoreConfig",
    "load_config",
    # Crypto
    "KEY_LENGTH",
    "SIGNATURE_LENGTH",
    "AesCbcCipher",
    "Cryptor",
    "evp_bytes_to_key",
    "normalize_key",
    # Errors
    "FieldEncryptionError",
    "ConfigError",
    "CryptoError",
    "StorageError",
    "MigrationError",
    # Models
    "Include",
    "QueryOptions",
    "SaveOptions",
    "FieldRegistry",
    "RelationField",
    "BulkContext",
    "Entity",
    "FieldDef",
    "FindAndCountResult",
    "Model",
    "Relation",
    "SaveContext",
    "CryptoInterceptor",
    # Pipeline
    "MigrationResult",
    "re_encrypt",
    "encrypt_existing",
    "decrypt_existing",
    # Storage
    "EntityStorage",
    "InMemoryStorage",
    "Transaction",
    "PostgresStorage",
    "Store",
]

"""
Store: storage backend, Cryptor and model registry.

The store owns the Cryptor explicitly and hands it to the interceptor of
every model it defines. With crypto disabled (``enabled=False`` or no usable
key) no interceptor is attached and every model operation is pass-through.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import asyncpg

from .config import CryptoConfig, StoreConfig
from .crypto import Cryptor
from .errors import ConfigError, StorageError
from .interceptor import CryptoInterceptor
from .model import Model
from .postgres import PostgresStorage
from .storage import EntityStorage, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store:
    """
    Entity store with transparent field encryption.
    """

    def __init__(
        self,
        storage: EntityStorage,
        crypto: Optional[CryptoConfig] = None,
        cryptor: Optional[Cryptor] = None,
    ) -> None:
        """
        Args:
            storage: Storage backend
            crypto: Crypto configuration (ignored if ``cryptor`` is given)
            cryptor: Pre-built Cryptor
        """
        self.storage = storage
        self.cryptor = cryptor if cryptor is not None else Cryptor.from_config(crypto)
        self._models: Dict[str, Model] = {}
        if self.cryptor is None:
            logger.info("Field encryption is not active for this store")

    @classmethod
    async def connect(cls, config: StoreConfig) -> Store:
        """
        Create a PostgreSQL-backed store (async factory method).

        Args:
            config: Store configuration; ``database_url`` is required

        Returns:
            Store instance
        """
        if not config.database_url:
            raise ConfigError("DATABASE_URL must be set to connect the store")
        pool = await asyncpg.create_pool(config.database_url)
        if pool is None:
            raise StorageError("Failed to create connection pool")
        return cls(PostgresStorage(pool), crypto=config.crypto)

    @property
    def crypto_enabled(self) -> bool:
        return self.cryptor is not None

    def define(
        self, name: str, table: Optional[str] = None, primary_key: str = "id"
    ) -> Model:
        """Define a model and attach the crypto interceptor when crypto is enabled."""
        if name in self._models:
            raise StorageError(f"Model {name} is already defined")
        model = Model(self, name, table=table, primary_key=primary_key)
        if self.cryptor is not None:
            CryptoInterceptor(model, self.cryptor).attach()
        self._models[name] = model
        return model

    def model(self, name: str) -> Model:
        try:
            return self._models[name]
        except KeyError:
            raise StorageError(f"Unknown model: {name}")

    @property
    def models(self) -> List[Model]:
        return list(self._models.values())

    def transaction(self) -> Any:
        return self.storage.transaction()

    async def run_in_transaction(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        return await self.storage.run_in_transaction(fn)

"""
Pytest configuration and fixtures for field encryption tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from field_encryption import (
    Cryptor,
    InMemoryStorage,
    Model,
    PostgresStorage,
    Store,
)

KEY_1 = "k1-0123456789abcdef0123456789abcdef"
KEY_2 = "k2-fedcba9876543210fedcba9876543210"


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    """Create an in-memory storage instance for testing."""
    return InMemoryStorage()


@pytest.fixture
def cryptor() -> Cryptor:
    return Cryptor(KEY_1)


@pytest.fixture
def store(memory_storage: InMemoryStorage, cryptor: Cryptor) -> Store:
    """Create an in-memory store with crypto enabled under KEY_1."""
    return Store(memory_storage, cryptor=cryptor)


@pytest.fixture
def users(store: Store) -> Model:
    """User entity type with two encrypted fields and related posts."""
    model = store.define("User", table="users")
    model.field("name").encrypted_field("email").encrypted_field("phone")
    model.has_many("Post", alias="posts", foreign_key="user_id")
    posts = store.define("Post", table="posts")
    posts.field("title").encrypted_field("body")
    posts.belongs_to("User", alias="author", foreign_key="user_id")
    return model


@pytest.fixture
def posts(store: Store, users: Model) -> Model:
    return store.model("Post")


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await pool.execute("DROP TABLE IF EXISTS fe_posts, fe_users")
    await pool.execute(
        "CREATE TABLE fe_users (id SERIAL PRIMARY KEY, name TEXT, email TEXT, phone TEXT)"
    )
    await pool.execute(
        "CREATE TABLE fe_posts (id SERIAL PRIMARY KEY, title TEXT, body TEXT, user_id INTEGER)"
    )

    yield pool

    await pool.execute("DROP TABLE IF EXISTS fe_posts, fe_users")
    await pool.close()


@pytest.fixture
async def postgres_storage(pg_pool: asyncpg.Pool) -> PostgresStorage:
    """Create a PostgreSQL storage instance for testing."""
    return PostgresStorage(pg_pool)

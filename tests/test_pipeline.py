"""
Tests for the batch re-key pipeline.
"""

from __future__ import annotations

import pytest

from field_encryption import (
    Cryptor,
    MigrationError,
    MigrationResult,
    QueryOptions,
    SaveOptions,
    StorageError,
    Store,
)
from field_encryption.pipeline import page_windows

from conftest import KEY_1, KEY_2

KEY_3 = "k3-00000000000000000000000000000000"

V1 = Cryptor(KEY_1).current_version
V2 = Cryptor(KEY_2).current_version


def _version(value: str) -> str:
    return value.split(":")[1]


async def _seed(users, count: int) -> None:
    await users.bulk_create(
        [
            {"name": f"user{i}", "email": f"user{i}@example.com", "phone": f"555-{i:04d}"}
            for i in range(count)
        ]
    )


def test_page_windows():
    assert page_windows(250, 100) == [(0, 100), (100, 100), (200, 50)]
    assert page_windows(100, 100) == [(0, 100)]
    assert page_windows(0, 100) == []
    with pytest.raises(MigrationError):
        page_windows(10, 0)


async def test_re_encrypt_rotates_every_row(users, memory_storage, monkeypatch):
    await _seed(users, 250)
    pages = []
    find_all = users.find_all

    async def spy(options=None):
        ids = options.where["id"]
        pages.append((ids[0], len(ids)))
        return await find_all(options)

    monkeypatch.setattr(users, "find_all", spy)

    result = await users.re_encrypt(new_key=KEY_2, batch_size=100)

    assert result.encrypted == 250
    assert result.values is None
    assert pages == [(1, 100), (101, 100), (201, 50)]

    # a Cryptor that only knows the new key reads everything
    fresh = Cryptor(KEY_2)
    rows = memory_storage.rows("users")
    assert len(rows) == 250
    for i, row in enumerate(rows):
        assert _version(row["email"]) == V2
        assert fresh.decrypt(row["email"]) == f"user{i}@example.com"
        assert fresh.decrypt(row["phone"]) == f"555-{i:04d}"
        assert row["name"] == f"user{i}"


async def test_old_data_stays_readable_after_rotation(users):
    await _seed(users, 3)
    await users.re_encrypt(new_key=KEY_2)
    found = await users.find_one(QueryOptions(where={"email": "user1@example.com"}, key=KEY_2))
    assert found["phone"] == "555-0001"


async def test_on_item_failure_skips_row(users, memory_storage):
    await _seed(users, 100)
    seen = []

    def on_item(entity):
        seen.append(entity["name"])
        if entity["name"] == "user36":
            raise ValueError("skip me")

    result = await users.re_encrypt(new_key=KEY_2, on_item=on_item)

    assert result.encrypted == 99
    assert len(seen) == 100
    rows = memory_storage.rows("users")
    assert _version(rows[36]["email"]) == V1
    assert all(_version(r["email"]) == V2 for i, r in enumerate(rows) if i != 36)


async def test_async_on_item(users):
    await _seed(users, 5)
    seen = []

    async def on_item(entity):
        seen.append(entity["email"])

    result = await users.re_encrypt(new_key=KEY_2, on_item=on_item)
    assert result.encrypted == 5
    assert seen == [f"user{i}@example.com" for i in range(5)]


async def test_failure_rolls_back_everything(users, memory_storage, monkeypatch):
    await _seed(users, 250)
    before = memory_storage.rows("users")
    update = memory_storage.update
    calls = {"n": 0}

    async def failing_update(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 150:
            raise StorageError("disk full")
        return await update(*args, **kwargs)

    monkeypatch.setattr(memory_storage, "update", failing_update)

    with pytest.raises(MigrationError) as exc_info:
        await users.re_encrypt(new_key=KEY_2, batch_size=100)

    assert isinstance(exc_info.value.__cause__, StorageError)
    assert calls["n"] == 150
    assert memory_storage.rows("users") == before


async def test_predicate_selects_rows(users, memory_storage):
    await _seed(users, 10)
    result = await users.re_encrypt(
        QueryOptions(where={"email": ["user2@example.com", "user5@example.com"]}),
        new_key=KEY_2,
    )
    assert result.encrypted == 2
    versions = [_version(r["email"]) for r in memory_storage.rows("users")]
    assert [i for i, v in enumerate(versions) if v == V2] == [2, 5]


async def test_predicate_on_rewritten_field_covers_every_page(users, memory_storage):
    await users.bulk_create(
        [{"name": f"shared{i}", "email": "shared@example.com"} for i in range(5)]
    )
    await _seed(users, 2)

    result = await users.re_encrypt(
        QueryOptions(where={"email": "shared@example.com"}), new_key=KEY_2, batch_size=2
    )

    assert result.encrypted == 5
    versions = [_version(r["email"]) for r in memory_storage.rows("users")]
    assert versions == [V2] * 5 + [V1] * 2


async def test_decrypt_existing_predicate_on_rewritten_field(users, memory_storage):
    await users.bulk_create(
        [{"name": f"shared{i}", "email": "shared@example.com"} for i in range(5)]
    )

    result = await users.decrypt_existing(
        QueryOptions(where={"email": "shared@example.com"}), batch_size=2
    )

    assert result.decrypted == 5
    assert [r["email"] for r in memory_storage.rows("users")] == ["shared@example.com"] * 5


async def test_fields_subset(users, memory_storage):
    await _seed(users, 3)
    result = await users.re_encrypt(new_key=KEY_2, fields=["email"])
    assert result.encrypted == 3
    for row in memory_storage.rows("users"):
        assert _version(row["email"]) == V2
        assert _version(row["phone"]) == V1


async def test_max_items(users, memory_storage):
    await _seed(users, 50)
    result = await users.re_encrypt(new_key=KEY_2, batch_size=7, max_items=30)
    assert result.encrypted == 30
    versions = [_version(r["email"]) for r in memory_storage.rows("users")]
    assert versions[:30] == [V2] * 30
    assert versions[30:] == [V1] * 20


async def test_values_snapshots(users):
    await _seed(users, 3)
    result = await users.re_encrypt(new_key=KEY_2, values=True)
    assert [v["email"] for v in result.values] == [f"user{i}@example.com" for i in range(3)]
    assert all(v["phone"].startswith("555-") for v in result.values)


async def test_old_key_not_registered_beforehand(users, memory_storage):
    legacy = Cryptor(KEY_3)
    await memory_storage.insert(users, {"name": "old", "email": legacy.encrypt("old@example.com")})

    result = await users.re_encrypt(new_key=KEY_1, old_key=KEY_3)

    assert result.encrypted == 1
    row = memory_storage.rows("users")[0]
    assert _version(row["email"]) == V1
    assert Cryptor(KEY_1).decrypt(row["email"]) == "old@example.com"


async def test_encrypt_existing(users, cryptor, memory_storage):
    for i in range(5):
        await users.create(
            {"name": f"p{i}", "email": f"p{i}@example.com"}, SaveOptions(crypto=False)
        )

    result = await users.encrypt_existing(
        QueryOptions(where={"name": {"$notIn": ["p4"]}}), new_key=KEY_1, batch_size=2
    )

    assert result.encrypted == 4
    rows = memory_storage.rows("users")
    assert [cryptor.decrypt(r["email"]) for r in rows[:4]] == [f"p{i}@example.com" for i in range(4)]
    assert rows[4]["email"] == "p4@example.com"


async def test_encrypt_existing_leaves_encrypted_values(users, memory_storage):
    await _seed(users, 2)
    before = memory_storage.rows("users")
    result = await users.encrypt_existing(new_key=KEY_2)
    assert result.encrypted == 2
    assert memory_storage.rows("users") == before


async def test_decrypt_existing(users, memory_storage):
    await _seed(users, 12)
    result = await users.decrypt_existing(batch_size=5)
    assert result.decrypted == 12
    assert result.encrypted == 0
    rows = memory_storage.rows("users")
    assert [r["email"] for r in rows] == [f"user{i}@example.com" for i in range(12)]
    assert [r["phone"] for r in rows] == [f"555-{i:04d}" for i in range(12)]


async def test_decrypt_existing_fields_subset(users, memory_storage):
    await _seed(users, 2)
    await users.decrypt_existing(fields=["phone"])
    for row in memory_storage.rows("users"):
        assert row["phone"].startswith("555-")
        assert _version(row["email"]) == V1


async def test_decrypt_existing_with_old_key(users, memory_storage):
    legacy = Cryptor(KEY_3)
    await memory_storage.insert(users, {"name": "old", "email": legacy.encrypt("old@example.com")})
    result = await users.decrypt_existing(old_key=KEY_3)
    assert result.decrypted == 1
    assert memory_storage.rows("users")[0]["email"] == "old@example.com"


# =============================================================================
# Errors
# =============================================================================


async def test_missing_new_key(users):
    with pytest.raises(MigrationError):
        await users.re_encrypt(new_key="")
    with pytest.raises(MigrationError):
        await users.encrypt_existing(new_key=None)


async def test_invalid_keys(users):
    with pytest.raises(MigrationError):
        await users.re_encrypt(new_key="short")
    with pytest.raises(MigrationError):
        await users.re_encrypt(new_key=KEY_2, old_key="short")


async def test_invalid_batch_size(users):
    await _seed(users, 1)
    with pytest.raises(MigrationError):
        await users.re_encrypt(new_key=KEY_2, batch_size=0)


async def test_disabled_crypto_is_a_no_op(memory_storage):
    store = Store(memory_storage)
    users = store.define("User", table="users")
    users.encrypted_field("email")
    await users.create({"email": "plain@example.com"})

    assert await users.re_encrypt(new_key=KEY_2) == MigrationResult()
    assert await users.encrypt_existing(new_key=KEY_2) == MigrationResult()
    assert await users.decrypt_existing() == MigrationResult()
    assert memory_storage.rows("users")[0]["email"] == "plain@example.com"


async def test_empty_table(users):
    result = await users.re_encrypt(new_key=KEY_2)
    assert result.encrypted == 0

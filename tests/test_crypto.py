"""
Tests for the cipher and the key-versioning Cryptor.
"""

from __future__ import annotations

import hashlib

import pytest

from field_encryption import (
    AesCbcCipher,
    ConfigError,
    CryptoConfig,
    CryptoError,
    Cryptor,
    evp_bytes_to_key,
    normalize_key,
)

from conftest import KEY_1, KEY_2


# =============================================================================
# Cipher
# =============================================================================


def test_evp_bytes_to_key_lengths():
    key, iv = evp_bytes_to_key(b"password")
    assert len(key) == 32
    assert len(iv) == 16
    assert key[:16] == hashlib.md5(b"password").digest()


def test_cipher_is_deterministic():
    a = AesCbcCipher.encrypt('"hello"', KEY_1[:32])
    b = AesCbcCipher.encrypt('"hello"', KEY_1[:32])
    assert a == b
    assert a == a.lower()
    assert AesCbcCipher.decrypt(a, KEY_1[:32]) == '"hello"'


def test_cipher_wrong_key_fails():
    plaintext = "some longer plaintext value"
    ciphertext = AesCbcCipher.encrypt(plaintext, KEY_1[:32])
    try:
        result = AesCbcCipher.decrypt(ciphertext, KEY_2[:32])
    except CryptoError:
        return
    assert result != plaintext


def test_cipher_empty_key():
    with pytest.raises(CryptoError):
        AesCbcCipher.encrypt("x", "")


# =============================================================================
# Keys and signatures
# =============================================================================


def test_normalize_key():
    assert normalize_key("a" * 40) == "a" * 32
    assert normalize_key("a" * 32) == "a" * 32
    assert normalize_key("a" * 31) is None
    assert normalize_key(None) is None
    assert normalize_key(12345) is None


def test_constructor_rejects_short_key():
    with pytest.raises(ConfigError):
        Cryptor("too-short")


def test_signature_format_and_stability():
    cryptor = Cryptor(KEY_1)
    key = KEY_1[:32]
    inner = hashlib.sha1(key.encode()).hexdigest()
    expected = hashlib.sha256((key + inner).encode()).hexdigest()[:8]
    assert cryptor.current_version == expected
    assert cryptor.signature(key) == expected
    assert Cryptor(KEY_1).current_version == expected


def test_key_1_is_active(cryptor):
    assert cryptor.current_version == cryptor.signature(KEY_1[:32])


def test_add_key_forms():
    cryptor = Cryptor(KEY_1)
    sign = cryptor.add_key(KEY_2)
    assert isinstance(sign, str) and len(sign) == 8
    assert cryptor.has_version(sign)
    assert cryptor.add_key("short") is False
    assert cryptor.add_key(None) is False
    assert cryptor.add_key([KEY_2, "short", None]) is True


def test_historical_keys_skip_invalid(caplog):
    cryptor = Cryptor(KEY_1, keys=[KEY_2, "nope"])
    assert cryptor.has_version(Cryptor(KEY_2).current_version)
    assert "Skipping historical crypto key" in caplog.text


# =============================================================================
# Encrypt / decrypt
# =============================================================================


@pytest.mark.parametrize(
    "value",
    ["ada@example.com", "", 42, 3.5, True, None, ["a", 1], {"nested": {"x": [1, 2]}}, "żółć"],
)
def test_round_trip(value):
    cryptor = Cryptor(KEY_1)
    encrypted = cryptor.encrypt(value)
    assert cryptor.is_encrypted(encrypted)
    assert cryptor.decrypt(encrypted) == value


def test_wire_format():
    cryptor = Cryptor(KEY_1)
    encrypted = cryptor.encrypt("hello")
    prefix, sep, version, ciphertext = encrypted[:3], encrypted[3], encrypted[4:12], encrypted[13:]
    assert prefix == "$$#"
    assert sep == ":"
    assert version == cryptor.current_version
    assert encrypted[12] == ":"
    int(ciphertext, 16)


def test_encrypt_is_deterministic():
    cryptor = Cryptor(KEY_1)
    assert cryptor.encrypt("x") == cryptor.encrypt("x")
    assert cryptor.encrypt("x") != cryptor.encrypt("x", KEY_2)


def test_encrypt_rejects_bad_input():
    cryptor = Cryptor(KEY_1)
    assert cryptor.encrypt(object()) is None
    assert cryptor.encrypt(float("nan")) is None
    assert cryptor.encrypt("x", key="short") is None


def test_custom_prefix_and_separator():
    cryptor = Cryptor(KEY_1, prefix="ENC", separator="|")
    encrypted = cryptor.encrypt("v")
    assert encrypted.startswith("ENC|" + cryptor.current_version + "|")
    assert cryptor.decrypt(encrypted) == "v"
    assert not Cryptor(KEY_1).is_encrypted(encrypted)


def test_rotation_is_transparent():
    old = Cryptor(KEY_1)
    legacy = old.encrypt("secret")

    rotated = Cryptor(KEY_2, keys=[KEY_1])
    assert rotated.decrypt(legacy) == "secret"
    fresh = rotated.encrypt("secret")
    assert fresh != legacy
    assert rotated.decrypt(fresh) == "secret"


def test_registered_key_wins_over_supplied_key():
    cryptor = Cryptor(KEY_1)
    encrypted = cryptor.encrypt("value")
    assert cryptor.decrypt(encrypted, KEY_2) == "value"


def test_unknown_version_uses_supplied_key():
    encrypted = Cryptor(KEY_2).encrypt("value")
    cryptor = Cryptor(KEY_1)
    assert cryptor.decrypt(encrypted) is None
    assert cryptor.decrypt(encrypted, KEY_2) == "value"


def test_decrypt_failures_return_none():
    cryptor = Cryptor(KEY_1)
    version = cryptor.current_version
    assert cryptor.decrypt(None) is None
    assert cryptor.decrypt("") is None
    assert cryptor.decrypt(123) is None
    assert cryptor.decrypt("$$#:no-separator") is None
    assert cryptor.decrypt(f"$$#:{version}:zz") is None
    assert cryptor.decrypt(f"$$#:{version}:00112233") is None
    # valid cipher over text that is not JSON
    not_json = AesCbcCipher.encrypt("not json", KEY_1[:32])
    assert cryptor.decrypt(f"$$#:{version}:{not_json}") is None


def test_decrypt_passes_plaintext_through():
    cryptor = Cryptor(KEY_1)
    assert cryptor.decrypt("plain text") == "plain text"


def test_is_encrypted():
    cryptor = Cryptor(KEY_1)
    assert cryptor.is_encrypted("$$#:abc")
    assert not cryptor.is_encrypted("$$#")
    assert not cryptor.is_encrypted(None)
    assert not cryptor.is_encrypted(5)


# =============================================================================
# Configuration
# =============================================================================


def test_from_config_disabled():
    assert Cryptor.from_config(None) is None
    assert Cryptor.from_config(CryptoConfig(key=KEY_1, enabled=False)) is None
    assert Cryptor.from_config(CryptoConfig()) is None
    assert Cryptor.from_config(CryptoConfig(key="short")) is None


def test_from_config_first_historical_key_is_active():
    cryptor = Cryptor.from_config(CryptoConfig(keys={"v2": KEY_2, "v1": KEY_1}))
    assert cryptor.current_version == Cryptor(KEY_2).current_version
    assert cryptor.has_version(Cryptor(KEY_1).current_version)

import base64
from dataclasses import replace

import pytest

from backend.app.bank_integration.encryption import CredentialVault, EncryptedSecret
from backend.app.bank_integration.exceptions import AuthTagError, ConfigError


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


def test_encrypt_decrypt_round_trip(vault):
    secret = vault.encrypt("rt-abc123")

    assert isinstance(secret, EncryptedSecret)
    assert "rt-abc123" not in secret.ciphertext
    assert vault.decrypt_text(secret) == "rt-abc123"


def test_each_encryption_uses_a_fresh_iv(vault):
    first = vault.encrypt("same-token")
    second = vault.encrypt("same-token")

    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext
    assert len(base64.b64decode(first.iv)) == 12
    assert len(base64.b64decode(first.auth_tag)) == 16


def test_tampered_ciphertext_is_rejected(vault):
    secret = vault.encrypt("refresh-token")
    tampered = replace(secret, ciphertext=_flip_first_byte(secret.ciphertext))

    with pytest.raises(AuthTagError):
        vault.decrypt(tampered)


def test_tampered_auth_tag_is_rejected(vault):
    secret = vault.encrypt("refresh-token")
    tampered = replace(secret, auth_tag=_flip_first_byte(secret.auth_tag))

    with pytest.raises(AuthTagError):
        vault.decrypt(tampered)


def test_other_key_cannot_decrypt(vault):
    secret = vault.encrypt("refresh-token")
    other = CredentialVault.from_hex("1a" * 32)

    with pytest.raises(AuthTagError):
        other.decrypt(secret)


def test_malformed_secret_is_rejected(vault):
    secret = vault.encrypt("refresh-token")

    with pytest.raises(AuthTagError):
        vault.decrypt(replace(secret, iv="not base64!"))
    with pytest.raises(AuthTagError):
        vault.decrypt(replace(secret, iv=base64.b64encode(b"short").decode()))


@pytest.mark.parametrize("hex_key", ["", "abcd", "zz" * 32, "0f" * 31])
def test_bad_keys_are_a_config_error(hex_key):
    with pytest.raises(ConfigError):
        CredentialVault.from_hex(hex_key)

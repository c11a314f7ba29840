import base64
import pytest
from common.exceptions import ConfigurationError, DecryptionError, ValidationError
from common.security import (
    EncryptionManager,
    constant_time_compare,
    generate_secure_key,
    hash_content,
    mask_sensitive_data,
    validate_key_strength,
)


def test_encrypt_decrypt_round_trip(encryption):
    ciphertext = encryption.encrypt("exchange-secret")
    assert ciphertext != "exchange-secret"
    assert encryption.decrypt(ciphertext) == "exchange-secret"


def test_encrypt_uses_fresh_nonce(encryption):
    assert encryption.encrypt("same") != encryption.encrypt("same")


def test_empty_string_passes_through(encryption):
    assert encryption.encrypt("") == ""
    assert encryption.decrypt("") == ""


def test_tampered_ciphertext_is_rejected(encryption):
    payload = bytearray(base64.b64decode(encryption.encrypt("secret")))
    payload[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        encryption.decrypt(base64.b64encode(bytes(payload)).decode())


@pytest.mark.parametrize("bad", ["not base64!!", base64.b64encode(b"short").decode()])
def test_malformed_ciphertext_is_rejected(encryption, bad):
    with pytest.raises(DecryptionError):
        encryption.decrypt(bad)


def test_other_master_key_cannot_decrypt(encryption):
    other = EncryptionManager("Another-Master-Key-0123456789-abcdefgh")
    with pytest.raises(DecryptionError):
        other.decrypt(encryption.encrypt("secret"))


def test_short_master_key_rejected():
    with pytest.raises(ConfigurationError):
        EncryptionManager("short")


def test_generate_secure_key_is_urlsafe():
    key = generate_secure_key(32)
    assert len(base64.urlsafe_b64decode(key)) == 32
    assert generate_secure_key() != generate_secure_key()


def test_generate_secure_key_rejects_non_positive_length():
    with pytest.raises(ValidationError):
        generate_secure_key(0)


def test_validate_key_strength():
    validate_key_strength("Abcdefghijklmnopqrstuvwxyz0123456789")
    with pytest.raises(ValidationError):
        validate_key_strength("abcdefghijklmnopqrstuvwxyz0123456789")
    with pytest.raises(ValidationError):
        validate_key_strength("Abc123")


def test_constant_time_compare():
    assert constant_time_compare("abc", "abc")
    assert constant_time_compare(b"abc", "abc")
    assert not constant_time_compare("abc", "abd")


def test_mask_sensitive_data():
    assert mask_sensitive_data("") == ""
    assert mask_sensitive_data("12345678") == "***"
    assert mask_sensitive_data("1234567890") == "1234**7890"


def test_hash_content():
    assert hash_content("abc") == hash_content(b"abc")
    assert len(hash_content("abc")) == 64

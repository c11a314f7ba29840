import pytest
from common.api_keys import APIKeyManager, is_api_key_format, default_permissions
from common.constants import APIKeyPrefix
from common.exceptions import ConfigurationError, InvalidAPIKeyError, InvalidSignatureError


def test_generated_key_matches_wire_format(api_key_manager):
    for prefix in APIKeyPrefix:
        key = api_key_manager.generate(prefix)
        assert key.startswith(prefix.value)
        assert is_api_key_format(key)
        api_key_manager.validate(key)


def test_generated_keys_are_unique(api_key_manager):
    assert api_key_manager.generate("usr_") != api_key_manager.generate("usr_")


def test_body_has_at_least_32_random_bytes(api_key_manager):
    key = api_key_manager.generate(APIKeyPrefix.USER, length=8)
    body = key.split(".")[0][len("usr_"):]
    # 32 bytes in unpadded base64
    assert len(body) >= 43


def test_tampered_signature_rejected(api_key_manager):
    key = api_key_manager.generate(APIKeyPrefix.USER)
    body, signature = key.split(".")
    forged = f"{body}.{'0' * 8 if signature != '0' * 8 else '1' * 8}"
    with pytest.raises(InvalidSignatureError):
        api_key_manager.validate(forged)


def test_key_signed_with_other_signing_key_rejected(api_key_manager, encryption):
    other = APIKeyManager(encryption, "another-signing-key")
    with pytest.raises(InvalidSignatureError):
        api_key_manager.validate(other.generate(APIKeyPrefix.USER))


@pytest.mark.parametrize("key", ["", "usr_abcdef", "a.b.c"])
def test_malformed_keys_rejected(api_key_manager, key):
    with pytest.raises(InvalidAPIKeyError):
        api_key_manager.validate(key)


def test_unknown_prefix_rejected(api_key_manager):
    key_part = "abc_" + "x" * 43
    signed = f"{key_part}.{api_key_manager._sign(key_part)[:8]}"
    with pytest.raises(InvalidAPIKeyError):
        api_key_manager.validate(signed)


def test_extract_prefix(api_key_manager):
    key = api_key_manager.generate(APIKeyPrefix.WEBHOOK)
    assert api_key_manager.extract_prefix(key) is APIKeyPrefix.WEBHOOK


def test_encrypt_decrypt(api_key_manager):
    key = api_key_manager.generate(APIKeyPrefix.SERVICE)
    stored = api_key_manager.encrypt(key)
    assert stored != key
    assert api_key_manager.decrypt(stored) == key


def test_encrypt_refuses_invalid_key(api_key_manager):
    with pytest.raises(InvalidAPIKeyError):
        api_key_manager.encrypt("not-a-key")


def test_hash_is_keyed_and_stable(api_key_manager, encryption):
    key = api_key_manager.generate(APIKeyPrefix.USER)
    assert api_key_manager.hash(key) == api_key_manager.hash(key)
    assert api_key_manager.verify_hash(key, api_key_manager.hash(key))
    other = APIKeyManager(encryption, "another-signing-key")
    assert other.hash(key) != api_key_manager.hash(key)


def test_mask_keeps_prefix_and_signature(api_key_manager):
    key = api_key_manager.generate(APIKeyPrefix.USER)
    body, signature = key.split(".")
    masked = api_key_manager.mask(key)
    assert masked.startswith("usr_" + body[4:8])
    assert masked.endswith(body[-4:] + "." + signature)
    assert "*" in masked
    assert body[8:-4] not in masked


def test_mask_short_values(api_key_manager):
    assert api_key_manager.mask("") == ""
    assert api_key_manager.mask("usr_ab.12345678") == "usr_****.12345678"


def test_default_permissions():
    assert default_permissions("usr_") == ["read", "write", "delete"]
    assert default_permissions(APIKeyPrefix.SERVICE) == ["read"]
    assert default_permissions("bad_") == []


def test_missing_signing_key_rejected(encryption):
    with pytest.raises(ConfigurationError):
        APIKeyManager(encryption, "")

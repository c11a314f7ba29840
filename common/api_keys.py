#!/usr/bin/env python3
"""
Tiris Backend
API Key Manager

Issues and verifies opaque API keys of the form ``<prefix><body>.<sig>``.
The body is URL-safe base64 of at least 32 random bytes with padding
stripped; the signature is the first 8 hex characters of
SHA-256(prefix + body || signing key). Keys are stored encrypted and looked
up by a keyed SHA-256 hash, never by plaintext.
"""

import re
import base64
import hashlib
from typing import List, Union

from common.logger import get_logger
from common.exceptions import InvalidAPIKeyError, InvalidSignatureError, ConfigurationError
from common.constants import (
    APIKeyPrefix, API_KEY_DEFAULT_PERMISSIONS, API_KEY_MIN_BYTES,
    API_KEY_PATTERN, API_KEY_SIGNATURE_LENGTH
)
from common.security import (
    EncryptionManager, constant_time_compare, generate_secure_bytes, mask_sensitive_data
)

logger = get_logger(__name__)

_API_KEY_RE = re.compile(API_KEY_PATTERN)
_PREFIXES = tuple(p.value for p in APIKeyPrefix)


def is_api_key_format(key: str) -> bool:
    """Check whether a string looks like an API key."""
    return bool(key) and _API_KEY_RE.match(key) is not None


def default_permissions(prefix: Union[APIKeyPrefix, str]) -> List[str]:
    """Default capability set for a key prefix."""
    try:
        prefix = APIKeyPrefix(prefix)
    except ValueError:
        return []
    return list(API_KEY_DEFAULT_PERMISSIONS[prefix])


class APIKeyManager:
    """Generates, validates, encrypts, hashes and masks API keys."""

    def __init__(self, encryption: EncryptionManager, signing_key: str):
        """
        Initialize the manager.

        Args:
            encryption: Encryption manager used for storage
            signing_key: Deployment secret mixed into signatures and hashes

        Raises:
            ConfigurationError: If no signing key is configured
        """
        if not signing_key:
            raise ConfigurationError("API key signing key must be provided")
        self.encryption = encryption
        self._signing_key = hashlib.sha256(signing_key.encode('utf-8')).digest()

    def _sign(self, key_part: str) -> str:
        return hashlib.sha256(key_part.encode('utf-8') + self._signing_key).hexdigest()

    def generate(self, prefix: Union[APIKeyPrefix, str], length: int = API_KEY_MIN_BYTES) -> str:
        """
        Generate a signed API key.

        Args:
            prefix: Key type prefix
            length: Random bytes in the body (at least 32)

        Returns:
            The plaintext key
        """
        prefix = APIKeyPrefix(prefix)
        length = max(length, API_KEY_MIN_BYTES)

        body = base64.urlsafe_b64encode(generate_secure_bytes(length)).decode('ascii').rstrip("=")
        key_part = prefix.value + body
        signature = self._sign(key_part)[:API_KEY_SIGNATURE_LENGTH]
        return f"{key_part}.{signature}"

    def validate(self, api_key: str) -> None:
        """
        Validate format and signature of an API key.

        Raises:
            InvalidAPIKeyError: If the key is empty, unsigned or has an unknown prefix
            InvalidSignatureError: If the signature does not match
        """
        if not api_key:
            raise InvalidAPIKeyError("invalid API key format")

        parts = api_key.split(".")
        if len(parts) != 2:
            raise InvalidAPIKeyError("invalid API key format: missing signature")

        key_part, provided_sig = parts
        expected_sig = self._sign(key_part)[:API_KEY_SIGNATURE_LENGTH]
        if not constant_time_compare(provided_sig, expected_sig):
            raise InvalidSignatureError("invalid API key signature")

        if not key_part.startswith(_PREFIXES):
            raise InvalidAPIKeyError("invalid API key format: invalid prefix")

    def extract_prefix(self, api_key: str) -> APIKeyPrefix:
        """Return the prefix of a valid key."""
        self.validate(api_key)
        key_part = api_key.split(".")[0]
        for prefix in APIKeyPrefix:
            if key_part.startswith(prefix.value):
                return prefix
        raise InvalidAPIKeyError("invalid API key format: unknown prefix")

    def encrypt(self, api_key: str) -> str:
        """Validate and encrypt a key for storage."""
        self.validate(api_key)
        return self.encryption.encrypt(api_key)

    def decrypt(self, encrypted_key: str) -> str:
        """
        Decrypt a stored key and re-validate it.

        Raises:
            DecryptionError: If the ciphertext is unusable
            InvalidAPIKeyError: If the decrypted value is not a valid key
        """
        decrypted = self.encryption.decrypt(encrypted_key)
        if decrypted:
            self.validate(decrypted)
        return decrypted

    def hash(self, api_key: str) -> str:
        """Keyed SHA-256 of the full key, used as the storage lookup index."""
        return hashlib.sha256(api_key.encode('utf-8') + self._signing_key).hexdigest()

    def mask(self, api_key: str) -> str:
        """
        Mask a key for display, keeping prefix and signature visible.

        Only the first and last four body characters survive.
        """
        if not api_key:
            return ""

        parts = api_key.split(".")
        if len(parts) != 2:
            return mask_sensitive_data(api_key, 4)

        key_part, sig_part = parts
        prefix = ""
        for candidate in _PREFIXES:
            if key_part.startswith(candidate):
                prefix = candidate
                key_part = key_part[len(candidate):]
                break

        if len(key_part) > 8:
            masked = key_part[:4] + "*" * (len(key_part) - 8) + key_part[-4:]
            return f"{prefix}{masked}.{sig_part}"
        return f"{prefix}****.{sig_part}"

    def verify_hash(self, api_key: str, key_hash: str) -> bool:
        """Compare a key against a stored hash in constant time."""
        return constant_time_compare(self.hash(api_key), key_hash)
